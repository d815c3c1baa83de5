from fastapi import APIRouter, Depends, HTTPException, Query

from agentflow.core.authorization import Role, require_role
from agentflow.database import SessionLocal
from agentflow.routers._errors import to_http_error
from agentflow.schemas.engine import (
    ClaimRequest,
    ClaimResponse,
    CompleteRequest,
    CompleteResponse,
    FailRequest,
    FailResponse,
)
from agentflow.services import step_engine

router = APIRouter(prefix="/steps", tags=["Steps"])


@router.post("/claim", response_model=ClaimResponse)
def claim_step(payload: ClaimRequest, _role=Depends(require_role(Role.WORKER))):
    db = SessionLocal()
    try:
        result = step_engine.claim(payload.agent_id, db=db)
        db.commit()
        return ClaimResponse(
            found=result.found,
            step_id=result.step_id,
            run_id=result.run_id,
            input=result.resolved_input,
        )
    except ValueError as exc:
        db.rollback()
        raise to_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/peek")
def peek_steps(
    agent_id: str = Query(..., min_length=1),
    _role=Depends(require_role(Role.WORKER)),
):
    return {"agent_id": agent_id, "has_work": step_engine.peek(agent_id)}


@router.post("/{step_id}/complete", response_model=CompleteResponse)
def complete_step(step_id: str, payload: CompleteRequest, _role=Depends(require_role(Role.WORKER))):
    db = SessionLocal()
    try:
        result = step_engine.complete(step_id, payload.output, db=db)
        db.commit()
        return CompleteResponse(advanced=result.advanced, run_completed=result.run_completed)
    except ValueError as exc:
        db.rollback()
        raise to_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.post("/{step_id}/fail", response_model=FailResponse)
def fail_step(step_id: str, payload: FailRequest, _role=Depends(require_role(Role.WORKER))):
    if not payload.error.strip():
        raise HTTPException(status_code=400, detail="error must not be empty")

    db = SessionLocal()
    try:
        result = step_engine.fail(step_id, payload.error, db=db)
        db.commit()
        return FailResponse(retrying=result.retrying, run_failed=result.run_failed)
    except ValueError as exc:
        db.rollback()
        raise to_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
