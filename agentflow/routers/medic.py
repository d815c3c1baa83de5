from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from agentflow.core.authorization import Role, require_role
from agentflow.database import SessionLocal
from agentflow.models._time import as_utc
from agentflow.services import medic

router = APIRouter(prefix="/medic", tags=["Medic"])


class MedicCheckRow(BaseModel):
    id: str
    checked_at: str
    issues_found: int
    actions_taken: int
    summary: Optional[str]
    details: list[dict[str, Any]]


class MedicStatusResponse(BaseModel):
    last_check: Optional[MedicCheckRow]
    recent_checks: int
    recent_issues: int
    recent_actions: int


def _check_row(c) -> MedicCheckRow:
    return MedicCheckRow(
        id=c.id,
        checked_at=as_utc(c.checked_at).isoformat(),
        issues_found=c.issues_found,
        actions_taken=c.actions_taken,
        summary=c.summary,
        details=list(c.details or []),
    )


@router.post("/run", response_model=MedicCheckRow)
def run_check(_role=Depends(require_role(Role.OPERATOR))):
    db = SessionLocal()
    try:
        result = medic.run_medic_check(db=db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return MedicCheckRow(
        id=result.id,
        checked_at=as_utc(result.checked_at).isoformat(),
        issues_found=result.issues_found,
        actions_taken=result.actions_taken,
        summary=result.summary,
        details=[f.to_dict() for f in result.findings],
    )


@router.get("/status", response_model=MedicStatusResponse)
def medic_status(_role=Depends(require_role(Role.WORKER))):
    status = medic.get_medic_status()
    return MedicStatusResponse(
        last_check=None if status.last_check is None else _check_row(status.last_check),
        recent_checks=status.recent_checks,
        recent_issues=status.recent_issues,
        recent_actions=status.recent_actions,
    )


@router.get("/checks", response_model=list[MedicCheckRow])
def recent_checks(
    limit: int = Query(20, ge=1, le=500),
    _role=Depends(require_role(Role.WORKER)),
):
    return [_check_row(c) for c in medic.get_recent_medic_checks(limit)]
