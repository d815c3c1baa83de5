from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from agentflow.core.authorization import Role, require_role
from agentflow.database import SessionLocal
from agentflow.models._time import as_utc
from agentflow.routers._errors import to_http_error
from agentflow.schemas.engine import StartRunRequest
from agentflow.services import run_service
from agentflow.services.events import get_recent_events, get_run_events
from agentflow.services.workflow_registry import list_workflows

router = APIRouter(tags=["Runs"])


class RunRow(BaseModel):
    id: str
    workflow_id: str
    task: str
    status: str
    created_at: str
    updated_at: str


class StepRow(BaseModel):
    id: str
    step_id: str
    agent_id: str
    step_index: int
    type: str
    status: str
    retry_count: int
    max_retries: int
    abandoned_count: int
    current_story_id: Optional[str]


class StoryRow(BaseModel):
    id: str
    story_id: str
    story_index: int
    title: str
    status: str
    retry_count: int
    max_retries: int


class RunDetailResponse(BaseModel):
    run: RunRow
    context: dict[str, str]
    steps: list[StepRow]
    stories: list[StoryRow]


class WorkflowRow(BaseModel):
    id: str
    name: Optional[str]
    steps: list[str]


class EventRow(BaseModel):
    id: int
    ts: str
    event: str
    run_id: str
    workflow_id: Optional[str]
    step_id: Optional[str]
    agent_id: Optional[str]
    story_id: Optional[str]
    story_title: Optional[str]
    detail: Optional[str]


def _run_row(run) -> RunRow:
    return RunRow(
        id=run.id,
        workflow_id=run.workflow_id,
        task=run.task,
        status=run.status,
        created_at=as_utc(run.created_at).isoformat(),
        updated_at=as_utc(run.updated_at).isoformat(),
    )


def _event_row(e) -> EventRow:
    return EventRow(
        id=e.id,
        ts=as_utc(e.ts).isoformat(),
        event=e.event,
        run_id=e.run_id,
        workflow_id=e.workflow_id,
        step_id=e.step_id,
        agent_id=e.agent_id,
        story_id=e.story_id,
        story_title=e.story_title,
        detail=e.detail,
    )


@router.post("/runs", response_model=RunRow, status_code=201)
def start_run(payload: StartRunRequest, _role=Depends(require_role(Role.OPERATOR))):
    db = SessionLocal()
    try:
        run = run_service.start_run(payload.workflow_id, payload.task, payload.notify_target, db=db)
        db.commit()
        return _run_row(run)
    except ValueError as exc:
        db.rollback()
        raise to_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/runs", response_model=list[RunRow])
def list_runs(
    status: Optional[str] = None,
    workflow_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    _role=Depends(require_role(Role.WORKER)),
):
    return [_run_row(r) for r in run_service.list_runs(status=status, workflow_id=workflow_id, limit=limit)]


@router.get("/runs/{query}", response_model=RunDetailResponse)
def get_run(query: str, _role=Depends(require_role(Role.WORKER))):
    try:
        status = run_service.get_run_status(query)
    except ValueError as exc:
        raise to_http_error(exc) from exc

    return RunDetailResponse(
        run=_run_row(status.run),
        context={str(k): str(v) for k, v in (status.run.context or {}).items()},
        steps=[
            StepRow(
                id=s.id,
                step_id=s.step_id,
                agent_id=s.agent_id,
                step_index=s.step_index,
                type=s.type,
                status=s.status,
                retry_count=s.retry_count,
                max_retries=s.max_retries,
                abandoned_count=s.abandoned_count,
                current_story_id=s.current_story_id,
            )
            for s in status.steps
        ],
        stories=[
            StoryRow(
                id=s.id,
                story_id=s.story_id,
                story_index=s.story_index,
                title=s.title,
                status=s.status,
                retry_count=s.retry_count,
                max_retries=s.max_retries,
            )
            for s in status.stories
        ],
    )


@router.post("/runs/{query}/cancel", response_model=RunRow)
def cancel_run(query: str, _role=Depends(require_role(Role.OPERATOR))):
    db = SessionLocal()
    try:
        run = run_service.cancel_run(query, db=db)
        db.commit()
        return _run_row(run)
    except ValueError as exc:
        db.rollback()
        raise to_http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/runs/{run_id}/events", response_model=list[EventRow])
def list_run_events(
    run_id: str,
    limit: int = Query(200, ge=1, le=1000),
    _role=Depends(require_role(Role.WORKER)),
):
    return [_event_row(e) for e in get_run_events(run_id, limit)]


@router.get("/events", response_model=list[EventRow])
def list_recent_events(
    limit: int = Query(50, ge=1, le=500),
    _role=Depends(require_role(Role.WORKER)),
):
    return [_event_row(e) for e in get_recent_events(limit)]


@router.get("/workflows", response_model=list[WorkflowRow])
def get_workflows(_role=Depends(require_role(Role.WORKER))):
    return [WorkflowRow(id=w.id, name=w.name, steps=[s.id for s in w.steps]) for w in list_workflows()]
