import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.core.errors import InvalidTransitionError, NotFoundError
from agentflow.database import SessionLocal
from agentflow.models._time import utcnow
from agentflow.models.run import Run
from agentflow.models.step import ACTIVE_STEP_STATUSES, Step
from agentflow.models.story import Story
from agentflow.schemas.workflow import WorkflowSpec
from agentflow.services._session import session_scope
from agentflow.services.events import emit_event
from agentflow.services.pipeline import step_event
from agentflow.services.workflow_registry import get_workflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunStatus:
    run: Run
    steps: list[Step]
    stories: list[Story]


def start_run(
    workflow: Union[WorkflowSpec, str],
    task: str,
    notify_target: Optional[str] = None,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> Run:
    """Create a run with one step row per workflow step; the first one is claimable."""
    spec = workflow if isinstance(workflow, WorkflowSpec) else get_workflow(workflow)
    task = (task or "").strip()
    if not task:
        raise ValueError("task must not be empty")

    now = now or utcnow()
    default_retries = get_settings().default_max_retries

    with session_scope(db) as db:
        run = Run(
            id=str(uuid.uuid4()),
            workflow_id=spec.id,
            task=task,
            status="running",
            context={"task": task, **spec.context},
            notify_target=notify_target,
            created_at=now,
            updated_at=now,
        )
        db.add(run)

        steps = []
        for index, step_spec in enumerate(spec.steps):
            step = Step(
                id=str(uuid.uuid4()),
                run_id=run.id,
                step_id=step_spec.id,
                agent_id=f"{spec.id}/{step_spec.agent}",
                step_index=index,
                type=step_spec.type,
                input_template=step_spec.input,
                expects=step_spec.expects,
                status="pending" if index == 0 else "waiting",
                retry_count=0,
                max_retries=default_retries if step_spec.max_retries is None else step_spec.max_retries,
                abandoned_count=0,
                loop_config=step_spec.loop.model_dump() if step_spec.loop is not None else None,
                created_at=now,
                updated_at=now,
            )
            db.add(step)
            steps.append(step)
        db.flush()

        emit_event(db, "run.started", run_id=run.id, workflow_id=spec.id, detail=task[:200], now=now)
        step_event(db, "step.pending", run, steps[0], now)

    logger.info("Run started", extra={"run_id": run.id, "workflow_id": spec.id, "steps": len(steps)})
    return run


def find_run(db: Session, query: str) -> Run:
    """Resolve a run by id, id prefix, exact task or task substring."""
    query = (query or "").strip()
    if not query:
        raise NotFoundError("Run not found: empty query")

    run = db.get(Run, query)
    if run is not None:
        return run

    newest_first = (Run.created_at.desc(), Run.id.desc())

    run = db.query(Run).filter(Run.id.like(f"{query}%")).order_by(*newest_first).first()
    if run is not None:
        return run

    run = db.query(Run).filter(func.lower(Run.task) == query.lower()).order_by(*newest_first).first()
    if run is not None:
        return run

    run = db.query(Run).filter(func.lower(Run.task).contains(query.lower())).order_by(*newest_first).first()
    if run is not None:
        return run

    raise NotFoundError(f"Run not found: {query}")


def cancel_run(query: str, *, db: Optional[Session] = None, now: Optional[datetime] = None) -> Run:
    now = now or utcnow()
    with session_scope(db) as db:
        run = find_run(db, query)
        if run.is_terminal:
            raise InvalidTransitionError(f"Run {run.id} is already {run.status}")

        for step in db.query(Step).filter(Step.run_id == run.id, Step.status.in_(ACTIVE_STEP_STATUSES)).all():
            step.status = "failed"
            step.current_story_id = None
            step.updated_at = now

        run.status = "cancelled"
        run.updated_at = now
        emit_event(db, "run.failed", run_id=run.id, workflow_id=run.workflow_id, detail="cancelled", now=now)
        db.flush()

    logger.info("Run cancelled", extra={"run_id": run.id, "workflow_id": run.workflow_id})
    return run


def get_run_status(query: str, *, db: Optional[Session] = None) -> RunStatus:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        run = find_run(db, query)
        steps = db.query(Step).filter(Step.run_id == run.id).order_by(Step.step_index.asc()).all()
        stories = db.query(Story).filter(Story.run_id == run.id).order_by(Story.story_index.asc()).all()
        return RunStatus(run=run, steps=steps, stories=stories)
    finally:
        if owns_db:
            db.close()


def list_runs(
    *,
    status: Optional[str] = None,
    workflow_id: Optional[str] = None,
    limit: int = 50,
    db: Optional[Session] = None,
) -> list[Run]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        q = db.query(Run)
        if status:
            q = q.filter(Run.status == status)
        if workflow_id:
            q = q.filter(Run.workflow_id == workflow_id)
        return q.order_by(Run.created_at.desc(), Run.id.desc()).limit(int(limit)).all()
    finally:
        if owns_db:
            db.close()

