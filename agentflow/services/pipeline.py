import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from agentflow.core.errors import NotFoundError
from agentflow.models._time import utcnow
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.services._session import session_scope
from agentflow.services.events import emit_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompleteResult:
    advanced: bool
    run_completed: bool


def load_run(db: Session, run_id: str, *, for_update: bool = False) -> Run:
    run = db.get(Run, run_id, with_for_update=for_update)
    if run is None:
        raise NotFoundError(f"Run not found: {run_id}")
    return run


def merge_context(run: Run, values: Mapping[str, str], now: datetime) -> dict:
    """Read-merge-write of the run context; later keys win."""
    if not values:
        return dict(run.context or {})
    merged = dict(run.context or {})
    merged.update({str(k): str(v) for k, v in values.items()})
    run.context = merged
    run.updated_at = now
    return merged


def drop_context_keys(run: Run, keys, now: datetime) -> None:
    ctx = dict(run.context or {})
    changed = False
    for key in keys:
        if key in ctx:
            del ctx[key]
            changed = True
    if changed:
        run.context = ctx
        run.updated_at = now


def step_event(db: Session, event: str, run: Run, step: Step, now: datetime, detail: Optional[str] = None, story=None):
    return emit_event(
        db,
        event,
        run_id=run.id,
        workflow_id=run.workflow_id,
        step_id=step.step_id,
        step_row_id=step.id,
        agent_id=step.agent_id,
        story_id=None if story is None else story.story_id,
        story_title=None if story is None else story.title,
        detail=detail,
        now=now,
    )


def mark_step_pending(db: Session, run: Run, step: Step, now: datetime, detail: Optional[str] = None) -> None:
    step.status = "pending"
    step.current_story_id = None
    step.updated_at = now
    step_event(db, "step.pending", run, step, now, detail=detail)


def fail_run(db: Session, run: Run, now: datetime, detail: str) -> bool:
    """Move a live run to failed. Terminal runs are left untouched."""
    if run.is_terminal:
        return False
    run.status = "failed"
    run.updated_at = now
    emit_event(db, "run.failed", run_id=run.id, workflow_id=run.workflow_id, detail=detail, now=now)
    logger.info("Run failed", extra={"run_id": run.id, "workflow_id": run.workflow_id, "detail": detail})
    return True


def advance_run(db: Session, run: Run, now: datetime) -> CompleteResult:
    if run.is_terminal:
        return CompleteResult(advanced=False, run_completed=False)

    db.flush()
    next_step = (
        db.query(Step)
        .filter(Step.run_id == run.id, Step.status == "waiting")
        .order_by(Step.step_index.asc())
        .first()
    )

    if next_step is not None:
        mark_step_pending(db, run, next_step, now)
        step_event(db, "pipeline.advanced", run, next_step, now)
        run.updated_at = now
        db.flush()
        logger.info(
            "Pipeline advanced",
            extra={"run_id": run.id, "step_id": next_step.step_id, "step_index": next_step.step_index},
        )
        return CompleteResult(advanced=True, run_completed=False)

    run.status = "completed"
    run.updated_at = now
    emit_event(db, "run.completed", run_id=run.id, workflow_id=run.workflow_id, now=now)
    db.flush()

    logger.info("Run completed", extra={"run_id": run.id, "workflow_id": run.workflow_id})
    return CompleteResult(advanced=False, run_completed=True)


def advance_pipeline(run_id: str, *, db: Optional[Session] = None, now: Optional[datetime] = None) -> CompleteResult:
    """Make the next waiting step claimable, or complete the run when none is left."""
    now = now or utcnow()
    with session_scope(db) as db:
        run = load_run(db, run_id, for_update=True)
        return advance_run(db, run, now)
