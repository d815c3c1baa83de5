import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.core.errors import NotFoundError
from agentflow.models._time import utcnow
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.models.story import Story
from agentflow.services._session import session_scope
from agentflow.services.loop_engine import (
    build_story_context,
    complete_story,
    fail_loop,
    find_verify_owner,
    handle_verify_completion,
    next_pending_story,
    run_has_stories,
    seed_stories,
)
from agentflow.services.pipeline import (
    CompleteResult,
    advance_run,
    fail_run,
    mark_step_pending,
    merge_context,
    step_event,
)
from agentflow.services.progress import read_progress
from agentflow.services.template import STORIES_FIELD, parse_output_fields, resolve_template

logger = logging.getLogger(__name__)

# Candidates fetched per claim; a lost race moves on to the next one.
_CLAIM_BATCH = 10


@dataclass(frozen=True)
class ClaimResult:
    found: bool
    step_id: Optional[str] = None
    run_id: Optional[str] = None
    resolved_input: Optional[str] = None


@dataclass(frozen=True)
class FailResult:
    retrying: bool
    run_failed: bool


def _pending_candidates(db: Session, agent_id: str) -> list[Step]:
    return (
        db.query(Step)
        .join(Run, Run.id == Step.run_id)
        .filter(Step.agent_id == agent_id, Step.status == "pending", Run.status == "running")
        .order_by(Step.step_index.asc(), Run.created_at.asc())
        .limit(_CLAIM_BATCH)
        .all()
    )


def _take(db: Session, step: Step, now: datetime, **values) -> bool:
    """Conditional pending -> X transition; False when another claimer won."""
    res = db.execute(
        update(Step)
        .where(Step.id == step.id, Step.status == "pending")
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return False
    db.refresh(step)
    return True


def peek(agent_id: str, *, db: Optional[Session] = None) -> bool:
    """True when the agent has claimable work. Read-only."""
    with session_scope(db) as db:
        return bool(_pending_candidates(db, agent_id))


def _claim_loop_step(db: Session, run: Run, step: Step, now: datetime) -> Optional[ClaimResult]:
    story = next_pending_story(db, run.id)

    if story is None:
        if not _take(db, step, now, status="done", current_story_id=None):
            return None
        step_event(db, "step.done", run, step, now, detail="no pending stories")
        advance_run(db, run, now)
        logger.info("Loop step had no stories left", extra={"run_id": run.id, "step_id": step.step_id})
        return ClaimResult(found=False)

    if not _take(db, step, now, status="running", current_story_id=story.id):
        return None

    story_ctx = build_story_context(db, run, story)
    story_ctx["progress"] = read_progress(run.id)

    story.status = "running"
    story.updated_at = now
    context = merge_context(run, story_ctx, now)

    step_event(db, "step.running", run, step, now, story=story)
    step_event(db, "story.started", run, step, now, story=story)
    db.flush()

    logger.info(
        "Story claimed",
        extra={"run_id": run.id, "step_id": step.step_id, "agent_id": step.agent_id, "story_id": story.story_id},
    )
    return ClaimResult(
        found=True,
        step_id=step.id,
        run_id=run.id,
        resolved_input=resolve_template(step.input_template, context),
    )


def _claim_single_step(db: Session, run: Run, step: Step, now: datetime) -> Optional[ClaimResult]:
    if not _take(db, step, now, status="running"):
        return None

    context = dict(run.context or {})
    if run_has_stories(db, run.id):
        context["progress"] = read_progress(run.id)

    step_event(db, "step.running", run, step, now)
    db.flush()

    logger.info("Step claimed", extra={"run_id": run.id, "step_id": step.step_id, "agent_id": step.agent_id})
    return ClaimResult(
        found=True,
        step_id=step.id,
        run_id=run.id,
        resolved_input=resolve_template(step.input_template, context),
    )


def claim(agent_id: str, *, db: Optional[Session] = None, now: Optional[datetime] = None) -> ClaimResult:
    """Hand the agent its next pending step, with the input already resolved."""
    now = now or utcnow()

    if get_settings().reaper_on_claim:
        # Imported here: the reaper builds on this module.
        from agentflow.services.reaper import cleanup_abandoned_steps

        cleanup_abandoned_steps(db=db, now=now)

    with session_scope(db) as db:
        for step in _pending_candidates(db, agent_id):
            run = db.get(Run, step.run_id)
            if run is None or run.status != "running":
                continue

            if step.is_loop:
                result = _claim_loop_step(db, run, step, now)
            else:
                result = _claim_single_step(db, run, step, now)

            if result is not None:
                return result

        return ClaimResult(found=False)


def complete(
    step_id: str,
    output: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> CompleteResult:
    """Record worker output for a running step and move the run forward."""
    now = now or utcnow()
    with session_scope(db) as db:
        step = db.get(Step, step_id, with_for_update=True)
        if step is None:
            raise NotFoundError(f"Step not found: {step_id}")
        run = db.get(Run, step.run_id, with_for_update=True)
        if run is None:
            raise NotFoundError(f"Run not found: {step.run_id}")

        if run.is_terminal or step.status not in ("pending", "running"):
            logger.info(
                "Ignoring completion for finished work",
                extra={"run_id": run.id, "step_id": step.step_id, "run_status": run.status, "step_status": step.status},
            )
            return CompleteResult(advanced=False, run_completed=False)

        if step.is_loop and step.current_story_id is None:
            logger.info("Ignoring late loop completion", extra={"run_id": run.id, "step_id": step.step_id})
            return CompleteResult(advanced=False, run_completed=False)

        fields = parse_output_fields(output)
        stories_raw = fields.pop(STORIES_FIELD, None)

        step.output = output
        step.updated_at = now
        merge_context(run, fields, now)
        if stories_raw is not None:
            seed_stories(db, run, stories_raw, now, source_step=step)
        db.flush()

        if step.is_loop:
            return complete_story(db, run, step, output, now)

        owner = find_verify_owner(db, run.id, step)
        if owner is not None:
            return handle_verify_completion(db, run, owner, step, output, fields, now)

        step.status = "done"
        step_event(db, "step.done", run, step, now)
        return advance_run(db, run, now)


def record_failure(db: Session, run: Run, step: Step, error: str, now: datetime, *, timed_out: bool = False) -> FailResult:
    """Count one failed attempt of ``step``; retry it or fail the run."""
    if step.is_loop and step.current_story_id is not None:
        story = db.get(Story, step.current_story_id)
        if story is not None:
            return _record_story_failure(db, run, step, story, error, now, timed_out=timed_out)

    step.retry_count = int(step.retry_count or 0) + 1
    step.output = error
    step.updated_at = now

    if step.retry_count > int(step.max_retries):
        step.status = "failed"
        step.current_story_id = None
        step_event(db, "step.failed", run, step, now, detail=error)
        fail_run(db, run, now, detail=f"step {step.step_id} failed: {error}")
        db.flush()
        return FailResult(retrying=False, run_failed=True)

    if timed_out:
        step_event(db, "step.timeout", run, step, now, detail=error)
    mark_step_pending(db, run, step, now, detail=error)
    db.flush()
    logger.info(
        "Step will be retried",
        extra={"run_id": run.id, "step_id": step.step_id, "retry_count": step.retry_count},
    )
    return FailResult(retrying=True, run_failed=False)


def _record_story_failure(
    db: Session, run: Run, step: Step, story: Story, error: str, now: datetime, *, timed_out: bool
) -> FailResult:
    story.retry_count = int(story.retry_count or 0) + 1
    story.output = error
    story.updated_at = now

    if story.retry_count > int(story.max_retries):
        fail_loop(db, run, step, story, now, detail=f"story {story.story_id} failed: {error}")
        db.flush()
        return FailResult(retrying=False, run_failed=True)

    story.status = "pending"
    if timed_out:
        step_event(db, "step.timeout", run, step, now, detail=error, story=story)
    step_event(db, "story.retry", run, step, now, detail=error, story=story)
    mark_step_pending(db, run, step, now, detail=error)
    db.flush()
    logger.info(
        "Story will be retried",
        extra={"run_id": run.id, "story_id": story.story_id, "retry_count": story.retry_count},
    )
    return FailResult(retrying=True, run_failed=False)


def fail(
    step_id: str,
    error: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> FailResult:
    """Report a failed attempt for a running step."""
    now = now or utcnow()
    with session_scope(db) as db:
        step = db.get(Step, step_id, with_for_update=True)
        if step is None:
            raise NotFoundError(f"Step not found: {step_id}")
        run = db.get(Run, step.run_id, with_for_update=True)
        if run is None:
            raise NotFoundError(f"Run not found: {step.run_id}")

        if run.is_terminal or step.status not in ("pending", "running"):
            logger.info(
                "Ignoring failure for finished work",
                extra={"run_id": run.id, "step_id": step.step_id, "run_status": run.status, "step_status": step.status},
            )
            return FailResult(retrying=False, run_failed=run.status == "failed")

        return record_failure(db, run, step, error, now)
