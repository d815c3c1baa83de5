import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.models._time import as_utc, utcnow
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.models.story import Story
from agentflow.services._session import session_scope
from agentflow.services.loop_engine import awaiting_verifier, continue_loop
from agentflow.services.pipeline import step_event
from agentflow.services.step_engine import record_failure

logger = logging.getLogger(__name__)

ABANDONED_DETAIL = "abandoned: no progress reported"


@dataclass(frozen=True)
class ReaperResult:
    steps_retried: int = 0
    steps_failed: int = 0
    stories_retried: int = 0
    stories_failed: int = 0
    loops_reset: int = 0

    @property
    def total(self) -> int:
        return self.steps_retried + self.steps_failed + self.stories_retried + self.stories_failed + self.loops_reset


def _is_stale(ts: Optional[datetime], cutoff: datetime) -> bool:
    ts = as_utc(ts)
    return ts is not None and ts < cutoff


def _running_steps(db: Session, *, loop: bool) -> list[Step]:
    q = (
        db.query(Step)
        .join(Run, Run.id == Step.run_id)
        .filter(Step.status == "running", Run.status == "running")
    )
    q = q.filter(Step.type == "loop") if loop else q.filter(Step.type != "loop")
    return q.order_by(Step.updated_at.asc()).all()


def _reap_story(db: Session, run: Run, step: Step, story: Story, now: datetime) -> str:
    story.retry_count = int(story.retry_count or 0) + 1
    story.updated_at = now

    if story.retry_count > int(story.max_retries):
        story.status = "failed"
        story.output = ABANDONED_DETAIL
        step_event(db, "story.failed", run, step, now, detail=ABANDONED_DETAIL, story=story)
        step.current_story_id = None
        # Remaining stories still get their turn.
        continue_loop(db, run, step, now)
        return "failed"

    story.status = "pending"
    step_event(db, "step.timeout", run, step, now, detail=ABANDONED_DETAIL, story=story)
    step_event(db, "story.retry", run, step, now, detail=ABANDONED_DETAIL, story=story)
    continue_loop(db, run, step, now)
    return "retried"


def reap(db: Session, now: datetime, threshold_seconds: int) -> ReaperResult:
    cutoff = now - timedelta(seconds=threshold_seconds)
    counts = {"steps_retried": 0, "steps_failed": 0, "stories_retried": 0, "stories_failed": 0, "loops_reset": 0}

    for step in _running_steps(db, loop=False):
        if not _is_stale(step.updated_at, cutoff):
            continue
        run = db.get(Run, step.run_id)
        if run.is_terminal:
            continue
        result = record_failure(db, run, step, ABANDONED_DETAIL, now, timed_out=True)
        counts["steps_retried" if result.retrying else "steps_failed"] += 1
        logger.warning(
            "Abandoned step reclaimed",
            extra={"run_id": run.id, "step_id": step.step_id, "retrying": result.retrying},
        )

    for step in _running_steps(db, loop=True):
        run = db.get(Run, step.run_id)
        if run.is_terminal:
            continue

        if step.current_story_id is not None:
            story = db.get(Story, step.current_story_id)
            if story is None or story.status != "running" or not _is_stale(story.updated_at, cutoff):
                continue
            outcome = _reap_story(db, run, step, story, now)
            counts["stories_failed" if outcome == "failed" else "stories_retried"] += 1
            logger.warning(
                "Abandoned story reclaimed",
                extra={"run_id": run.id, "step_id": step.step_id, "story_id": story.story_id, "outcome": outcome},
            )
            continue

        # Running with no story in flight: waiting on the verifier, or lost.
        if not _is_stale(step.updated_at, cutoff) or awaiting_verifier(db, step):
            continue
        continue_loop(db, run, step, now)
        counts["loops_reset"] += 1
        logger.warning("Stale loop step reset", extra={"run_id": run.id, "step_id": step.step_id})

    db.flush()
    return ReaperResult(**counts)


def cleanup_abandoned_steps(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    threshold_seconds: Optional[int] = None,
) -> ReaperResult:
    """Reclaim steps and stories whose worker stopped reporting."""
    now = now or utcnow()
    threshold = get_settings().abandoned_step_seconds if threshold_seconds is None else threshold_seconds

    with session_scope(db) as db:
        result = reap(db, now, threshold)

    if result.total:
        logger.info("Reaper pass finished", extra=asdict(result))
    return result
