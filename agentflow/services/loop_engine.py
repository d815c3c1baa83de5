import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.core.errors import NotFoundError, StoryValidationError
from agentflow.models._time import utcnow
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.models.story import Story
from agentflow.schemas.story import StoryPayload
from agentflow.schemas.workflow import load_loop_config
from agentflow.services._session import session_scope
from agentflow.services.pipeline import (
    CompleteResult,
    advance_run,
    drop_context_keys,
    fail_run,
    load_run,
    mark_step_pending,
    merge_context,
    step_event,
)

logger = logging.getLogger(__name__)

_STORY_LIST = TypeAdapter(list[StoryPayload])

ACTIVE_STORY_STATUSES = ("pending", "running")
NO_COMPLETED_STORIES = "(none yet)"


@dataclass(frozen=True)
class LoopContinuation:
    active_stories: int
    loop_done: bool
    advanced: bool
    run_completed: bool


# ---------------------------------------------------------------------------
# Story seeding
# ---------------------------------------------------------------------------


def parse_stories_payload(raw: str, *, max_stories: Optional[int] = None) -> list[StoryPayload]:
    """Validate a STORIES_JSON value; nothing is written on failure."""
    limit = get_settings().max_stories if max_stories is None else max_stories

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise StoryValidationError(f"STORIES_JSON is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise StoryValidationError("STORIES_JSON must be a JSON array")
    if len(data) > limit:
        raise StoryValidationError(f"STORIES_JSON has {len(data)} stories; at most {limit} allowed")

    try:
        stories = _STORY_LIST.validate_python(data)
    except ValidationError as e:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in e.errors()
        ]
        raise StoryValidationError("STORIES_JSON has invalid stories", errors=errors) from e

    seen: set[str] = set()
    for story in stories:
        if story.id in seen:
            raise StoryValidationError(f"Duplicate story id in STORIES_JSON: {story.id}")
        seen.add(story.id)

    return stories


def _story_max_retries(db: Session, run_id: str, from_index: int = 0) -> int:
    """Retry limit of the loop step that will work through newly seeded stories.

    That is the first loop step at or after ``from_index`` (the seeding step),
    falling back to the run's first loop step.
    """
    loops = (
        db.query(Step)
        .filter(Step.run_id == run_id, Step.type == "loop")
        .order_by(Step.step_index.asc())
        .all()
    )
    loop_step = next((s for s in loops if s.step_index >= from_index), loops[0] if loops else None)
    if loop_step is not None and loop_step.max_retries is not None:
        return int(loop_step.max_retries)
    return get_settings().default_max_retries


def seed_stories(db: Session, run: Run, raw: str, now: datetime, *, source_step: Optional[Step] = None) -> list[Story]:
    payload = parse_stories_payload(raw)
    if not payload:
        return []

    existing_ids = {
        sid for (sid,) in db.query(Story.story_id).filter(Story.run_id == run.id).all()
    }
    dupes = sorted(existing_ids.intersection(s.id for s in payload))
    if dupes:
        raise StoryValidationError(f"Stories already exist for this run: {', '.join(dupes)}")

    max_index = db.query(func.max(Story.story_index)).filter(Story.run_id == run.id).scalar()
    next_index = 0 if max_index is None else int(max_index) + 1
    max_retries = _story_max_retries(db, run.id, source_step.step_index if source_step is not None else 0)

    rows = []
    for offset, item in enumerate(payload):
        row = Story(
            id=str(uuid.uuid4()),
            run_id=run.id,
            story_index=next_index + offset,
            story_id=item.id,
            title=item.title,
            description=item.description,
            acceptance_criteria=list(item.acceptance_criteria),
            status="pending",
            retry_count=0,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        rows.append(row)

    db.flush()
    logger.info("Stories seeded", extra={"run_id": run.id, "count": len(rows)})
    return rows


# ---------------------------------------------------------------------------
# Story selection and context
# ---------------------------------------------------------------------------


def next_pending_story(db: Session, run_id: str) -> Optional[Story]:
    return (
        db.query(Story)
        .filter(Story.run_id == run_id, Story.status == "pending")
        .order_by(Story.story_index.asc())
        .first()
    )


def run_has_stories(db: Session, run_id: str) -> bool:
    return db.query(Story.id).filter(Story.run_id == run_id).first() is not None


def count_active_stories(db: Session, run_id: str) -> int:
    return (
        db.query(func.count(Story.id))
        .filter(Story.run_id == run_id, Story.status.in_(ACTIVE_STORY_STATUSES))
        .scalar()
        or 0
    )


def format_story(story: Story) -> str:
    criteria = "\n".join(f"{i}. {c}" for i, c in enumerate(story.acceptance_criteria or [], start=1))
    return (
        f"Story {story.story_id}: {story.title}\n\n"
        f"{story.description}\n\n"
        f"Acceptance Criteria:\n{criteria}"
    )


def build_story_context(db: Session, run: Run, story: Story) -> dict[str, str]:
    done = (
        db.query(Story)
        .filter(Story.run_id == run.id, Story.status == "done")
        .order_by(Story.story_index.asc())
        .all()
    )
    completed = "\n".join(f"- {s.story_id}: {s.title}" for s in done) or NO_COMPLETED_STORIES

    # The story being handed out is still pending in the database here.
    remaining = (
        db.query(func.count(Story.id))
        .filter(Story.run_id == run.id, Story.status == "pending", Story.id != story.id)
        .scalar()
        or 0
    )

    return {
        "current_story": format_story(story),
        "current_story_id": story.story_id,
        "current_story_title": story.title,
        "completed_stories": completed,
        "stories_remaining": str(remaining),
        "verify_feedback": str((run.context or {}).get("verify_feedback", "")),
    }


# ---------------------------------------------------------------------------
# Loop progression
# ---------------------------------------------------------------------------


def find_step_by_name(db: Session, run_id: str, step_id: str) -> Optional[Step]:
    return db.query(Step).filter(Step.run_id == run_id, Step.step_id == step_id).first()


def awaiting_verifier(db: Session, step: Step) -> bool:
    """Loop step parked between stories while its verify step holds the story."""
    if step.current_story_id is not None:
        return False
    cfg = load_loop_config(step.loop_config)
    if cfg is None or not cfg.verify_target:
        return False
    verify_step = find_step_by_name(db, step.run_id, cfg.verify_target)
    return verify_step is not None and verify_step.status in ("pending", "running")


def find_verify_owner(db: Session, run_id: str, step: Step) -> Optional[Step]:
    """Running loop step in this run whose verify target is ``step``."""
    loops = (
        db.query(Step)
        .filter(Step.run_id == run_id, Step.type == "loop", Step.status == "running", Step.id != step.id)
        .all()
    )
    for loop_step in loops:
        cfg = load_loop_config(loop_step.loop_config)
        if cfg is not None and cfg.verify_target == step.step_id:
            return loop_step
    return None


def _last_done_story(db: Session, run_id: str) -> Optional[Story]:
    return (
        db.query(Story)
        .filter(Story.run_id == run_id, Story.status == "done")
        .order_by(Story.updated_at.desc(), Story.story_index.desc())
        .first()
    )


def continue_loop(db: Session, run: Run, loop_step: Step, now: datetime) -> LoopContinuation:
    db.flush()
    active = count_active_stories(db, run.id)

    if run.is_terminal or loop_step.status in ("done", "failed"):
        return LoopContinuation(
            active_stories=active,
            loop_done=loop_step.status == "done",
            advanced=False,
            run_completed=False,
        )

    if active > 0:
        if loop_step.status != "pending" or loop_step.current_story_id is not None:
            mark_step_pending(db, run, loop_step, now)
            db.flush()
        return LoopContinuation(active_stories=active, loop_done=False, advanced=False, run_completed=False)

    loop_step.status = "done"
    loop_step.current_story_id = None
    loop_step.updated_at = now
    step_event(db, "step.done", run, loop_step, now)

    cfg = load_loop_config(loop_step.loop_config)
    if cfg is not None and cfg.verify_target:
        verify_step = find_step_by_name(db, run.id, cfg.verify_target)
        if verify_step is not None and verify_step.status != "done":
            verify_step.status = "done"
            verify_step.updated_at = now

    logger.info("Loop finished", extra={"run_id": run.id, "step_id": loop_step.step_id})
    result = advance_run(db, run, now)
    return LoopContinuation(
        active_stories=0,
        loop_done=True,
        advanced=result.advanced,
        run_completed=result.run_completed,
    )


def check_loop_continuation(
    run_id: str,
    loop_step_id: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> LoopContinuation:
    """Re-queue the loop step while stories remain, otherwise finish it and advance.

    Calling it again on a finished loop changes nothing.
    """
    now = now or utcnow()
    with session_scope(db) as db:
        run = load_run(db, run_id, for_update=True)
        loop_step = db.get(Step, loop_step_id)
        if loop_step is None or loop_step.run_id != run.id:
            raise NotFoundError(f"Loop step not found: {loop_step_id}")
        return continue_loop(db, run, loop_step, now)


def complete_story(db: Session, run: Run, loop_step: Step, output: str, now: datetime) -> CompleteResult:
    story = db.get(Story, loop_step.current_story_id)
    loop_step.current_story_id = None
    loop_step.updated_at = now

    if story is not None:
        story.status = "done"
        story.output = output
        story.updated_at = now
        step_event(db, "story.done", run, loop_step, now, story=story)

    cfg = load_loop_config(loop_step.loop_config)
    verify_step = None
    if cfg is not None and cfg.verify_target:
        verify_step = find_step_by_name(db, run.id, cfg.verify_target)

    if verify_step is not None:
        # Loop step stays running until the verifier reports back.
        mark_step_pending(db, run, verify_step, now, detail=None if story is None else story.story_id)
        db.flush()
        return CompleteResult(advanced=False, run_completed=False)

    cont = continue_loop(db, run, loop_step, now)
    return CompleteResult(advanced=cont.advanced, run_completed=cont.run_completed)


def fail_loop(db: Session, run: Run, loop_step: Step, story: Optional[Story], now: datetime, detail: str) -> None:
    if story is not None:
        story.status = "failed"
        story.updated_at = now
        step_event(db, "story.failed", run, loop_step, now, detail=detail, story=story)

    loop_step.status = "failed"
    loop_step.current_story_id = None
    loop_step.updated_at = now
    step_event(db, "step.failed", run, loop_step, now, detail=detail)
    fail_run(db, run, now, detail=detail)


def handle_verify_completion(
    db: Session,
    run: Run,
    loop_step: Step,
    verify_step: Step,
    output: str,
    fields: Mapping[str, Any],
    now: datetime,
) -> CompleteResult:
    verify_step.status = "waiting"
    verify_step.updated_at = now

    status = str(fields.get("status") or (run.context or {}).get("status") or "").strip().lower()
    story = _last_done_story(db, run.id)

    if status == "retry" and story is not None:
        story.retry_count = int(story.retry_count or 0) + 1
        story.updated_at = now

        if story.retry_count > int(story.max_retries):
            fail_loop(db, run, loop_step, story, now, detail="verification retries exhausted")
            db.flush()
            return CompleteResult(advanced=False, run_completed=False)

        story.status = "pending"
        feedback = str(fields.get("issues") or "").strip() or (output or "").strip()
        merge_context(run, {"verify_feedback": feedback}, now)
        step_event(db, "story.retry", run, loop_step, now, detail="verification requested changes", story=story)
        mark_step_pending(db, run, loop_step, now)
        db.flush()
        logger.info(
            "Story sent back by verifier",
            extra={"run_id": run.id, "story_id": story.story_id, "retry_count": story.retry_count},
        )
        return CompleteResult(advanced=False, run_completed=False)

    if status == "retry":
        logger.warning("Verifier asked for retry but no story is done", extra={"run_id": run.id})

    drop_context_keys(run, ("verify_feedback",), now)
    if story is not None:
        step_event(db, "story.verified", run, loop_step, now, story=story)

    cont = continue_loop(db, run, loop_step, now)
    return CompleteResult(advanced=cont.advanced, run_completed=cont.run_completed)
