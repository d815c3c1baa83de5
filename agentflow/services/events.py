import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from agentflow.database import SessionLocal
from agentflow.models._time import utcnow
from agentflow.models.event import EVENT_TYPES, Event

logger = logging.getLogger(__name__)

_PENDING_KEY = "agentflow_pending_events"


@dataclass(frozen=True)
class EngineEvent:
    """Snapshot of an Event row handed to in-process listeners."""

    ts: datetime
    event: str
    run_id: str
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None
    step_row_id: Optional[str] = None
    agent_id: Optional[str] = None
    story_id: Optional[str] = None
    story_title: Optional[str] = None
    detail: Optional[str] = None


EventListener = Callable[[EngineEvent], None]

_listeners: List[EventListener] = []


def on_event(listener: EventListener) -> Callable[[], None]:
    """Register a listener; returns a callable that unregisters it."""
    _listeners.append(listener)

    def _remove() -> None:
        if listener in _listeners:
            _listeners.remove(listener)

    return _remove


def clear_listeners() -> None:
    _listeners.clear()


def emit_event(
    db: Session,
    event: str,
    *,
    run_id: str,
    workflow_id: Optional[str] = None,
    step_id: Optional[str] = None,
    step_row_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    story_id: Optional[str] = None,
    story_title: Optional[str] = None,
    detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Event:
    """Append an event in the caller's transaction.

    Listeners see it only once that transaction commits.
    """
    if event not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event}")

    row = Event(
        ts=now or utcnow(),
        event=event,
        run_id=run_id,
        workflow_id=workflow_id,
        step_id=step_id,
        step_row_id=step_row_id,
        agent_id=agent_id,
        story_id=story_id,
        story_title=story_title,
        detail=detail,
    )
    db.add(row)

    db.info.setdefault(_PENDING_KEY, []).append(
        EngineEvent(
            ts=row.ts,
            event=event,
            run_id=run_id,
            workflow_id=workflow_id,
            step_id=step_id,
            step_row_id=step_row_id,
            agent_id=agent_id,
            story_id=story_id,
            story_title=story_title,
            detail=detail,
        )
    )
    return row


def _dispatch(evt: EngineEvent) -> None:
    for listener in list(_listeners):
        try:
            listener(evt)
        except Exception:
            logger.exception(
                "Event listener failed",
                extra={"event": evt.event, "run_id": evt.run_id, "step_id": evt.step_id},
            )


@sa_event.listens_for(SessionLocal, "after_commit")
def _after_commit(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for evt in pending:
        _dispatch(evt)


@sa_event.listens_for(SessionLocal, "after_rollback")
def _after_rollback(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


def get_recent_events(limit: int = 50, *, db: Optional[Session] = None) -> list[Event]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        rows = db.query(Event).order_by(Event.id.desc()).limit(int(limit)).all()
        return list(reversed(rows))
    finally:
        if owns_db:
            db.close()


def get_run_events(run_id: str, limit: int = 200, *, db: Optional[Session] = None) -> list[Event]:
    """Events for a run; ``run_id`` may be an id prefix."""
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        rows = (
            db.query(Event)
            .filter(Event.run_id.like(f"{run_id}%"))
            .order_by(Event.id.desc())
            .limit(int(limit))
            .all()
        )
        return list(reversed(rows))
    finally:
        if owns_db:
            db.close()
