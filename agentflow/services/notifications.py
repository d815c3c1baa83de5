import logging
from datetime import datetime
from typing import Optional, Protocol

from agentflow.core.errors import NotFoundError
from agentflow.database import SessionLocal
from agentflow.models._time import as_utc
from agentflow.models.run import Run
from agentflow.models.story import Story
from agentflow.services.workflow_registry import get_workflow

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, message: str, target: str) -> None: ...


class LoggingNotifier:
    """Default sink: writes the summary to the application log."""

    def send(self, message: str, target: str) -> None:
        logger.info("Run notification", extra={"target": target, "notification": message})


_notifier: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> None:
    global _notifier
    _notifier = notifier if notifier is not None else LoggingNotifier()


def format_duration(start: Optional[datetime], end: Optional[datetime]) -> str:
    start, end = as_utc(start), as_utc(end)
    if start is None or end is None or end < start:
        return "unknown"
    mins = int((end - start).total_seconds() // 60)
    if mins < 60:
        return f"{mins}m"
    return f"{mins // 60}h {mins % 60}m"


def truncate(text: str, max_len: int = 100) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def format_run_summary(
    *,
    workflow_name: str,
    task: str,
    status: str,
    created_at: Optional[datetime],
    updated_at: Optional[datetime],
    story_counts: dict,
    pr_link: Optional[str] = None,
) -> str:
    marker = "OK" if status == "completed" else "FAILED"
    lines = [
        f"[{marker}] Workflow {status}: {workflow_name}",
        f"Task: {truncate(task)}",
        f"Status: {status}",
        f"Duration: {format_duration(created_at, updated_at)}",
        (
            f"Stories: {story_counts.get('done', 0)} done, "
            f"{story_counts.get('failed', 0)} failed, {story_counts.get('total', 0)} total"
        ),
    ]
    if pr_link:
        lines.append(f"PR: {pr_link}")
    return "\n".join(lines)


def _workflow_name(workflow_id: str) -> str:
    try:
        spec = get_workflow(workflow_id)
    except NotFoundError:
        return workflow_id
    return spec.name or spec.id


def send_run_notification(run_id: str) -> bool:
    """Notify the run's target about its outcome. Never raises."""
    db = SessionLocal()
    try:
        run = db.get(Run, run_id)
        if run is None or not run.notify_target or not run.is_terminal:
            return False

        statuses = [s for (s,) in db.query(Story.status).filter(Story.run_id == run_id).all()]
        story_counts = {
            "done": statuses.count("done"),
            "failed": statuses.count("failed"),
            "total": len(statuses),
        }
        context = dict(run.context or {})

        message = format_run_summary(
            workflow_name=_workflow_name(run.workflow_id),
            task=run.task,
            status=run.status,
            created_at=run.created_at,
            updated_at=run.updated_at,
            story_counts=story_counts,
            pr_link=context.get("pr"),
        )
        target = run.notify_target
    except Exception:
        logger.exception("Run notification lookup failed", extra={"run_id": run_id})
        return False
    finally:
        db.close()

    try:
        get_notifier().send(message, target)
    except Exception:
        logger.exception("Run notification delivery failed", extra={"run_id": run_id, "target": target})
        return False
    return True
