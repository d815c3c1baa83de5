import logging
from typing import Callable, Optional

from agentflow.services import events
from agentflow.services.dispatcher import teardown_workflow_jobs_if_idle
from agentflow.services.events import EngineEvent
from agentflow.services.notifications import send_run_notification
from agentflow.services.progress import archive_progress

logger = logging.getLogger(__name__)

_unsubscribe: Optional[Callable[[], None]] = None


def handle_run_outcome(evt: EngineEvent) -> None:
    """After a run finishes: archive progress, notify, then drop dispatch jobs nobody needs."""
    if evt.event not in ("run.completed", "run.failed"):
        return

    if evt.event == "run.completed":
        archive_progress(evt.run_id)

    send_run_notification(evt.run_id)

    if evt.workflow_id:
        teardown_workflow_jobs_if_idle(evt.workflow_id)


def install_run_outcome_listener() -> None:
    global _unsubscribe
    if _unsubscribe is None:
        _unsubscribe = events.on_event(handle_run_outcome)


def uninstall_run_outcome_listener() -> None:
    global _unsubscribe
    if _unsubscribe is not None:
        _unsubscribe()
        _unsubscribe = None
