import logging
from typing import Callable, Optional

from sqlalchemy import or_, update

from agentflow.database import SessionLocal
from agentflow.models._time import as_utc
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.services import events
from agentflow.services.dispatcher import get_dispatcher, job_name_for_agent
from agentflow.services.events import EngineEvent

logger = logging.getLogger(__name__)

_unsubscribe: Optional[Callable[[], None]] = None


def _claim_handoff(step_row_id: str) -> Optional[tuple[str, str]]:
    """Record that this version of the step has been handed off.

    Returns (workflow_id, agent_id) when this caller won the gate, None when the
    step is no longer pending or the same version was already handed off.
    """
    db = SessionLocal()
    try:
        step = db.get(Step, step_row_id)
        if step is None or step.status != "pending":
            return None
        run = db.get(Run, step.run_id)
        if run is None or run.status != "running":
            return None

        version = as_utc(step.updated_at).isoformat()
        res = db.execute(
            update(Step)
            .where(
                Step.id == step.id,
                Step.status == "pending",
                or_(Step.handoff_version.is_(None), Step.handoff_version != version),
            )
            .values(handoff_version=version)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            return None
        db.commit()
        return run.workflow_id, step.agent_id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def kick_pending_step(step_row_id: str) -> bool:
    """Ask the dispatcher to wake the owning agent now instead of at its next tick."""
    won = _claim_handoff(step_row_id)
    if won is None:
        return False
    workflow_id, agent_id = won

    dispatcher = get_dispatcher()
    job_name = job_name_for_agent(workflow_id, agent_id)
    job = next((j for j in dispatcher.list_jobs() if j.name == job_name), None)
    if job is None:
        logger.info("No dispatch job for agent", extra={"job_name": job_name, "step_row_id": step_row_id})
        return False

    dispatcher.run_job_now(job.id)
    logger.info("Immediate handoff", extra={"job_name": job_name, "job_id": job.id, "step_row_id": step_row_id})
    return True


def handle_step_pending(evt: EngineEvent) -> None:
    if evt.event != "step.pending" or not evt.step_row_id:
        return
    try:
        kick_pending_step(evt.step_row_id)
    except Exception:
        logger.exception(
            "Immediate handoff failed",
            extra={"run_id": evt.run_id, "step_id": evt.step_id, "agent_id": evt.agent_id},
        )


def install_handoff_listener() -> None:
    global _unsubscribe
    if _unsubscribe is None:
        _unsubscribe = events.on_event(handle_step_pending)


def uninstall_handoff_listener() -> None:
    global _unsubscribe
    if _unsubscribe is not None:
        _unsubscribe()
        _unsubscribe = None
