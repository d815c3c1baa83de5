import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from agentflow.core.config import get_settings
from agentflow.database import SessionLocal
from agentflow.models.run import Run

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchJob:
    id: str
    name: str


class Dispatcher(Protocol):
    """Scheduler that periodically wakes workers (one recurring job per agent)."""

    def list_jobs(self) -> list[DispatchJob]: ...

    def run_job_now(self, job_id: str) -> None: ...

    def remove_jobs(self, name_prefix: str) -> int: ...


class NullDispatcher:
    """Used when no external scheduler is wired in."""

    def list_jobs(self) -> list[DispatchJob]:
        return []

    def run_job_now(self, job_id: str) -> None:
        return None

    def remove_jobs(self, name_prefix: str) -> int:
        return 0


_dispatcher: Dispatcher = NullDispatcher()


def get_dispatcher() -> Dispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: Optional[Dispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher if dispatcher is not None else NullDispatcher()


def workflow_job_prefix(workflow_id: str) -> str:
    return f"{get_settings().job_prefix}{workflow_id}/"


def job_name_for_agent(workflow_id: str, agent_id: str) -> str:
    """Job name of an agent: ``<prefix><workflow>/<agent>``.

    Agent ids are stored as ``<workflow>/<agent>``; a trailing ``@run:<id>``
    qualifier is ignored.
    """
    normalized = re.sub(r"@run:[^/]+$", "", str(agent_id or ""))
    own = f"{workflow_id}/"
    suffix = normalized[len(own):] if normalized.startswith(own) else normalized
    return f"{workflow_job_prefix(workflow_id)}{suffix}"


def workflow_id_from_job_name(name: str) -> Optional[str]:
    prefix = get_settings().job_prefix
    if not name.startswith(prefix):
        return None
    rest = name[len(prefix):]
    workflow_id, sep, _agent = rest.partition("/")
    if not sep or not workflow_id:
        return None
    return workflow_id


def has_active_runs(db: Session, workflow_id: str) -> bool:
    return (
        db.query(Run.id)
        .filter(Run.workflow_id == workflow_id, Run.status == "running")
        .first()
        is not None
    )


def teardown_workflow_jobs_if_idle(workflow_id: str, *, db: Optional[Session] = None) -> bool:
    """Remove a workflow's dispatch jobs when none of its runs is still running.

    Best-effort: dispatcher errors are logged and reported as False.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        if has_active_runs(db, workflow_id):
            return False
    finally:
        if owns_db:
            db.close()

    prefix = workflow_job_prefix(workflow_id)
    try:
        removed = get_dispatcher().remove_jobs(prefix)
    except Exception:
        logger.exception(
            "Dispatch job teardown failed",
            extra={"workflow_id": workflow_id, "prefix": prefix},
        )
        return False

    logger.info(
        "Dispatch jobs torn down",
        extra={"workflow_id": workflow_id, "prefix": prefix, "removed": removed},
    )
    return True
