"""Health checks run by the medic.

Each check inspects the store and returns findings; nothing here mutates state.
Remediation lives in ``agentflow.services.medic``.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Iterable, Literal, Optional

from sqlalchemy.orm import Session

from agentflow.core.config import Settings
from agentflow.models._time import as_utc
from agentflow.models.run import Run
from agentflow.models.step import ACTIVE_STEP_STATUSES, Step
from agentflow.services.dispatcher import DispatchJob, has_active_runs, workflow_id_from_job_name
from agentflow.services.loop_engine import awaiting_verifier

Severity = Literal["info", "warning", "critical"]
Action = Literal["reset_step", "fail_run", "teardown_external", "none"]


@dataclass
class MedicFinding:
    check: str
    severity: Severity
    message: str
    action: Action
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    workflow_id: Optional[str] = None
    remediated: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _age_minutes(ts: datetime, now: datetime) -> int:
    return int(round((now - as_utc(ts)).total_seconds() / 60))


def check_stuck_steps(db: Session, now: datetime, settings: Settings) -> list[MedicFinding]:
    """Running steps older than the longest worker timeout plus grace."""
    cutoff = now - timedelta(seconds=settings.medic_stuck_seconds)
    rows = (
        db.query(Step, Run)
        .join(Run, Run.id == Step.run_id)
        .filter(Step.status == "running", Run.status == "running")
        .order_by(Step.updated_at.asc())
        .all()
    )

    findings = []
    for step, run in rows:
        if as_utc(step.updated_at) >= cutoff:
            continue
        if step.is_loop and awaiting_verifier(db, step):
            continue
        findings.append(
            MedicFinding(
                check="stuck_steps",
                severity="warning",
                message=(
                    f'Step "{step.step_id}" in run {run.id[:8]} ({run.workflow_id}) has been running '
                    f"for {_age_minutes(step.updated_at, now)}min, likely abandoned by agent {step.agent_id}"
                ),
                action="reset_step",
                run_id=run.id,
                step_id=step.id,
                workflow_id=run.workflow_id,
            )
        )
    return findings


def check_stalled_runs(db: Session, now: datetime, settings: Settings) -> list[MedicFinding]:
    """Running runs whose newest step update is older than twice the stuck threshold."""
    cutoff = now - timedelta(seconds=settings.medic_stall_seconds)
    runs = db.query(Run).filter(Run.status == "running").order_by(Run.created_at.asc()).all()

    findings = []
    for run in runs:
        stamps = [as_utc(ts) for (ts,) in db.query(Step.updated_at).filter(Step.run_id == run.id).all()]
        if not stamps:
            continue
        last = max(stamps)
        if last >= cutoff:
            continue
        findings.append(
            MedicFinding(
                check="stalled_runs",
                severity="critical",
                message=(
                    f'Run {run.id[:8]} ({run.workflow_id}: "{run.task[:60]}") has had no step progress '
                    f"for {_age_minutes(last, now)}min"
                ),
                # Alert only.
                action="none",
                run_id=run.id,
                workflow_id=run.workflow_id,
            )
        )
    return findings


def check_dead_runs(db: Session, now: datetime, settings: Settings) -> list[MedicFinding]:
    """Runs still marked running with no waiting, pending or running step left."""
    runs = db.query(Run).filter(Run.status == "running").order_by(Run.created_at.asc()).all()

    findings = []
    for run in runs:
        active = (
            db.query(Step.id)
            .filter(Step.run_id == run.id, Step.status.in_(ACTIVE_STEP_STATUSES))
            .first()
        )
        if active is not None:
            continue

        failed = db.query(Step.id).filter(Step.run_id == run.id, Step.status == "failed").count()
        detail = (
            f"{failed} failed step(s), no active steps remaining"
            if failed
            else "all steps terminal but run still marked as running"
        )
        findings.append(
            MedicFinding(
                check="dead_runs",
                severity="critical",
                message=f"Run {run.id[:8]} ({run.workflow_id}) is a zombie: {detail}",
                action="fail_run",
                run_id=run.id,
                workflow_id=run.workflow_id,
            )
        )
    return findings


def check_orphaned_jobs(db: Session, jobs: Iterable[DispatchJob]) -> list[MedicFinding]:
    """Dispatcher jobs left behind by workflows that have no running run."""
    per_workflow: dict[str, int] = {}
    for job in jobs:
        workflow_id = workflow_id_from_job_name(job.name)
        if workflow_id:
            per_workflow[workflow_id] = per_workflow.get(workflow_id, 0) + 1

    findings = []
    for workflow_id, count in sorted(per_workflow.items()):
        if has_active_runs(db, workflow_id):
            continue
        findings.append(
            MedicFinding(
                check="orphaned_jobs",
                severity="warning",
                message=f'{count} dispatcher job(s) for workflow "{workflow_id}" remain but no active runs exist',
                action="teardown_external",
                workflow_id=workflow_id,
            )
        )
    return findings


def run_store_checks(db: Session, now: datetime, settings: Settings) -> list[MedicFinding]:
    return [
        *check_stuck_steps(db, now, settings),
        *check_stalled_runs(db, now, settings),
        *check_dead_runs(db, now, settings),
    ]
