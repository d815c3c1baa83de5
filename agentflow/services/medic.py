import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from agentflow.core.config import Settings, get_settings
from agentflow.database import SessionLocal
from agentflow.models._time import utcnow
from agentflow.models.medic_check import MedicCheck
from agentflow.models.run import Run
from agentflow.models.step import ACTIVE_STEP_STATUSES, Step
from agentflow.models.story import Story
from agentflow.services._session import session_scope
from agentflow.services.dispatcher import get_dispatcher, teardown_workflow_jobs_if_idle
from agentflow.services.loop_engine import awaiting_verifier, fail_loop
from agentflow.services.medic_checks import MedicFinding, check_orphaned_jobs, run_store_checks
from agentflow.services.pipeline import fail_run, mark_step_pending, step_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MedicCheckResult:
    id: str
    checked_at: datetime
    issues_found: int
    actions_taken: int
    summary: str
    findings: list[MedicFinding]


@dataclass(frozen=True)
class MedicStatus:
    last_check: Optional[MedicCheck]
    recent_checks: int
    recent_issues: int
    recent_actions: int


def _reset_stuck_step(db: Session, finding: MedicFinding, now: datetime, settings: Settings) -> bool:
    step = db.get(Step, finding.step_id) if finding.step_id else None
    if step is None or step.status != "running":
        return False
    run = db.get(Run, step.run_id)
    if run is None or run.is_terminal:
        return False
    if step.is_loop and awaiting_verifier(db, step):
        return False

    step.abandoned_count = int(step.abandoned_count or 0) + 1
    step.updated_at = now
    count = step.abandoned_count
    limit = settings.medic_max_abandons

    story = db.get(Story, step.current_story_id) if step.current_story_id else None

    if count >= limit:
        detail = "medic: step abandoned too many times"
        if step.is_loop:
            fail_loop(db, run, step, story, now, detail=detail)
        else:
            step.status = "failed"
            step.output = detail
            step_event(db, "step.failed", run, step, now, detail=detail)
            fail_run(db, run, now, detail=detail)
        return True

    detail = f"medic: reset stuck step (abandon {count}/{limit})"
    if story is not None and story.status == "running":
        story.status = "pending"
        story.updated_at = now
    step_event(db, "step.timeout", run, step, now, detail=detail, story=story)
    mark_step_pending(db, run, step, now, detail=detail)
    return True


def _fail_dead_run(db: Session, finding: MedicFinding, now: datetime) -> bool:
    run = db.get(Run, finding.run_id) if finding.run_id else None
    if run is None or run.status != "running":
        return False

    detail = "medic: zombie run, no active steps left"
    for step in db.query(Step).filter(Step.run_id == run.id, Step.status.in_(ACTIVE_STEP_STATUSES)).all():
        step.status = "failed"
        step.current_story_id = None
        step.output = detail
        step.updated_at = now
    return fail_run(db, run, now, detail=detail)


def _teardown_orphans(db: Session, finding: MedicFinding) -> bool:
    if not finding.workflow_id:
        return False
    return teardown_workflow_jobs_if_idle(finding.workflow_id, db=db)


def remediate(db: Session, finding: MedicFinding, now: datetime, settings: Optional[Settings] = None) -> bool:
    """Apply the corrective action of ``finding``; True when something changed."""
    settings = settings or get_settings()

    if finding.action == "reset_step":
        return _reset_stuck_step(db, finding, now, settings)
    if finding.action == "fail_run":
        return _fail_dead_run(db, finding, now)
    if finding.action == "teardown_external":
        return _teardown_orphans(db, finding)
    return False


def _summarize(findings: list[MedicFinding], actions_taken: int) -> str:
    if not findings:
        return "All clear, no issues found"

    parts = []
    critical = sum(1 for f in findings if f.severity == "critical")
    warnings = sum(1 for f in findings if f.severity == "warning")
    if critical:
        parts.append(f"{critical} critical")
    if warnings:
        parts.append(f"{warnings} warning(s)")
    if actions_taken:
        parts.append(f"{actions_taken} auto-fixed")
    return ", ".join(parts) or f"{len(findings)} finding(s)"


def _prune_history(db: Session, keep: int) -> int:
    stale_ids = [
        row_id
        for (row_id,) in db.query(MedicCheck.id)
        .order_by(MedicCheck.checked_at.desc(), MedicCheck.id.desc())
        .offset(keep)
        .all()
    ]
    if not stale_ids:
        return 0
    db.query(MedicCheck).filter(MedicCheck.id.in_(stale_ids)).delete(synchronize_session=False)
    return len(stale_ids)


def run_medic_check(*, db: Optional[Session] = None, now: Optional[datetime] = None) -> MedicCheckResult:
    """Run every health check, remediate what is safe, and record the outcome."""
    now = now or utcnow()
    settings = get_settings()

    with session_scope(db) as db:
        findings = run_store_checks(db, now, settings)

        try:
            jobs = [j for j in get_dispatcher().list_jobs() if j.name.startswith(settings.job_prefix)]
        except Exception:
            logger.warning("Dispatcher job listing failed; skipping orphan check", exc_info=True)
            jobs = None
        if jobs is not None:
            findings.extend(check_orphaned_jobs(db, jobs))

        actions_taken = 0
        for finding in findings:
            if finding.action == "none":
                continue
            if remediate(db, finding, now, settings):
                finding.remediated = True
                actions_taken += 1
            db.flush()

        summary = _summarize(findings, actions_taken)
        record = MedicCheck(
            id=str(uuid.uuid4()),
            checked_at=now,
            issues_found=len(findings),
            actions_taken=actions_taken,
            summary=summary,
            details=[f.to_dict() for f in findings],
        )
        db.add(record)
        db.flush()
        pruned = _prune_history(db, settings.medic_history_limit)

    log = logger.warning if findings else logger.info
    log(
        "Medic check finished",
        extra={"issues_found": len(findings), "actions_taken": actions_taken, "pruned": pruned},
    )
    return MedicCheckResult(
        id=record.id,
        checked_at=now,
        issues_found=len(findings),
        actions_taken=actions_taken,
        summary=summary,
        findings=findings,
    )


def get_medic_status(*, db: Optional[Session] = None, now: Optional[datetime] = None) -> MedicStatus:
    now = now or utcnow()
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        last = db.query(MedicCheck).order_by(MedicCheck.checked_at.desc()).first()
        checks, issues, actions = (
            db.query(
                func.count(MedicCheck.id),
                func.coalesce(func.sum(MedicCheck.issues_found), 0),
                func.coalesce(func.sum(MedicCheck.actions_taken), 0),
            )
            .filter(MedicCheck.checked_at > now - timedelta(hours=24))
            .one()
        )
        return MedicStatus(
            last_check=last,
            recent_checks=int(checks or 0),
            recent_issues=int(issues or 0),
            recent_actions=int(actions or 0),
        )
    finally:
        if owns_db:
            db.close()


def get_recent_medic_checks(limit: int = 20, *, db: Optional[Session] = None) -> list[MedicCheck]:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()
    try:
        return db.query(MedicCheck).order_by(MedicCheck.checked_at.desc()).limit(int(limit)).all()
    finally:
        if owns_db:
            db.close()
