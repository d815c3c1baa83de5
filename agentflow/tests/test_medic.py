from datetime import datetime, timedelta, timezone

from agentflow.database import SessionLocal
from agentflow.models.medic_check import MedicCheck
from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.services import step_engine
from agentflow.services.dispatcher import DispatchJob
from agentflow.services.medic import get_medic_status, get_recent_medic_checks, run_medic_check
from agentflow.services.run_service import get_run_status, start_run


def _ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


def _by_check(result, check):
    return [f for f in result.findings if f.check == check]


def test_all_clear_when_nothing_is_wrong(new_run):
    new_run("triage", "Healthy")

    result = run_medic_check()

    assert result.issues_found == 0
    assert result.actions_taken == 0
    assert result.summary == "All clear, no issues found"
    assert len(get_recent_medic_checks()) == 1


def test_stuck_step_is_reset_and_counted(new_run, fresh, monkeypatch):
    monkeypatch.setenv("AGENTFLOW_REAPER_ON_CLAIM", "0")
    run = new_run("triage", "Stuck")
    claimed = step_engine.claim("triage/triager", now=_ago(40))

    result = run_medic_check()

    stuck = _by_check(result, "stuck_steps")
    assert len(stuck) == 1
    assert stuck[0].action == "reset_step"
    assert stuck[0].remediated is True
    assert stuck[0].step_id == claimed.step_id
    assert result.actions_taken == 1
    assert "1 warning(s)" in result.summary

    step = fresh(Step, claimed.step_id)
    assert step.status == "pending"
    assert step.abandoned_count == 1
    assert step.retry_count == 0
    assert fresh(Run, run.id).status == "running"


def test_step_abandoned_too_often_fails_the_run(new_run, fresh, monkeypatch):
    monkeypatch.setenv("AGENTFLOW_REAPER_ON_CLAIM", "0")
    run = new_run("triage", "Hopeless")
    claimed = step_engine.claim("triage/triager", now=_ago(40))
    with SessionLocal() as s:
        s.get(Step, claimed.step_id).abandoned_count = 4
        s.commit()

    run_medic_check()

    step = fresh(Step, claimed.step_id)
    assert step.status == "failed"
    assert step.abandoned_count == 5
    assert fresh(Run, run.id).status == "failed"


def test_stuck_loop_step_returns_its_story(new_run, make_stories, fresh, monkeypatch):
    monkeypatch.setenv("AGENTFLOW_REAPER_ON_CLAIM", "0")
    run = new_run("feature-dev", "Stuck story")
    plan = step_engine.claim("feature-dev/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('US-1')}")
    dev = step_engine.claim("feature-dev/developer", now=_ago(40))

    run_medic_check()

    loop_step = fresh(Step, dev.step_id)
    assert loop_step.status == "pending"
    assert loop_step.current_story_id is None
    assert [s.status for s in get_run_status(run.id).stories] == ["pending"]


def test_stalled_run_is_reported_but_not_touched(fresh):
    run = start_run("triage", "Nobody is polling", now=_ago(180))

    result = run_medic_check()

    stalled = _by_check(result, "stalled_runs")
    assert len(stalled) == 1
    assert stalled[0].severity == "critical"
    assert stalled[0].action == "none"
    assert stalled[0].remediated is False
    assert result.actions_taken == 0
    assert fresh(Run, run.id).status == "running"


def test_zombie_run_is_failed(new_run, fresh):
    run = new_run("feature-dev", "Zombie")
    with SessionLocal() as s:
        for step in s.query(Step).filter(Step.run_id == run.id).all():
            step.status = "done"
        s.commit()

    result = run_medic_check()

    dead = _by_check(result, "dead_runs")
    assert len(dead) == 1
    assert dead[0].remediated is True
    assert fresh(Run, run.id).status == "failed"


def test_orphaned_jobs_are_torn_down(new_run, dispatcher):
    new_run("triage", "Keeps its jobs")
    dispatcher.jobs = [
        DispatchJob(id="j1", name="agentflow/triage/triager"),
        DispatchJob(id="j2", name="agentflow/retired-wf/planner"),
        DispatchJob(id="j3", name="agentflow/retired-wf/developer"),
        DispatchJob(id="j4", name="someone-else/job"),
    ]

    result = run_medic_check()

    orphaned = _by_check(result, "orphaned_jobs")
    assert [f.workflow_id for f in orphaned] == ["retired-wf"]
    assert orphaned[0].remediated is True
    assert dispatcher.removed == ["agentflow/retired-wf/"]
    assert {j.id for j in dispatcher.jobs} == {"j1", "j4"}


def test_dispatcher_outage_skips_the_orphan_check(new_run, dispatcher):
    dispatcher.fail_on_list = True

    result = run_medic_check()

    assert _by_check(result, "orphaned_jobs") == []
    assert len(get_recent_medic_checks()) == 1


def test_history_is_pruned(monkeypatch):
    monkeypatch.setenv("AGENTFLOW_MEDIC_HISTORY_LIMIT", "3")
    base = _ago(60)
    for i in range(5):
        run_medic_check(now=base + timedelta(minutes=i))

    with SessionLocal() as s:
        assert s.query(MedicCheck).count() == 3

    kept = get_recent_medic_checks(10)
    assert len(kept) == 3


def test_status_reports_recent_activity(new_run, monkeypatch):
    monkeypatch.setenv("AGENTFLOW_REAPER_ON_CLAIM", "0")
    run_medic_check(now=_ago(60 * 30))

    new_run("triage", "Stuck for status")
    step_engine.claim("triage/triager", now=_ago(40))
    latest = run_medic_check()

    status = get_medic_status()

    assert status.recent_checks == 1
    assert status.recent_issues == latest.issues_found
    assert status.recent_actions == 1
    assert status.last_check.id == latest.id


def test_loop_waiting_on_its_verifier_is_not_reset(new_run, make_stories, fresh):
    run = new_run("verified-dev", "Slow verifier")
    plan = step_engine.claim("verified-dev/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('US-1', 'US-2')}")
    dev = step_engine.claim("verified-dev/developer", now=_ago(60))
    step_engine.complete(dev.step_id, "STATUS: done", now=_ago(50))

    result = run_medic_check()

    assert _by_check(result, "stuck_steps") == []
    assert fresh(Step, dev.step_id).status == "running"

    verify = step_engine.claim("verified-dev/verifier")
    done = step_engine.complete(verify.step_id, "STATUS: pass")

    assert done.advanced is False
    steps = {s.step_id: s.status for s in get_run_status(run.id).steps}
    assert steps == {"plan": "done", "implement": "pending", "verify": "waiting", "ship": "waiting"}
    assert [s.status for s in get_run_status(run.id).stories] == ["done", "pending"]
