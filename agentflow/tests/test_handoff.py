import logging

from agentflow.models.step import Step
from agentflow.services import step_engine
from agentflow.services.dispatcher import DispatchJob, job_name_for_agent, workflow_id_from_job_name
from agentflow.services.handoff import install_handoff_listener, kick_pending_step
from agentflow.services.run_service import get_run_status


def _jobs():
    return [
        DispatchJob(id="job-planner", name="agentflow/feature-dev/planner"),
        DispatchJob(id="job-developer", name="agentflow/feature-dev/developer"),
        DispatchJob(id="job-triager", name="agentflow/triage/triager"),
    ]


def test_new_run_wakes_the_first_agent(new_run, dispatcher):
    dispatcher.jobs = _jobs()
    install_handoff_listener()

    new_run("feature-dev", "Wake the planner")

    assert dispatcher.ran == ["job-planner"]


def test_same_step_version_is_only_kicked_once(new_run, dispatcher, fresh):
    dispatcher.jobs = _jobs()
    install_handoff_listener()
    run = new_run("triage", "Kick once")
    step = get_run_status(run.id).steps[0]

    assert kick_pending_step(step.id) is False
    assert dispatcher.ran == ["job-triager"]
    assert fresh(Step, step.id).handoff_version is not None


def test_retry_is_a_new_version_and_kicks_again(new_run, dispatcher):
    dispatcher.jobs = _jobs()
    install_handoff_listener()
    new_run("triage", "Kick after retry")

    claimed = step_engine.claim("triage/triager")
    step_engine.fail(claimed.step_id, "transient")

    assert dispatcher.ran == ["job-triager", "job-triager"]


def test_running_step_is_not_kicked(new_run, dispatcher):
    dispatcher.jobs = _jobs()
    new_run("triage", "Already running")
    claimed = step_engine.claim("triage/triager")

    assert kick_pending_step(claimed.step_id) is False
    assert dispatcher.ran == []


def test_missing_job_is_not_an_error(new_run, dispatcher):
    install_handoff_listener()

    new_run("triage", "No jobs registered")

    assert dispatcher.ran == []


def test_dispatcher_errors_are_logged_and_swallowed(new_run, dispatcher, caplog):
    dispatcher.jobs = _jobs()
    dispatcher.fail_on_run = True
    install_handoff_listener()

    with caplog.at_level(logging.ERROR, logger="agentflow.services.handoff"):
        run = new_run("triage", "Dispatcher down")

    assert run.status == "running"
    assert any("Immediate handoff failed" in r.getMessage() for r in caplog.records)


def test_loop_requeue_kicks_the_loop_agent(new_run, dispatcher, make_stories):
    dispatcher.jobs = _jobs()
    install_handoff_listener()
    new_run("feature-dev", "Loop kicks")

    plan = step_engine.claim("feature-dev/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('US-1', 'US-2')}")
    dev = step_engine.claim("feature-dev/developer")
    step_engine.complete(dev.step_id, "STATUS: done")

    assert dispatcher.ran == ["job-planner", "job-developer", "job-developer"]


def test_job_names_follow_the_agent_id():
    assert job_name_for_agent("feature-dev", "feature-dev/planner") == "agentflow/feature-dev/planner"
    assert job_name_for_agent("feature-dev", "feature-dev/planner@run:abc123") == "agentflow/feature-dev/planner"
    assert workflow_id_from_job_name("agentflow/feature-dev/planner") == "feature-dev"
    assert workflow_id_from_job_name("agentflow/lonely") is None
    assert workflow_id_from_job_name("other/feature-dev/planner") is None
