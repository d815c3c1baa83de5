from agentflow.models.run import Run
from agentflow.services.events import get_run_events
from agentflow.services.pipeline import advance_pipeline
from agentflow.services.run_service import cancel_run, get_run_status


def test_advance_opens_the_next_waiting_step(new_run):
    run = new_run("feature-dev", "Skip ahead")

    result = advance_pipeline(run.id)

    assert result.advanced is True
    assert result.run_completed is False
    statuses = [s.status for s in get_run_status(run.id).steps]
    assert statuses == ["pending", "pending", "waiting"]
    assert get_run_events(run.id)[-1].event == "pipeline.advanced"


def test_advance_with_nothing_waiting_completes_the_run(new_run, fresh):
    run = new_run("triage", "Only one step")

    result = advance_pipeline(run.id)

    assert result.run_completed is True
    assert fresh(Run, run.id).status == "completed"
    assert get_run_events(run.id)[-1].event == "run.completed"


def test_advance_never_reopens_a_finished_run(new_run, fresh):
    run = new_run("feature-dev", "Cancelled first")
    cancel_run(run.id)

    result = advance_pipeline(run.id)

    assert (result.advanced, result.run_completed) == (False, False)
    assert fresh(Run, run.id).status == "cancelled"
    assert {s.status for s in get_run_status(run.id).steps} == {"failed"}
