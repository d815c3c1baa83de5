from agentflow.models.run import Run
from agentflow.models.step import Step
from agentflow.models.story import Story
from agentflow.services import step_engine
from agentflow.services.events import get_run_events
from agentflow.services.run_service import get_run_status, start_run
from agentflow.services.workflow_registry import register_workflow


def test_single_step_retries_until_exhausted(new_run, fresh):
    run = new_run("triage", "Flaky agent")

    for attempt in (1, 2):
        claimed = step_engine.claim("triage/triager")
        assert claimed.found is True
        result = step_engine.fail(claimed.step_id, f"crash {attempt}")
        assert result.retrying is True
        assert result.run_failed is False

        step = fresh(Step, claimed.step_id)
        assert step.status == "pending"
        assert step.retry_count == attempt
        assert step.output == f"crash {attempt}"

    claimed = step_engine.claim("triage/triager")
    result = step_engine.fail(claimed.step_id, "crash 3")

    assert result.retrying is False
    assert result.run_failed is True
    assert fresh(Step, claimed.step_id).status == "failed"
    assert fresh(Run, run.id).status == "failed"
    assert step_engine.claim("triage/triager").found is False

    events = [e.event for e in get_run_events(run.id)]
    assert events[-2:] == ["step.failed", "run.failed"]


def test_zero_retries_fails_on_first_error(fresh):
    register_workflow(
        {
            "id": "strict",
            "steps": [{"id": "only", "agent": "bot", "input": "go", "max_retries": 0}],
        }
    )
    run = start_run("strict", "no second chances")

    claimed = step_engine.claim("strict/bot")
    result = step_engine.fail(claimed.step_id, "boom")

    assert result.run_failed is True
    assert fresh(Run, run.id).status == "failed"


def test_failed_story_retries_without_touching_the_step_counter(new_run, make_stories, fresh):
    run = new_run("feature-dev", "Story retries")
    plan = step_engine.claim("feature-dev/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('US-1', 'US-2')}")

    dev = step_engine.claim("feature-dev/developer")
    result = step_engine.fail(dev.step_id, "tests red")

    assert result.retrying is True
    loop_step = fresh(Step, dev.step_id)
    assert loop_step.status == "pending"
    assert loop_step.retry_count == 0
    assert loop_step.current_story_id is None

    stories = {s.story_id: s for s in get_run_status(run.id).stories}
    assert stories["US-1"].status == "pending"
    assert stories["US-1"].retry_count == 1
    assert stories["US-2"].retry_count == 0

    again = step_engine.claim("feature-dev/developer")
    assert "Story US-1" in again.resolved_input


def test_exhausted_story_fails_loop_and_run(new_run, make_stories, fresh):
    run = new_run("feature-dev", "Story exhaustion")
    plan = step_engine.claim("feature-dev/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('US-1', 'US-2')}")

    results = []
    for _ in range(3):
        dev = step_engine.claim("feature-dev/developer")
        results.append(step_engine.fail(dev.step_id, "still red"))

    assert [r.retrying for r in results] == [True, True, False]
    assert results[-1].run_failed is True

    stories = {s.story_id: s for s in get_run_status(run.id).stories}
    assert stories["US-1"].status == "failed"
    assert stories["US-2"].status == "pending"
    assert fresh(Step, dev.step_id).status == "failed"
    assert fresh(Run, run.id).status == "failed"


def test_fail_after_run_is_terminal_is_a_no_op(new_run, fresh):
    run = new_run("triage", "Already done")
    claimed = step_engine.claim("triage/triager")
    step_engine.complete(claimed.step_id, "STATUS: done")

    result = step_engine.fail(claimed.step_id, "late crash")

    assert result.retrying is False
    assert result.run_failed is False
    assert fresh(Run, run.id).status == "completed"
    assert fresh(Step, claimed.step_id).retry_count == 0


def test_fail_and_complete_do_not_resurrect_a_failed_run(new_run, fresh):
    run = new_run("triage", "Sticky failure")
    for _ in range(3):
        claimed = step_engine.claim("triage/triager")
        step_engine.fail(claimed.step_id, "boom")
    assert fresh(Run, run.id).status == "failed"

    result = step_engine.complete(claimed.step_id, "STATUS: done")

    assert result.run_completed is False
    assert fresh(Run, run.id).status == "failed"
    assert fresh(Step, claimed.step_id).status == "failed"


def test_story_retry_counts_come_from_the_loop_step(make_stories, fresh):
    register_workflow(
        {
            "id": "patient",
            "steps": [
                {"id": "plan", "agent": "planner", "input": "plan"},
                {"id": "build", "agent": "builder", "type": "loop", "loop": {}, "input": "{{current_story}}", "max_retries": 4},
            ],
        }
    )
    run = start_run("patient", "Count retries")
    plan = step_engine.claim("patient/planner")
    step_engine.complete(plan.step_id, f"STORIES_JSON: {make_stories('S-1')}")

    story = get_run_status(run.id).stories[0]
    assert fresh(Story, story.id).max_retries == 4
