import pytest

from agentflow.core.errors import StoryValidationError
from agentflow.database import SessionLocal
from agentflow.services import events, step_engine
from agentflow.services.events import emit_event, get_recent_events, get_run_events


def test_listeners_only_see_committed_events():
    seen = []
    events.on_event(seen.append)

    db = SessionLocal()
    try:
        emit_event(db, "run.started", run_id="run-1", workflow_id="wf")
        db.flush()
        assert seen == []
        db.commit()
    finally:
        db.close()

    assert [e.event for e in seen] == ["run.started"]
    assert seen[0].run_id == "run-1"


def test_rolled_back_events_are_never_delivered():
    seen = []
    events.on_event(seen.append)

    db = SessionLocal()
    try:
        emit_event(db, "run.started", run_id="run-2")
        db.rollback()
        db.commit()
    finally:
        db.close()

    assert seen == []
    assert get_run_events("run-2") == []


def test_failed_engine_call_emits_nothing(new_run):
    run = new_run("feature-dev", "Rollback")
    plan = step_engine.claim("feature-dev/planner")
    seen = []
    events.on_event(seen.append)

    with pytest.raises(StoryValidationError):
        step_engine.complete(plan.step_id, "STORIES_JSON: nope")

    assert seen == []
    assert [e.event for e in get_run_events(run.id)][-1] == "step.running"


def test_broken_listener_does_not_block_others(new_run):
    seen = []

    def broken(evt):
        raise RuntimeError("listener bug")

    events.on_event(broken)
    events.on_event(seen.append)

    run = new_run("triage", "Listener isolation")

    assert [e.event for e in seen] == ["run.started", "step.pending"]
    assert run.status == "running"


def test_unsubscribe_stops_delivery(new_run):
    seen = []
    unsubscribe = events.on_event(seen.append)
    unsubscribe()

    new_run("triage", "Nobody listening")

    assert seen == []


def test_unknown_event_type_is_rejected():
    db = SessionLocal()
    try:
        with pytest.raises(ValueError):
            emit_event(db, "run.exploded", run_id="x")
    finally:
        db.close()


def test_history_queries_return_chronological_order(new_run):
    first = new_run("triage", "First")
    second = new_run("triage", "Second")

    recent = get_recent_events(limit=3)
    assert [(e.run_id, e.event) for e in recent] == [
        (first.id, "step.pending"),
        (second.id, "run.started"),
        (second.id, "step.pending"),
    ]

    by_prefix = get_run_events(first.id[:8])
    assert [e.event for e in by_prefix] == ["run.started", "step.pending"]
