import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import json
import subprocess
import tempfile
from pathlib import Path

import pytest
from sqlalchemy.engine import make_url

TEST_DATABASE_URL = os.getenv(
    "AGENTFLOW_TEST_DATABASE_URL",
    f"sqlite:///{Path(tempfile.gettempdir()) / f'agentflow_test_{os.getpid()}.db'}",
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from agentflow import database
from agentflow.database import Base, SessionLocal
from agentflow.services import events
from agentflow.services.dispatcher import set_dispatcher
from agentflow.services.handoff import uninstall_handoff_listener
from agentflow.services.notifications import set_notifier
from agentflow.services.progress import set_progress_sidecar
from agentflow.services.run_outcomes import uninstall_run_outcome_listener
from agentflow.services.run_service import start_run
from agentflow.services.workflow_registry import clear_workflows, register_workflow

SINGLE_WORKFLOW = {
    "id": "triage",
    "name": "Issue triage",
    "steps": [
        {"id": "triage", "agent": "triager", "input": "Triage: {{task}}"},
    ],
}

FEATURE_WORKFLOW = {
    "id": "feature-dev",
    "name": "Feature development",
    "context": {"repo": "acme/widgets"},
    "steps": [
        {"id": "plan", "agent": "planner", "input": "Plan {{task}} in {{repo}}"},
        {
            "id": "implement",
            "agent": "developer",
            "type": "loop",
            "loop": {"over": "stories", "completion": "all_done"},
            "input": "Implement {{current_story}}\n\nDone so far:\n{{completed_stories}}\nLeft: {{stories_remaining}}",
        },
        {"id": "review", "agent": "reviewer", "input": "Review {{task}}: {{summary}}"},
    ],
}

VERIFIED_WORKFLOW = {
    "id": "verified-dev",
    "name": "Verified development",
    "steps": [
        {"id": "plan", "agent": "planner", "input": "Plan {{task}}"},
        {
            "id": "implement",
            "agent": "developer",
            "type": "loop",
            "loop": {"over": "stories", "verifyEach": True, "verifyStep": "verify"},
            "input": "Implement {{current_story_id}}. Feedback: {{verify_feedback}}",
        },
        {"id": "verify", "agent": "verifier", "input": "Verify {{current_story_id}}"},
        {"id": "ship", "agent": "shipper", "input": "Ship {{task}}"},
    ],
}


class RecordingDispatcher:
    def __init__(self, jobs=None, fail_on_list: bool = False, fail_on_run: bool = False):
        self.jobs = list(jobs or [])
        self.fail_on_list = fail_on_list
        self.fail_on_run = fail_on_run
        self.ran: list[str] = []
        self.removed: list[str] = []

    def list_jobs(self):
        if self.fail_on_list:
            raise RuntimeError("dispatcher unavailable")
        return list(self.jobs)

    def run_job_now(self, job_id: str) -> None:
        if self.fail_on_run:
            raise RuntimeError("dispatcher unavailable")
        self.ran.append(job_id)

    def remove_jobs(self, name_prefix: str) -> int:
        before = len(self.jobs)
        self.jobs = [j for j in self.jobs if not j.name.startswith(name_prefix)]
        self.removed.append(name_prefix)
        return before - len(self.jobs)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send(self, message: str, target: str) -> None:
        self.sent.append((message, target))


def _remove_sqlite_file(database_url: str) -> None:
    url = make_url(database_url)
    if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
        Path(url.database).unlink(missing_ok=True)


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database():
    _remove_sqlite_file(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )

    database.configure_database()
    yield
    database.engine.dispose()
    _remove_sqlite_file(TEST_DATABASE_URL)


def _clear_tables() -> None:
    with database.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _clean_state():
    _clear_tables()
    uninstall_handoff_listener()
    uninstall_run_outcome_listener()
    events.clear_listeners()
    set_dispatcher(None)
    set_notifier(None)
    set_progress_sidecar(None)
    clear_workflows()

    register_workflow(SINGLE_WORKFLOW)
    register_workflow(FEATURE_WORKFLOW)
    register_workflow(VERIFIED_WORKFLOW)

    yield

    uninstall_handoff_listener()
    uninstall_run_outcome_listener()
    events.clear_listeners()
    _clear_tables()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fresh():
    """Load a row in a brand-new session so engine writes are observed as committed."""

    def _load(model, row_id):
        with SessionLocal() as s:
            return s.get(model, row_id)

    return _load


@pytest.fixture
def new_run():
    def _start(workflow_id: str = "feature-dev", task: str = "Add dark mode", **kwargs):
        return start_run(workflow_id, task, **kwargs)

    return _start


@pytest.fixture
def dispatcher():
    d = RecordingDispatcher()
    set_dispatcher(d)
    return d


@pytest.fixture
def notifier():
    n = RecordingNotifier()
    set_notifier(n)
    return n


def stories_json(*ids: str) -> str:
    return json.dumps(
        [
            {
                "id": sid,
                "title": f"Story {sid}",
                "description": f"Build {sid}",
                "acceptanceCriteria": [f"{sid} works", "tests pass"],
            }
            for sid in ids
        ]
    )


@pytest.fixture
def make_stories():
    return stories_json
