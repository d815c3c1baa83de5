from sqlalchemy import Column, DateTime, Integer, String, Text

from agentflow.database import Base
from agentflow.models._time import utcnow

EVENT_TYPES = (
    "run.started",
    "run.completed",
    "run.failed",
    "step.pending",
    "step.running",
    "step.done",
    "step.failed",
    "step.timeout",
    "story.started",
    "story.done",
    "story.verified",
    "story.retry",
    "story.failed",
    "pipeline.advanced",
)


class Event(Base):
    """Append-only engine event log."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    event = Column(String, nullable=False, index=True)

    run_id = Column(String, nullable=False, index=True)
    workflow_id = Column(String, nullable=True)
    # Logical step name (e.g. "plan"), not the step row id.
    step_id = Column(String, nullable=True)
    step_row_id = Column(String, nullable=True)
    agent_id = Column(String, nullable=True)
    story_id = Column(String, nullable=True)
    story_title = Column(Text, nullable=True)

    detail = Column(Text, nullable=True)
