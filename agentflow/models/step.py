from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.schema import CheckConstraint, Index

from agentflow.database import Base
from agentflow.models._time import utcnow

STEP_STATUSES = ("waiting", "pending", "running", "done", "failed")
TERMINAL_STEP_STATUSES = ("done", "failed")
ACTIVE_STEP_STATUSES = ("waiting", "pending", "running")


class Step(Base):
    __tablename__ = "steps"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)

    # Logical name of the step inside the workflow definition.
    step_id = Column(String, nullable=False)
    agent_id = Column(String, nullable=False, index=True)
    step_index = Column(Integer, nullable=False)

    type = Column(String, nullable=False, server_default="single")
    input_template = Column(Text, nullable=False, default="")
    expects = Column(Text, nullable=False, default="")

    status = Column(String, nullable=False, server_default="waiting")
    output = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, server_default="0", default=0)
    max_retries = Column(Integer, nullable=False, server_default="2", default=2)
    abandoned_count = Column(Integer, nullable=False, server_default="0", default=0)

    loop_config = Column(JSON, nullable=True)
    current_story_id = Column(String, nullable=True)

    # updated_at value that last triggered an immediate handoff.
    handoff_version = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'pending', 'running', 'done', 'failed')",
            name="ck_steps_status",
        ),
        CheckConstraint("type IN ('single', 'loop')", name="ck_steps_type"),
        CheckConstraint("retry_count >= 0", name="ck_steps_retry_count_nonnegative"),
        Index("ix_steps_agent_status", "agent_id", "status"),
        Index("ix_steps_run_index", "run_id", "step_index"),
    )

    @property
    def is_loop(self) -> bool:
        return self.type == "loop" and bool(self.loop_config)
