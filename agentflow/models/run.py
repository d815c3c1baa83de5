from sqlalchemy import Column, DateTime, JSON, String, Text
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.schema import CheckConstraint, Index

from agentflow.database import Base
from agentflow.models._time import utcnow

RUN_STATUSES = ("running", "completed", "failed", "cancelled", "blocked")
TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")


class Run(Base):
    __tablename__ = "runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    task = Column(Text, nullable=False)

    status = Column(String, nullable=False, server_default="running")
    context = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)

    notify_target = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled', 'blocked')",
            name="ck_runs_status",
        ),
        Index("ix_runs_workflow_status", "workflow_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
