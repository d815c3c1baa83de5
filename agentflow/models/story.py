from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.schema import CheckConstraint, Index, UniqueConstraint

from agentflow.database import Base
from agentflow.models._time import utcnow

STORY_STATUSES = ("pending", "running", "done", "failed")


class Story(Base):
    __tablename__ = "stories"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)

    story_index = Column(Integer, nullable=False)
    story_id = Column(String, nullable=False)

    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    acceptance_criteria = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    status = Column(String, nullable=False, server_default="pending")
    output = Column(Text, nullable=True)

    retry_count = Column(Integer, nullable=False, server_default="0", default=0)
    max_retries = Column(Integer, nullable=False, server_default="2", default=2)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "story_id", name="uq_stories_run_story_id"),
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="ck_stories_status",
        ),
        Index("ix_stories_run_status_index", "run_id", "status", "story_index"),
    )
