from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from agentflow.database import Base
from agentflow.models._time import utcnow


class MedicCheck(Base):
    __tablename__ = "medic_checks"

    id = Column(String, primary_key=True)
    checked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    issues_found = Column(Integer, nullable=False, server_default="0", default=0)
    actions_taken = Column(Integer, nullable=False, server_default="0", default=0)

    summary = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=list)
