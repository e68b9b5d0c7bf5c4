import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, UniqueConstraint

from salesbot.database import Base


class LeadEntry(Base):
    __tablename__ = "lead_entries"
    __table_args__ = (UniqueConstraint("category", "phone", name="uq_lead_entries_category_phone"),)

    id = Column(Text, primary_key=True, default=lambda: uuid.uuid4().hex)
    category = Column(Text, nullable=False)  # serious, stalled, visiting, followUp
    phone = Column(Text, nullable=False)
    name = Column(Text, nullable=False, default="")
    reason = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime(timezone=True), nullable=False)


class LeadAnalysisRun(Base):
    __tablename__ = "lead_analysis_runs"

    id = Column(Text, primary_key=True, default=lambda: uuid.uuid4().hex)
    status = Column(Text, nullable=False)  # completed, failed, skipped
    forced = Column(Boolean, nullable=False, default=False)
    sessions_analyzed = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True))
