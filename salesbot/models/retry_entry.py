import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, Text
from sqlalchemy.sql import func

from salesbot.database import Base


class RetryEntry(Base):
    __tablename__ = "retry_entries"

    id = Column(Text, primary_key=True, default=lambda: uuid.uuid4().hex)
    conversation_id = Column(Text, nullable=False, index=True)
    source_message_id = Column(Text)
    payload_json = Column(JSON, nullable=False)
    status = Column(Text, nullable=False, default="PENDING", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    queued_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
