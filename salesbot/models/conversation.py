from sqlalchemy import Boolean, Column, DateTime, Integer, Text
from sqlalchemy.orm import relationship

from salesbot.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Text, primary_key=True)  # counterpart phone / wa_id
    display_name = Column(Text, nullable=False)
    last_message = Column(Text, nullable=False, default="")
    last_message_at = Column(DateTime(timezone=True), nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)
    bot_active = Column(Boolean, nullable=False, default=True)
    is_escalated = Column(Boolean, nullable=False, default=False)
    last_analyzed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)

    messages = relationship("Message", back_populates="conversation", order_by="Message.seq")
