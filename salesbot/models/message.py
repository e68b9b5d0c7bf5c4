from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from salesbot.database import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("conversation_id", "message_id", name="uq_messages_conversation_message"),)

    seq = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Text, ForeignKey("conversations.id"), nullable=False, index=True)
    message_id = Column(Text, nullable=False)
    sender = Column(Text, nullable=False)  # counterpart, bot, human_operator
    message_type = Column(Text, nullable=False, default="text")  # text, image
    text = Column(Text)
    image = Column(Text)  # data URL for inbound media, link for outbound
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
