from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Sender(str, Enum):
    COUNTERPART = "counterpart"
    BOT = "bot"
    HUMAN_OPERATOR = "human_operator"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class ChatMessage(BaseModel):
    """One entry of a conversation. Never changed once appended."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    sender: Sender
    timestamp: datetime
    type: MessageType = MessageType.TEXT
    text: Optional[str] = None
    image: Optional[str] = None

    @property
    def summary(self) -> str:
        if self.text:
            return self.text
        return "Photo" if self.type == MessageType.IMAGE else ""


class ChatSession(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    display_name: str
    messages: list[ChatMessage] = Field(default_factory=list)
    last_message: str = ""
    last_message_time: datetime
    unread_count: int = 0
    bot_active: bool = True
    is_escalated: bool = False
    last_analyzed_time: Optional[datetime] = None

    def snapshot(self) -> "ChatSession":
        """Copy that can be handed out without exposing the live message list."""
        return self.model_copy(update={"messages": list(self.messages)})
