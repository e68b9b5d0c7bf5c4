"""Turns session history into model input.

History never carries image bytes: older images become a text placeholder.
Only the message that triggered the turn may carry an inline image.
"""

import base64
import re
from datetime import datetime
from typing import Iterable, Optional

from salesbot.schemas.chat import ChatMessage, MessageType, Sender
from salesbot.services.llm import Turn

DEFAULT_IMAGE_PROMPT = "Analyze this image."
COUNTERPART_IMAGE_PLACEHOLDER = "[User sent an image labeled: {label}]"
OUTBOUND_IMAGE_PLACEHOLDER = "[Sent an image: {label}]"

_DATA_URL_RE = re.compile(r"^data:([A-Za-z0-9.+/-]+);base64,(.+)$", re.DOTALL)


def to_data_url(mime_type: str, content: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


def parse_data_url(value: Optional[str]) -> Optional[tuple[str, str]]:
    """Split a data URL into (mime_type, base64 payload)."""
    if not value:
        return None
    match = _DATA_URL_RE.match(value)
    if not match:
        return None
    return match.group(1), match.group(2)


def message_to_turn(message: ChatMessage) -> Optional[Turn]:
    role = "counterpart" if message.sender == Sender.COUNTERPART else "assistant"
    if message.type == MessageType.IMAGE:
        label = message.text or "Photo"
        template = COUNTERPART_IMAGE_PLACEHOLDER if role == "counterpart" else OUTBOUND_IMAGE_PLACEHOLDER
        return Turn(role=role, content=template.format(label=label))
    if not message.text:
        return None
    return Turn(role=role, content=message.text)


def build_history(
    messages: Iterable[ChatMessage],
    limit: int,
    *,
    exclude_message_id: Optional[str] = None,
    before: Optional[datetime] = None,
) -> list[Turn]:
    """Last `limit` turns in chronological order.

    `exclude_message_id` drops the message that is sent as the active turn.
    `before` keeps only messages strictly older than that instant (retry replay).
    """
    if limit <= 0:
        return []

    turns: list[Turn] = []
    for message in messages:
        if exclude_message_id is not None and message.id == exclude_message_id:
            continue
        if before is not None and message.timestamp >= before:
            continue
        turn = message_to_turn(message)
        if turn is not None:
            turns.append(turn)
    return turns[-limit:]


def build_active_parts(message: ChatMessage) -> list[dict]:
    """Model input parts for the newest message: inline image first, then its text."""
    parts: list[dict] = []
    if message.type == MessageType.IMAGE:
        parsed = parse_data_url(message.image)
        if parsed:
            mime_type, data = parsed
            parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
            parts.append({"text": message.text or DEFAULT_IMAGE_PROMPT})
            return parts
    if message.text:
        parts.append({"text": message.text})
    return parts
