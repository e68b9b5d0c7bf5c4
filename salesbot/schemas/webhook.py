from typing import Optional

from pydantic import BaseModel, Field


class TextContent(BaseModel):
    body: str = ""


class MediaContent(BaseModel):
    id: str
    caption: Optional[str] = None
    mime_type: Optional[str] = None


class InboundMessage(BaseModel):
    id: str
    sender: str = Field(alias="from")
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[TextContent] = None
    image: Optional[MediaContent] = None


class ContactProfile(BaseModel):
    name: Optional[str] = None


class Contact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[ContactProfile] = None


class ChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    contacts: list[Contact] = Field(default_factory=list)
    messages: list[InboundMessage] = Field(default_factory=list)


class Change(BaseModel):
    field: Optional[str] = None
    value: ChangeValue = Field(default_factory=ChangeValue)


class Entry(BaseModel):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookEnvelope(BaseModel):
    object: Optional[str] = None
    entry: list[Entry] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """One inbound message, flattened out of the Cloud API envelope."""

    message_id: str
    sender_id: str
    display_name: Optional[str] = None
    type: str = "text"
    text: Optional[str] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None


def extract_inbound_event(envelope: WebhookEnvelope) -> Optional[InboundEvent]:
    """Return the first message of the envelope, or None for status callbacks."""
    if not envelope.object or not envelope.entry:
        return None
    changes = envelope.entry[0].changes
    if not changes:
        return None
    value = changes[0].value
    if not value.messages:
        return None

    message = value.messages[0]
    display_name = None
    for contact in value.contacts:
        if contact.profile and contact.profile.name and contact.wa_id in (None, message.sender):
            display_name = contact.profile.name
            break

    event = InboundEvent(
        message_id=message.id,
        sender_id=message.sender,
        display_name=display_name,
        type=message.type,
    )
    if message.type == "text" and message.text:
        event.text = message.text.body
    elif message.type == "image" and message.image:
        event.text = message.image.caption
        event.media_id = message.image.id
        event.mime_type = message.image.mime_type
    return event
