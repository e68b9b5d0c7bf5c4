import asyncio
import uuid
from datetime import datetime, timezone
from typing import Optional

from salesbot.logging_config import get_logger
from salesbot.schemas.chat import ChatMessage, MessageType, Sender
from salesbot.services.session_store import SessionStore
from salesbot.services.tool_interpreter import StagedImage, TurnPlan
from salesbot.services.whatsapp_service import WhatsAppClient

logger = get_logger("dispatch_service")


def _new_message_id(provider_id: Optional[str]) -> str:
    return provider_id or f"out-{uuid.uuid4().hex}"


class Dispatcher:
    """Sends decided content and records exactly what went out.

    Images go first, one send each with a pause in between, then the text.
    A failed send raises DispatchError; messages already sent stay recorded.
    """

    def __init__(
        self,
        store: SessionStore,
        transport: WhatsAppClient,
        *,
        public_base_url: str,
        send_delay_seconds: float = 0.8,
    ):
        if send_delay_seconds <= 0:
            raise ValueError("send_delay_seconds must be positive")
        self.store = store
        self.transport = transport
        self.public_base_url = public_base_url.rstrip("/")
        self.send_delay_seconds = send_delay_seconds

    def image_link(self, image: StagedImage) -> str:
        """Fetchable link for a product image.

        Stored data URLs map to /api/render-image/{product}/{index} under public_base_url,
        which is served outside this app.
        """
        if image.source.startswith(("http://", "https://")):
            return image.source
        return f"{self.public_base_url}/api/render-image/{image.product_id}/{image.index}"

    async def deliver(self, session_id: str, plan: TurnPlan) -> list[ChatMessage]:
        recorded: list[ChatMessage] = []

        for image in plan.images:
            link = self.image_link(image)
            provider_id = await self.transport.send_image(session_id, link)
            recorded.append(
                self.store.append_message(
                    session_id,
                    ChatMessage(
                        id=_new_message_id(provider_id),
                        sender=Sender.BOT,
                        timestamp=datetime.now(timezone.utc),
                        type=MessageType.IMAGE,
                        image=link,
                    ),
                )
            )
            await asyncio.sleep(self.send_delay_seconds)

        if plan.text:
            recorded.append(await self.send_text(session_id, plan.text, sender=Sender.BOT))

        return recorded

    async def send_text(self, session_id: str, text: str, *, sender: Sender) -> ChatMessage:
        provider_id = await self.transport.send_text(session_id, text)
        message = self.store.append_message(
            session_id,
            ChatMessage(
                id=_new_message_id(provider_id),
                sender=sender,
                timestamp=datetime.now(timezone.utc),
                type=MessageType.TEXT,
                text=text,
            ),
        )
        logger.info(
            f"Reply sent: {text[:40]}",
            extra={"context": {"session_id": session_id, "sender": sender.value}},
        )
        return message

    async def send_human_reply(self, session_id: str, text: str) -> ChatMessage:
        """Operator reply from the dashboard. Clears the unread counter."""
        self.store.get_or_create(session_id)
        return await self.send_text(session_id, text, sender=Sender.HUMAN_OPERATOR)
