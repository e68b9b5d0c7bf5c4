"""Per-message conversation pipeline.

append inbound -> lock check -> context -> inference -> tool interpretation
-> lock session | dispatch. Turns for the same session never interleave.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from salesbot.logging_config import SessionLogger, get_logger
from salesbot.schemas.chat import ChatMessage, MessageType, Sender
from salesbot.schemas.webhook import InboundEvent
from salesbot.services.ai_service import InferenceGateway
from salesbot.services.context_builder import build_active_parts, build_history, to_data_url
from salesbot.services.dispatch_service import Dispatcher
from salesbot.services.inventory_service import InventoryStore
from salesbot.services.llm import MissingCredentialsError, ProviderError, TransientProviderError, Turn
from salesbot.services.retry_queue import QueuedTurn, RetryQueue
from salesbot.services.session_store import SessionStore
from salesbot.services.tool_interpreter import MAX_PRODUCT_IMAGES, TurnPlan, interpret
from salesbot.services.whatsapp_service import DispatchError, WhatsAppClient

logger = get_logger("conversation_service")

MSG_CONFIG_MISSING = (
    "Sorry, our assistant is not available right now. A member of our team will get back to you shortly."
)
SUPPORTED_TYPES = {"text", "image"}


class TurnStatus(str, Enum):
    REPLIED = "replied"
    ESCALATED = "escalated"
    LOCKED = "locked"  # bot off for this session, inbound only recorded
    QUEUED = "queued"  # transient inference failure, waiting for the sweep
    FAILED = "failed"  # permanent inference failure
    DISPATCH_FAILED = "dispatch_failed"
    CONFIG_MISSING = "config_missing"
    STALE = "stale"  # bot switched off while the model was answering
    EMPTY = "empty"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"


class ReplayStatus(str, Enum):
    DELIVERED = "delivered"
    REQUEUED = "requeued"
    DISCARDED = "discarded"


@dataclass
class TurnOutcome:
    status: TurnStatus
    sent: list[ChatMessage] = field(default_factory=list)
    detail: Optional[str] = None


class SessionLocks:
    """One asyncio.Lock per session id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_session(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


class ConversationOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        inventory: InventoryStore,
        gateway: InferenceGateway,
        dispatcher: Dispatcher,
        retry_queue: RetryQueue,
        transport: WhatsAppClient,
        *,
        history_limit: int = 10,
        max_images: int = MAX_PRODUCT_IMAGES,
    ):
        self.store = store
        self.inventory = inventory
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.retry_queue = retry_queue
        self.transport = transport
        self.history_limit = history_limit
        self.max_images = max_images
        self.locks = SessionLocks()

    # -- inbound -----------------------------------------------------------

    async def handle_inbound(self, event: InboundEvent) -> TurnOutcome:
        async with self.locks.for_session(event.sender_id):
            return await self._handle_inbound_locked(event)

    async def _handle_inbound_locked(self, event: InboundEvent) -> TurnOutcome:
        log = SessionLogger(logger, event.sender_id, message_id=event.message_id)

        if event.type not in SUPPORTED_TYPES:
            log.info(f"Ignoring unsupported message type: {event.type}")
            return TurnOutcome(TurnStatus.SKIPPED, detail=f"unsupported:{event.type}")

        if self.store.has_message(event.sender_id, event.message_id):
            log.info("Duplicate delivery ignored")
            return TurnOutcome(TurnStatus.DUPLICATE)

        await self.transport.mark_as_read(event.message_id)
        inbound = await self._build_inbound_message(event)

        self.store.get_or_create(event.sender_id, event.display_name)
        inbound = self.store.append_message(event.sender_id, inbound)
        session = self.store.require(event.sender_id)
        log.info(f"{inbound.type.value} received: {(inbound.text or '')[:80]}")

        if not session.bot_active:
            log.info("Bot locked for session, skipping reply")
            return TurnOutcome(TurnStatus.LOCKED)

        if not self.gateway.configured:
            return await self._send_config_notice(event.sender_id, log)

        parts = build_active_parts(inbound)
        if not parts:
            log.warning("Nothing to send to the model (image download failed, no caption)")
            return TurnOutcome(TurnStatus.SKIPPED, detail="no_parts")

        history = build_history(session.messages, self.history_limit, exclude_message_id=inbound.id)

        try:
            return await self._decide_and_deliver(event.sender_id, history, parts, log)
        except MissingCredentialsError:
            return await self._send_config_notice(event.sender_id, log)
        except TransientProviderError as exc:
            self.retry_queue.enqueue(
                session_id=event.sender_id,
                parts=parts,
                source_message_id=inbound.id,
                error=str(exc),
                enqueued_at=datetime.now(timezone.utc),
            )
            return TurnOutcome(TurnStatus.QUEUED, detail=str(exc))
        except ProviderError as exc:
            log.error(
                "Inference failed permanently",
                context={"error": str(exc), "status_code": exc.status_code, "history_turns": len(history)},
            )
            return TurnOutcome(TurnStatus.FAILED, detail=str(exc))

    async def _build_inbound_message(self, event: InboundEvent) -> ChatMessage:
        now = datetime.now(timezone.utc)
        if event.type != "image":
            return ChatMessage(
                id=event.message_id,
                sender=Sender.COUNTERPART,
                timestamp=now,
                type=MessageType.TEXT,
                text=event.text or "",
            )

        image = None
        if event.media_id:
            media = await self.transport.download_media(event.media_id)
            if media is not None:
                content, mime_type = media
                image = to_data_url(event.mime_type or mime_type, content)
        return ChatMessage(
            id=event.message_id,
            sender=Sender.COUNTERPART,
            timestamp=now,
            type=MessageType.IMAGE,
            text=event.text or None,
            image=image,
        )

    # -- operator ----------------------------------------------------------

    async def send_operator_reply(self, session_id: str, text: str) -> ChatMessage:
        """Dashboard reply. Waits for any in-flight bot turn of the session to finish."""
        async with self.locks.for_session(session_id):
            return await self.dispatcher.send_human_reply(session_id, text)

    # -- replay ------------------------------------------------------------

    async def replay(self, entry: QueuedTurn) -> ReplayStatus:
        """Run a queued turn again with the context it had when it failed."""
        async with self.locks.for_session(entry.session_id):
            log = SessionLogger(logger, entry.session_id, entry_id=entry.id, attempt=entry.attempts)
            session = self.store.get(entry.session_id)
            if session is None:
                return self._discard(entry, "session_missing", log)
            if not session.bot_active:
                return self._discard(entry, "bot_inactive", log)

            history = build_history(
                session.messages,
                self.history_limit,
                exclude_message_id=entry.source_message_id,
                before=entry.enqueued_at,
            )
            try:
                outcome = await self._decide_and_deliver(entry.session_id, history, entry.parts, log)
            except TransientProviderError as exc:
                self.retry_queue.requeue(entry.id, str(exc))
                log.warning("Retry failed transiently, requeued", context={"error": str(exc)})
                return ReplayStatus.REQUEUED
            except ProviderError as exc:
                return self._discard(entry, f"provider_error: {exc}", log)

            self.retry_queue.mark_delivered(entry.id)
            log.info("Queued turn processed", context={"status": outcome.status.value})
            return ReplayStatus.DELIVERED

    def _discard(self, entry: QueuedTurn, reason: str, log: SessionLogger) -> ReplayStatus:
        self.retry_queue.discard(entry.id, reason)
        log.info("Queued turn discarded", context={"reason": reason})
        return ReplayStatus.DISCARDED

    # -- shared ------------------------------------------------------------

    async def _decide_and_deliver(
        self, session_id: str, history: list[Turn], parts: list[dict], log: SessionLogger
    ) -> TurnOutcome:
        # one snapshot for both the prompt and the tool-call lookups
        inventory = self.inventory.snapshot()
        log.info(f"Asking model, history={len(history)} turns")
        response = await self.gateway.infer(history, parts, inventory)
        plan = interpret(response, inventory, self.max_images)
        return await self._apply_plan(session_id, plan, log)

    async def _apply_plan(self, session_id: str, plan: TurnPlan, log: SessionLogger) -> TurnOutcome:
        if plan.escalate:
            self.store.lock_for_escalation(session_id)
            log.warning("Escalation requested, session locked silently", context={"reason": plan.escalation_reason})
            return TurnOutcome(TurnStatus.ESCALATED, detail=plan.escalation_reason)

        session = self.store.get(session_id)
        if session is None or not session.bot_active:
            log.info("Bot was switched off during inference, reply dropped")
            return TurnOutcome(TurnStatus.STALE)

        if plan.is_empty:
            log.info("Model returned nothing to send")
            return TurnOutcome(TurnStatus.EMPTY)

        try:
            sent = await self.dispatcher.deliver(session_id, plan)
        except DispatchError as exc:
            # decided content is not retried: resending it after later turns would be incoherent
            log.error("Bot reply lost, dispatch failed", context={"error": str(exc)})
            return TurnOutcome(TurnStatus.DISPATCH_FAILED, detail=str(exc))
        return TurnOutcome(TurnStatus.REPLIED, sent=sent)

    async def _send_config_notice(self, session_id: str, log: SessionLogger) -> TurnOutcome:
        log.warning("Inference API key missing, sending notice")
        try:
            sent = await self.dispatcher.send_text(session_id, MSG_CONFIG_MISSING, sender=Sender.BOT)
        except DispatchError as exc:
            log.error("Config notice not delivered", context={"error": str(exc)})
            return TurnOutcome(TurnStatus.CONFIG_MISSING, detail=str(exc))
        return TurnOutcome(TurnStatus.CONFIG_MISSING, sent=[sent])
