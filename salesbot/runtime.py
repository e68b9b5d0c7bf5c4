"""Wires the services together once per process.

Routers reach the components through `get_runtime`, which reads
`app.state.runtime`; tests install their own Runtime there.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from salesbot.config import Settings
from salesbot.services.ai_service import InferenceGateway, SalesPersona
from salesbot.services.conversation_service import ConversationOrchestrator
from salesbot.services.dispatch_service import Dispatcher
from salesbot.services.inventory_service import InventoryStore
from salesbot.services.lead_service import LeadAnalyzer
from salesbot.services.llm import GeminiProvider, LLMProvider
from salesbot.services.retry_queue import RetryQueue
from salesbot.services.retry_service import RetrySweeper
from salesbot.services.session_store import SessionRepository, SessionStore
from salesbot.services.settings_service import TransportSettingsStore
from salesbot.services.whatsapp_service import WhatsAppClient


@dataclass
class Runtime:
    settings: Settings
    store: SessionStore
    inventory: InventoryStore
    transport_settings: TransportSettingsStore
    transport: WhatsAppClient
    gateway: InferenceGateway
    dispatcher: Dispatcher
    retry_queue: RetryQueue
    orchestrator: ConversationOrchestrator
    sweeper: RetrySweeper
    lead_analyzer: LeadAnalyzer

    def load(self) -> None:
        """Read persisted state into memory. Called once at startup."""
        self.transport_settings.load()
        self.store.load()
        self.inventory.load()
        self.retry_queue.release_stale_processing()


def build_runtime(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    provider: Optional[LLMProvider] = None,
    transport: Optional[WhatsAppClient] = None,
) -> Runtime:
    store = SessionStore(SessionRepository(session_factory))
    inventory = InventoryStore(session_factory)
    transport_settings = TransportSettingsStore(settings, session_factory)

    if transport is None:
        transport = WhatsAppClient(
            transport_settings.current,
            graph_base_url=settings.graph_base_url,
            api_version=settings.graph_api_version,
        )
    if provider is None:
        provider = GeminiProvider(
            api_key=settings.gemini_api_key,
            default_model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.inference_timeout_seconds,
        )

    gateway = InferenceGateway(
        provider,
        persona=SalesPersona.from_settings(settings),
        max_attempts=settings.inference_max_attempts,
        backoff_seconds=settings.inference_backoff_seconds,
        temperature=settings.temperature,
        max_tokens=settings.max_output_tokens,
    )
    dispatcher = Dispatcher(
        store,
        transport,
        public_base_url=settings.public_base_url,
        send_delay_seconds=settings.send_delay_seconds,
    )
    retry_queue = RetryQueue(session_factory)
    orchestrator = ConversationOrchestrator(
        store,
        inventory,
        gateway,
        dispatcher,
        retry_queue,
        transport,
        history_limit=settings.history_limit,
        max_images=settings.max_product_images,
    )
    sweeper = RetrySweeper(retry_queue, orchestrator, max_attempts=settings.retry_max_attempts)
    lead_analyzer = LeadAnalyzer(
        store,
        gateway,
        session_factory,
        batch_size=settings.lead_batch_size,
        min_messages=settings.lead_min_messages,
        transcript_messages=settings.lead_transcript_messages,
        cooldown_seconds=settings.lead_cooldown_seconds,
    )
    return Runtime(
        settings=settings,
        store=store,
        inventory=inventory,
        transport_settings=transport_settings,
        transport=transport,
        gateway=gateway,
        dispatcher=dispatcher,
        retry_queue=retry_queue,
        orchestrator=orchestrator,
        sweeper=sweeper,
        lead_analyzer=lead_analyzer,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
