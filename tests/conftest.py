import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from salesbot.config import Settings  # noqa: E402
from salesbot.database import init_db  # noqa: E402
from salesbot.runtime import build_runtime  # noqa: E402
from salesbot.schemas.chat import ChatMessage, MessageType, Sender  # noqa: E402
from salesbot.schemas.product import PriceRange, ProductItem  # noqa: E402
from salesbot.services.llm import LLMProvider, LLMResponse  # noqa: E402
from salesbot.services.session_store import SessionRepository, SessionStore  # noqa: E402
from salesbot.services.whatsapp_service import DispatchError  # noqa: E402

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeProvider(LLMProvider):
    """Scripted model: pops one response (or exception) per call."""

    def __init__(self, responses=None, json_responses=None, configured: bool = True):
        self.responses = list(responses or [])
        self.json_responses = list(json_responses or [])
        self.configured = configured
        self.calls: list[dict] = []
        self.json_calls: list[dict] = []

    async def generate(self, history, parts, *, system_instruction, tools=None, temperature=0.7, max_tokens=800):
        self.calls.append(
            {"history": list(history), "parts": list(parts), "system_instruction": system_instruction, "tools": tools}
        )
        result = self.responses.pop(0) if self.responses else LLMResponse(content="OK", model="fake")
        if isinstance(result, Exception):
            raise result
        return result

    async def generate_json(self, prompt, *, schema, system_instruction=None, temperature=0.2):
        self.json_calls.append({"prompt": prompt, "schema": schema})
        result = self.json_responses.pop(0) if self.json_responses else {}
        if isinstance(result, Exception):
            raise result
        return result


class FakeTransport:
    """Records outbound sends instead of calling the Graph API."""

    def __init__(self, fail: bool = False, media: Optional[tuple[bytes, str]] = None):
        self.fail = fail
        self.media = media
        self.sent: list[dict] = []
        self.read: list[str] = []
        self.configured = True
        self._counter = 0

    async def send_text(self, to: str, body: str) -> Optional[str]:
        return self._record({"to": to, "type": "text", "body": body})

    async def send_image(self, to: str, link: str, caption: Optional[str] = None) -> Optional[str]:
        return self._record({"to": to, "type": "image", "link": link})

    def _record(self, item: dict) -> str:
        if self.fail:
            raise DispatchError("WhatsApp send failed: 500 - boom", status_code=500)
        self._counter += 1
        self.sent.append(item)
        return f"wamid.out{self._counter}"

    async def mark_as_read(self, message_id: str) -> bool:
        self.read.append(message_id)
        return True

    async def download_media(self, media_id: str):
        return self.media

    async def verify_credentials(self, access_token: str, phone_number_id: str) -> bool:
        return access_token == "good-token"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return SessionStore(SessionRepository(session_factory))


@pytest.fixture
def test_settings():
    return Settings(
        send_delay_seconds=0.001,
        inference_backoff_seconds=0.0,
        inference_max_attempts=3,
        whatsapp_verify_token="verify-me",
        public_base_url="https://bot.example.com",
        lead_cooldown_seconds=3600,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def runtime(test_settings, session_factory, provider, transport):
    runtime = build_runtime(test_settings, session_factory, provider=provider, transport=transport)
    runtime.inventory.replace([milk_atm(), water_vending()])
    return runtime


def milk_atm() -> ProductItem:
    return ProductItem(
        id="milk-100",
        category="Milk ATM",
        name="100L Milk ATM",
        price_range=PriceRange(min=30000, max=35000),
        description="Stainless steel milk dispenser with cooling.",
        specs={"capacity": "100L"},
        images=["https://cdn.example.com/milk-1.jpg", "https://cdn.example.com/milk-2.jpg"],
    )


def water_vending() -> ProductItem:
    return ProductItem(
        id="water-auto",
        category="Water Vending",
        name="Automatic Water Vending Machine",
        price_range=PriceRange(min=45000, max=50000),
        description="Coin and token operated, two taps.",
        specs={"taps": 2, "mode": "automatic"},
        images=["data:image/png;base64,aGVsbG8="],
    )


def text_message(message_id: str, text: str, sender: Sender = Sender.COUNTERPART, at: Optional[datetime] = None):
    return ChatMessage(id=message_id, sender=sender, timestamp=at or T0, type=MessageType.TEXT, text=text)


def seed_conversation(store: SessionStore, session_id: str, count: int, start: datetime = T0) -> None:
    store.get_or_create(session_id, f"Customer {session_id}")
    for i in range(count):
        sender = Sender.COUNTERPART if i % 2 == 0 else Sender.BOT
        store.append_message(
            session_id,
            text_message(f"{session_id}-m{i}", f"message {i}", sender=sender, at=start + timedelta(minutes=i)),
        )
