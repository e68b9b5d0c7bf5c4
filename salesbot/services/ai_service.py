import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from salesbot.config import Settings
from salesbot.logging_config import get_logger
from salesbot.services.inventory_service import Inventory
from salesbot.services.llm import LLMProvider, LLMResponse, MissingCredentialsError, TransientProviderError, Turn

logger = get_logger("ai_service")

T = TypeVar("T")

DISPLAY_PRODUCT_TOOL = {
    "name": "displayProduct",
    "description": (
        "Send the photos of one product to the customer. Only use it once you have matched the exact "
        "product ID to the customer's specs (capacity, type), or when the customer explicitly asks to see it."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {"productId": {"type": "STRING", "description": "ID of the product to show"}},
        "required": ["productId"],
    },
}

ESCALATE_TO_ADMIN_TOOL = {
    "name": "escalateToAdmin",
    "description": (
        "Silently hand the conversation to a human. Only use it when the customer is ready to pay "
        "(asks for the till number or bank details) or is confirming delivery logistics."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {"reason": {"type": "STRING", "description": "Why a human is needed"}},
        "required": ["reason"],
    },
}

TOOL_DECLARATIONS = [DISPLAY_PRODUCT_TOOL, ESCALATE_TO_ADMIN_TOOL]

EMPTY_CATALOG_NOTICE = "NO ITEMS IN STOCK. We fabricate custom vending machines upon request."


@dataclass(frozen=True)
class SalesPersona:
    agent_name: str = "John"
    business_name: str = "JohnTech Vendors Ltd"
    location: str = "Thika Road, Kihunguro, Behind Shell Petrol Station"
    currency: str = "KSh"

    @classmethod
    def from_settings(cls, settings: Settings) -> "SalesPersona":
        return cls(
            agent_name=settings.agent_name,
            business_name=settings.business_name,
            location=settings.business_location,
            currency=settings.currency,
        )


def _format_price(value: float) -> str:
    return f"{value:.0f}" if float(value).is_integer() else f"{value:.2f}"


def format_catalog(inventory: Inventory, currency: str) -> str:
    if not len(inventory):
        return EMPTY_CATALOG_NOTICE
    blocks = []
    for product in inventory:
        blocks.append(
            "\n".join(
                [
                    "[ITEM]",
                    f"ID: {product.id}",
                    f"NAME: {product.name}",
                    f"CATEGORY: {product.category}",
                    f"SPECS: {json.dumps(product.specs, ensure_ascii=False)}",
                    f"PRICE_RANGE: {_format_price(product.price_range.min)} - "
                    f"{_format_price(product.price_range.max)} {currency}",
                    f"DESCRIPTION: {product.description}",
                ]
            )
        )
    return "\n\n".join(blocks)


def build_system_instruction(inventory: Inventory, persona: SalesPersona) -> str:
    """Sales persona plus the catalog. Built fresh for every call."""
    return f"""You are "{persona.agent_name}", a friendly, consultative sales agent for "{persona.business_name}".
LOCATION: {persona.location}.

You are a consultant, not a catalog search engine. Find out what the customer needs before proposing a product.

1. QUALIFY FIRST
   - When asked about a category ("Do you have Milk ATMs?"), ask for the specs before naming a product.
   - Milk/Oil ATMs: ask for the capacity in litres. Water vending: automatic or manual, how many taps.
     Reverse osmosis: output capacity (LPH).
   - Do not show photos or quote a specific price until the customer has answered.

2. MATCH AND PRESENT
   - When the specs match an [ITEM] below, say so, call 'displayProduct' with its ID and explain its key features.
   - When nothing matches, offer custom fabrication or the closest size in stock.

3. ANSWER IN TEXT
   - Price questions: reply with the price range in text. Do not call 'displayProduct'.
   - "How does it work?": explain the mechanism in plain words. Do not call 'displayProduct'.

4. NEGOTIATE AND CLOSE
   - You may negotiate down towards the minimum of the price range, never below it.
   - Call 'escalateToAdmin' only when the customer is ready to pay (M-Pesa, bank) or is confirming delivery.

--- INVENTORY DATA ({persona.currency}) ---
{format_catalog(inventory, persona.currency)}"""


class InferenceGateway:
    """Single entry point to the model, with bounded retry on transient errors."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        persona: Optional[SalesPersona] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ):
        self.provider = provider
        self.persona = persona or SalesPersona()
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def configured(self) -> bool:
        return bool(getattr(self.provider, "configured", True))

    async def infer(self, history: List[Turn], parts: List[dict], inventory: Inventory) -> LLMResponse:
        """One sales turn. Raises the last TransientProviderError once attempts run out."""
        system_instruction = build_system_instruction(inventory, self.persona)
        return await self._with_retry(
            lambda: self.provider.generate(
                history,
                parts,
                system_instruction=system_instruction,
                tools=TOOL_DECLARATIONS,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ),
            label="chat",
        )

    async def complete_json(self, prompt: str, schema: dict, system_instruction: Optional[str] = None) -> Any:
        return await self._with_retry(
            lambda: self.provider.generate_json(prompt, schema=schema, system_instruction=system_instruction),
            label="json",
        )

    async def _with_retry(self, call: Callable[[], Awaitable[T]], *, label: str) -> T:
        if not self.configured:
            raise MissingCredentialsError("Inference provider is not configured")

        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except TransientProviderError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Inference retries exhausted",
                        extra={"context": {"call": label, "attempts": attempt, "error": str(exc)}},
                    )
                    raise
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "Transient inference error, retrying",
                    extra={"context": {"call": label, "attempt": attempt, "delay": delay, "error": str(exc)}},
                )
                await asyncio.sleep(delay)
