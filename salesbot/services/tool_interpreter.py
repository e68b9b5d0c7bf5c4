"""Maps model function calls to side effects for one turn.

Calls are folded in order into a single PendingEffects value:
a later displayProduct that resolves replaces the earlier selection,
and any escalateToAdmin makes the whole turn silent.
"""

import re
from dataclasses import dataclass, replace
from functools import reduce
from typing import Iterable, Optional, Union

from salesbot.logging_config import get_logger
from salesbot.services.inventory_service import Inventory
from salesbot.services.llm import FunctionCall, LLMResponse

logger = get_logger("tool_interpreter")

MAX_PRODUCT_IMAGES = 5

_MARKDOWN_RE = re.compile(r"\*\*|\*|##|__")


@dataclass(frozen=True)
class DisplayProduct:
    product_id: str


@dataclass(frozen=True)
class Escalate:
    reason: str


ToolEffect = Union[DisplayProduct, Escalate]


@dataclass(frozen=True)
class StagedImage:
    product_id: str
    index: int
    source: str  # as stored on the product: http(s) URL or data URL


@dataclass(frozen=True)
class PendingEffects:
    product_id: Optional[str] = None
    images: tuple[StagedImage, ...] = ()
    escalate: bool = False
    escalation_reason: Optional[str] = None


@dataclass(frozen=True)
class TurnPlan:
    """What the turn will do once interpreted."""

    text: Optional[str] = None
    images: tuple[StagedImage, ...] = ()
    escalate: bool = False
    escalation_reason: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.escalate and not self.images and not self.text


def parse_function_calls(calls: Iterable[FunctionCall]) -> list[ToolEffect]:
    effects: list[ToolEffect] = []
    for call in calls:
        args = call.args if isinstance(call.args, dict) else {}
        if call.name == "displayProduct":
            effects.append(DisplayProduct(product_id=str(args.get("productId") or "")))
        elif call.name == "escalateToAdmin":
            effects.append(Escalate(reason=str(args.get("reason") or "")))
        else:
            logger.warning(f"Ignoring unknown tool call: {call.name}")
    return effects


def apply_effect(
    pending: PendingEffects,
    effect: ToolEffect,
    inventory: Inventory,
    max_images: int = MAX_PRODUCT_IMAGES,
) -> PendingEffects:
    if isinstance(effect, Escalate):
        return replace(pending, escalate=True, escalation_reason=effect.reason or pending.escalation_reason)

    product = inventory.find(effect.product_id)
    if product is None or not product.images:
        # unknown id or nothing to show: keep whatever was staged before
        if product is None:
            logger.info(f"displayProduct ignored, unknown product id: {effect.product_id!r}")
        return pending

    images = tuple(
        StagedImage(product_id=product.id, index=index, source=source)
        for index, source in enumerate(product.images[:max_images])
    )
    return replace(pending, product_id=product.id, images=images)


def reduce_effects(
    effects: Iterable[ToolEffect],
    inventory: Inventory,
    max_images: int = MAX_PRODUCT_IMAGES,
) -> PendingEffects:
    return reduce(lambda acc, effect: apply_effect(acc, effect, inventory, max_images), effects, PendingEffects())


def format_response_text(text: Optional[str]) -> str:
    """Drop markdown emphasis that WhatsApp would show literally."""
    if not text:
        return ""
    return _MARKDOWN_RE.sub("", text).strip()


def interpret(response: LLMResponse, inventory: Inventory, max_images: int = MAX_PRODUCT_IMAGES) -> TurnPlan:
    """Escalation wins over everything: no text and no images are sent for that turn."""
    pending = reduce_effects(parse_function_calls(response.function_calls), inventory, max_images)

    if pending.escalate:
        return TurnPlan(escalate=True, escalation_reason=pending.escalation_reason)

    text = format_response_text(response.content)
    return TurnPlan(text=text or None, images=pending.images)
