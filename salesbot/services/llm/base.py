from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional


class ProviderError(Exception):
    """Inference provider failed to produce a response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limit, overload, timeout: expected to clear up on retry."""


class PermanentProviderError(ProviderError):
    """Bad request, auth failure and the like: retrying will not help."""


class MissingCredentialsError(ProviderError):
    """No API key configured for the provider."""


@dataclass(frozen=True)
class Turn:
    """One history entry as the model sees it."""

    role: str  # counterpart, assistant
    content: str


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class LLMResponse:
    content: str
    model: str
    function_calls: List[FunctionCall] = field(default_factory=list)
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self,
        history: List[Turn],
        parts: List[dict],
        *,
        system_instruction: str,
        tools: Optional[List[dict]] = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ) -> LLMResponse:
        """Run one chat turn: prior history plus the active parts."""

    @abstractmethod
    async def generate_json(
        self,
        prompt: str,
        *,
        schema: dict,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
    ) -> Any:
        """Single-shot call constrained to a JSON response schema."""
