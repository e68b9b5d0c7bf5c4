from salesbot.services.llm.base import (
    FunctionCall,
    LLMProvider,
    LLMResponse,
    MissingCredentialsError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
    Turn,
)
from salesbot.services.llm.gemini_provider import GeminiProvider

__all__ = [
    "FunctionCall",
    "GeminiProvider",
    "LLMProvider",
    "LLMResponse",
    "MissingCredentialsError",
    "PermanentProviderError",
    "ProviderError",
    "TransientProviderError",
    "Turn",
]
