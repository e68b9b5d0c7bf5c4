import json
from typing import Any, List, Optional

import httpx

from salesbot.logging_config import get_logger
from salesbot.services.llm.base import (
    FunctionCall,
    LLMProvider,
    LLMResponse,
    MissingCredentialsError,
    PermanentProviderError,
    TransientProviderError,
    Turn,
)

logger = get_logger("llm.gemini")

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
TRANSIENT_MARKERS = ("overloaded", "unavailable", "resource_exhausted", "rate limit", "try again later")

ROLE_MAP = {"counterpart": "user", "assistant": "model"}


def classify_error(status_code: int, body: str) -> type:
    """Pick the error class for a non-200 response."""
    if status_code in TRANSIENT_STATUS_CODES:
        return TransientProviderError
    lowered = (body or "").lower()
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientProviderError
    return PermanentProviderError


class GeminiProvider(LLMProvider):
    """Google Gemini generateContent API over httpx."""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "gemini-3-flash-preview",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 45.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        history: List[Turn],
        parts: List[dict],
        *,
        system_instruction: str,
        tools: Optional[List[dict]] = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
        model: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a reply, possibly with function calls."""
        contents = [
            {"role": ROLE_MAP.get(turn.role, "model"), "parts": [{"text": turn.content}]} for turn in history
        ]
        contents.append({"role": "user", "parts": list(parts)})

        payload: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if tools:
            payload["tools"] = [{"functionDeclarations": tools}]

        data = await self._post(model or self.default_model, payload)

        text_chunks: list[str] = []
        calls: list[FunctionCall] = []
        candidates = data.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                if part.get("text"):
                    text_chunks.append(part["text"])
                call = part.get("functionCall")
                if call and call.get("name"):
                    calls.append(FunctionCall(name=call["name"], args=call.get("args") or {}))

        content = "".join(text_chunks)
        logger.debug(f"Gemini content: {content[:100] if content else 'EMPTY'}, calls={[c.name for c in calls]}")

        return LLMResponse(
            content=content,
            model=data.get("modelVersion", model or self.default_model),
            function_calls=calls,
            usage=data.get("usageMetadata"),
        )

    async def generate_json(
        self,
        prompt: str,
        *,
        schema: dict,
        system_instruction: Optional[str] = None,
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> Any:
        """Generate a JSON document matching `schema` and return it parsed."""
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        data = await self._post(model or self.default_model, payload)

        raw = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            raw = "".join(part.get("text", "") for part in parts)
        if not raw:
            raise PermanentProviderError("Gemini returned no JSON content")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PermanentProviderError(f"Gemini returned invalid JSON: {exc}") from exc

    async def _post(self, model: str, payload: dict) -> dict:
        if not self.api_key:
            raise MissingCredentialsError("Gemini API key is not configured")

        url = f"{self.base_url}/models/{model}:generateContent"
        logger.debug(f"Gemini request: model={model}, contents_count={len(payload.get('contents', []))}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Gemini timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Gemini connection error: {exc}") from exc

        logger.debug(f"Gemini response status: {response.status_code}")

        if response.status_code != 200:
            error_class = classify_error(response.status_code, response.text)
            logger.error(f"Gemini error: {response.status_code} - {response.text[:500]}")
            raise error_class(
                f"Gemini API error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            # proxies can answer 200 with an HTML error page
            logger.error(f"Gemini returned a non-JSON body: {response.text[:200]}")
            raise TransientProviderError(f"Gemini returned a non-JSON body: {exc}", status_code=200) from exc
