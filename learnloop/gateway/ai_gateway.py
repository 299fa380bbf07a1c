"""
AI Gateway client.

Wraps an OpenAI-compatible HTTP API for text generation and embeddings and
translates every transport or HTTP failure into a typed AiGatewayError so the
job orchestrator can decide between retry and dead-lettering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from loguru import logger

from config import get_settings
from learnloop.errors import AiGatewayError, ErrorKind


@dataclass
class GenerationResult:
    """Result of a text generation call."""

    content: str
    model: str
    tokens_used: int = 0
    cost_usd: float = 0.0
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class EmbeddingResponse:
    """Raw embedding vector returned by the gateway."""

    vector: list[float]
    model: str
    tokens_used: int = 0


class AiGateway(Protocol):
    """Interface consumed by the pipeline."""

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> GenerationResult: ...

    async def embed(self, text: str, options: dict[str, Any] | None = None) -> EmbeddingResponse: ...


def _status_to_error_type(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMIT_EXCEEDED
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION_FAILED
    if status_code == 402:
        return ErrorKind.QUOTA_EXCEEDED
    if status_code in (400, 404, 409, 413, 422):
        return ErrorKind.VALIDATION_ERROR
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpAiGateway:
    """HTTP client for an OpenAI-compatible provider."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        generation_model: str | None = None,
        embedding_model: str | None = None,
        timeout_seconds: float | None = None,
        provider: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the gateway.

        Args:
            base_url: API root (uses settings if not provided)
            api_key: Bearer token (uses settings if not provided)
            generation_model: Default chat model
            embedding_model: Default embedding model
            timeout_seconds: Per-request timeout
            provider: Provider name reported on errors
            client: Pre-built httpx client (tests inject a MockTransport here)
        """
        settings = get_settings()
        self.base_url = (base_url or settings.ai_gateway_base_url).rstrip("/")
        self.generation_model = generation_model or settings.ai_generation_model
        self.embedding_model = embedding_model or settings.embedding_model
        self.provider = provider or settings.ai_provider
        self.cost_per_1k_tokens = settings.ai_cost_per_1k_tokens
        timeout = timeout_seconds or settings.ai_timeout_seconds
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key or settings.ai_api_key}"},
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(path, json=body)
        except httpx.TimeoutException as e:
            raise AiGatewayError(
                f"AI provider timed out: {e}", ErrorKind.TIMEOUT.value, self.provider
            ) from e
        except httpx.TransportError as e:
            raise AiGatewayError(
                f"AI provider unreachable: {e}", ErrorKind.NETWORK_ERROR.value, self.provider
            ) from e

        if response.is_error:
            error_type = _status_to_error_type(response.status_code)
            error_code = None
            try:
                error_code = (response.json().get("error") or {}).get("code")
            except ValueError:
                pass
            logger.warning(f"AI provider returned {response.status_code} for {path} ({error_type.value})")
            raise AiGatewayError(
                f"AI provider error {response.status_code}",
                error_type=error_type.value,
                provider=self.provider,
                retry_after=_parse_retry_after(response),
                error_code=error_code or str(response.status_code),
            )

        try:
            return response.json()
        except ValueError as e:
            raise AiGatewayError(
                "AI provider returned malformed JSON", ErrorKind.SERVICE_UNAVAILABLE.value, self.provider
            ) from e

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> GenerationResult:
        options = options or {}
        model = options.get("model", self.generation_model)
        body: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if "temperature" in options:
            body["temperature"] = options["temperature"]
        if "max_tokens" in options:
            body["max_tokens"] = options["max_tokens"]

        data = await self._post("/chat/completions", body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise AiGatewayError(
                "AI provider response missing content", ErrorKind.SERVICE_UNAVAILABLE.value, self.provider
            ) from e

        tokens = int((data.get("usage") or {}).get("total_tokens", 0))
        return GenerationResult(
            content=content,
            model=data.get("model", model),
            tokens_used=tokens,
            cost_usd=round(tokens / 1000 * self.cost_per_1k_tokens, 6),
        )

    async def embed(self, text: str, options: dict[str, Any] | None = None) -> EmbeddingResponse:
        options = options or {}
        model = options.get("model", self.embedding_model)
        data = await self._post("/embeddings", {"model": model, "input": text})
        try:
            vector = [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError) as e:
            raise AiGatewayError(
                "AI provider response missing embedding", ErrorKind.SERVICE_UNAVAILABLE.value, self.provider
            ) from e

        return EmbeddingResponse(
            vector=vector,
            model=data.get("model", model),
            tokens_used=int((data.get("usage") or {}).get("total_tokens", 0)),
        )
