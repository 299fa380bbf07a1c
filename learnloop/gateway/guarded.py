"""AI gateway wrapped in the ai-provider circuit breaker."""

from __future__ import annotations

from typing import Any

from learnloop.gateway.ai_gateway import AiGateway, EmbeddingResponse, GenerationResult
from learnloop.reliability.circuit_breaker import CircuitBreaker, get_circuit_breaker

AI_PROVIDER_BREAKER = "ai-provider"


class GuardedAiGateway:
    """Routes every gateway call through a circuit breaker."""

    def __init__(self, inner: AiGateway, breaker: CircuitBreaker | None = None):
        self.inner = inner
        self.breaker = breaker or get_circuit_breaker(AI_PROVIDER_BREAKER)

    async def generate(self, prompt: str, options: dict[str, Any] | None = None) -> GenerationResult:
        return await self.breaker.call(self.inner.generate, prompt, options)

    async def embed(self, text: str, options: dict[str, Any] | None = None) -> EmbeddingResponse:
        return await self.breaker.call(self.inner.embed, text, options)
