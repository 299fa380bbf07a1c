"""
Unit tests for the HTTP AI gateway and cache invalidation wrapper.

The provider is replaced by an httpx.MockTransport so status mapping and
response parsing run without network access.
"""
import json

import httpx
import pytest

from conftest import RecordingInvalidator
from learnloop.errors import AiGatewayError, ErrorKind
from learnloop.gateway.ai_gateway import HttpAiGateway
from learnloop.gateway.cache_invalidation import SafeInvalidator


def gateway_for(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return HttpAiGateway(
        base_url="http://test",
        api_key="test-key",
        generation_model="gpt-test",
        embedding_model="embed-test",
        provider="mock",
        client=client,
    )


def chat_response(content="Summary: ship it", tokens=42):
    return httpx.Response(
        200,
        json={
            "model": "gpt-test",
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"total_tokens": tokens},
        },
    )


class TestGenerate:
    @pytest.mark.asyncio
    async def test_parses_content_and_usage(self):
        requests = []

        def handler(request):
            requests.append(request)
            return chat_response()

        result = await gateway_for(handler).generate("Summarize", {"temperature": 0.2})

        assert result.content == "Summary: ship it"
        assert result.tokens_used == 42
        assert result.model == "gpt-test"
        assert requests[0].url.path == "/chat/completions"
        body = json.loads(requests[0].content)
        assert body["messages"] == [{"role": "user", "content": "Summarize"}]
        assert body["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "30"}, json={"error": {"code": "rate_limited"}})

        with pytest.raises(AiGatewayError) as exc_info:
            await gateway_for(handler).generate("x")

        error = exc_info.value
        assert error.kind is ErrorKind.RATE_LIMIT_EXCEEDED
        assert error.retry_after == 30.0
        assert error.error_code == "rate_limited"
        assert error.provider == "mock"
        assert error.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, kind, retryable",
        [
            (401, ErrorKind.AUTHENTICATION_FAILED, False),
            (402, ErrorKind.QUOTA_EXCEEDED, False),
            (422, ErrorKind.VALIDATION_ERROR, False),
            (503, ErrorKind.SERVICE_UNAVAILABLE, True),
        ],
    )
    async def test_status_mapping(self, status, kind, retryable):
        with pytest.raises(AiGatewayError) as exc_info:
            await gateway_for(lambda request: httpx.Response(status, text="nope")).generate("x")

        assert exc_info.value.kind is kind
        assert exc_info.value.retryable is retryable
        assert exc_info.value.error_code == str(status)

    @pytest.mark.asyncio
    async def test_missing_content_is_service_error(self):
        def handler(request):
            return httpx.Response(200, json={"choices": []})

        with pytest.raises(AiGatewayError) as exc_info:
            await gateway_for(handler).generate("x")

        assert exc_info.value.kind is ErrorKind.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_transport_failures_are_typed(self):
        def timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(AiGatewayError) as timed_out:
            await gateway_for(timeout).generate("x")
        with pytest.raises(AiGatewayError) as unreachable:
            await gateway_for(refused).generate("x")

        assert timed_out.value.kind is ErrorKind.TIMEOUT
        assert unreachable.value.kind is ErrorKind.NETWORK_ERROR


class TestEmbed:
    @pytest.mark.asyncio
    async def test_parses_vector(self):
        def handler(request):
            assert request.url.path == "/embeddings"
            assert json.loads(request.content) == {"model": "embed-test", "input": "hello"}
            return httpx.Response(
                200,
                json={"model": "embed-test", "data": [{"embedding": [0.1, 0.2, 0.3]}], "usage": {"total_tokens": 2}},
            )

        response = await gateway_for(handler).embed("hello")

        assert response.vector == [0.1, 0.2, 0.3]
        assert response.model == "embed-test"
        assert response.tokens_used == 2

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        with pytest.raises(AiGatewayError) as exc_info:
            await gateway_for(lambda request: httpx.Response(200, text="<html>")).embed("hello")

        assert exc_info.value.kind is ErrorKind.SERVICE_UNAVAILABLE


class TestSafeInvalidator:
    def test_passes_calls_through(self):
        inner = RecordingInvalidator()
        invalidator = SafeInvalidator(inner)

        assert invalidator.invalidate("outputs", (1, 2)) is True
        assert invalidator.bulk_invalidate(["embeddings"]) is True
        assert inner.calls == [("invalidate", "outputs", [1, 2]), ("bulk_invalidate", ["embeddings"])]

    def test_swallows_failures(self):
        invalidator = SafeInvalidator(RecordingInvalidator(fail=True))

        assert invalidator.invalidate("outputs", [1]) is False
        assert invalidator.bulk_invalidate(["feedback"]) is False

    def test_defaults_to_null_invalidator(self):
        assert SafeInvalidator().invalidate("inputs", [3]) is True
