"""
Tests for the streaming LLM clients and upstream error classification.

The provider is simulated with httpx.MockTransport.
"""
import json

import httpx
import pytest
from django.test import override_settings

from apps.rag.errors import (
    ErrorCategory,
    INSUFFICIENT_FUNDS_MESSAGE,
    USER_MESSAGES,
    classify_exception,
    classify_upstream_error,
)
from apps.rag.llm_client import (
    LLMError,
    LLMMessage,
    OllamaClient,
    OpenAICompatibleClient,
    UpstreamError,
    get_llm_client,
    reset_llm_client,
)


MESSAGES = [LLMMessage(role="system", content="be brief"), LLMMessage(role="user", content="hi")]


def sse(*payloads):
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def delta(text):
    return {"choices": [{"delta": {"content": text}}]}


def openai_client(handler):
    return OpenAICompatibleClient(
        api_key="sk-test",
        base_url="https://openrouter.ai/api/v1",
        model="openai/gpt-4o-mini",
        transport=httpx.MockTransport(handler),
    )


async def collect(stream):
    return [piece async for piece in stream]


# ============================================================================
# OpenAI-compatible Client Tests
# ============================================================================

class TestOpenAICompatibleClient:
    """Tests for SSE streaming from OpenAI-compatible providers."""

    @pytest.mark.asyncio
    async def test_streams_deltas_in_order(self):
        requests_seen = []

        def handler(request):
            requests_seen.append(request)
            body = sse(
                delta("Hel"),
                {"choices": [{"delta": {"role": "assistant"}}]},
                delta("lo"),
                "[DONE]",
                delta("ignored after done"),
            )
            return httpx.Response(200, content=body)

        pieces = await collect(openai_client(handler).stream_chat(MESSAGES, temperature=0.3, max_tokens=50))

        assert pieces == ["Hel", "lo"]
        request = requests_seen[0]
        assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["X-Title"] == "DocuChat"
        body = json.loads(request.content)
        assert body["stream"] is True
        assert body["temperature"] == 0.3
        assert body["max_tokens"] == 50
        assert body["messages"][1] == {"role": "user", "content": "hi"}

    @pytest.mark.asyncio
    async def test_skips_comments_and_garbage(self):
        def handler(request):
            body = b": OPENROUTER PROCESSING\n\n" + b"data: not json\n\n" + sse(delta("ok"), "[DONE]")
            return httpx.Response(200, content=body)

        assert await collect(openai_client(handler).stream_chat(MESSAGES)) == ["ok"]

    @pytest.mark.asyncio
    async def test_error_status_raises_upstream_error(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})

        with pytest.raises(UpstreamError) as exc_info:
            await collect(openai_client(handler).stream_chat(MESSAGES))

        assert exc_info.value.status_code == 429
        assert "Rate limit" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_error_inside_stream(self):
        def handler(request):
            body = sse(delta("partial"), {"error": {"code": 503, "message": "provider overloaded"}})
            return httpx.Response(200, content=body)

        pieces = []
        with pytest.raises(UpstreamError) as exc_info:
            async for piece in openai_client(handler).stream_chat(MESSAGES):
                pieces.append(piece)

        assert pieces == ["partial"]
        assert exc_info.value.status_code == 503

    def test_requires_api_key(self):
        with override_settings(OPENAI_API_KEY=''):
            with pytest.raises(LLMError):
                OpenAICompatibleClient(api_key='')


# ============================================================================
# Ollama Client Tests
# ============================================================================

class TestOllamaClient:
    """Tests for NDJSON streaming from Ollama."""

    def make(self, handler):
        return OllamaClient(base_url="http://ollama:11434", model="llama3.2", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_streams_until_done(self):
        def handler(request):
            lines = [
                {"message": {"role": "assistant", "content": "Hi"}, "done": False},
                {"message": {"role": "assistant", "content": " there"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
            ]
            return httpx.Response(200, content="\n".join(json.dumps(l) for l in lines).encode())

        pieces = await collect(self.make(handler).stream_chat(MESSAGES, max_tokens=10))

        assert pieces == ["Hi", " there"]

    @pytest.mark.asyncio
    async def test_sends_options(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, content=b'{"done": true}\n')

        await collect(self.make(handler).stream_chat(MESSAGES, temperature=0.7, max_tokens=99))

        assert seen[0]["options"] == {"temperature": 0.7, "num_predict": 99}
        assert seen[0]["model"] == "llama3.2"

    @pytest.mark.asyncio
    async def test_error_line_raises(self):
        def handler(request):
            return httpx.Response(200, content=b'{"error": "model \'nope\' not found"}\n')

        with pytest.raises(UpstreamError):
            await collect(self.make(handler).stream_chat(MESSAGES))


# ============================================================================
# Factory Tests
# ============================================================================

class TestGetLLMClient:
    """Tests for the cached client factory."""

    @override_settings(LLM_PROVIDER='ollama')
    def test_ollama_default(self):
        reset_llm_client()
        client = get_llm_client()
        assert isinstance(client, OllamaClient)
        assert get_llm_client() is client

    @override_settings(LLM_PROVIDER='openai', OPENAI_API_KEY='sk-test')
    def test_openai(self):
        reset_llm_client()
        assert isinstance(get_llm_client(), OpenAICompatibleClient)

    @override_settings(LLM_PROVIDER='gemini')
    def test_unknown_provider(self):
        reset_llm_client()
        with pytest.raises(LLMError):
            get_llm_client()


# ============================================================================
# Error Classification Tests
# ============================================================================

class TestClassifyUpstreamError:
    """Tests for classify_upstream_error()."""

    @pytest.mark.parametrize("status, body, category", [
        (401, '{"error": {"message": "Invalid API key"}}', ErrorCategory.AUTHENTICATION),
        (403, 'Forbidden', ErrorCategory.AUTHENTICATION),
        (429, '{"error": {"message": "Too many requests"}}', ErrorCategory.RATE_LIMIT),
        (429, 'slow down', ErrorCategory.RATE_LIMIT),
        (500, '{"error": "boom"}', ErrorCategory.UPSTREAM_SERVER),
        (502, '<html>Bad gateway</html>', ErrorCategory.UPSTREAM_SERVER),
        (404, '{"error": {"message": "No endpoints found: model not found"}}', ErrorCategory.MODEL_NOT_FOUND),
        (408, '{"error": {"message": "Request timeout"}}', ErrorCategory.MODEL_TIMEOUT),
        (400, '{"error": {"message": "Content blocked by moderation policy"}}', ErrorCategory.CONTENT_MODERATION),
        (400, '{"error": {"message": "This model\'s maximum context length is 8192 tokens"}}',
         ErrorCategory.CONTEXT_LENGTH_EXCEEDED),
        (400, '{"error": {"message": "messages must be an array"}}', ErrorCategory.BAD_REQUEST),
        (418, "I'm a teapot", ErrorCategory.UNKNOWN),
    ])
    def test_categories(self, status, body, category):
        error = classify_upstream_error(status, body)
        assert error.category == category
        assert error.status == status
        assert error.user_message == USER_MESSAGES[category]

    def test_insufficient_funds(self):
        error = classify_upstream_error(403, '{"error": {"message": "Insufficient funds"}}')
        assert error.category == ErrorCategory.AUTHENTICATION
        assert error.user_message == INSUFFICIENT_FUNDS_MESSAGE

    def test_raw_body_not_in_user_message(self):
        error = classify_upstream_error(500, '{"error": {"message": "secret internal trace"}}')
        assert "secret" not in error.user_message
        assert "secret" in error.message
        assert error.to_dict() == {"error": error.user_message, "category": "upstream_server"}


class TestClassifyException:
    """Tests for classify_exception()."""

    def test_upstream_error(self):
        error = classify_exception(UpstreamError(401, '{"error": "bad key"}'))
        assert error.category == ErrorCategory.AUTHENTICATION

    def test_timeout(self):
        error = classify_exception(httpx.ReadTimeout("slow"))
        assert error.category == ErrorCategory.MODEL_TIMEOUT
        assert error.status == 504

    def test_network(self):
        error = classify_exception(httpx.ConnectError("refused"))
        assert error.category == ErrorCategory.NETWORK
        assert error.status == 502

    def test_configuration(self):
        assert classify_exception(LLMError("no key")).category == ErrorCategory.CONFIGURATION

    def test_validation(self):
        assert classify_exception(ValueError("bad")).category == ErrorCategory.INPUT_VALIDATION

    def test_internal(self):
        error = classify_exception(RuntimeError("bug"))
        assert error.category == ErrorCategory.INTERNAL_SERVER
        assert error.status == 500
