"""
LLM Client Abstraction Layer.

Streams chat completions from a provider as plain text deltas:
- OpenAI-compatible APIs (OpenAI, OpenRouter, Groq, local servers):
  Server-Sent Events, terminated by `data: [DONE]`
- Ollama: newline-delimited JSON, terminated by `"done": true`

Both clients are async generators over an httpx streaming response.
Closing the generator closes the HTTP response, which aborts the
upstream request.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMError(Exception):
    """Raised when the LLM client is misconfigured or the call fails."""
    pass


class UpstreamError(LLMError):
    """The provider answered with an error, before or during the stream."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Provider returned {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


def stream_timeout() -> httpx.Timeout:
    """Connect and per-read timeouts for streaming requests."""
    return httpx.Timeout(
        float(getattr(settings, 'STREAM_READ_TIMEOUT', 30)),
        connect=float(getattr(settings, 'STREAM_CONNECT_TIMEOUT', 10)),
    )


class BaseLLMClient(ABC):
    """Abstract base class for streaming LLM clients."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Tests pass an httpx.MockTransport here
        self.transport = transport

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass

    @abstractmethod
    def _request(self, messages: List[LLMMessage], temperature: float, max_tokens: int) -> dict:
        """Build url, headers and json for the streaming request."""
        pass

    @abstractmethod
    def _parse_stream(self, response: httpx.Response) -> AsyncIterator[str]:
        """Yield content deltas from the response body."""
        pass

    async def stream_chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> AsyncIterator[str]:
        """
        Stream a chat completion.

        Args:
            messages: List of messages in the conversation
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens in response

        Yields:
            Non-empty content deltas in upstream order

        Raises:
            UpstreamError: Non-200 response or an error inside the stream
            httpx.TimeoutException: Connect or read timeout
            httpx.TransportError: Connection failures
        """
        request = self._request(messages, temperature, max_tokens)
        logger.info(f"Streaming from {self.model_name}: {len(messages)} messages, temp={temperature}")

        async with httpx.AsyncClient(timeout=stream_timeout(), transport=self.transport) as client:
            async with client.stream(
                "POST",
                request["url"],
                json=request["json"],
                headers=request.get("headers"),
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(f"{self.model_name} returned {response.status_code}: {body[:500]}")
                    raise UpstreamError(response.status_code, body)

                async for delta in self._parse_stream(response):
                    yield delta


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs.

    Works with: OpenAI, OpenRouter, Azure OpenAI, Groq, Together, local servers, etc.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.api_key = api_key or getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = (base_url or getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')).rstrip('/')
        self.model = model or getattr(settings, 'OPENAI_MODEL', 'gpt-4o-mini')

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def _request(self, messages: List[LLMMessage], temperature: float, max_tokens: int) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        # OpenRouter attribution headers
        site_url = getattr(settings, 'OPENROUTER_SITE_URL', '')
        app_name = getattr(settings, 'OPENROUTER_APP_NAME', '')
        if site_url:
            headers["HTTP-Referer"] = site_url
        if app_name:
            headers["X-Title"] = app_name

        return {
            "url": f"{self.base_url}/chat/completions",
            "headers": headers,
            "json": {
                "model": self.model,
                "messages": [m.to_dict() for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": True,
            },
        }

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            line = line.strip()
            # Blank separators and ": keep-alive" comments
            if not line or line.startswith(":"):
                continue
            if not line.startswith("data:"):
                continue

            data = line[len("data:"):].strip()
            if data == "[DONE]":
                return

            try:
                payload = json.loads(data)
            except ValueError:
                logger.debug(f"Skipping unparseable SSE line: {data[:200]}")
                continue

            if payload.get("error"):
                error = payload["error"]
                code = error.get("code") if isinstance(error, dict) else None
                status = code if isinstance(code, int) else 502
                raise UpstreamError(status, json.dumps({"error": error}))

            choices = payload.get("choices") or []
            if not choices:
                continue
            content = (choices[0].get("delta") or {}).get("content")
            if content:
                yield content


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.base_url = (base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')).rstrip('/')
        self.model = model or getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')

    @property
    def model_name(self) -> str:
        return self.model

    def _request(self, messages: List[LLMMessage], temperature: float, max_tokens: int) -> dict:
        return {
            "url": f"{self.base_url}/api/chat",
            "json": {
                "model": self.model,
                "messages": [m.to_dict() for m in messages],
                "stream": True,
                "options": {
                    "temperature": temperature,
                    "num_predict": max_tokens,
                },
            },
        }

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[str]:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                logger.debug(f"Skipping unparseable NDJSON line: {line[:200]}")
                continue

            if payload.get("error"):
                raise UpstreamError(500, json.dumps({"error": payload["error"]}))

            content = (payload.get("message") or {}).get("content")
            if content:
                yield content
            if payload.get("done"):
                return


# =============================================================================
# Client Factory
# =============================================================================

_client_instance: Optional[BaseLLMClient] = None


def get_llm_client() -> BaseLLMClient:
    """
    Get the configured LLM client instance.

    Uses LLM_PROVIDER setting to determine which client to use:
    - "openai": OpenAI or compatible API (OpenRouter via OPENAI_BASE_URL)
    - "ollama" (default): Local Ollama inference

    Returns:
        Configured LLM client instance
    """
    global _client_instance

    if _client_instance is not None:
        return _client_instance

    provider = getattr(settings, 'LLM_PROVIDER', 'ollama').lower()

    if provider == 'openai':
        logger.info("Using OpenAI-compatible API for LLM inference")
        _client_instance = OpenAICompatibleClient()
    elif provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        _client_instance = OllamaClient()
    else:
        raise LLMError(f"Unknown LLM provider: {provider}")

    return _client_instance


def reset_llm_client():
    """Reset the cached client instance. Useful for testing."""
    global _client_instance
    _client_instance = None
