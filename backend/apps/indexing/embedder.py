"""
Embedding generation for document chunks and queries.

Supports two providers behind one interface:
- Ollama (default): POST /api/embeddings, nomic-embed-text, 768 dimensions
- OpenAI-compatible: POST /embeddings, text-embedding-3-small, 1536 dimensions

Configure with EMBEDDING_PROVIDER environment variable.

Failures are mapped onto the ingestion error taxonomy so the queue can
tell a provider outage (retry later) from an exhausted quota (give up).
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import requests
from django.conf import settings

from apps.indexing.errors import (
    EmbeddingError,
    EmbeddingProviderError,
    EmbeddingQuotaExceeded,
    InvalidInput,
)

logger = logging.getLogger(__name__)

# Embedding model configuration
EMBEDDING_MODEL = "nomic-embed-text"
EMBEDDING_DIMENSIONS = 768

# Providers reject longer inputs; the tail of an oversized chunk is dropped
MAX_EMBEDDING_INPUT_CHARS = 8191

QUOTA_MARKERS = ('insufficient_quota', 'quota', 'billing', 'credits')


def truncate_input(text: str) -> str:
    """Clip text to MAX_EMBEDDING_INPUT_CHARS."""
    if len(text) > MAX_EMBEDDING_INPUT_CHARS:
        logger.debug(
            f"Truncating embedding input from {len(text)} to {MAX_EMBEDDING_INPUT_CHARS} chars"
        )
        return text[:MAX_EMBEDDING_INPUT_CHARS]
    return text


def raise_for_status(provider: str, response: requests.Response) -> None:
    """
    Map a non-200 provider response onto the error taxonomy.

    Raises:
        EmbeddingQuotaExceeded: 402, or 429 reporting an exhausted quota
        EmbeddingProviderError: 429 rate limiting or any 5xx
        EmbeddingError: any other 4xx
    """
    status = response.status_code
    if status == 200:
        return

    detail = response.text[:500] if response.text else "No details"
    message = f"{provider} API returned {status}: {detail}"
    lowered = detail.lower()

    if status == 402 or (status == 429 and any(m in lowered for m in QUOTA_MARKERS)):
        raise EmbeddingQuotaExceeded(message)
    if status == 429 or status >= 500:
        raise EmbeddingProviderError(message)
    raise EmbeddingError(message)


class BaseEmbedder(ABC):
    """Base class for embedding providers."""

    provider_name = "base"

    def __init__(self, model: str, dimensions: int, timeout: float = 60.0):
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout

    @abstractmethod
    def _request_embedding(self, text: str) -> List[float]:
        """Perform the provider call and return the raw vector."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the provider is reachable."""
        pass

    def embed(self, text: str) -> List[float]:
        """
        Generate an embedding vector for a single text.

        Args:
            text: The text to embed (truncated to MAX_EMBEDDING_INPUT_CHARS)

        Returns:
            List of floats with exactly `dimensions` entries

        Raises:
            InvalidInput: If text is empty
            EmbeddingProviderError: Timeout, connection failure, 429 or 5xx
            EmbeddingQuotaExceeded: Quota or credits exhausted
            EmbeddingError: Any other rejection, or a dimension mismatch
        """
        if not text or not text.strip():
            raise InvalidInput("Cannot generate embedding for empty text")

        text = truncate_input(text)

        try:
            embedding = self._request_embedding(text)
        except requests.exceptions.Timeout:
            raise EmbeddingProviderError(f"{self.provider_name} API timed out")
        except requests.exceptions.ConnectionError:
            raise EmbeddingProviderError(f"Cannot connect to {self.provider_name}")
        except requests.exceptions.RequestException as e:
            raise EmbeddingProviderError(f"Request failed: {e}")

        if not embedding:
            raise EmbeddingProviderError("No embedding in response")

        if len(embedding) != self.dimensions:
            raise EmbeddingError(
                f"Expected {self.dimensions} dimensions from {self.model}, got {len(embedding)}"
            )

        return [float(v) for v in embedding]

    def embed_many(
        self,
        texts: List[str],
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Requests are sequential; the first failure aborts the batch.

        Args:
            texts: List of texts to embed
            on_progress: Optional callback(current, total) for progress updates

        Returns:
            List of embedding vectors (same order as input)
        """
        embeddings = []
        total = len(texts)

        for i, text in enumerate(texts):
            try:
                embeddings.append(self.embed(text))
            except EmbeddingError as e:
                logger.error(f"Failed to embed text {i+1}/{total}: {e}")
                raise

            if on_progress:
                on_progress(i + 1, total)

        logger.info(f"Generated {len(embeddings)} embeddings with {self.model}")
        return embeddings


class OllamaEmbedder(BaseEmbedder):
    """Embeddings from a local Ollama server."""

    provider_name = "Ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(
            model=model or getattr(settings, 'EMBEDDING_MODEL', EMBEDDING_MODEL),
            dimensions=dimensions or getattr(settings, 'EMBEDDING_DIMENSIONS', EMBEDDING_DIMENSIONS),
            timeout=timeout or getattr(settings, 'EMBEDDING_TIMEOUT', 60),
        )
        self.base_url = (base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')).rstrip('/')

    def _request_embedding(self, text: str) -> List[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )
        raise_for_status(self.provider_name, response)
        return response.json().get("embedding")

    def ping(self) -> bool:
        """
        Test if Ollama is reachable and the embedding model is available.

        Returns:
            True if connection is successful, False otherwise
        """
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            if response.status_code != 200:
                logger.error(f"Ollama returned {response.status_code}")
                return False

            models = [m.get("name", "") for m in response.json().get("models", [])]
            # Model names might include tags like :latest
            if not any(m.startswith(self.model) for m in models):
                logger.warning(f"Model {self.model} not found. Available: {models}")
                return False
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Ollama connection test failed: {e}")
            return False


class OpenAIEmbedder(BaseEmbedder):
    """Embeddings from an OpenAI-compatible /embeddings endpoint."""

    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(
            model=model or getattr(settings, 'EMBEDDING_MODEL', 'text-embedding-3-small'),
            dimensions=dimensions or getattr(settings, 'EMBEDDING_DIMENSIONS', 1536),
            timeout=timeout or getattr(settings, 'EMBEDDING_TIMEOUT', 60),
        )
        self.api_key = api_key or getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = (
            base_url or getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        ).rstrip('/')

        if not self.api_key:
            raise InvalidInput("OPENAI_API_KEY is required for the OpenAI embedder")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request_embedding(self, text: str) -> List[float]:
        response = requests.post(
            f"{self.base_url}/embeddings",
            headers=self._headers(),
            json={"model": self.model, "input": text},
            timeout=self.timeout,
        )
        raise_for_status(self.provider_name, response)
        data = response.json().get("data") or []
        return data[0].get("embedding") if data else None

    def ping(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/models", headers=self._headers(), timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.error(f"OpenAI connection test failed: {e}")
            return False


# =============================================================================
# Factory
# =============================================================================

_embedder: Optional[BaseEmbedder] = None


def get_embedder() -> BaseEmbedder:
    """
    Get the configured embedder (cached singleton).

    Returns:
        Configured embedding provider instance
    """
    global _embedder

    if _embedder is not None:
        return _embedder

    provider = getattr(settings, 'EMBEDDING_PROVIDER', 'ollama').lower()

    if provider == 'openai':
        _embedder = OpenAIEmbedder()
    elif provider == 'ollama':
        _embedder = OllamaEmbedder()
    else:
        raise InvalidInput(f"Unknown embedding provider: {provider}")

    logger.info(f"Embedding provider: {provider} ({_embedder.model}, {_embedder.dimensions} dims)")
    return _embedder


def reset_embedder():
    """Reset the cached embedder (for testing)."""
    global _embedder
    _embedder = None
