"""
Retrieval service for RAG queries.

Embeds a query and performs a scoped top-k similarity search in the
vector store. Retrieval is an enhancement to a chat turn, never a
requirement: any failure yields an empty result set and the turn goes on
without document context.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from apps.indexing.embedder import BaseEmbedder
from apps.indexing.errors import IngestionError
from apps.indexing.vectorstore import BaseVectorStore, ScopeFilter, sort_matches

logger = logging.getLogger(__name__)

# Default number of chunks to retrieve
DEFAULT_TOP_K = 5

# Maximum snippet length for citations
SNIPPET_MAX_LENGTH = 350

MAX_QUERY_LENGTH = 2000


class QueryValidationError(ValueError):
    """Raised when query validation fails."""
    pass


class RetrievalMode:
    """Whether retrieval runs at all."""
    ENABLED = 'enabled'
    DISABLED = 'disabled'


@dataclass
class RetrievalResult:
    """A retrieved chunk with its provenance."""
    document_id: str
    file_name: str
    chunk_index: int
    text: str
    score: float  # Cosine distance, lower = more similar

    @property
    def snippet(self) -> str:
        return create_snippet(self.text)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict (snippet only, for response size)."""
        return {
            "docId": self.document_id,
            "chunkId": f"{self.document_id}:{self.chunk_index}",
            "chunkIndex": self.chunk_index,
            "snippet": self.snippet,
            "score": round(self.score, 4),
            "documentTitle": self.file_name,
        }


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Raises:
        QueryValidationError: If query is empty after normalization or too long
    """
    if not query:
        raise QueryValidationError("Query cannot be empty")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    if len(normalized) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return normalized


def create_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """
    Create a deterministic snippet from chunk text.

    - Takes first N characters
    - Adds ellipsis if truncated
    - Preserves word boundaries when possible
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.7:  # Only break at space if reasonable
        truncated = truncated[:last_space]

    return truncated.rstrip() + "…"


class Retriever:
    """
    Scoped similarity search over the vector store.

    Args:
        embedder: Embeds the query with the same model used for chunks
        store: Vector store to search
        mode: RetrievalMode.DISABLED turns every call into a no-op
        default_k: Results returned when the caller passes no k
        max_distance: Optional cutoff; results farther than this are dropped
    """

    def __init__(
        self,
        embedder: BaseEmbedder,
        store: BaseVectorStore,
        mode: str = RetrievalMode.ENABLED,
        default_k: int = DEFAULT_TOP_K,
        max_distance: Optional[float] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.mode = mode
        self.default_k = default_k
        self.max_distance = max_distance

    def retrieve(self, query: str, scope: ScopeFilter, k: Optional[int] = None) -> List[RetrievalResult]:
        """
        Top-k chunks for a query within a scope, nearest first.

        Never raises: an invalid query, an embedding failure or an
        unavailable store all produce an empty list.
        """
        if self.mode == RetrievalMode.DISABLED:
            return []

        k = self.default_k if k is None else k
        if k <= 0:
            return []

        try:
            normalized = normalize_query(query)
            vector = self.embedder.embed(normalized)
            matches = self.store.query(vector, scope, k)
        except QueryValidationError as e:
            logger.info(f"Skipping retrieval: {e}")
            return []
        except IngestionError as e:
            logger.warning(f"Retrieval degraded to no context: {e.__class__.__name__}: {e}")
            return []
        except Exception:
            logger.exception("Unexpected retrieval failure, continuing without context")
            return []

        if self.max_distance is not None:
            matches = [m for m in matches if m.distance <= self.max_distance]

        results = [
            RetrievalResult(
                document_id=m.document_id,
                file_name=m.file_name,
                chunk_index=m.chunk_index,
                text=m.text,
                score=m.distance,
            )
            for m in sort_matches(matches)[:k]
        ]

        logger.info(
            f"Retrieved {len(results)} chunks for owner={scope.owner_id} "
            f"conversation={scope.conversation_id} (requested top_k={k})"
        )
        return results
