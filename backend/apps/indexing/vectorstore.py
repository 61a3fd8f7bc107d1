"""
Vector store adapter.

Persists (embedding, chunk metadata) records and answers scoped
nearest-neighbour queries by cosine distance.

Backends:
- PgVectorStore: PostgreSQL + pgvector through the Django ORM (production)
- InMemoryVectorStore: NumPy cosine search in process memory (tests, dev)

Both backends guarantee:
- upsert is idempotent on (document_id, chunk_index)
- delete_by_document is atomic and tombstones the document, so a stale
  upsert from an in-flight ingestion cannot resurrect deleted chunks.
  Tombstones older than tombstone_ttl are purged by later deletes.
- query results are sorted by ascending distance, ties broken by lowest
  chunk index and then lowest document id
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from django.db import connection, transaction
from django.db.utils import InterfaceError, OperationalError
from django.utils import timezone

from apps.indexing.chunker import TextChunk
from apps.indexing.errors import InvalidInput, StoreUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TOMBSTONE_TTL = 7 * 24 * 60 * 60  # seconds


@dataclass(frozen=True)
class ScopeFilter:
    """
    Restricts a query to one owner and/or one conversation.

    Both fields set means both must match. An unscoped query is refused.
    """
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def __post_init__(self):
        if not self.owner_id and not self.conversation_id:
            raise InvalidInput("ScopeFilter needs an owner_id or a conversation_id")

    def matches(self, owner_id: str, conversation_id: str) -> bool:
        if self.owner_id and owner_id != self.owner_id:
            return False
        if self.conversation_id and conversation_id != self.conversation_id:
            return False
        return True


@dataclass(frozen=True)
class DocumentRef:
    """Ownership and provenance copied onto every stored chunk."""
    document_id: str
    owner_id: str
    file_name: str
    conversation_id: str = ''


@dataclass
class VectorMatch:
    """One query hit."""
    document_id: str
    chunk_index: int
    text: str
    file_name: str
    distance: float

    def to_dict(self) -> dict:
        return {
            "documentId": self.document_id,
            "chunkIndex": self.chunk_index,
            "fileName": self.file_name,
            "distance": round(self.distance, 4),
        }


def sort_matches(matches: List[VectorMatch]) -> List[VectorMatch]:
    """Order by distance, then chunk index, then document id."""
    return sorted(matches, key=lambda m: (m.distance, m.chunk_index, m.document_id))


def cosine_distances(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """
    Cosine distance between each row of `matrix` and `vector`.

    Rows (or a query) with zero norm get distance 1.0.
    """
    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(vector)
    denom = row_norms * query_norm
    dots = matrix @ vector
    with np.errstate(divide='ignore', invalid='ignore'):
        similarity = np.where(denom > 0, dots / denom, 0.0)
    return 1.0 - similarity


class BaseVectorStore(ABC):
    """Interface shared by the vector store backends."""

    def __init__(self, dimensions: int, tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL):
        self.dimensions = dimensions
        self.tombstone_ttl = tombstone_ttl

    def _check_vector(self, vector: List[float]) -> None:
        if len(vector) != self.dimensions:
            raise InvalidInput(
                f"Vector has {len(vector)} dimensions, store expects {self.dimensions}"
            )

    @abstractmethod
    def upsert(self, chunk: TextChunk, embedding: List[float], *, source: DocumentRef) -> bool:
        """
        Insert or replace one chunk's record.

        Returns:
            False if the document has been deleted and nothing was written
        """
        pass

    @abstractmethod
    def delete_by_document(self, document_id: str) -> int:
        """Remove every chunk of a document and tombstone it. Returns rows removed."""
        pass

    @abstractmethod
    def prune(self, document_id: str, chunk_count: int) -> int:
        """Remove chunks with index >= chunk_count left over from a longer version."""
        pass

    @abstractmethod
    def query(self, vector: List[float], filter: ScopeFilter, k: int) -> List[VectorMatch]:
        """Return up to k nearest records matching the filter."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def count(self, document_id: str) -> int:
        """Number of stored chunks for a document."""
        pass


# =============================================================================
# In-memory backend
# =============================================================================

class InMemoryVectorStore(BaseVectorStore):
    """
    Thread-safe store held in process memory.

    Not persistent. Suitable for tests and single-node development.
    """

    def __init__(
        self,
        dimensions: int,
        tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(dimensions, tombstone_ttl)
        self.clock = clock
        self._lock = threading.RLock()
        # (document_id, chunk_index) -> (vector, chunk, source)
        self._records: Dict[Tuple[str, int], Tuple[np.ndarray, TextChunk, DocumentRef]] = {}
        # document_id -> deletion time
        self._tombstones: Dict[str, float] = {}

    def upsert(self, chunk: TextChunk, embedding: List[float], *, source: DocumentRef) -> bool:
        self._check_vector(embedding)
        vector = np.asarray(embedding, dtype=np.float64)

        with self._lock:
            if source.document_id in self._tombstones:
                logger.info(
                    f"Rejected upsert of chunk {chunk.index} for deleted document {source.document_id}"
                )
                return False
            self._records[(source.document_id, chunk.index)] = (vector, chunk, source)
        return True

    def delete_by_document(self, document_id: str) -> int:
        with self._lock:
            now = self.clock()
            expired = [doc_id for doc_id, at in self._tombstones.items() if at <= now - self.tombstone_ttl]
            for doc_id in expired:
                del self._tombstones[doc_id]
            self._tombstones[document_id] = now
            keys = [key for key in self._records if key[0] == document_id]
            for key in keys:
                del self._records[key]
        logger.info(f"Deleted {len(keys)} chunks for document {document_id}")
        return len(keys)

    def prune(self, document_id: str, chunk_count: int) -> int:
        with self._lock:
            keys = [
                key for key in self._records
                if key[0] == document_id and key[1] >= chunk_count
            ]
            for key in keys:
                del self._records[key]
        return len(keys)

    def query(self, vector: List[float], filter: ScopeFilter, k: int) -> List[VectorMatch]:
        if k <= 0:
            return []
        self._check_vector(vector)

        with self._lock:
            candidates = [
                (vec, chunk, source)
                for vec, chunk, source in self._records.values()
                if filter.matches(source.owner_id, source.conversation_id)
            ]

        if not candidates:
            return []

        matrix = np.vstack([vec for vec, _, _ in candidates])
        distances = cosine_distances(matrix, np.asarray(vector, dtype=np.float64))

        matches = [
            VectorMatch(
                document_id=source.document_id,
                chunk_index=chunk.index,
                text=chunk.text,
                file_name=source.file_name,
                distance=float(distance),
            )
            for (_, chunk, source), distance in zip(candidates, distances)
        ]
        return sort_matches(matches)[:k]

    def is_available(self) -> bool:
        return True

    def count(self, document_id: str) -> int:
        with self._lock:
            return sum(1 for key in self._records if key[0] == document_id)


# =============================================================================
# PostgreSQL + pgvector backend
# =============================================================================

QUERY_SQL = """
    SELECT
        c.document_id,
        c.chunk_index,
        c.text,
        c.file_name,
        c.embedding <=> %s::vector AS distance
    FROM doc_chunks c
    WHERE {where}
    ORDER BY distance ASC, c.chunk_index ASC, c.document_id ASC
    LIMIT %s
"""


class PgVectorStore(BaseVectorStore):
    """
    Store backed by the doc_chunks table.

    Writes for one document are serialised with a transaction-scoped
    advisory lock, so a delete and a concurrent upsert of the same
    document cannot interleave. Query time is bounded by the connection's
    statement_timeout (VECTOR_STORE_TIMEOUT_MS).
    """

    def _lock_document(self, document_id: str) -> None:
        if connection.vendor == 'postgresql':
            with connection.cursor() as cursor:
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", [document_id])

    def upsert(self, chunk: TextChunk, embedding: List[float], *, source: DocumentRef) -> bool:
        from apps.indexing.models import DocumentChunk, DocumentTombstone

        self._check_vector(embedding)
        try:
            with transaction.atomic():
                self._lock_document(source.document_id)
                if DocumentTombstone.objects.filter(document_id=source.document_id).exists():
                    logger.info(
                        f"Rejected upsert of chunk {chunk.index} for deleted document {source.document_id}"
                    )
                    return False
                DocumentChunk.objects.update_or_create(
                    document_id=source.document_id,
                    chunk_index=chunk.index,
                    defaults={
                        'owner_id': source.owner_id,
                        'conversation_id': source.conversation_id or '',
                        'file_name': source.file_name,
                        'start_char': chunk.start_char,
                        'end_char': chunk.end_char,
                        'text': chunk.text,
                        'embedding': embedding,
                    },
                )
            return True
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Vector store write failed: {e}") from e

    def delete_by_document(self, document_id: str) -> int:
        from apps.indexing.models import DocumentChunk, DocumentTombstone

        try:
            with transaction.atomic():
                self._lock_document(document_id)
                cutoff = timezone.now() - timedelta(seconds=self.tombstone_ttl)
                DocumentTombstone.objects.filter(deleted_at__lt=cutoff).delete()
                DocumentTombstone.objects.update_or_create(
                    document_id=document_id,
                    defaults={'deleted_at': timezone.now()},
                )
                deleted, _ = DocumentChunk.objects.filter(document_id=document_id).delete()
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Vector store delete failed: {e}") from e

        logger.info(f"Deleted {deleted} chunks for document {document_id}")
        return deleted

    def prune(self, document_id: str, chunk_count: int) -> int:
        from apps.indexing.models import DocumentChunk

        try:
            with transaction.atomic():
                self._lock_document(document_id)
                deleted, _ = DocumentChunk.objects.filter(
                    document_id=document_id,
                    chunk_index__gte=chunk_count,
                ).delete()
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Vector store prune failed: {e}") from e
        return deleted

    def query(self, vector: List[float], filter: ScopeFilter, k: int) -> List[VectorMatch]:
        if k <= 0:
            return []
        self._check_vector(vector)

        # Convert embedding to PostgreSQL array literal
        embedding_str = '[' + ','.join(str(float(x)) for x in vector) + ']'

        clauses = []
        params = [embedding_str]
        if filter.owner_id:
            clauses.append("c.owner_id = %s")
            params.append(filter.owner_id)
        if filter.conversation_id:
            clauses.append("c.conversation_id = %s")
            params.append(filter.conversation_id)
        params.append(k)

        sql = QUERY_SQL.format(where=" AND ".join(clauses))

        try:
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Vector store query failed: {e}") from e

        return [
            VectorMatch(
                document_id=str(document_id),
                chunk_index=chunk_index,
                text=text,
                file_name=file_name,
                distance=float(distance),
            )
            for document_id, chunk_index, text, file_name, distance in rows
        ]

    def is_available(self) -> bool:
        try:
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1")
            return True
        except (OperationalError, InterfaceError) as e:
            logger.warning(f"Vector store unavailable: {e}")
            return False

    def count(self, document_id: str) -> int:
        from apps.indexing.models import DocumentChunk
        try:
            return DocumentChunk.objects.filter(document_id=document_id).count()
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Vector store count failed: {e}") from e
