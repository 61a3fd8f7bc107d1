"""
Process-wide service handles for ingestion and retrieval.

Each handle is built from settings on first use and cached. Components
receive these handles as constructor arguments; only entry points (views,
the worker command, health checks) call the getters here.

Configure with:
- VECTOR_STORE_BACKEND: pgvector (default) | memory
- INGESTION_QUEUE_BACKEND: redis (default) | local | inline
"""
import logging
import threading
from typing import Optional

from django.conf import settings
from django.utils.module_loading import import_string

from apps.indexing.embedder import get_embedder
from apps.indexing.errors import InvalidInput
from apps.indexing.jobs import Job
from apps.indexing.pipeline import IngestionPipeline
from apps.indexing.publisher import publish_progress
from apps.indexing.queue import IngestionQueue, JobBackend, LocalJobBackend, RedisJobBackend
from apps.indexing.vectorstore import (
    DEFAULT_TOMBSTONE_TTL,
    BaseVectorStore,
    InMemoryVectorStore,
    PgVectorStore,
)

logger = logging.getLogger(__name__)

DEFAULT_JOB_LISTENERS = [
    'apps.indexing.publisher.publish_job_event',
    'apps.docs.listeners.update_document_status',
]

_lock = threading.Lock()
_vector_store: Optional[BaseVectorStore] = None
_job_backend: Optional[JobBackend] = None
_job_backend_built = False
_ingestion_queue: Optional[IngestionQueue] = None
_local_worker = None


def get_vector_store() -> BaseVectorStore:
    """Get the configured vector store (cached singleton)."""
    global _vector_store

    with _lock:
        if _vector_store is None:
            backend = getattr(settings, 'VECTOR_STORE_BACKEND', 'pgvector').lower()
            dimensions = getattr(settings, 'EMBEDDING_DIMENSIONS', 768)
            tombstone_ttl = getattr(settings, 'VECTOR_STORE_TOMBSTONE_TTL', DEFAULT_TOMBSTONE_TTL)
            if backend == 'memory':
                _vector_store = InMemoryVectorStore(dimensions, tombstone_ttl=tombstone_ttl)
            elif backend == 'pgvector':
                _vector_store = PgVectorStore(dimensions, tombstone_ttl=tombstone_ttl)
            else:
                raise InvalidInput(f"Unknown vector store backend: {backend}")
            logger.info(f"Vector store: {backend} ({dimensions} dims)")
        return _vector_store


def get_job_backend() -> Optional[JobBackend]:
    """
    Get the configured job backend (cached singleton).

    Returns None when INGESTION_QUEUE_BACKEND is 'inline'.
    """
    global _job_backend, _job_backend_built

    with _lock:
        if not _job_backend_built:
            kind = getattr(settings, 'INGESTION_QUEUE_BACKEND', 'redis').lower()
            retention = getattr(settings, 'INGESTION_FAILED_RETENTION', 50)
            if kind == 'redis':
                _job_backend = RedisJobBackend.from_url(
                    settings.REDIS_URL,
                    connect_timeout=getattr(settings, 'QUEUE_CONNECT_TIMEOUT', 2.0),
                    failed_retention=retention,
                    failed_ttl=getattr(settings, 'INGESTION_FAILED_TTL', 86400),
                )
            elif kind == 'local':
                _job_backend = LocalJobBackend(failed_retention=retention)
            elif kind == 'inline':
                _job_backend = None
            else:
                raise InvalidInput(f"Unknown ingestion queue backend: {kind}")
            _job_backend_built = True
            logger.info(f"Ingestion queue backend: {kind}")
        return _job_backend


def report_progress(job: Job, stage: str, percent: int, message: Optional[str] = None) -> None:
    """Pipeline progress callback pushing events to the document owner."""
    owner_id = job.payload.get('owner_id')
    if owner_id:
        publish_progress(
            document_id=job.document_id,
            job_id=job.id,
            user_id=str(owner_id),
            stage=stage,
            progress=percent,
            message=message,
        )


def get_ingestion_queue() -> IngestionQueue:
    """
    Get the ingestion queue (cached singleton).

    With the local backend an in-process worker pool is started, since no
    other process can see its jobs.
    """
    global _ingestion_queue, _local_worker

    if _ingestion_queue is not None:
        return _ingestion_queue

    backend = get_job_backend()
    pipeline = IngestionPipeline(
        embedder=get_embedder(),
        store=get_vector_store(),
        on_progress=report_progress,
    )
    listener_paths = getattr(settings, 'INGESTION_JOB_LISTENERS', DEFAULT_JOB_LISTENERS)

    with _lock:
        if _ingestion_queue is None:
            queue = IngestionQueue(
                backend=backend,
                executor=pipeline,
                listeners=[import_string(path) for path in listener_paths],
                failed_retention=getattr(settings, 'INGESTION_FAILED_RETENTION', 50),
            )
            pipeline.heartbeat = queue.heartbeat
            if isinstance(backend, LocalJobBackend) and getattr(settings, 'INGESTION_START_LOCAL_WORKER', True):
                from apps.indexing.worker import IndexingWorker
                _local_worker = IndexingWorker(queue, heartbeat_file=None)
                _local_worker.start()
            _ingestion_queue = queue

    return _ingestion_queue


def reset_services():
    """Drop every cached handle (for testing)."""
    global _vector_store, _job_backend, _job_backend_built, _ingestion_queue, _local_worker

    if _local_worker is not None:
        _local_worker.stop(timeout=5)
    _vector_store = None
    _job_backend = None
    _job_backend_built = False
    _ingestion_queue = None
    _local_worker = None
