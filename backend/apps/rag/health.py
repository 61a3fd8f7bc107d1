"""
Health check endpoints for Kubernetes/Docker probes.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

from apps.indexing.embedder import get_embedder
from apps.indexing.jobs import QueueMode
from apps.indexing.services import get_ingestion_queue, get_vector_store

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness probe endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_vector_store() -> tuple[str, bool]:
    """Check the vector store (critical)."""
    try:
        if get_vector_store().is_available():
            return 'ok', True
        return 'unavailable', False
    except Exception as e:
        logger.error(f"Vector store health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_ingestion_queue() -> tuple[str, str]:
    """
    Report the ingestion queue mode.

    A missing or unreachable backend does not block readiness: uploads
    are ingested inline, without durability.
    """
    try:
        queue = get_ingestion_queue()
    except Exception as e:
        logger.error(f"Ingestion queue health check failed: {e}")
        return f'error: {str(e)[:50]}', QueueMode.INLINE

    if queue.backend is None:
        return 'inline (no backend configured)', QueueMode.INLINE
    if not queue.backend.ping():
        return 'degraded: backend unreachable, jobs run inline', QueueMode.INLINE
    if queue.mode == QueueMode.INLINE:
        return 'recovering: backend reachable, last enqueue ran inline', QueueMode.INLINE
    return 'ok', QueueMode.DURABLE


def check_embedder() -> tuple[str, bool]:
    """
    Check the embedding provider (optional, degrades gracefully).

    Without embeddings chat still works, just without document context.
    """
    try:
        if get_embedder().ping():
            return 'ok', True
        return 'degraded: provider unreachable', True
    except Exception as e:
        logger.warning(f"Embedder health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness probe endpoint.

    Returns 200 only if all critical dependencies are reachable.
    Used to determine if the pod should receive traffic.
    """
    checks = {}
    all_ok = True

    status, ok = check_vector_store()
    checks['vector_store'] = status
    if not ok:
        all_ok = False

    status, mode = check_ingestion_queue()
    checks['ingestion_queue'] = status

    status, _ = check_embedder()
    checks['embedder'] = status

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'queueMode': mode,
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
