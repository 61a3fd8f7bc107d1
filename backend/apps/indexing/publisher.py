"""
Event publisher for ingestion progress.

Publishes events to Django Channels layer for broadcast to WebSocket clients.
"""
import logging
from typing import Optional
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from apps.indexing.events import IngestionEvent, user_group_name
from apps.indexing.jobs import Job, JobStatus

logger = logging.getLogger(__name__)


def publish_progress(
    document_id: str,
    job_id: str,
    user_id: str,
    stage: str,
    progress: int,
    message: Optional[str] = None
) -> None:
    """
    Publish a progress event to the user's WebSocket channel.

    Args:
        document_id: ID of the document
        job_id: ID of the ingestion job
        user_id: Owner of the document
        stage: Current processing stage
        progress: Progress percentage (0-100)
        message: Optional human-readable message
    """
    event = IngestionEvent.progress(
        document_id=document_id,
        job_id=job_id,
        user_id=user_id,
        stage=stage,
        progress=progress,
        message=message
    )
    send_to_user(user_id, event)


def publish_job_event(job: Job, mode: str) -> None:
    """
    Queue listener translating job transitions into WebSocket events.

    Active transitions are skipped; the pipeline reports its own progress
    while a job runs.
    """
    user_id = job.payload.get('owner_id')
    if not user_id:
        return

    document_id = job.document_id
    if job.status == JobStatus.QUEUED and job.attempts == 0:
        event = IngestionEvent.queued(document_id, job.id, user_id, mode)
    elif job.status == JobStatus.QUEUED:
        event = IngestionEvent.retrying(
            document_id, job.id, user_id, mode, job.attempts, job.last_error or ''
        )
    elif job.status == JobStatus.COMPLETED:
        event = IngestionEvent.complete(document_id, job.id, user_id, mode, job.attempts)
    elif job.status == JobStatus.FAILED:
        event = IngestionEvent.failed(
            document_id, job.id, user_id, mode, job.attempts, job.last_error or 'Ingestion failed'
        )
    else:
        return

    send_to_user(user_id, event)


def send_to_user(user_id: str, event: IngestionEvent) -> None:
    """
    Send an event to all WebSocket connections for a user.

    Uses Django Channels group send.
    """
    try:
        channel_layer = get_channel_layer()

        if channel_layer is None:
            logger.warning("Channel layer not available, cannot send event")
            return

        group_name = user_group_name(user_id)

        async_to_sync(channel_layer.group_send)(
            group_name,
            {
                "type": "ingestion.event",
                "data": event.to_dict()
            }
        )

        logger.debug(f"Published {event.type} to {group_name}: stage={event.stage}, progress={event.progress}")

    except Exception as e:
        # Don't fail the job if event publishing fails
        logger.warning(f"Failed to publish event: {e}")
