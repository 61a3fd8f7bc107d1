"""
Ingestion queue listener keeping Document.status in step with its jobs.
"""
import logging

from django.core.exceptions import ValidationError

from apps.indexing.jobs import Job, JobKind, JobStatus
from .models import Document, DocumentStatus

logger = logging.getLogger(__name__)

JOB_TO_DOCUMENT_STATUS = {
    JobStatus.QUEUED: DocumentStatus.QUEUED,
    JobStatus.ACTIVE: DocumentStatus.INDEXING,
    JobStatus.COMPLETED: DocumentStatus.INDEXED,
    JobStatus.FAILED: DocumentStatus.FAILED,
}


def update_document_status(job: Job, mode: str) -> None:
    """Mirror an ingest job's state onto its Document row."""
    if job.kind != JobKind.INGEST:
        return

    status = JOB_TO_DOCUMENT_STATUS.get(job.status)
    if status is None:
        return

    try:
        updated = Document.objects.filter(id=job.document_id).update(
            status=status,
            error_message=job.last_error if job.status == JobStatus.FAILED else None,
        )
    except ValidationError:
        logger.warning(f"Job {job.id} references invalid document id {job.document_id}")
        return

    if not updated:
        logger.debug(f"Document {job.document_id} no longer exists, status {status} dropped")
