"""
WebSocket Ingestion Event Schema

Event contract for real-time ingestion updates.

Events are sent through the Channels layer to the owner's group and
forwarded to every WebSocket connection that user has open.
"""
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional
import json


class EventType(str, Enum):
    """Types of WebSocket events."""
    INGEST_QUEUED = "ingest_queued"
    INGEST_PROGRESS = "ingest_progress"
    INGEST_RETRYING = "ingest_retrying"
    INGEST_COMPLETE = "ingest_complete"
    INGEST_FAILED = "ingest_failed"


class ProgressStage(str, Enum):
    """
    Stages of the ingestion pipeline.

    Order: QUEUED -> CHUNK -> EMBED -> STORE -> COMPLETE
    Or FAILED at any point. Delete jobs report DELETE.
    """
    QUEUED = "QUEUED"
    CHUNK = "CHUNK"
    EMBED = "EMBED"
    STORE = "STORE"
    DELETE = "DELETE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class IngestionEvent:
    """
    Event sent to clients when a document's ingestion changes state.

    Schema:
    {
        "type": "ingest_progress",
        "documentId": "uuid-string",
        "jobId": "hex-string",
        "userId": "user-id",
        "stage": "QUEUED|CHUNK|EMBED|STORE|DELETE|COMPLETE|FAILED",
        "progress": 0-100,
        "mode": "durable|inline",
        "attempts": 0,
        "message": "optional human-readable message"
    }
    """
    type: str
    documentId: str
    jobId: str
    userId: str
    stage: str
    progress: int
    mode: Optional[str] = None
    attempts: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def queued(cls, document_id: str, job_id: str, user_id: str, mode: str) -> 'IngestionEvent':
        return cls(
            type=EventType.INGEST_QUEUED.value,
            documentId=document_id,
            jobId=job_id,
            userId=user_id,
            stage=ProgressStage.QUEUED.value,
            progress=0,
            mode=mode,
        )

    @classmethod
    def progress(
        cls,
        document_id: str,
        job_id: str,
        user_id: str,
        stage: str,
        progress: int,
        message: Optional[str] = None
    ) -> 'IngestionEvent':
        """Create a progress event."""
        return cls(
            type=EventType.INGEST_PROGRESS.value,
            documentId=document_id,
            jobId=job_id,
            userId=user_id,
            stage=stage,
            progress=progress,
            message=message
        )

    @classmethod
    def retrying(
        cls,
        document_id: str,
        job_id: str,
        user_id: str,
        mode: str,
        attempts: int,
        error_message: str
    ) -> 'IngestionEvent':
        return cls(
            type=EventType.INGEST_RETRYING.value,
            documentId=document_id,
            jobId=job_id,
            userId=user_id,
            stage=ProgressStage.QUEUED.value,
            progress=0,
            mode=mode,
            attempts=attempts,
            message=error_message
        )

    @classmethod
    def complete(
        cls,
        document_id: str,
        job_id: str,
        user_id: str,
        mode: str,
        attempts: int = 0
    ) -> 'IngestionEvent':
        """Create a completion event."""
        return cls(
            type=EventType.INGEST_COMPLETE.value,
            documentId=document_id,
            jobId=job_id,
            userId=user_id,
            stage=ProgressStage.COMPLETE.value,
            progress=100,
            mode=mode,
            attempts=attempts,
            message="Ingestion complete"
        )

    @classmethod
    def failed(
        cls,
        document_id: str,
        job_id: str,
        user_id: str,
        mode: str,
        attempts: int,
        error_message: str
    ) -> 'IngestionEvent':
        """Create a failure event."""
        return cls(
            type=EventType.INGEST_FAILED.value,
            documentId=document_id,
            jobId=job_id,
            userId=user_id,
            stage=ProgressStage.FAILED.value,
            progress=0,
            mode=mode,
            attempts=attempts,
            message=error_message
        )


def user_group_name(user_id: str) -> str:
    """Channels group that receives a user's ingestion events."""
    return f"user_{user_id}"
