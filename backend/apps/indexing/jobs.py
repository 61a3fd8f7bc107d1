"""
Ingestion job records.

A job moves queued -> active -> completed, or back to queued for a retry,
or to failed once it has used up its attempts or hit a fatal error.

An active job is held under a lease. Only the lease holder can settle it,
and a job whose lease stopped being renewed is handed to another worker.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class JobStatus:
    QUEUED = 'queued'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'

    TERMINAL = (COMPLETED, FAILED)


class JobKind:
    INGEST = 'ingest'
    DELETE = 'delete'

    ALL = (INGEST, DELETE)


class QueueMode:
    """How the ingestion queue is running right now."""
    DURABLE = 'durable'
    INLINE = 'inline'


@dataclass
class Job:
    """One unit of ingestion work for a document."""
    document_id: str
    kind: str = JobKind.INGEST
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = JobStatus.QUEUED
    attempts: int = 0
    last_error: Optional[str] = None
    available_at: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    # Claim token held by the worker running the job; never persisted
    lease: Optional[str] = field(default=None, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'document_id': self.document_id,
            'kind': self.kind,
            'payload': self.payload,
            'status': self.status,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'available_at': self.available_at,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Job':
        return cls(
            id=data['id'],
            document_id=data['document_id'],
            kind=data.get('kind', JobKind.INGEST),
            payload=data.get('payload') or {},
            status=data.get('status', JobStatus.QUEUED),
            attempts=int(data.get('attempts', 0)),
            last_error=data.get('last_error'),
            available_at=float(data.get('available_at', 0.0)),
            created_at=float(data.get('created_at', 0.0)),
            updated_at=float(data.get('updated_at', 0.0)),
        )


@dataclass
class EnqueueResult:
    """
    What the producer learns from enqueue().

    In durable mode `status` is 'queued'. In inline mode the job already
    ran, and `status` is its terminal state.
    """
    job_id: str
    mode: str
    status: str
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'jobId': self.job_id,
            'mode': self.mode,
            'status': self.status,
            'attempts': self.attempts,
            'error': self.error,
        }
