"""
Document model.

A Document is the extracted text of one uploaded file. Its chunks and
embeddings live in the vector store (apps.indexing); this table tracks
ownership, scope and ingestion status.
"""
import uuid
from django.db import models


class DocumentStatus(models.TextChoices):
    """Status of a document in the ingestion pipeline."""
    QUEUED = 'QUEUED', 'Queued for ingestion'
    INDEXING = 'INDEXING', 'Currently ingesting'
    INDEXED = 'INDEXED', 'Successfully ingested'
    FAILED = 'FAILED', 'Ingestion failed'


class Document(models.Model):
    """
    A document uploaded by a user for RAG retrieval.

    Immutable once ingested, apart from status updates and deletion.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    owner_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="User ID from the authentication gateway"
    )
    conversation_id = models.CharField(
        max_length=255,
        blank=True,
        default='',
        db_index=True,
        help_text="Conversation the document belongs to (empty if global)"
    )

    filename = models.CharField(
        max_length=255,
        help_text="Original filename"
    )
    content_type = models.CharField(
        max_length=100,
        help_text="MIME type of the file"
    )
    size_bytes = models.PositiveIntegerField(
        help_text="File size in bytes"
    )
    content_hash = models.CharField(
        max_length=64,
        help_text="SHA-256 of the file content, for duplicate detection"
    )

    text = models.TextField(
        help_text="Extracted text"
    )

    status = models.CharField(
        max_length=20,
        choices=DocumentStatus.choices,
        default=DocumentStatus.QUEUED,
        db_index=True,
        help_text="Current status in the ingestion pipeline"
    )
    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Last ingestion error, if any"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'documents'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner_id', 'created_at'], name='documents_owner_i_7c1f2a_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['owner_id', 'conversation_id', 'content_hash'],
                name='unique_owner_conversation_content_hash'
            )
        ]

    def __str__(self):
        return f"{self.filename} ({self.status})"

    def to_dict(self) -> dict:
        return {
            'id': str(self.id),
            'filename': self.filename,
            'contentType': self.content_type,
            'sizeBytes': self.size_bytes,
            'conversationId': self.conversation_id or None,
            'status': self.status,
            'errorMessage': self.error_message,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
        }
