"""
Vector store tables: document chunks with embeddings, and deletion tombstones.
"""
import uuid

from django.conf import settings
from django.db import models
from pgvector.django import VectorField

# Fixed at migration time; switching embedding models needs a new migration
EMBEDDING_DIMENSIONS = getattr(settings, 'EMBEDDING_DIMENSIONS', 768)


class DocumentChunk(models.Model):
    """
    A text chunk from a document with its embedding vector.

    Rows are owned by the vector store adapter. Ownership and conversation
    scope are copied from the document so similarity queries can filter
    without joining back to the documents table.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    document_id = models.CharField(max_length=64, db_index=True)

    owner_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Identity of the uploading user"
    )
    conversation_id = models.CharField(
        max_length=255,
        blank=True,
        default='',
        db_index=True,
        help_text="Conversation the document was uploaded into (empty if global)"
    )
    file_name = models.CharField(max_length=255)

    # Chunk ordering (0-indexed)
    chunk_index = models.PositiveIntegerField(
        help_text="Index of this chunk within the document (0-based)"
    )
    start_char = models.PositiveIntegerField(default=0)
    end_char = models.PositiveIntegerField(default=0)

    text = models.TextField(
        help_text="The text content of this chunk"
    )

    embedding = VectorField(dimensions=EMBEDDING_DIMENSIONS)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'doc_chunks'
        ordering = ['document_id', 'chunk_index']
        constraints = [
            models.UniqueConstraint(
                fields=['document_id', 'chunk_index'],
                name='unique_document_chunk'
            )
        ]

    def __str__(self):
        preview = self.text[:50] + '...' if len(self.text) > 50 else self.text
        return f"Chunk {self.chunk_index} of {self.file_name}: {preview}"


class DocumentTombstone(models.Model):
    """
    Marks a deleted document.

    Upserts for a tombstoned document are rejected, so an ingestion job
    that was already running when the document was deleted cannot bring
    its chunks back. Rows older than VECTOR_STORE_TOMBSTONE_TTL are purged
    by later deletes.
    """
    document_id = models.CharField(max_length=64, primary_key=True)
    deleted_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = 'doc_chunk_tombstones'

    def __str__(self):
        return f"Tombstone for {self.document_id}"
