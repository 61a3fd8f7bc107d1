"""
Ingestion pipeline - turns a document into stored, embedded chunks.

Executes one job of the ingestion queue:
1. Normalizes whitespace and chunks the text
2. Generates an embedding per chunk, renewing the job lease as it goes
3. Upserts each chunk into the vector store
4. Prunes chunks left over from a previous, longer version

Delete jobs remove every chunk of the document and tombstone it.
"""
import logging
from typing import Callable, Optional

from apps.indexing.chunker import ChunkingConfig, chunk_text, normalize_whitespace
from apps.indexing.embedder import BaseEmbedder
from apps.indexing.errors import InvalidInput
from apps.indexing.events import ProgressStage
from apps.indexing.jobs import Job, JobKind
from apps.indexing.vectorstore import BaseVectorStore, DocumentRef

logger = logging.getLogger(__name__)

# progress(job, stage, percent, message)
ProgressCallback = Callable[[Job, str, int, Optional[str]], None]


def document_ref_from_payload(job: Job) -> DocumentRef:
    """Validate an ingest payload and build the provenance stored with each chunk."""
    payload = job.payload
    owner_id = payload.get('owner_id')
    if not owner_id:
        raise InvalidInput(f"Job {job.id} has no owner_id")
    return DocumentRef(
        document_id=job.document_id,
        owner_id=str(owner_id),
        file_name=payload.get('file_name') or job.document_id,
        conversation_id=str(payload.get('conversation_id') or ''),
    )


class IngestionPipeline:
    """
    Job executor wiring chunker, embedder and vector store together.

    Raises whatever its collaborators raise; the queue decides between
    retrying and failing from the exception type.
    """

    def __init__(
        self,
        embedder: BaseEmbedder,
        store: BaseVectorStore,
        chunking: Optional[ChunkingConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
        heartbeat: Optional[Callable[[Job], None]] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.chunking = chunking
        self.on_progress = on_progress
        # Renews the claim on the running job; raises LeaseLost once it is gone
        self.heartbeat = heartbeat

    def __call__(self, job: Job) -> int:
        if job.kind == JobKind.INGEST:
            return self.ingest(job)
        elif job.kind == JobKind.DELETE:
            return self.delete(job)
        else:
            raise InvalidInput(f"Unknown job kind: {job.kind}")

    def _progress(self, job: Job, stage: str, percent: int, message: Optional[str] = None):
        if self.on_progress:
            self.on_progress(job, stage, percent, message)

    def _heartbeat(self, job: Job):
        if self.heartbeat:
            self.heartbeat(job)

    def ingest(self, job: Job) -> int:
        """
        Chunk, embed and store one document.

        Returns:
            Number of chunks stored (0 if the document was deleted meanwhile)

        Raises:
            InvalidInput: Missing owner or text, or text empty after normalization
        """
        source = document_ref_from_payload(job)
        raw_text = job.payload.get('text')
        if not isinstance(raw_text, str):
            raise InvalidInput(f"Job {job.id} has no document text")

        text = normalize_whitespace(raw_text)
        config = self.chunking or ChunkingConfig.for_length(len(text))

        self._progress(job, ProgressStage.CHUNK.value, 10)
        chunks = chunk_text(text, config, document_id=source.document_id)

        for chunk in chunks[:3]:
            preview = chunk.text[:100].replace('\n', ' ')
            logger.debug(f"  Chunk {chunk.index}: {preview}...")

        self._progress(job, ProgressStage.EMBED.value, 20)
        total = len(chunks)

        def embedded(done: int, count: int):
            self._heartbeat(job)
            # Progress 20% to 80%
            self._progress(job, ProgressStage.EMBED.value, 20 + int(done / count * 60))

        embeddings = self.embedder.embed_many([chunk.text for chunk in chunks], on_progress=embedded)

        self._progress(job, ProgressStage.STORE.value, 85)
        for i, (chunk, embedding) in enumerate(zip(chunks, embeddings)):
            if not self.store.upsert(chunk, embedding, source=source):
                logger.info(
                    f"Document {source.document_id} was deleted during ingestion, "
                    f"stopping after {i} chunks"
                )
                return 0

        self._heartbeat(job)
        self._progress(job, ProgressStage.STORE.value, 98)
        pruned = self.store.prune(source.document_id, total)
        if pruned:
            logger.info(f"Pruned {pruned} stale chunks for document {source.document_id}")

        logger.info(
            f"Stored {total} chunks for {source.file_name} "
            f"(document {source.document_id}, owner {source.owner_id})"
        )
        return total

    def delete(self, job: Job) -> int:
        """Remove a document's chunks from the vector store."""
        self._progress(job, ProgressStage.DELETE.value, 50)
        removed = self.store.delete_by_document(job.document_id)
        logger.info(f"Removed {removed} chunks for deleted document {job.document_id}")
        return removed
