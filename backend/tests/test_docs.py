"""
Tests for text extraction, the document endpoints and the status listener.

Endpoint tests that reach the ORM run against a documents table created
in the in-memory sqlite database; the ingestion queue is mocked.
"""
import fitz
import pytest
from unittest.mock import MagicMock, patch
from django.db import connection
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import Client, override_settings

from apps.docs.listeners import update_document_status
from apps.docs.models import Document, DocumentStatus
from apps.docs.views import get_extension, normalize_content_type
from apps.indexing.extractor import ExtractionError, extract_text
from apps.indexing.errors import FatalError
from apps.indexing.chunker import TextChunk
from apps.indexing.jobs import EnqueueResult, Job, JobKind, JobStatus, QueueMode
from apps.indexing.services import get_vector_store
from apps.indexing.vectorstore import DocumentRef


# ============================================================================
# Extraction Tests
# ============================================================================

class TestExtractText:
    """Tests for extract_text()."""

    def test_plain_text(self):
        assert extract_text(b"hello world", "notes.txt") == "hello world"

    def test_markdown_kept_as_is(self):
        assert extract_text(b"# Title\n\n- item", "README.md") == "# Title\n\n- item"

    def test_invalid_utf8_is_dropped(self):
        assert extract_text(b"caf\xff\xfe!", "notes.txt") == "caf!"

    def test_content_type_fallback(self):
        assert extract_text(b"plain", "upload", content_type="text/plain") == "plain"

    def test_unsupported_format(self):
        with pytest.raises(ExtractionError):
            extract_text(b"MZ", "setup.exe")

    def test_extraction_errors_are_fatal(self):
        assert issubclass(ExtractionError, FatalError)

    def test_pdf(self):
        doc = fitz.open()
        page = doc.new_page()
        page.insert_text((72, 72), "Quarterly revenue grew")
        data = doc.tobytes()
        doc.close()

        assert "Quarterly revenue grew" in extract_text(data, "report.pdf")


# ============================================================================
# Upload Validation Tests
# ============================================================================

class TestUploadValidation:
    """Tests for request validation in POST /api/docs/upload."""

    def post(self, **data):
        return Client().post('/api/docs/upload', data=data, headers={'X-User-Id': 'u1'})

    def test_requires_identity(self):
        response = Client().post('/api/docs/upload', data={})
        assert response.status_code == 401

    def test_missing_file(self):
        response = self.post()
        assert response.status_code == 400
        assert response.json()['code'] == 'MISSING_FILE'

    def test_rejects_extension(self):
        response = self.post(file=SimpleUploadedFile("tool.exe", b"MZ", content_type="application/octet-stream"))
        assert response.status_code == 400
        assert response.json()['code'] == 'INVALID_FILE_TYPE'

    @override_settings(MAX_UPLOAD_SIZE=10)
    def test_rejects_large_file(self):
        response = self.post(file=SimpleUploadedFile("big.txt", b"x" * 50, content_type="text/plain"))
        assert response.status_code == 400
        assert response.json()['code'] == 'FILE_TOO_LARGE'

    def test_get_not_allowed(self):
        assert Client().get('/api/docs/upload', headers={'X-User-Id': 'u1'}).status_code == 405


class TestContentTypeHelpers:
    def test_extension_lowercased(self):
        assert get_extension("Report.PDF") == ".pdf"

    @pytest.mark.parametrize("content_type, filename, expected", [
        ("application/octet-stream", "a.pdf", "application/pdf"),
        ("", "a.md", "text/markdown"),
        ("text/plain", "a.md", "text/plain"),
        ("application/octet-stream", "a.bin", "application/octet-stream"),
    ])
    def test_normalize_content_type(self, content_type, filename, expected):
        assert normalize_content_type(content_type, filename) == expected


@pytest.fixture
def documents_table():
    """A real documents table in the in-memory sqlite database."""
    with connection.schema_editor() as editor:
        editor.create_model(Document)
    yield
    with connection.schema_editor() as editor:
        editor.delete_model(Document)


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.enqueue.return_value = EnqueueResult(job_id="job-1", mode=QueueMode.DURABLE, status=JobStatus.QUEUED)
    with patch('apps.docs.views.get_ingestion_queue', return_value=queue):
        yield queue


def upload(content=b"hello world", conversation_id=None, user="u1", filename="notes.txt"):
    data = {'file': SimpleUploadedFile(filename, content, content_type="text/plain")}
    if conversation_id:
        data['conversationId'] = conversation_id
    return Client().post('/api/docs/upload', data=data, headers={'X-User-Id': user})


def make_document(owner_id="u1", conversation_id="", content_hash="abc", **fields):
    return Document.objects.create(
        owner_id=owner_id,
        conversation_id=conversation_id,
        filename=fields.pop('filename', "notes.txt"),
        content_type="text/plain",
        size_bytes=11,
        content_hash=content_hash,
        text="hello world",
        **fields,
    )


# ============================================================================
# Upload Tests
# ============================================================================

@pytest.mark.usefixtures("documents_table")
class TestUpload:
    """Tests for document creation and duplicate handling in POST /api/docs/upload."""

    def test_creates_document_and_queues_ingestion(self, queue):
        response = upload(conversation_id="conv-A")

        assert response.status_code == 201
        data = response.json()
        assert data['jobId'] == "job-1"
        assert data['mode'] == QueueMode.DURABLE
        assert data['status'] == DocumentStatus.QUEUED

        document = Document.objects.get(id=data['documentId'])
        assert document.owner_id == "u1"
        assert document.conversation_id == "conv-A"
        queue.enqueue.assert_called_once_with(
            data['documentId'],
            kind=JobKind.INGEST,
            payload={
                'owner_id': "u1",
                'conversation_id': "conv-A",
                'file_name': "notes.txt",
                'text': "hello world",
            },
        )

    def test_same_content_in_another_conversation_is_a_new_document(self, queue):
        first = upload(conversation_id="conv-A")
        second = upload(conversation_id="conv-B")

        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json()['documentId'] != second.json()['documentId']
        conversations = sorted(Document.objects.values_list('conversation_id', flat=True))
        assert conversations == ["conv-A", "conv-B"]
        assert queue.enqueue.call_count == 2

    def test_duplicate_in_same_conversation_returns_existing(self, queue):
        first = upload(conversation_id="conv-A")
        second = upload(conversation_id="conv-A", filename="copy.txt")

        assert second.status_code == 200
        data = second.json()
        assert data['duplicate'] is True
        assert data['documentId'] == first.json()['documentId']
        assert 'jobId' not in data
        assert queue.enqueue.call_count == 1
        assert Document.objects.count() == 1

    def test_same_content_from_another_owner_is_a_new_document(self, queue):
        upload(user="u1")
        response = upload(user="u2")

        assert response.status_code == 201
        assert Document.objects.filter(owner_id="u2").count() == 1

    def test_reupload_of_failed_document_queues_it_again(self, queue):
        first = upload()
        document_id = first.json()['documentId']
        Document.objects.filter(id=document_id).update(status=DocumentStatus.FAILED, error_message="quota")

        response = upload()

        assert response.status_code == 200
        data = response.json()
        assert data['duplicate'] is True
        assert data['documentId'] == document_id
        assert data['jobId'] == "job-1"
        assert data['status'] == DocumentStatus.QUEUED
        assert queue.enqueue.call_count == 2
        assert queue.enqueue.call_args.args == (document_id,)
        assert queue.enqueue.call_args.kwargs['kind'] == JobKind.INGEST

        document = Document.objects.get(id=document_id)
        assert document.status == DocumentStatus.QUEUED
        assert document.error_message is None

    def test_empty_document_is_rejected(self, queue):
        response = upload(content=b"   \n  ")

        assert response.status_code == 422
        assert response.json()['code'] == 'EMPTY_DOCUMENT'
        queue.enqueue.assert_not_called()


# ============================================================================
# List / Detail / Delete Tests
# ============================================================================

@pytest.mark.usefixtures("documents_table")
class TestDocumentEndpoints:
    """Tests for listing, reading and deleting documents."""

    def get(self, url, user="u1"):
        return Client().get(url, headers={'X-User-Id': user})

    def test_list_returns_only_own_documents(self):
        make_document(content_hash="a")
        make_document(conversation_id="conv-A", content_hash="b")
        make_document(owner_id="u2", content_hash="c")

        everything = self.get('/api/docs/').json()['documents']
        in_conversation = self.get('/api/docs/?conversationId=conv-A').json()['documents']

        assert len(everything) == 2
        assert [doc['conversationId'] for doc in in_conversation] == ["conv-A"]

    def test_other_users_document_is_not_found(self):
        document = make_document(owner_id="u2")

        response = self.get(f'/api/docs/{document.id}')

        assert response.status_code == 404

    def test_detail_reports_chunk_count(self):
        document = make_document()
        store = get_vector_store()
        source = DocumentRef(document_id=str(document.id), owner_id="u1", file_name="notes.txt")
        for index in range(2):
            chunk = TextChunk(index=index, text="hello", start_char=0, end_char=5)
            store.upsert(chunk, [1.0] * store.dimensions, source=source)

        data = self.get(f'/api/docs/{document.id}').json()

        assert data['id'] == str(document.id)
        assert data['chunkCount'] == 2

    def test_delete_queues_chunk_removal(self, queue):
        document = make_document()

        response = Client().post(f'/api/docs/{document.id}/delete', headers={'X-User-Id': "u1"})

        assert response.status_code == 200
        data = response.json()
        assert data['deleted'] is True
        assert data['jobId'] == "job-1"
        assert not Document.objects.filter(id=document.id).exists()
        queue.enqueue.assert_called_once_with(
            str(document.id), kind=JobKind.DELETE, payload={'owner_id': "u1"}
        )

    def test_cannot_delete_other_users_document(self, queue):
        document = make_document(owner_id="u2")

        response = Client().post(f'/api/docs/{document.id}/delete', headers={'X-User-Id': "u1"})

        assert response.status_code == 404
        assert Document.objects.filter(id=document.id).exists()
        queue.enqueue.assert_not_called()


# ============================================================================
# Status Listener Tests
# ============================================================================

class TestUpdateDocumentStatus:
    """Tests for the queue listener mirroring job state onto documents."""

    @patch('apps.docs.listeners.Document')
    def test_completed_job_marks_indexed(self, mock_document):
        job = Job(document_id="doc-1", status=JobStatus.COMPLETED)

        update_document_status(job, QueueMode.DURABLE)

        mock_document.objects.filter.assert_called_once_with(id="doc-1")
        mock_document.objects.filter.return_value.update.assert_called_once_with(
            status=DocumentStatus.INDEXED, error_message=None
        )

    @patch('apps.docs.listeners.Document')
    def test_failed_job_records_error(self, mock_document):
        job = Job(document_id="doc-1", status=JobStatus.FAILED, attempts=3, last_error="quota")

        update_document_status(job, QueueMode.INLINE)

        mock_document.objects.filter.return_value.update.assert_called_once_with(
            status=DocumentStatus.FAILED, error_message="quota"
        )

    @patch('apps.docs.listeners.Document')
    def test_delete_jobs_are_ignored(self, mock_document):
        update_document_status(Job(document_id="doc-1", kind=JobKind.DELETE), QueueMode.DURABLE)
        mock_document.objects.filter.assert_not_called()
