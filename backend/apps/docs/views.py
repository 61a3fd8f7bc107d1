"""
Document upload and management views.

Provides endpoints for:
- POST /api/docs/upload - Upload a new document and queue it for ingestion
- GET /api/docs - List user's documents
- GET /api/docs/<id> - Get document details
- POST /api/docs/<id>/delete - Delete a document and its chunks
"""
import hashlib
import logging
from pathlib import Path
from django.conf import settings
from django.db import transaction, IntegrityError
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt

from apps.authn.middleware import auth_required
from apps.indexing.extractor import extract_text, ExtractionError
from apps.indexing.errors import StoreUnavailable
from apps.indexing.jobs import EnqueueResult, JobKind
from apps.indexing.services import get_ingestion_queue, get_vector_store
from .models import Document, DocumentStatus

logger = logging.getLogger(__name__)

EXT_TO_MIME = {
    '.pdf': 'application/pdf',
    '.txt': 'text/plain',
    '.md': 'text/markdown',
    '.markdown': 'text/markdown',
}


def get_extension(filename: str) -> str:
    """Extract file extension from filename."""
    return Path(filename).suffix.lower()


def validate_content_type(content_type: str) -> bool:
    """Check if content type is allowed."""
    return content_type in settings.ALLOWED_CONTENT_TYPES


def validate_extension(filename: str) -> bool:
    """Check if file extension is allowed."""
    return get_extension(filename) in settings.ALLOWED_EXTENSIONS


def normalize_content_type(content_type: str, filename: str) -> str:
    """
    Normalize content type, using file extension as fallback.

    Some browsers/clients send incorrect MIME types, so we also check extension.
    """
    if content_type in ('application/octet-stream', 'binary/octet-stream', ''):
        return EXT_TO_MIME.get(get_extension(filename), content_type)
    return content_type


def enqueue_ingest(document: Document) -> EnqueueResult:
    """Queue the ingest job for a document and pick up any status it already reached."""
    result = get_ingestion_queue().enqueue(
        str(document.id),
        kind=JobKind.INGEST,
        payload={
            'owner_id': document.owner_id,
            'conversation_id': document.conversation_id,
            'file_name': document.filename,
            'text': document.text,
        },
    )
    document.refresh_from_db(fields=['status', 'error_message'])
    return result


def find_duplicate(owner_id: str, conversation_id: str, content_hash: str):
    """An earlier upload of the same content by the same owner into the same conversation."""
    return Document.objects.filter(
        owner_id=owner_id,
        conversation_id=conversation_id,
        content_hash=content_hash,
    ).first()


def duplicate_response(document: Document) -> JsonResponse:
    """
    200 response returning an existing document for an identical re-upload.

    A document whose ingestion failed is queued again, so re-uploading is
    how a user retries it.
    """
    body = {
        'documentId': str(document.id),
        'status': document.status,
        'filename': document.filename,
        'duplicate': True,
        'message': 'Document with identical content already exists'
    }
    if document.status == DocumentStatus.FAILED:
        logger.info(f"Re-upload of failed document {document.id}, queueing ingestion again")
        Document.objects.filter(id=document.id).update(
            status=DocumentStatus.QUEUED,
            error_message=None,
        )
        result = enqueue_ingest(document)
        body.update({
            'status': document.status,
            'jobId': result.job_id,
            'mode': result.mode,
            'error': result.error,
            'message': 'Document with identical content already exists, ingestion queued again',
        })
    return JsonResponse(body, status=200)


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def upload_document(request):
    """
    Upload a new document.

    POST /api/docs/upload

    Accepts multipart/form-data with a 'file' field and an optional
    'conversationId' field scoping the document to one conversation.

    Allowed file types: PDF, TXT, MD
    Max size: 50MB (configurable)

    Returns:
        {
            "documentId": "uuid",
            "jobId": "hex",
            "mode": "durable|inline",
            "status": "QUEUED|INDEXED|FAILED",
            "filename": "original.pdf"
        }
    """
    user_id = request.user_claims.sub

    if 'file' not in request.FILES:
        return JsonResponse(
            {'error': 'No file provided', 'code': 'MISSING_FILE'},
            status=400
        )

    uploaded_file = request.FILES['file']
    filename = uploaded_file.name
    size_bytes = uploaded_file.size
    conversation_id = request.POST.get('conversationId', '').strip()

    logger.info(f"Upload request: {filename}, {uploaded_file.content_type}, {size_bytes} bytes from user {user_id}")

    if size_bytes > settings.MAX_UPLOAD_SIZE:
        max_mb = settings.MAX_UPLOAD_SIZE // (1024 * 1024)
        return JsonResponse(
            {
                'error': f'File too large. Maximum size is {max_mb}MB',
                'code': 'FILE_TOO_LARGE',
                'maxSize': settings.MAX_UPLOAD_SIZE
            },
            status=400
        )

    if not validate_extension(filename):
        return JsonResponse(
            {
                'error': 'Invalid file type. Allowed: PDF, TXT, MD',
                'code': 'INVALID_FILE_TYPE',
                'allowedExtensions': settings.ALLOWED_EXTENSIONS
            },
            status=400
        )

    content_type = normalize_content_type(uploaded_file.content_type, filename)
    if not validate_content_type(content_type):
        return JsonResponse(
            {
                'error': 'Invalid content type. Allowed: PDF, TXT, MD',
                'code': 'INVALID_CONTENT_TYPE',
                'allowedTypes': settings.ALLOWED_CONTENT_TYPES
            },
            status=400
        )

    data = uploaded_file.read()
    content_hash = hashlib.sha256(data).hexdigest()

    existing = find_duplicate(user_id, conversation_id, content_hash)
    if existing:
        logger.info(
            f"Duplicate upload detected: returning existing document {existing.id} "
            f"(original filename: {existing.filename}, new filename: {filename})"
        )
        return duplicate_response(existing)

    try:
        text = extract_text(data, filename, content_type)
    except ExtractionError as e:
        logger.warning(f"Extraction failed for {filename}: {e}")
        return JsonResponse(
            {'error': str(e), 'code': 'EXTRACTION_FAILED'},
            status=422
        )

    if not text.strip():
        return JsonResponse(
            {'error': 'No text could be extracted from the document', 'code': 'EMPTY_DOCUMENT'},
            status=422
        )

    try:
        with transaction.atomic():
            document = Document.objects.create(
                owner_id=user_id,
                conversation_id=conversation_id,
                filename=filename,
                content_type=content_type,
                size_bytes=size_bytes,
                content_hash=content_hash,
                text=text,
                status=DocumentStatus.QUEUED,
            )
    except IntegrityError as e:
        # Race condition: another request created the same document
        logger.warning(f"IntegrityError during upload (race condition): {e}")
        existing = find_duplicate(user_id, conversation_id, content_hash)
        if existing:
            return duplicate_response(existing)
        return JsonResponse(
            {'error': 'Failed to create document', 'code': 'INTEGRITY_ERROR'},
            status=500
        )

    result = enqueue_ingest(document)

    logger.info(f"Document created: {document.id}, job: {result.job_id} ({result.mode})")

    return JsonResponse({
        'documentId': str(document.id),
        'jobId': result.job_id,
        'mode': result.mode,
        'status': document.status,
        'filename': document.filename,
        'error': result.error,
    }, status=201)


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def list_documents(request):
    """
    List all documents for the authenticated user.

    GET /api/docs[?conversationId=...]
    """
    documents = Document.objects.filter(owner_id=request.user_claims.sub)

    conversation_id = request.GET.get('conversationId')
    if conversation_id:
        documents = documents.filter(conversation_id=conversation_id)

    return JsonResponse({'documents': [doc.to_dict() for doc in documents.order_by('-created_at')]})


def get_owned_document(request, document_id):
    """The caller's document, or None. Other users' documents look missing."""
    return Document.objects.filter(id=document_id, owner_id=request.user_claims.sub).first()


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def get_document(request, document_id):
    """
    Get details for a specific document.

    GET /api/docs/<document_id>

    Includes `chunkCount`, the number of chunks in the vector store
    (null when the store cannot be reached).
    """
    document = get_owned_document(request, document_id)
    if document is None:
        return JsonResponse(
            {'error': 'Document not found', 'code': 'NOT_FOUND'},
            status=404
        )
    data = document.to_dict()
    try:
        data['chunkCount'] = get_vector_store().count(str(document.id))
    except StoreUnavailable as e:
        logger.warning(f"Could not count chunks for document {document.id}: {e}")
        data['chunkCount'] = None
    return JsonResponse(data)


@csrf_exempt
@require_http_methods(["POST", "DELETE"])
@auth_required
def delete_document(request, document_id):
    """
    Delete a document.

    POST /api/docs/<document_id>/delete

    Removes the row immediately and queues a delete job that removes the
    chunks from the vector store.
    """
    document = get_owned_document(request, document_id)
    if document is None:
        return JsonResponse(
            {'error': 'Document not found', 'code': 'NOT_FOUND'},
            status=404
        )

    doc_id = str(document.id)
    document.delete()

    result = get_ingestion_queue().enqueue(
        doc_id,
        kind=JobKind.DELETE,
        payload={'owner_id': request.user_claims.sub},
    )
    logger.info(f"Document {doc_id} deleted, chunk removal job {result.job_id} ({result.mode})")

    return JsonResponse({
        'documentId': doc_id,
        'deleted': True,
        'jobId': result.job_id,
        'mode': result.mode,
        'status': result.status,
    })
