"""
RAG API views.

Provides endpoints for:
- Query retrieval (get relevant chunks)
- Streaming chat (retrieval-augmented completion over SSE)
"""
import logging
import json

from django.conf import settings
from django.http import JsonResponse, StreamingHttpResponse
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from django.utils.decorators import method_decorator

from apps.authn.middleware import auth_required
from apps.indexing.embedder import get_embedder
from apps.indexing.services import get_vector_store
from apps.indexing.vectorstore import ScopeFilter
from apps.rag.chat import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, stream_chat_turn
from apps.rag.context import DEFAULT_MAX_CONTEXT_CHARS
from apps.rag.errors import classify_exception
from apps.rag.llm_client import get_llm_client
from apps.rag.relay import StreamEvent, encode_sse
from apps.rag.retrieval import (
    DEFAULT_TOP_K,
    QueryValidationError,
    RetrievalMode,
    Retriever,
    normalize_query,
)

logger = logging.getLogger(__name__)

MAX_TOP_K = 20


def build_retriever() -> Retriever:
    """Retriever wired to the process-wide embedder and vector store."""
    enabled = getattr(settings, 'RAG_ENABLED', True)
    return Retriever(
        embedder=get_embedder(),
        store=get_vector_store(),
        mode=RetrievalMode.ENABLED if enabled else RetrievalMode.DISABLED,
        default_k=getattr(settings, 'RAG_TOP_K', DEFAULT_TOP_K),
        max_distance=getattr(settings, 'RAG_MAX_DISTANCE', None),
    )


def scope_for(request, conversation_id) -> ScopeFilter:
    """The caller's documents, optionally narrowed to one conversation."""
    return ScopeFilter(
        owner_id=request.user_claims.sub,
        conversation_id=conversation_id or None,
    )


def parse_json_body(request):
    """Request body as a dict, or None if it is not a JSON object."""
    try:
        body = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


@method_decorator(csrf_exempt, name='dispatch')
@method_decorator(auth_required, name='dispatch')
class RetrieveView(View):
    """
    POST /api/rag/retrieve

    Retrieve relevant document chunks for a query.
    Used for testing retrieval before full RAG.

    Request body:
        {
            "query": "What is the main topic?",
            "topK": 5,                 // optional, default 5
            "conversationId": "..."    // optional
        }

    Response:
        {
            "query": "What is the main topic?",
            "citations": [
                {
                    "docId": "...",
                    "chunkId": "...",
                    "chunkIndex": 3,
                    "snippet": "...",
                    "score": 0.1234,
                    "documentTitle": "file.pdf"
                }
            ]
        }
    """

    def post(self, request):
        body = parse_json_body(request)
        if body is None:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        top_k = body.get("topK", DEFAULT_TOP_K)
        if not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1 or top_k > MAX_TOP_K:
            return JsonResponse(
                {"error": f"topK must be an integer between 1 and {MAX_TOP_K}"},
                status=400
            )

        try:
            query = normalize_query(body.get("query", ""))
        except QueryValidationError as e:
            return JsonResponse({"error": str(e)}, status=400)

        results = build_retriever().retrieve(
            query,
            scope_for(request, body.get("conversationId")),
            top_k,
        )

        return JsonResponse({
            "query": query,
            "citations": [r.to_dict() for r in results],
        })


async def sse_stream(events):
    """Encode events as SSE frames, closing the event source when the client leaves."""
    try:
        async for event in events:
            yield encode_sse(event)
    finally:
        await events.aclose()


async def single_error_stream(exc: Exception):
    yield StreamEvent.failure(classify_exception(exc))


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
async def chat_stream(request):
    """
    POST /api/rag/chat/stream

    Stream a retrieval-augmented completion as Server-Sent Events.

    Request body:
        {
            "message": "What does the contract say about renewal?",
            "conversationId": "...",   // optional, narrows retrieval
            "history": [{"role": "user", "content": "..."}, ...],  // optional
            "temperature": 0.2,        // optional
            "maxTokens": 1024          // optional
        }

    Response frames:
        data: {"delta": "..."}
        data: {"error": "...", "category": "..."}
        data: [DONE]
    """
    body = parse_json_body(request)
    if body is None:
        return JsonResponse({"error": "Invalid JSON"}, status=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JsonResponse({"error": "message is required", "code": "MISSING_MESSAGE"}, status=400)

    history = body.get("history") or []
    if not isinstance(history, list):
        return JsonResponse({"error": "history must be a list"}, status=400)

    temperature = body.get("temperature", DEFAULT_TEMPERATURE)
    max_tokens = body.get("maxTokens", DEFAULT_MAX_TOKENS)
    if not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
        return JsonResponse({"error": "temperature must be between 0 and 2"}, status=400)
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens < 1:
        return JsonResponse({"error": "maxTokens must be a positive integer"}, status=400)

    try:
        scope = scope_for(request, body.get("conversationId"))
        retriever = build_retriever()
        client = get_llm_client()
    except Exception as e:
        # Headers are already committed once streaming starts, so setup
        # problems are reported in-band like every other failure
        logger.error(f"Chat stream setup failed: {e}")
        events = single_error_stream(e)
    else:
        events = stream_chat_turn(
            question=message.strip(),
            scope=scope,
            retriever=retriever,
            client=client,
            history=history,
            max_context_chars=getattr(settings, 'RAG_CONTEXT_MAX_CHARS', DEFAULT_MAX_CONTEXT_CHARS),
            temperature=float(temperature),
            max_tokens=max_tokens,
        )

    response = StreamingHttpResponse(
        sse_stream(events),
        content_type='text/event-stream'
    )
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'  # Disable nginx buffering
    return response
