"""
Chat turn orchestration for RAG.

One chat turn: retrieve chunks for the user's message, assemble them into
a bounded context block, build the prompt, and relay the completion.
"""
import logging
from typing import AsyncIterator, List, Optional

from asgiref.sync import sync_to_async

from apps.indexing.vectorstore import ScopeFilter
from apps.rag.context import DEFAULT_MAX_CONTEXT_CHARS, assemble_context
from apps.rag.errors import classify_exception
from apps.rag.llm_client import BaseLLMClient, LLMMessage
from apps.rag.relay import RelaySession, StreamEvent
from apps.rag.retrieval import Retriever

logger = logging.getLogger(__name__)

# Default chat parameters
DEFAULT_TEMPERATURE = 0.2  # Low for factuality
DEFAULT_MAX_TOKENS = 1024

# Earlier turns forwarded to the model
MAX_HISTORY_MESSAGES = 20

SYSTEM_PROMPT = """You are a helpful assistant. Answer the user's questions clearly and concisely."""

# Appended when retrieval produced context
CONTEXT_INSTRUCTIONS = """Use the document excerpts below when they are relevant to the question. Mention the document name when you rely on an excerpt. If the excerpts do not contain the answer, say so before answering from general knowledge.

{context}"""


def build_system_prompt(context: str) -> str:
    """System prompt, with the context block only when there is one."""
    if not context:
        return SYSTEM_PROMPT
    return SYSTEM_PROMPT + "\n\n" + CONTEXT_INSTRUCTIONS.format(context=context)


def build_messages(
    question: str,
    context: str,
    history: Optional[List[dict]] = None,
) -> List[LLMMessage]:
    """
    Build the full message list for the model.

    History entries with roles other than user/assistant or without text
    are dropped; only the last MAX_HISTORY_MESSAGES are kept.
    """
    messages = [LLMMessage(role="system", content=build_system_prompt(context))]

    turns = [
        m for m in (history or [])
        if isinstance(m, dict)
        and m.get("role") in ("user", "assistant")
        and isinstance(m.get("content"), str)
        and m["content"].strip()
    ]
    for m in turns[-MAX_HISTORY_MESSAGES:]:
        messages.append(LLMMessage(role=m["role"], content=m["content"]))

    messages.append(LLMMessage(role="user", content=question))
    return messages


async def prepare_chat_turn(
    question: str,
    scope: ScopeFilter,
    retriever: Retriever,
    history: Optional[List[dict]] = None,
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
) -> List[LLMMessage]:
    """Retrieve, assemble context and build the prompt for one turn."""
    # Retrieval touches the ORM, so it runs off the event loop
    results = await sync_to_async(retriever.retrieve)(question, scope)
    context = assemble_context(results, max_context_chars)
    logger.info(f"Chat turn context: {len(results)} chunks, {len(context)} chars")
    return build_messages(question, context, history)


async def stream_chat_turn(
    question: str,
    scope: ScopeFilter,
    retriever: Retriever,
    client: BaseLLMClient,
    history: Optional[List[dict]] = None,
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> AsyncIterator[StreamEvent]:
    """
    Run one chat turn as a stream of events.

    Always ends with exactly one terminal event unless the consumer stops
    iterating first, including when preparing the prompt fails.
    """
    try:
        messages = await prepare_chat_turn(
            question, scope, retriever, history, max_context_chars
        )
    except Exception as e:
        error = classify_exception(e)
        logger.exception(f"Failed to prepare chat turn: {error.message}")
        yield StreamEvent.failure(error)
        return

    session = RelaySession(client, messages, temperature=temperature, max_tokens=max_tokens)
    events = session.events()
    try:
        async for event in events:
            yield event
    finally:
        await events.aclose()
