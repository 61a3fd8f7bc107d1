"""
Streaming completion relay.

A RelaySession forwards one upstream completion stream to one client as
StreamEvents: every content delta as it arrives, then exactly one
terminal event (done, or a classified error). If the client goes away
the session is cancelled: the upstream request is closed and nothing
more is produced.

Wire format (Server-Sent Events):
    data: {"delta": "..."}
    data: {"error": "...", "category": "..."}
    data: [DONE]
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from apps.rag.errors import ClassifiedError, classify_exception
from apps.rag.llm_client import BaseLLMClient, LLMMessage

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class EventType:
    CONTENT = 'content'
    ERROR = 'error'
    DONE = 'done'


class SessionState:
    PENDING = 'pending'
    STREAMING = 'streaming'
    DONE = 'done'
    ERROR = 'error'
    CANCELLED = 'cancelled'

    TERMINAL = (DONE, ERROR, CANCELLED)


@dataclass(frozen=True)
class StreamEvent:
    """One event of a relay session."""
    type: str
    delta: str = ''
    error: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.DONE, EventType.ERROR)

    @classmethod
    def content(cls, delta: str) -> 'StreamEvent':
        return cls(type=EventType.CONTENT, delta=delta)

    @classmethod
    def done(cls) -> 'StreamEvent':
        return cls(type=EventType.DONE)

    @classmethod
    def failure(cls, error: ClassifiedError) -> 'StreamEvent':
        return cls(type=EventType.ERROR, error=error.user_message, category=error.category.value)


def encode_sse(event: StreamEvent) -> str:
    """Serialize an event as one SSE frame."""
    if event.type == EventType.CONTENT:
        payload = json.dumps({"delta": event.delta})
    elif event.type == EventType.ERROR:
        payload = json.dumps({"error": event.error, "category": event.category})
    else:
        payload = DONE_SENTINEL
    return f"data: {payload}\n\n"


class RelaySession:
    """
    One client connection tied to one upstream completion request.

    Args:
        client: Streaming LLM client
        messages: Full prompt (system, history, user turn)
        temperature: Sampling temperature
        max_tokens: Maximum completion tokens
    """

    def __init__(
        self,
        client: BaseLLMClient,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ):
        self.client = client
        self.messages = messages
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.state = SessionState.PENDING
        self.error: Optional[ClassifiedError] = None
        self.chunks_relayed = 0

    def _finish(self, state: str):
        # The first terminal state wins
        if self.state not in SessionState.TERMINAL:
            self.state = state

    async def events(self) -> AsyncIterator[StreamEvent]:
        """
        Relay the upstream stream.

        Yields content events in upstream order followed by one terminal
        event. Closing this generator (or cancelling the task driving it)
        closes the upstream stream and marks the session cancelled.
        """
        self.state = SessionState.STREAMING
        started = time.monotonic()
        stream = self.client.stream_chat(
            self.messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        try:
            async for delta in stream:
                self.chunks_relayed += 1
                yield StreamEvent.content(delta)

            self._finish(SessionState.DONE)
            logger.info(
                f"Relay finished: {self.chunks_relayed} chunks in {time.monotonic() - started:.2f}s"
            )
            yield StreamEvent.done()

        except (asyncio.CancelledError, GeneratorExit):
            self._finish(SessionState.CANCELLED)
            if self.state == SessionState.CANCELLED:
                logger.info(
                    f"Client disconnected after {self.chunks_relayed} chunks, closing upstream"
                )
            raise

        except Exception as e:
            self.error = classify_exception(e, provider=self.client.model_name)
            self._finish(SessionState.ERROR)
            logger.warning(
                f"Relay failed after {self.chunks_relayed} chunks "
                f"[{self.error.category.value}]: {self.error.message}"
            )
            yield StreamEvent.failure(self.error)

        finally:
            await stream.aclose()
