"""
Deterministic text chunking for document indexing.

Chunking is designed to be:
- Deterministic: Same input always produces same chunks
- Idempotent: Re-running produces identical chunk IDs
- Lossless: Consecutive chunks overlap by exactly the configured amount,
  so dropping each chunk's leading overlap reconstructs the source text
"""
import re
import logging
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings

from apps.indexing.errors import InvalidInput

logger = logging.getLogger(__name__)

# Default chunking parameters
DEFAULT_CHUNK_SIZE = 1000  # characters (approximately 250 tokens)
DEFAULT_CHUNK_OVERLAP = 200  # characters shared by consecutive chunks

# Very large documents are split finer to keep each embedding focused
LARGE_DOCUMENT_THRESHOLD = 100_000
LARGE_DOCUMENT_CHUNK_SIZE = 500
LARGE_DOCUMENT_CHUNK_OVERLAP = 100


@dataclass(frozen=True)
class ChunkingConfig:
    """Window size and overlap used to split a document."""
    max_chunk_chars: int = DEFAULT_CHUNK_SIZE
    overlap_chars: int = DEFAULT_CHUNK_OVERLAP

    def __post_init__(self):
        for name in ('max_chunk_chars', 'overlap_chars'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidInput(f"{name} must be a positive integer, got {value!r}")
        if self.overlap_chars >= self.max_chunk_chars:
            raise InvalidInput(
                f"overlap_chars ({self.overlap_chars}) must be smaller than "
                f"max_chunk_chars ({self.max_chunk_chars})"
            )

    @classmethod
    def default(cls) -> 'ChunkingConfig':
        return cls(
            max_chunk_chars=getattr(settings, 'CHUNK_MAX_CHARS', DEFAULT_CHUNK_SIZE),
            overlap_chars=getattr(settings, 'CHUNK_OVERLAP_CHARS', DEFAULT_CHUNK_OVERLAP),
        )

    @classmethod
    def for_length(cls, length: int) -> 'ChunkingConfig':
        """
        Pick the configuration for a document of the given length.

        Documents above LARGE_DOCUMENT_THRESHOLD characters use smaller,
        less overlapping chunks.
        """
        threshold = getattr(settings, 'LARGE_DOCUMENT_THRESHOLD', LARGE_DOCUMENT_THRESHOLD)
        if length > threshold:
            return cls(
                max_chunk_chars=getattr(
                    settings, 'LARGE_DOCUMENT_CHUNK_MAX_CHARS', LARGE_DOCUMENT_CHUNK_SIZE
                ),
                overlap_chars=getattr(
                    settings, 'LARGE_DOCUMENT_CHUNK_OVERLAP_CHARS', LARGE_DOCUMENT_CHUNK_OVERLAP
                ),
            )
        return cls.default()


@dataclass
class TextChunk:
    """A chunk of text with its index."""
    index: int
    text: str
    start_char: int
    end_char: int
    document_id: str = ''

    @property
    def char_count(self) -> int:
        return len(self.text)

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}:{self.index}"


def normalize_whitespace(text: str) -> str:
    """
    Normalize whitespace in text for consistent chunking.

    - Converts all whitespace sequences to single spaces
    - Preserves paragraph breaks (double newlines)
    - Strips leading/trailing whitespace

    Args:
        text: Raw text input

    Returns:
        Normalized text
    """
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Preserve paragraph breaks
    text = re.sub(r'\n\s*\n', '\n\n', text)

    # Replace multiple spaces/tabs with single space
    text = re.sub(r'[^\S\n]+', ' ', text)

    lines = [line.strip() for line in text.split('\n')]
    text = '\n'.join(lines)

    # Remove excessive newlines (more than 2 in a row)
    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()


def chunk_text(
    text: str,
    config: Optional[ChunkingConfig] = None,
    document_id: str = '',
) -> List[TextChunk]:
    """
    Split text into fixed-size overlapping chunks.

    Each window starts `max_chunk_chars - overlap_chars` characters after
    the previous one, so every chunk is at most `max_chunk_chars` long and
    shares exactly `overlap_chars` characters with its successor. The last
    chunk ends at the end of the text and may be shorter.

    Args:
        text: The text to chunk (already normalized by the caller)
        config: Window and overlap; defaults to ChunkingConfig.for_length()
        document_id: Stamped onto every chunk for chunk ids

    Returns:
        List of TextChunk objects in document order

    Raises:
        InvalidInput: If the text is empty
    """
    if not text:
        raise InvalidInput("Cannot chunk empty text")

    if config is None:
        config = ChunkingConfig.for_length(len(text))

    size = config.max_chunk_chars
    step = size - config.overlap_chars
    length = len(text)

    chunks = []
    start = 0
    while True:
        end = min(start + size, length)
        chunks.append(TextChunk(
            index=len(chunks),
            text=text[start:end],
            start_char=start,
            end_char=end,
            document_id=document_id,
        ))
        if end >= length:
            break
        start += step

    logger.info(
        f"Created {len(chunks)} chunks from {length} characters "
        f"(size={size}, overlap={config.overlap_chars})"
    )

    return chunks
