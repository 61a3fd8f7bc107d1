"""
Context assembly for RAG prompts.

Formats retrieved chunks into one bounded block of text, grouped by
source document, for inclusion in the system prompt.

Format:
    ### Context from your documents:

    [Document: report.pdf (id 7f3a...), Chunk 1]
    ...chunk text...

    [Document: report.pdf (id 7f3a...), Chunk 4]
    ...chunk text...

    ### End of context
"""
import logging
from collections import OrderedDict
from typing import List

from apps.rag.retrieval import RetrievalResult

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "### Context from your documents:\n\n"
CONTEXT_FOOTER = "### End of context"
CHUNK_SEPARATOR = "\n\n"

DEFAULT_MAX_CONTEXT_CHARS = 6000


def format_chunk(result: RetrievalResult) -> str:
    """One labelled chunk. Chunk numbers are shown 1-based."""
    return (
        f"[Document: {result.file_name} (id {result.document_id}), "
        f"Chunk {result.chunk_index + 1}]\n{result.text}"
    )


def render(results: List[RetrievalResult]) -> str:
    """
    Render results grouped by document.

    Groups appear in order of their best-ranked chunk; chunks inside a
    group appear in document order.
    """
    groups: "OrderedDict[str, List[RetrievalResult]]" = OrderedDict()
    for result in results:
        groups.setdefault(result.document_id, []).append(result)

    blocks = []
    for chunks in groups.values():
        for chunk in sorted(chunks, key=lambda r: r.chunk_index):
            blocks.append(format_chunk(chunk))

    return CONTEXT_HEADER + CHUNK_SEPARATOR.join(blocks) + CHUNK_SEPARATOR + CONTEXT_FOOTER


def assemble_context(results: List[RetrievalResult], max_chars: int = DEFAULT_MAX_CONTEXT_CHARS) -> str:
    """
    Build the context block for a prompt.

    Args:
        results: Retrieved chunks, best first
        max_chars: Hard upper bound on the returned string's length

    Returns:
        The formatted block, or "" if there is nothing to include. When the
        budget is tight, the lowest-ranked chunks are dropped whole; a
        chunk's text is never cut.
    """
    if not results or max_chars <= 0:
        return ""

    # Largest rank prefix that fits
    for count in range(len(results), 0, -1):
        block = render(results[:count])
        if len(block) <= max_chars:
            if count < len(results):
                logger.info(
                    f"Context budget {max_chars} chars: kept {count}/{len(results)} chunks"
                )
            return block

    logger.info(f"Context budget {max_chars} chars too small for any chunk")
    return ""
