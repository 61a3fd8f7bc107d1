"""
Exception taxonomy for the ingestion pipeline.

Every failure raised while chunking, embedding or storing a document is
either transient (worth retrying with backoff) or fatal (retrying cannot
help). The ingestion queue only looks at this split; the concrete
subclasses carry the detail for logs and user-facing messages.
"""


class IngestionError(Exception):
    """Base class for ingestion pipeline failures."""
    pass


class TransientError(IngestionError):
    """Failure that may succeed on a later attempt (timeouts, 5xx, outages)."""
    pass


class FatalError(IngestionError):
    """Failure that will not go away by retrying."""
    pass


class InvalidInput(FatalError, ValueError):
    """Empty text, malformed job payload or an invalid configuration."""
    pass


class EmbeddingError(IngestionError):
    """Raised when the embedding provider rejects a request."""
    pass


class EmbeddingProviderError(EmbeddingError, TransientError):
    """Provider timed out, was unreachable, rate limited us or returned 5xx."""
    pass


class EmbeddingQuotaExceeded(EmbeddingError, FatalError):
    """Account quota or credits are exhausted."""
    pass


class StoreUnavailable(TransientError):
    """The vector store could not be reached or timed out."""
    pass


def is_transient(exception: Exception) -> bool:
    """True when the exception belongs to the transient branch of the taxonomy."""
    return isinstance(exception, TransientError)


def is_fatal(exception: Exception) -> bool:
    """
    True when the exception is known to be non-retryable.

    Plain EmbeddingError (bad request, dimension mismatch) counts as fatal
    unless a subclass marks it transient.
    """
    if isinstance(exception, TransientError):
        return False
    return isinstance(exception, (FatalError, EmbeddingError))
