"""
Retry utilities with exponential backoff.

Provides backoff calculation with jitter, error classification for the
ingestion queue, and the retry policy read from settings.
"""
import random
import logging

from django.conf import settings

from apps.indexing.errors import FatalError, TransientError, EmbeddingError

logger = logging.getLogger(__name__)


# Retry configuration for ingestion jobs (queue)
INGESTION_RETRY_CONFIG = {
    'max_attempts': 3,        # Total executions, including the first
    'initial_backoff': 1.0,   # 1 second
    'backoff_multiplier': 2.0,
    'max_backoff': 30.0,
    'jitter_percent': 0.25,   # ±25%
}


def ingestion_retry_config() -> dict:
    """INGESTION_RETRY_CONFIG with overrides from Django settings."""
    return {
        'max_attempts': getattr(
            settings, 'INGESTION_MAX_ATTEMPTS', INGESTION_RETRY_CONFIG['max_attempts']
        ),
        'initial_backoff': getattr(
            settings, 'INGESTION_BACKOFF_INITIAL', INGESTION_RETRY_CONFIG['initial_backoff']
        ),
        'backoff_multiplier': getattr(
            settings, 'INGESTION_BACKOFF_MULTIPLIER', INGESTION_RETRY_CONFIG['backoff_multiplier']
        ),
        'max_backoff': getattr(
            settings, 'INGESTION_BACKOFF_MAX', INGESTION_RETRY_CONFIG['max_backoff']
        ),
        'jitter_percent': INGESTION_RETRY_CONFIG['jitter_percent'],
    }


def calculate_backoff(
    attempt: int,
    initial_backoff: float,
    backoff_multiplier: float,
    max_backoff: float,
    jitter_percent: float
) -> float:
    """
    Calculate backoff time with exponential increase and jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        initial_backoff: Base backoff in seconds
        backoff_multiplier: Exponential multiplier
        max_backoff: Maximum backoff cap
        jitter_percent: Random jitter range (0.25 = ±25%)

    Returns:
        Backoff time in seconds
    """
    backoff = initial_backoff * (backoff_multiplier ** attempt)
    backoff = min(backoff, max_backoff)

    jitter_range = backoff * jitter_percent
    backoff += random.uniform(-jitter_range, jitter_range)

    return max(0.0, backoff)


def backoff_for(attempts: int, config: dict) -> float:
    """Delay before the next execution of a job that has failed `attempts` times."""
    return calculate_backoff(
        max(0, attempts - 1),
        config['initial_backoff'],
        config['backoff_multiplier'],
        config['max_backoff'],
        config['jitter_percent'],
    )


def is_retriable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retriable.

    Exceptions from the ingestion taxonomy decide for themselves. Anything
    else is classified like the embedding worker always did:

    Returns True for:
    - Connection errors (network issues)
    - Timeout errors
    - 5xx status codes
    - Empty response errors

    Returns False for:
    - 4xx errors (client error, won't help to retry)
    - Validation errors
    - Configuration errors (e.g., model not found)
    """
    import httpx
    import requests

    if isinstance(exception, TransientError):
        return True
    if isinstance(exception, (FatalError, EmbeddingError)):
        return False
    if isinstance(exception, (ValueError, TypeError, KeyError)):
        return False

    if isinstance(exception, (requests.exceptions.ConnectionError,
                              requests.exceptions.Timeout,
                              httpx.TransportError,
                              ConnectionError,
                              TimeoutError)):
        return True

    error_msg = str(exception).lower()

    retriable_patterns = [
        'connection',
        'timeout',
        'timed out',
        'temporarily unavailable',
        '503',
        '502',
        '500',
        'overloaded',
        'busy',
        'no embedding in response',
    ]
    for pattern in retriable_patterns:
        if pattern in error_msg:
            return True

    non_retriable_patterns = [
        '404',
        '400',
        '401',
        '403',
        'model not found',
        'invalid',
        'not supported',
    ]
    for pattern in non_retriable_patterns:
        if pattern in error_msg:
            return False

    # Default: retriable for unknown errors (optimistic)
    logger.debug(f"Unclassified error treated as retriable: {type(exception).__name__}: {exception}")
    return True
