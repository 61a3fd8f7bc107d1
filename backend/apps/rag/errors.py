"""
Classification of completion-provider failures.

Every failure seen by the streaming relay is mapped to a category with an
HTTP status, an internal message for logs, and a message safe to show the
user. Raw provider bodies never reach the client.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Categories of relay failures."""
    # Our side
    INPUT_VALIDATION = "input_validation"
    INTERNAL_SERVER = "internal_server"
    CONFIGURATION = "configuration"
    NETWORK = "network"

    # Provider platform
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    UPSTREAM_SERVER = "upstream_server"
    BAD_REQUEST = "bad_request"

    # Model specific
    MODEL_NOT_FOUND = "model_not_found"
    MODEL_TIMEOUT = "model_timeout"
    CONTENT_MODERATION = "content_moderation"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"

    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorCategory.INPUT_VALIDATION: "Your input contains invalid data. Please check and try again.",
    ErrorCategory.INTERNAL_SERVER: "An unexpected error occurred in the server. Please try again later.",
    ErrorCategory.CONFIGURATION: (
        "There's an issue with the API configuration. Please try a different model or contact support."
    ),
    ErrorCategory.NETWORK: (
        "A network error occurred while connecting to the AI service. "
        "Please check your connection and try again."
    ),
    ErrorCategory.AUTHENTICATION: "Authentication failed. Please check your API key or account status.",
    ErrorCategory.RATE_LIMIT: (
        "You've reached the rate limit for API requests. Please try again in a few moments."
    ),
    ErrorCategory.UPSTREAM_SERVER: "The service is currently experiencing issues. Please try again later.",
    ErrorCategory.BAD_REQUEST: (
        "There was an issue with the request format. Please try again with different parameters."
    ),
    ErrorCategory.MODEL_NOT_FOUND: "The selected AI model is currently unavailable. Please try another model.",
    ErrorCategory.MODEL_TIMEOUT: (
        "The AI model took too long to respond. Please try a simpler query or a different model."
    ),
    ErrorCategory.CONTENT_MODERATION: (
        "Your request was flagged by content moderation systems. Please revise your input and try again."
    ),
    ErrorCategory.CONTEXT_LENGTH_EXCEEDED: (
        "Your conversation is too long for this model's capacity. Try starting a new conversation "
        "or using a model with a larger context window."
    ),
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Please try again or select a different model.",
}

INSUFFICIENT_FUNDS_MESSAGE = (
    "Your account has insufficient funds. Please check your provider account balance."
)


@dataclass
class ClassifiedError:
    """A failure mapped to a category."""
    status: int
    category: ErrorCategory
    message: str
    user_message: str
    details: Optional[Any] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "error": self.user_message,
            "category": self.category.value,
        }


def _classified(status: int, category: ErrorCategory, message: str, details=None) -> ClassifiedError:
    return ClassifiedError(
        status=status,
        category=category,
        message=message,
        user_message=USER_MESSAGES[category],
        details=details,
    )


def extract_error_message(body: str):
    """
    Pull the human-readable message out of a provider error body.

    Returns:
        (message, parsed) where parsed is None if the body is not JSON
    """
    try:
        parsed = json.loads(body)
    except (TypeError, ValueError):
        return None, None

    if not isinstance(parsed, dict):
        return str(parsed), parsed

    error_obj = parsed.get('error', parsed)
    if isinstance(error_obj, str):
        return error_obj, parsed
    if isinstance(error_obj, dict):
        message = error_obj.get('message') or error_obj.get('error') or 'Unknown error'
        return str(message), parsed
    return 'Unknown error', parsed


def classify_upstream_error(status_code: int, body: str) -> ClassifiedError:
    """
    Categorize an error response from the completion provider.

    Status code decides first (auth, rate limit, server errors), then the
    provider's message (model availability, timeouts, moderation, context
    length), then 400 as a generic bad request.
    """
    error_message, parsed = extract_error_message(body)

    if parsed is None:
        # Body is not JSON, fall back to the status code alone
        if status_code in (401, 403):
            return _classified(status_code, ErrorCategory.AUTHENTICATION,
                               f"Authentication failed with status {status_code}")
        if status_code == 429:
            return _classified(status_code, ErrorCategory.RATE_LIMIT,
                               f"Rate limit exceeded with status {status_code}")
        if status_code >= 500:
            return _classified(status_code, ErrorCategory.UPSTREAM_SERVER,
                               f"Upstream server error {status_code}")
        return _classified(status_code, ErrorCategory.UNKNOWN,
                           f"Unknown error with status {status_code}: {body[:500] if body else ''}")

    lowered = error_message.lower()

    if status_code in (401, 403):
        if 'insufficient' in lowered or 'funds' in lowered:
            error = _classified(status_code, ErrorCategory.AUTHENTICATION,
                                f"Authentication failed: Insufficient funds - {error_message}", parsed)
            error.user_message = INSUFFICIENT_FUNDS_MESSAGE
            return error
        return _classified(status_code, ErrorCategory.AUTHENTICATION,
                           f"Authentication failed: {error_message}", parsed)

    if status_code == 429:
        return _classified(status_code, ErrorCategory.RATE_LIMIT,
                           f"Rate limit exceeded: {error_message}", parsed)

    if status_code >= 500:
        return _classified(status_code, ErrorCategory.UPSTREAM_SERVER,
                           f"Upstream server error: {error_message}", parsed)

    if 'not found' in lowered or 'unavailable' in lowered:
        return _classified(status_code, ErrorCategory.MODEL_NOT_FOUND,
                           f"Model not found or unavailable: {error_message}", parsed)

    if 'timeout' in lowered:
        return _classified(status_code, ErrorCategory.MODEL_TIMEOUT,
                           f"Model timeout: {error_message}", parsed)

    if 'content' in lowered and any(w in lowered for w in ('filter', 'moderation', 'policy')):
        return _classified(status_code, ErrorCategory.CONTENT_MODERATION,
                           f"Content moderation: {error_message}", parsed)

    if 'context' in lowered and 'length' in lowered:
        return _classified(status_code, ErrorCategory.CONTEXT_LENGTH_EXCEEDED,
                           f"Context length exceeded: {error_message}", parsed)

    if status_code == 400:
        return _classified(status_code, ErrorCategory.BAD_REQUEST,
                           f"Bad request to provider: {error_message}", parsed)

    return _classified(status_code, ErrorCategory.UNKNOWN,
                       f"Provider error: {error_message}", parsed)


def classify_exception(exc: BaseException, provider: str = "completion provider") -> ClassifiedError:
    """
    Categorize any exception raised while relaying a completion.

    Provider error responses go through classify_upstream_error; transport
    failures become timeout or network errors; anything else is internal.
    """
    from apps.rag.llm_client import LLMError, UpstreamError

    if isinstance(exc, UpstreamError):
        return classify_upstream_error(exc.status_code, exc.body)

    if isinstance(exc, httpx.TimeoutException):
        return ClassifiedError(
            status=504,
            category=ErrorCategory.MODEL_TIMEOUT,
            message=f"Request to {provider} timed out: {exc}",
            user_message="The request to the AI service timed out. Please try again with a simpler query.",
        )

    if isinstance(exc, httpx.TransportError):
        return _classified(502, ErrorCategory.NETWORK, f"Network error connecting to {provider}: {exc}")

    if isinstance(exc, LLMError):
        # Client-side setup problems (missing API key, unknown provider)
        return _classified(500, ErrorCategory.CONFIGURATION, f"Configuration error: {exc}")

    if isinstance(exc, ValueError):
        return _classified(400, ErrorCategory.INPUT_VALIDATION, f"Validation error: {exc}")

    return _classified(500, ErrorCategory.INTERNAL_SERVER, f"Internal server error: {exc}")
