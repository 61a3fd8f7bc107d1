"""
Authentication for gateway-protected endpoints.

Credentials are verified by the authentication gateway in front of this
service. It forwards the verified identity as request headers:
- X-User-Id: stable user identifier (required)
- X-User-Name: display name (optional)
"""
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional

from asgiref.sync import iscoroutinefunction
from django.http import HttpRequest, JsonResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    """The caller, as asserted by the gateway."""
    sub: str
    username: str = 'unknown'


def get_identity_from_request(request: HttpRequest) -> Optional[UserIdentity]:
    """
    Read the gateway identity headers.

    Args:
        request: The Django HTTP request

    Returns:
        UserIdentity if X-User-Id is present, None otherwise
    """
    user_id = request.headers.get('X-User-Id', '').strip()
    if not user_id:
        return None
    return UserIdentity(
        sub=user_id,
        username=request.headers.get('X-User-Name', '').strip() or 'unknown',
    )


def _unauthorized() -> JsonResponse:
    return JsonResponse(
        {'error': 'Authentication required', 'code': 'UNAUTHENTICATED'},
        status=401
    )


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires a gateway identity.

    Attaches the identity to request.user_claims. Works for both sync and
    async views.

    Usage:
        @auth_required
        def my_view(request):
            user_id = request.user_claims.sub
            ...
    """
    if iscoroutinefunction(view_func):
        @wraps(view_func)
        async def async_wrapper(request: HttpRequest, *args, **kwargs):
            identity = get_identity_from_request(request)
            if identity is None:
                logger.warning(f"Rejected unauthenticated request to {request.path}")
                return _unauthorized()
            request.user_claims = identity
            return await view_func(request, *args, **kwargs)

        return async_wrapper

    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        identity = get_identity_from_request(request)
        if identity is None:
            logger.warning(f"Rejected unauthenticated request to {request.path}")
            return _unauthorized()
        request.user_claims = identity
        logger.debug(f"Authenticated user: {identity.username} (sub={identity.sub})")
        return view_func(request, *args, **kwargs)

    return wrapper
