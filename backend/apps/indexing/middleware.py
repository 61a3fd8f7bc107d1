"""
WebSocket identity middleware for Django Channels.

Authentication happens at the gateway in front of this service, which
forwards the verified user in the X-User-Id header (and optionally
X-User-Name). This middleware copies that identity into the scope.
"""
import logging

from channels.middleware import BaseMiddleware

logger = logging.getLogger(__name__)

USER_ID_HEADER = b"x-user-id"
USER_NAME_HEADER = b"x-user-name"


def identity_from_headers(headers) -> dict:
    """
    Build the scope user dict from raw ASGI headers.

    Returns None when the gateway did not supply a user id.
    """
    values = {}
    for name, value in headers:
        lowered = name.lower()
        if lowered in (USER_ID_HEADER, USER_NAME_HEADER):
            values[lowered] = value.decode("latin-1").strip()

    user_id = values.get(USER_ID_HEADER)
    if not user_id:
        return None
    return {
        'id': user_id,
        'username': values.get(USER_NAME_HEADER) or 'unknown',
    }


class GatewayIdentityMiddleware(BaseMiddleware):
    """
    Adds a 'user' dict to WebSocket scopes:
    - id: user ID from X-User-Id
    - username: X-User-Name, or 'unknown'

    Connections without an identity get scope['user'] = None and are
    rejected by the consumer.
    """

    async def __call__(self, scope, receive, send):
        if scope["type"] != "websocket":
            return await super().__call__(scope, receive, send)

        user = identity_from_headers(scope.get("headers", []))
        if user:
            logger.info(f"WebSocket identified as user {user['id']}")
        else:
            logger.warning("WebSocket connection without gateway identity")
        scope["user"] = user

        return await super().__call__(scope, receive, send)
