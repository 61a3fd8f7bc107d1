"""
WebSocket Consumer for Ingestion Events.

Clients connect to /ws/indexing to receive real-time updates for their
documents: queued, progress, retrying, complete and failed.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.indexing.events import user_group_name

logger = logging.getLogger(__name__)


class IngestionEventsConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer that:
    1. Reads the caller's identity (from GatewayIdentityMiddleware)
    2. Joins a user-specific channel group
    3. Forwards ingestion events from the channel layer to the client
    4. Handles disconnect cleanly
    """

    async def connect(self):
        """Handle new WebSocket connection."""
        self.user = self.scope.get("user")

        if not self.user:
            logger.warning("Rejecting unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        self.user_id = self.user["id"]
        self.group_name = user_group_name(self.user_id)

        await self.channel_layer.group_add(
            self.group_name,
            self.channel_name
        )

        await self.accept()

        logger.info(f"WebSocket connected for user {self.user_id}")

        await self.send_json({
            "type": "connected",
            "message": "Connected to ingestion event stream",
            "userId": self.user_id
        })

    async def disconnect(self, close_code):
        """Handle WebSocket disconnect."""
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(
                self.group_name,
                self.channel_name
            )
            logger.info(f"WebSocket disconnected for user {self.user_id} (code={close_code})")

    async def receive_json(self, content):
        """Answer pings; other client messages are ignored."""
        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def ingestion_event(self, event):
        """Forward an ingestion event to the client under its own type."""
        data = event["data"]
        await self.send_json({
            "type": data.get("type", "ingest_progress"),
            "data": data
        })
