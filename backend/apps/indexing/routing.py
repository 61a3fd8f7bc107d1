"""
WebSocket URL routing for indexing app.
"""
from django.urls import re_path

from apps.indexing.consumers import IngestionEventsConsumer

websocket_urlpatterns = [
    re_path(r"ws/indexing/?$", IngestionEventsConsumer.as_asgi()),
]
