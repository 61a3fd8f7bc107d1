"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import RetrieveView, chat_stream

urlpatterns = [
    path('retrieve', RetrieveView.as_view(), name='rag-retrieve'),
    path('chat/stream', chat_stream, name='rag-chat-stream'),
]
