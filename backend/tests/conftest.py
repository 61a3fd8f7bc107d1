"""
Shared test configuration.

Tests run without Postgres or Redis: the in-memory vector store, the
in-memory channel layer, the inline ingestion queue and an in-memory
sqlite database are selected before Django is set up. Tests that need a
table create it themselves with the schema editor.
"""
import os

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
os.environ['VECTOR_STORE_BACKEND'] = 'memory'
os.environ['INGESTION_QUEUE_BACKEND'] = 'inline'
os.environ['CHANNEL_LAYER'] = 'memory'
os.environ['LLM_PROVIDER'] = 'ollama'
os.environ['EMBEDDING_PROVIDER'] = 'ollama'
os.environ['DATABASE_URL'] = ''
os.environ['SQLITE_PATH'] = ':memory:'
os.environ['ALLOWED_HOSTS'] = 'localhost,127.0.0.1,testserver'

import django

django.setup()

import pytest


@pytest.fixture(autouse=True)
def reset_service_handles():
    """Every test starts with fresh process-wide handles."""
    from apps.indexing.embedder import reset_embedder
    from apps.indexing.services import reset_services
    from apps.rag.llm_client import reset_llm_client

    yield
    reset_services()
    reset_embedder()
    reset_llm_client()
