"""
Django settings for DocuChat backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes')


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = env_bool('DEBUG', 'False')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server for Channels
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'channels',
    'apps.authn',
    'apps.docs',
    'apps.indexing',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# =============================================================================
# Database
# =============================================================================
# Per-statement limit for vector store queries and writes (milliseconds)
VECTOR_STORE_TIMEOUT_MS = int(os.getenv('VECTOR_STORE_TIMEOUT_MS', '5000'))

DATABASE_URL = os.getenv('DATABASE_URL', '')
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
                'OPTIONS': {
                    'options': f'-c statement_timeout={VECTOR_STORE_TIMEOUT_MS}',
                },
            }
        }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Redis / Django Channels (WebSocket Support)
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')

# 'redis' for multi-process deployments, 'memory' for a single process
CHANNEL_LAYER = os.getenv('CHANNEL_LAYER', 'redis').lower()

if CHANNEL_LAYER == 'memory':
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels.layers.InMemoryChannelLayer',
        },
    }
else:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels_redis.core.RedisChannelLayer',
            'CONFIG': {
                'hosts': [REDIS_URL],
            },
        },
    }

# =============================================================================
# Chunking
# =============================================================================
CHUNK_MAX_CHARS = int(os.getenv('CHUNK_MAX_CHARS', '1000'))
CHUNK_OVERLAP_CHARS = int(os.getenv('CHUNK_OVERLAP_CHARS', '200'))

# Documents longer than this get smaller chunks
LARGE_DOCUMENT_THRESHOLD = int(os.getenv('LARGE_DOCUMENT_THRESHOLD', '100000'))
LARGE_DOCUMENT_CHUNK_MAX_CHARS = int(os.getenv('LARGE_DOCUMENT_CHUNK_MAX_CHARS', '500'))
LARGE_DOCUMENT_CHUNK_OVERLAP_CHARS = int(os.getenv('LARGE_DOCUMENT_CHUNK_OVERLAP_CHARS', '100'))

# =============================================================================
# Embeddings
# =============================================================================
# 'ollama' (local) or 'openai' (any OpenAI-compatible embeddings API)
EMBEDDING_PROVIDER = os.getenv('EMBEDDING_PROVIDER', 'ollama').lower()
EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'nomic-embed-text')

# Must match the model: 768 for nomic-embed-text, 1536/3072 for OpenAI models.
# The pgvector column is created with this size by the initial migration.
EMBEDDING_DIMENSIONS = int(os.getenv('EMBEDDING_DIMENSIONS', '768'))
EMBEDDING_TIMEOUT = int(os.getenv('EMBEDDING_TIMEOUT', '120'))  # 2 min

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')

# =============================================================================
# Vector Store
# =============================================================================
# 'pgvector' (Postgres) or 'memory' (single process, not persisted)
VECTOR_STORE_BACKEND = os.getenv('VECTOR_STORE_BACKEND', 'pgvector').lower()

# Deleted-document markers older than this are purged on the next delete.
# Must outlive any ingestion job still running for the deleted document.
VECTOR_STORE_TOMBSTONE_TTL = int(os.getenv('VECTOR_STORE_TOMBSTONE_TTL', '604800'))  # 7 days

# =============================================================================
# Ingestion Queue
# =============================================================================
# 'redis' (durable), 'local' (in-process worker threads) or 'inline'
# (no queue, jobs run in the request)
INGESTION_QUEUE_BACKEND = os.getenv('INGESTION_QUEUE_BACKEND', 'redis').lower()

INGESTION_MAX_ATTEMPTS = int(os.getenv('INGESTION_MAX_ATTEMPTS', '3'))
INGESTION_BACKOFF_INITIAL = float(os.getenv('INGESTION_BACKOFF_INITIAL', '1.0'))
INGESTION_BACKOFF_MULTIPLIER = float(os.getenv('INGESTION_BACKOFF_MULTIPLIER', '2.0'))
INGESTION_BACKOFF_MAX = float(os.getenv('INGESTION_BACKOFF_MAX', '30'))

INGESTION_WORKERS = int(os.getenv('INGESTION_WORKERS', '2'))

# Active jobs whose lease is not renewed for this long go back to the queue
INGESTION_LEASE_TIMEOUT = int(os.getenv('INGESTION_LEASE_TIMEOUT', '900'))  # 15 min

# Failed jobs kept for inspection
INGESTION_FAILED_RETENTION = int(os.getenv('INGESTION_FAILED_RETENTION', '50'))
INGESTION_FAILED_TTL = int(os.getenv('INGESTION_FAILED_TTL', '86400'))  # 24h

QUEUE_CONNECT_TIMEOUT = float(os.getenv('QUEUE_CONNECT_TIMEOUT', '2'))

# Start worker threads in the web process when using the 'local' backend
INGESTION_START_LOCAL_WORKER = env_bool('INGESTION_START_LOCAL_WORKER', 'True')

# Called with (job, mode) on every job state change
INGESTION_JOB_LISTENERS = [
    'apps.indexing.publisher.publish_job_event',
    'apps.docs.listeners.update_document_status',
]

# =============================================================================
# Retrieval / Context
# =============================================================================
RAG_ENABLED = env_bool('RAG_ENABLED', 'True')
RAG_TOP_K = int(os.getenv('RAG_TOP_K', '5'))

# Cosine distance cutoff; unset keeps every match
RAG_MAX_DISTANCE = float(os.environ['RAG_MAX_DISTANCE']) if os.getenv('RAG_MAX_DISTANCE') else None

RAG_CONTEXT_MAX_CHARS = int(os.getenv('RAG_CONTEXT_MAX_CHARS', '6000'))

# =============================================================================
# Streaming Completions
# =============================================================================
# 'openai' (OpenAI-compatible, e.g. OpenRouter) or 'ollama'
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'ollama').lower()
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'llama3.2')

# Read timeout applies between chunks, not to the whole completion
STREAM_CONNECT_TIMEOUT = float(os.getenv('STREAM_CONNECT_TIMEOUT', '10'))
STREAM_READ_TIMEOUT = float(os.getenv('STREAM_READ_TIMEOUT', '30'))

# Attribution headers for OpenRouter
OPENROUTER_SITE_URL = os.getenv('OPENROUTER_SITE_URL', '')
OPENROUTER_APP_NAME = os.getenv('OPENROUTER_APP_NAME', 'DocuChat')

# =============================================================================
# File Upload Configuration
# =============================================================================
# Maximum file size in bytes (50MB default)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

# Allowed MIME types for upload
ALLOWED_CONTENT_TYPES = [
    'application/pdf',
    'text/plain',
    'text/markdown',
    # Some systems use these for markdown
    'text/x-markdown',
]

# Allowed file extensions (used as secondary check)
ALLOWED_EXTENSIONS = ['.pdf', '.txt', '.md', '.markdown']

# =============================================================================
# Logging
# =============================================================================
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.docs': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'apps.indexing': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
