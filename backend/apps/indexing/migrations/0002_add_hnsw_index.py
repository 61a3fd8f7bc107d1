"""
Migration to add HNSW index on doc_chunks.embedding for fast vector search.

HNSW (Hierarchical Navigable Small World) provides:
- Fast approximate nearest neighbor search
- No need to pre-train like IVFFlat
- Good balance of speed and recall

Skipped on non-PostgreSQL databases (local sqlite development).
"""
from django.db import migrations

CREATE_INDEX = """
    CREATE INDEX IF NOT EXISTS doc_chunks_embedding_hnsw_idx
    ON doc_chunks
    USING hnsw (embedding vector_cosine_ops)
    WITH (m = 16, ef_construction = 64);
"""

DROP_INDEX = "DROP INDEX IF EXISTS doc_chunks_embedding_hnsw_idx;"


def create_index(apps, schema_editor):
    if schema_editor.connection.vendor == 'postgresql':
        schema_editor.execute(CREATE_INDEX)


def drop_index(apps, schema_editor):
    if schema_editor.connection.vendor == 'postgresql':
        schema_editor.execute(DROP_INDEX)


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_index, drop_index),
    ]
