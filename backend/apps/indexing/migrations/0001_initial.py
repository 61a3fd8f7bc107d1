import uuid

from django.db import migrations, models
from pgvector.django import VectorExtension, VectorField


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        VectorExtension(),
        migrations.CreateModel(
            name='DocumentChunk',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('document_id', models.CharField(db_index=True, max_length=64)),
                ('owner_id', models.CharField(db_index=True, help_text='Identity of the uploading user', max_length=255)),
                ('conversation_id', models.CharField(blank=True, db_index=True, default='', help_text='Conversation the document was uploaded into (empty if global)', max_length=255)),
                ('file_name', models.CharField(max_length=255)),
                ('chunk_index', models.PositiveIntegerField(help_text='Index of this chunk within the document (0-based)')),
                ('start_char', models.PositiveIntegerField(default=0)),
                ('end_char', models.PositiveIntegerField(default=0)),
                ('text', models.TextField(help_text='The text content of this chunk')),
                ('embedding', VectorField(dimensions=768)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'doc_chunks',
                'ordering': ['document_id', 'chunk_index'],
            },
        ),
        migrations.AddConstraint(
            model_name='documentchunk',
            constraint=models.UniqueConstraint(fields=('document_id', 'chunk_index'), name='unique_document_chunk'),
        ),
        migrations.CreateModel(
            name='DocumentTombstone',
            fields=[
                ('document_id', models.CharField(max_length=64, primary_key=True, serialize=False)),
                ('deleted_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'doc_chunk_tombstones',
            },
        ),
    ]
