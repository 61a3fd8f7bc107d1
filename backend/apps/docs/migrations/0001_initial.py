from django.db import migrations, models
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('owner_id', models.CharField(db_index=True, help_text='User ID from the authentication gateway', max_length=255)),
                ('conversation_id', models.CharField(blank=True, db_index=True, default='', help_text='Conversation the document belongs to (empty if global)', max_length=255)),
                ('filename', models.CharField(help_text='Original filename', max_length=255)),
                ('content_type', models.CharField(help_text='MIME type of the file', max_length=100)),
                ('size_bytes', models.PositiveIntegerField(help_text='File size in bytes')),
                ('content_hash', models.CharField(help_text='SHA-256 of the file content, for duplicate detection', max_length=64)),
                ('text', models.TextField(help_text='Extracted text')),
                ('status', models.CharField(choices=[('QUEUED', 'Queued for ingestion'), ('INDEXING', 'Currently ingesting'), ('INDEXED', 'Successfully ingested'), ('FAILED', 'Ingestion failed')], db_index=True, default='QUEUED', help_text='Current status in the ingestion pipeline', max_length=20)),
                ('error_message', models.TextField(blank=True, help_text='Last ingestion error, if any', null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'documents',
                'ordering': ['-created_at'],
            },
        ),
        migrations.AddIndex(
            model_name='document',
            index=models.Index(fields=['owner_id', 'created_at'], name='documents_owner_i_7c1f2a_idx'),
        ),
        migrations.AddConstraint(
            model_name='document',
            constraint=models.UniqueConstraint(fields=('owner_id', 'content_hash'), name='unique_owner_content_hash'),
        ),
    ]
