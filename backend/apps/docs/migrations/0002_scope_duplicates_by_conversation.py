from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('docs', '0001_initial'),
    ]

    operations = [
        migrations.RemoveConstraint(
            model_name='document',
            name='unique_owner_content_hash',
        ),
        migrations.AddConstraint(
            model_name='document',
            constraint=models.UniqueConstraint(fields=('owner_id', 'conversation_id', 'content_hash'), name='unique_owner_conversation_content_hash'),
        ),
    ]
