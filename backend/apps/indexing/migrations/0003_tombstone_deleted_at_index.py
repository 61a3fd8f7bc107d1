from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0002_add_hnsw_index'),
    ]

    operations = [
        migrations.AlterField(
            model_name='documenttombstone',
            name='deleted_at',
            field=models.DateTimeField(auto_now_add=True, db_index=True),
        ),
    ]
