from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("custody", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="onetimecode",
            name="failed_attempts",
            field=models.PositiveSmallIntegerField(default=0),
        ),
    ]
