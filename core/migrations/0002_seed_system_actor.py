from django.conf import settings
from django.contrib.auth.hashers import make_password
from django.db import migrations


def seed_system_actor(apps, schema_editor):
    User = apps.get_model("core", "User")
    if User.objects.filter(is_system_actor=True).exists():
        return
    User.objects.create(
        username=getattr(settings, "POS_SYSTEM_ACTOR_USERNAME", "system"),
        password=make_password(None),
        role="admin",
        is_system_actor=True,
        is_active=True,
    )


def remove_system_actor(apps, schema_editor):
    User = apps.get_model("core", "User")
    User.objects.filter(is_system_actor=True).delete()


class Migration(migrations.Migration):

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(seed_system_actor, remove_system_actor),
    ]
