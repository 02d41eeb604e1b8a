from django.conf import settings

from core.models import User


def get_system_actor():
    """Return the seeded service user, creating it if a fresh database lacks it."""
    actor = User.objects.filter(is_system_actor=True).first()
    if actor is not None:
        return actor

    actor = User(
        username=getattr(settings, "POS_SYSTEM_ACTOR_USERNAME", "system"),
        role=User.Role.ADMIN,
        is_system_actor=True,
        is_active=True,
    )
    actor.set_unusable_password()
    actor.save()
    return actor


def resolve_effective_user(user):
    """Map the request identity to a persisted user that writes can be attributed to.

    Stateless token identities (simplejwt ``TokenUser``), anonymous users and
    inactive accounts resolve to the system actor.
    """
    if isinstance(user, User) and user.pk and user.is_active and not user._state.adding:
        return user
    return get_system_actor()
