import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_ROLES = frozenset({User.Role.CASHIER, User.Role.MANAGER, User.Role.ADMIN})
MANAGEMENT_ROLES = frozenset({User.Role.MANAGER, User.Role.ADMIN})

ROLE_CAPABILITY_MATRIX = {
    "branches.view": ALL_ROLES,
    "customers.view": ALL_ROLES,
    "customers.manage": ALL_ROLES,
    "catalog.view": ALL_ROLES,
    "catalog.manage": MANAGEMENT_ROLES,
    "stock.view": ALL_ROLES,
    "stock.manage": MANAGEMENT_ROLES,
    "stock.transfer": MANAGEMENT_ROLES,
    "stock.transfer.complete": MANAGEMENT_ROLES,
    # Admins reach the sale service so it can refuse them with an explicit message.
    "sales.create": ALL_ROLES,
    "sales.view": ALL_ROLES,
    "sales.payment": ALL_ROLES,
    "sales.cancel": MANAGEMENT_ROLES,
    "refund.view": MANAGEMENT_ROLES,
    "refund.request": MANAGEMENT_ROLES,
    "refund.process": MANAGEMENT_ROLES,
    "preorders.view": ALL_ROLES,
    "preorders.manage": ALL_ROLES,
    "preorders.convert": ALL_ROLES,
    "preorders.cancel": MANAGEMENT_ROLES,
    "audit.view": MANAGEMENT_ROLES,
    "admin.records.manage": frozenset({User.Role.ADMIN}),
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.CASHIER


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
                extra={"capability": capability, "request_id": getattr(request, "request_id", None)},
            )
        return allowed
