"""Branch-scoping rules shared by every view and service.

An ``AccessPolicy`` is built once per request from the authenticated identity
and handed to the service layer, so the "admin sees everything, everyone else
sees their own branch" rule lives in exactly one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from django.db.models import Q
from rest_framework.exceptions import PermissionDenied, ValidationError

from common.permissions import get_user_role
from core.models import User
from core.services import resolve_effective_user

logger = logging.getLogger("security.authorization")

NO_BRANCH_MESSAGE = "User must be assigned to a branch"
UUID_LOOKUP_REGEX = r"[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}"


@dataclass(frozen=True)
class AccessPolicy:
    role: str | None
    branch_id: str | None = None

    @classmethod
    def for_user(cls, user) -> "AccessPolicy":
        branch_id = getattr(user, "branch_id", None) if user is not None else None
        return cls(role=get_user_role(user), branch_id=str(branch_id) if branch_id else None)

    @property
    def is_admin(self) -> bool:
        return self.role == User.Role.ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role == User.Role.MANAGER

    def can_access_branch(self, branch_id) -> bool:
        if self.is_admin:
            return True
        return bool(self.branch_id) and branch_id is not None and str(branch_id) == self.branch_id

    def require_branch_access(self, branch_id, entity: str = "branch") -> None:
        if not self.can_access_branch(branch_id):
            logger.warning(
                "branch_access_denied role=%s own_branch=%s target_branch=%s entity=%s",
                self.role,
                self.branch_id,
                branch_id,
                entity,
                extra={"branch_id": self.branch_id},
            )
            raise PermissionDenied(f"Access denied to this {entity}")

    def scope(self, queryset, field: str = "branch_id"):
        if self.is_admin:
            return queryset
        if self.branch_id:
            return queryset.filter(**{field: self.branch_id})
        return queryset.none()

    def resolve_branch_id(self, requested=None) -> str:
        """Pick the branch a request operates on.

        Admins may name any branch (falling back to their own); everyone else
        is pinned to the branch on their account.
        """
        requested = str(requested) if requested else None
        if self.is_admin:
            branch_id = requested or self.branch_id
            if not branch_id:
                raise ValidationError({"branchId": "This field is required."})
            return branch_id

        if not self.branch_id:
            raise PermissionDenied(NO_BRANCH_MESSAGE)
        if requested and requested != self.branch_id:
            self.require_branch_access(requested)
        return self.branch_id

    def scope_any(self, queryset, fields):
        """Like ``scope`` but a row is visible when any of ``fields`` is the caller's branch."""
        if self.is_admin:
            return queryset
        if not self.branch_id:
            return queryset.none()
        condition = Q()
        for field in fields:
            condition |= Q(**{field: self.branch_id})
        return queryset.filter(condition)


class ServiceContextMixin:
    """View helpers that build the arguments every service call takes."""

    def get_policy(self):
        return AccessPolicy.for_user(self.request.user)

    def get_actor(self):
        return resolve_effective_user(self.request.user)

    def get_request_id(self):
        return getattr(self.request, "request_id", None) or self.request.headers.get("X-Request-ID")
