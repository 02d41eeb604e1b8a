import uuid

from common.utils import to_json_compatible
from core.models import AuditLog
from core.services import resolve_effective_user


def _parse_uuid(value):
    if not value:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def get_request_id(request):
    if request is None:
        return None
    return (
        getattr(request, "request_id", None)
        or request.headers.get("X-Request-ID")
        or request.META.get("HTTP_X_REQUEST_ID")
    )


def create_audit_log(
    *,
    actor=None,
    branch_id=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    return AuditLog.objects.create(
        actor=actor,
        branch_id=_parse_uuid(branch_id),
        action=action,
        entity=entity,
        entity_id=_parse_uuid(entity_id),
        before_snapshot=to_json_compatible(before_snapshot) if before_snapshot is not None else None,
        after_snapshot=to_json_compatible(after_snapshot) if after_snapshot is not None else None,
        request_id=request_id,
    )


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    branch_id=None,
    actor=None,
):
    if actor is None:
        actor = resolve_effective_user(getattr(request, "user", None))
    return create_audit_log(
        actor=actor,
        branch_id=branch_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
    )


class AuditedMutationMixin:
    """ModelViewSet hooks that write one audit row per create/update."""

    audit_entity = None

    def _audit_branch_id(self, instance):
        return getattr(instance, "branch_id", None)

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            branch_id=self._audit_branch_id(instance),
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )
