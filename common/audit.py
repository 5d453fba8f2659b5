import json

from django.core.serializers.json import DjangoJSONEncoder

from core.models import AuditLog


def json_snapshot(value):
    """Serializer output may hold Decimals, UUIDs and datetimes; store plain JSON."""
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def create_audit_log_from_request(request, *, action, entity, entity_id=None, before_snapshot=None, after_snapshot=None):
    """Append one audit row for a mutation made through the API by ``request.user``."""
    user = getattr(request, "user", None)
    return AuditLog.objects.create(
        actor=user if user is not None and user.is_authenticated else None,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=json_snapshot(before_snapshot),
        after_snapshot=json_snapshot(after_snapshot),
        request_id=get_request_id(request),
    )
