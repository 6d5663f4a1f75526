import json
import logging

from django.core.serializers.json import DjangoJSONEncoder

from .models import AuditLog

logger = logging.getLogger(__name__)


def _client_ip(request):
    if request is None:
        return None
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def log_action(user, action, instance, description, changes=None, request=None):
    """
    Write one audit row for `instance`. Runs inside the caller's transaction,
    so a rolled back mutation leaves no audit trace.
    """
    if user is not None and not getattr(user, 'is_authenticated', False):
        user = None

    # Decimals and dates must survive the JSONField round trip
    payload = json.loads(json.dumps(changes or {}, cls=DjangoJSONEncoder))

    entry = AuditLog.objects.create(
        user=user,
        action=action,
        model_name=instance.__class__.__name__,
        object_id=str(instance.pk) if instance.pk is not None else '',
        description=description,
        ip_address=_client_ip(request),
        changes=payload,
    )
    logger.debug(f"📝 Audit: {entry}")
    return entry
