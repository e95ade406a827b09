import logging

from django.db import DatabaseError, transaction

from apps.core.users.models import AuditLog

logger = logging.getLogger(__name__)


def _extract_ip(request):
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def log_audit_event(request, action, school=None, target=None, details='', user=None):
    target_model = ''
    target_id = ''

    if target is not None:
        target_model = target.__class__.__name__
        target_id = str(getattr(target, 'pk', ''))

    if user is None:
        user = getattr(request, 'user', None)
    if user is not None and not user.is_authenticated:
        user = None

    try:
        with transaction.atomic():
            AuditLog.objects.create(
                school=school or getattr(user, 'school', None),
                user=user,
                action=action,
                target_model=target_model,
                target_id=target_id,
                details=details,
                method=request.method or '',
                path=(request.path or '')[:255],
                ip_address=_extract_ip(request),
            )
    except DatabaseError:
        # Audit failures must never break business actions.
        logger.warning('Audit event %s could not be stored', action, exc_info=True)
