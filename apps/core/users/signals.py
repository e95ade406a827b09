import logging

from django.contrib.auth.signals import user_logged_in, user_logged_out, user_login_failed
from django.dispatch import receiver

from apps.core.users.audit import log_audit_event

logger = logging.getLogger(__name__)


def _token_details(request, user):
    token = getattr(request, 'auth_token', None)
    details = f"Role={user.role}"
    if token is not None:
        details += f", Token={token.prefix}"
    return details


@receiver(user_logged_in)
def log_login(sender, request, user, **kwargs):
    if request is None:
        return

    logger.info('User %s logged in', user.username)
    log_audit_event(
        request=request,
        action='user.login',
        school=getattr(user, 'school', None),
        target=user,
        details=_token_details(request, user),
        user=user,
    )


@receiver(user_logged_out)
def log_logout(sender, request, user, **kwargs):
    if user is None or request is None:
        return

    logger.info('User %s logged out', user.username)
    log_audit_event(
        request=request,
        action='user.logout',
        school=getattr(user, 'school', None),
        target=user,
        details=_token_details(request, user),
        user=user,
    )


@receiver(user_login_failed)
def log_login_failure(sender, credentials, request=None, **kwargs):
    logger.warning('Failed login for %s', credentials.get('username', '<unknown>'))
