from functools import wraps

from django.middleware.csrf import CsrfViewMiddleware
from django.views.decorators.csrf import csrf_exempt

from apps.core.utils.api import api_error

FINANCE_ROLES = ('schooladmin', 'accountant')
READ_ROLES = ('schooladmin', 'accountant', 'staff')


def _normalize_roles(allowed_roles):
    if isinstance(allowed_roles, str):
        return {allowed_roles}
    return set(allowed_roles)


class SessionCsrfCheck(CsrfViewMiddleware):
    """Runs Django's CSRF checks on demand and reports the failure reason."""

    def _reject(self, request, reason):
        return reason


def csrf_failure_reason(request):
    check = SessionCsrfCheck(lambda req: None)
    check.process_request(request)
    return check.process_view(request, None, (), {})


def api_role_required(allowed_roles, read_roles=None):
    """
    Restricts a JSON API view to the given roles.

    ``read_roles`` widens access for safe methods (GET/HEAD) only, so a list
    endpoint can be readable by staff while writes stay with finance roles.
    Bearer-token requests carry no CSRF token and skip the check; requests
    authenticated by the session cookie must pass it.
    """
    normalized_roles = _normalize_roles(allowed_roles)
    normalized_read_roles = normalized_roles | _normalize_roles(read_roles or ())

    def decorator(view_func):
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            if not request.user.is_authenticated:
                return api_error('Authentication credentials were not provided or are invalid.', status=401)

            if getattr(request, 'auth_token', None) is None:
                reason = csrf_failure_reason(request)
                if reason:
                    return api_error(f'CSRF verification failed. {reason}', status=403)

            permitted = normalized_read_roles if request.method in ('GET', 'HEAD') else normalized_roles
            if request.user.role not in permitted:
                return api_error('You do not have permission to perform this action.', status=403)

            if request.user.role != 'superadmin' and getattr(request, 'current_school', None) is None:
                return api_error('Your account is not linked to an active school.', status=403)

            return view_func(request, *args, **kwargs)

        return csrf_exempt(wrapper)

    return decorator
