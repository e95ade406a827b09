import logging
from datetime import timedelta

from django.contrib.auth.models import AnonymousUser
from django.utils import timezone

from apps.core.users.models import ApiToken, hash_token_key

logger = logging.getLogger(__name__)

LAST_USED_RESOLUTION = timedelta(minutes=1)


def extract_bearer_key(request):
    header = request.META.get('HTTP_AUTHORIZATION', '')
    scheme, _, key = header.partition(' ')
    if scheme.lower() != 'bearer' or not key.strip():
        return None
    return key.strip()


class ApiTokenAuthenticationMiddleware:
    """
    Authenticates ``Authorization: Bearer <key>`` requests.

    A request that presents a bearer header is authenticated by the token
    alone; an unknown, expired or revoked key leaves the request anonymous
    even if a session cookie is present.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.auth_token = None
        raw_key = extract_bearer_key(request)

        if raw_key is not None:
            token = (
                ApiToken.objects.usable()
                .select_related('user', 'user__school')
                .filter(key_digest=hash_token_key(raw_key))
                .first()
            )
            if token is None:
                logger.info('Rejected bearer token on %s %s', request.method, request.path)
                request.user = AnonymousUser()
            else:
                request.user = token.user
                request.auth_token = token
                now = timezone.now()
                if token.last_used_at is None or now - token.last_used_at > LAST_USED_RESOLUTION:
                    ApiToken.objects.filter(pk=token.pk).update(last_used_at=now)

        return self.get_response(request)
