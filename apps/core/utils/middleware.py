import logging

from django.core.exceptions import PermissionDenied, ValidationError
from django.http import Http404

from apps.core.utils.api import api_error, validation_message

logger = logging.getLogger(__name__)


class ApiExceptionMiddleware:
    """
    Converts exceptions raised by /api/ views into the JSON error envelope.
    Non-API paths keep Django's default handling.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not request.path.startswith('/api/'):
            return None

        if isinstance(exception, Http404):
            return api_error('Resource not found.', status=404)
        if isinstance(exception, PermissionDenied):
            return api_error('You do not have permission to perform this action.', status=403)
        if isinstance(exception, ValidationError):
            logger.warning('Rejected %s %s: %s', request.method, request.path, exception.messages)
            return api_error(validation_message(exception), status=400)

        logger.exception('Unhandled error on %s %s', request.method, request.path)
        return api_error('An unexpected error occurred.', status=500)
