"""
Helpers shared by the JSON API views.

Every response uses the same envelope:
    {"success": true, "message": "...", "data": ...}
    {"success": false, "message": "...", "errors": {...}}
"""
import datetime
import json
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.paginator import EmptyPage, Paginator
from django.forms.models import model_to_dict
from django.http import JsonResponse
from django.utils.dateparse import parse_date


def api_response(data=None, message='', status=200, **extra):
    payload = {'success': True, 'message': message}
    if data is not None:
        payload['data'] = data
    payload.update(extra)
    return JsonResponse(payload, status=status)


def api_error(message, status=400, errors=None):
    payload = {'success': False, 'message': message}
    if errors:
        payload['errors'] = errors
    return JsonResponse(payload, status=status)


def validation_message(exc: ValidationError) -> str:
    return '; '.join(exc.messages)


def form_errors(form):
    return {
        field: [error['message'] for error in errors]
        for field, errors in form.errors.get_json_data().items()
    }


def form_error_response(form, message='Validation failed.'):
    return api_error(message, status=400, errors=form_errors(form))


def json_body(request):
    if not request.body:
        return {}
    try:
        payload = json.loads(request.body.decode(request.encoding or 'utf-8'))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError('Request body must be valid JSON.')
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    return payload


def parse_decimal(value, field_name='amount'):
    if value is None or value == '':
        raise ValidationError({field_name: f'{field_name} is required.'})
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError({field_name: f'{field_name} must be a number.'})
    # Decimal accepts 'NaN' and 'Infinity', which no amount can be.
    if not number.is_finite():
        raise ValidationError({field_name: f'{field_name} must be a number.'})
    return number


def query_int(request, name, default=None):
    value = request.GET.get(name)
    if value is None or not str(value).strip().lstrip('-').isdigit():
        return default
    return int(value)


def paginate(request, queryset, serializer):
    """Paginate a queryset using ?page= and ?page_size= and serialize the rows."""
    page_size = query_int(request, 'page_size', settings.API_DEFAULT_PAGE_SIZE)
    page_size = max(1, min(page_size, settings.API_MAX_PAGE_SIZE))
    page_number = max(1, query_int(request, 'page', 1))

    paginator = Paginator(queryset, page_size)
    try:
        page = paginator.page(page_number)
    except EmptyPage:
        page = paginator.page(paginator.num_pages)

    rows = [serializer(row) for row in page.object_list]
    return rows, {
        'page': page.number,
        'page_size': page_size,
        'total_items': paginator.count,
        'total_pages': paginator.num_pages,
        'has_next': page.has_next(),
        'has_previous': page.has_previous(),
    }


def merge_instance_data(instance, fields, payload):
    """Form data for a partial update: current field values overlaid with the payload."""
    data = model_to_dict(instance, fields=fields)
    data.update({key: value for key, value in payload.items() if key in fields})
    return data


def parse_date_param(value, field_name='date'):
    """Parses an ISO date from a query string or payload. Empty values return None."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime.date):
        return value
    try:
        parsed = parse_date(str(value).strip())
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError({field_name: f'{field_name} must be a date in YYYY-MM-DD format.'})
    return parsed
