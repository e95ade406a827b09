from django.core.exceptions import ValidationError
from django.views.decorators.http import require_GET

from apps.core.academic_sessions.services import resolve_term
from apps.core.users.decorators import FINANCE_ROLES, api_role_required
from apps.core.utils.api import api_error, api_response, parse_date_param, query_int, validation_message

from .services import (
    balances_by_class,
    collection_efficiency,
    debt_summary,
    default_period,
    financial_health_summary,
    payment_completion_rates,
)


def _requested_term(request, required=True):
    term_id = query_int(request, 'term_id')
    term = request.GET.get('term')
    academic_year = request.GET.get('academic_year')
    if not required and not (term_id or term or academic_year):
        return None
    return resolve_term(
        school=request.current_school,
        term=term,
        academic_year=academic_year,
        term_id=term_id,
    )


@require_GET
@api_role_required(FINANCE_ROLES)
def balances_by_class_view(request):
    try:
        term = _requested_term(request)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    return api_response(balances_by_class(school=request.current_school, term=term))


@require_GET
@api_role_required(FINANCE_ROLES)
def debt_summary_view(request):
    return api_response(debt_summary(school=request.current_school))


@require_GET
@api_role_required(FINANCE_ROLES)
def financial_health_view(request):
    return api_response(financial_health_summary(school=request.current_school))


@require_GET
@api_role_required(FINANCE_ROLES)
def payment_completion_view(request):
    try:
        term = _requested_term(request, required=False)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    return api_response(payment_completion_rates(school=request.current_school, term=term))


@require_GET
@api_role_required(FINANCE_ROLES)
def collection_efficiency_view(request):
    school = request.current_school
    date_from = parse_date_param(request.GET.get('start_date'), 'start_date')
    date_to = parse_date_param(request.GET.get('end_date'), 'end_date')
    default_from, default_to = default_period(school)
    date_from = date_from or default_from
    date_to = date_to or default_to
    if date_to < date_from:
        return api_error('end_date must be on or after start_date.')
    return api_response(collection_efficiency(school=school, date_from=date_from, date_to=date_to))
