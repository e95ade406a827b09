from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods, require_POST

from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import READ_ROLES, api_role_required
from apps.core.utils.api import api_error, api_response, form_error_response, json_body, validation_message

from .forms import AcademicSessionForm, TermForm
from .models import AcademicSession, Term
from .services import activate_session, activate_term


def serialize_session(session):
    return {
        'id': session.id,
        'name': session.name,
        'start_date': session.start_date,
        'end_date': session.end_date,
        'is_active': session.is_active,
    }


def serialize_term(term):
    return {
        'id': term.id,
        'session': term.session_id,
        'academic_year': term.session.name,
        'number': term.number,
        'name': term.name,
        'label': term.label,
        'start_date': term.start_date,
        'end_date': term.end_date,
        'is_current': term.is_current,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def session_list(request):
    school = request.current_school

    if request.method == 'POST':
        form = AcademicSessionForm(json_body(request), school=school)
        if not form.is_valid():
            return form_error_response(form)
        session = form.save()
        log_audit_event(
            request=request,
            action='sessions.session_created',
            school=school,
            target=session,
            details=f"Name={session.name}",
        )
        return api_response(serialize_session(session), message='Academic session created.', status=201)

    sessions = AcademicSession.objects.filter(school=school).order_by('-start_date')
    return api_response([serialize_session(row) for row in sessions])


@require_POST
@api_role_required('schooladmin')
def session_activate(request, pk):
    school = request.current_school
    session = get_object_or_404(AcademicSession, pk=pk, school=school)
    activate_session(school=school, session=session)
    log_audit_event(
        request=request,
        action='sessions.session_activated',
        school=school,
        target=session,
        details=f"Name={session.name}",
    )
    return api_response(serialize_session(session), message='Academic session activated.')


@require_http_methods(['GET', 'POST'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def term_list(request, session_id):
    school = request.current_school
    session = get_object_or_404(AcademicSession, pk=session_id, school=school)

    if request.method == 'POST':
        form = TermForm(json_body(request), session=session)
        if not form.is_valid():
            return form_error_response(form)
        term = form.save()
        log_audit_event(
            request=request,
            action='sessions.term_created',
            school=school,
            target=term,
            details=f"Term={term.label}",
        )
        return api_response(serialize_term(term), message='Term created.', status=201)

    terms = session.terms.select_related('session').order_by('number')
    return api_response([serialize_term(row) for row in terms])


@require_POST
@api_role_required('schooladmin')
def term_activate(request, pk):
    school = request.current_school
    term = get_object_or_404(Term.objects.select_related('session'), pk=pk, school=school)
    try:
        activate_term(school=school, term=term)
    except ValidationError as exc:
        return api_error(validation_message(exc))

    log_audit_event(
        request=request,
        action='sessions.term_activated',
        school=school,
        target=term,
        details=f"Term={term.label}",
    )
    return api_response(serialize_term(term), message='Current term updated.')
