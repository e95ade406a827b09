from django.db.models import Count
from django.views.decorators.http import require_http_methods

from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import READ_ROLES, api_role_required
from apps.core.utils.api import api_error, api_response, form_error_response, json_body, merge_instance_data

from .forms import SchoolForm, SchoolOnboardingForm
from .models import School
from .services import onboard_school

SCHOOL_FIELDS = SchoolForm._meta.fields


def serialize_school(school):
    return {
        'id': school.id,
        'uuid': str(school.uuid),
        'name': school.name,
        'code': school.code,
        'address': school.address,
        'phone': school.phone,
        'email': school.email,
        'timezone': school.timezone,
        'is_active': school.is_active,
        'current_session': school.current_session.name if school.current_session_id else None,
        'current_term': school.current_term.label if school.current_term_id else None,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required('superadmin')
def school_list(request):
    if request.method == 'POST':
        form = SchoolOnboardingForm(json_body(request))
        if not form.is_valid():
            return form_error_response(form)
        data = form.cleaned_data
        result = onboard_school(
            name=data['school_name'],
            code=data['school_code'],
            address=data['school_address'],
            phone=data['school_phone'],
            email=data['school_email'],
            timezone=data['school_timezone'],
            base_currency=data['base_currency'],
            admin_username=data['admin_username'],
            admin_email=data['admin_email'],
            admin_password=data['admin_password'],
            session_name=data['session_name'],
            session_start_date=data['session_start_date'],
            session_end_date=data['session_end_date'],
        )
        school = result['school']
        log_audit_event(
            request=request,
            action='school.onboarded',
            school=school,
            target=school,
            details=f"School admin created: {result['admin_user'].username}",
        )
        payload = serialize_school(school)
        payload['admin_username'] = result['admin_user'].username
        payload['base_currency'] = result['base_currency'].code
        return api_response(payload, message='School onboarded.', status=201)

    schools = School.objects.select_related('current_session', 'current_term__session').annotate(
        total_users=Count('users', distinct=True),
    ).order_by('name')
    rows = []
    for school in schools:
        row = serialize_school(school)
        row['total_users'] = school.total_users
        rows.append(row)
    return api_response(rows)


@require_http_methods(['GET', 'PATCH'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def school_current(request):
    school = request.current_school
    if school is None:
        return api_error('Your account is not linked to a school.', status=404)

    if request.method == 'GET':
        return api_response(serialize_school(school))

    data = merge_instance_data(school, SCHOOL_FIELDS, json_body(request))
    form = SchoolForm(data, instance=school)
    if not form.is_valid():
        return form_error_response(form)
    school = form.save()
    log_audit_event(
        request=request,
        action='school.updated',
        school=school,
        target=school,
        details=f"Fields={','.join(sorted(form.changed_data)) or 'none'}",
    )
    return api_response(serialize_school(school), message='School updated.')
