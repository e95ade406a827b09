from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods

from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import READ_ROLES, api_role_required
from apps.core.utils.api import (
    api_error,
    api_response,
    form_error_response,
    json_body,
    merge_instance_data,
    validation_message,
)

from .forms import SchoolClassForm
from .models import SchoolClass

CLASS_FIELDS = SchoolClassForm._meta.fields


def serialize_class(school_class):
    return {
        'id': school_class.id,
        'name': school_class.name,
        'stream': school_class.stream,
        'display_name': school_class.display_name,
        'code': school_class.code,
        'display_order': school_class.display_order,
        'is_active': school_class.is_active,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def class_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(SchoolClass(), CLASS_FIELDS, json_body(request))
        form = SchoolClassForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        school_class = form.save()
        log_audit_event(
            request=request,
            action='academics.class_created',
            school=school,
            target=school_class,
            details=f"Class={school_class.display_name}",
        )
        return api_response(serialize_class(school_class), message='Class created.', status=201)

    classes = SchoolClass.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        classes = classes.filter(is_active=True)
    return api_response([serialize_class(row) for row in classes])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def class_detail(request, pk):
    school = request.current_school
    school_class = get_object_or_404(SchoolClass, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_class(school_class))

    if request.method == 'DELETE':
        try:
            school_class.delete()
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='academics.class_deactivated',
            school=school,
            target=school_class,
            details=f"Class={school_class.display_name}",
        )
        return api_response(message='Class deactivated.')

    data = merge_instance_data(school_class, CLASS_FIELDS, json_body(request))
    form = SchoolClassForm(data, instance=school_class, school=school)
    if not form.is_valid():
        return form_error_response(form)
    school_class = form.save()
    log_audit_event(
        request=request,
        action='academics.class_updated',
        school=school,
        target=school_class,
        details=f"Class={school_class.display_name}",
    )
    return api_response(serialize_class(school_class), message='Class updated.')
