from django.core.exceptions import ValidationError
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods, require_POST

from apps.core.fees.models import StudentBalance
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import FINANCE_ROLES, READ_ROLES, api_role_required
from apps.core.utils.api import (
    api_error,
    api_response,
    form_error_response,
    json_body,
    merge_instance_data,
    paginate,
    query_int,
    validation_message,
)
from apps.core.utils.money import ZERO

from .forms import ClassEnrollmentForm, StudentForm
from .models import ClassEnrollment, Student
from .services import enroll_student, withdraw_enrollment

STUDENT_FIELDS = StudentForm._meta.fields


def serialize_student(student, include_balance=False):
    data = {
        'id': student.id,
        'admission_number': student.admission_number,
        'first_name': student.first_name,
        'last_name': student.last_name,
        'full_name': student.full_name,
        'gender': student.gender,
        'date_of_birth': student.date_of_birth,
        'admission_date': student.admission_date,
        'guardian_name': student.guardian_name,
        'guardian_phone': student.guardian_phone,
        'guardian_email': student.guardian_email,
        'is_active': student.is_active,
    }
    if include_balance:
        balance = StudentBalance.objects.filter(student=student).first()
        data['balance'] = balance.current_balance if balance else ZERO
        data['outstanding'] = balance.outstanding if balance else ZERO
    return data


def serialize_enrollment(enrollment):
    assignment = enrollment.tuition_assignment
    return {
        'id': enrollment.id,
        'student': enrollment.student_id,
        'admission_number': enrollment.student.admission_number,
        'student_name': enrollment.student.full_name,
        'school_class': enrollment.school_class_id,
        'class_name': enrollment.school_class.display_name,
        'term': enrollment.term_id,
        'term_label': enrollment.term.label,
        'status': enrollment.status,
        'tuition_assignment': assignment.id if assignment else None,
        'amount_billed': assignment.amount if assignment else None,
        'enrolled_at': enrollment.enrolled_at,
        'withdrawn_at': enrollment.withdrawn_at,
        'withdrawal_reason': enrollment.withdrawal_reason,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def student_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(Student(), STUDENT_FIELDS, json_body(request))
        form = StudentForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        student = form.save()
        log_audit_event(
            request=request,
            action='students.student_created',
            school=school,
            target=student,
            details=f"Admission={student.admission_number}",
        )
        return api_response(serialize_student(student), message='Student created.', status=201)

    students = Student.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        students = students.filter(is_active=True)
    search = (request.GET.get('search') or '').strip()
    if search:
        students = students.filter(
            Q(admission_number__icontains=search)
            | Q(first_name__icontains=search)
            | Q(last_name__icontains=search)
        )
    class_id = query_int(request, 'class_id')
    if class_id:
        students = students.filter(
            class_enrollments__school_class_id=class_id,
            class_enrollments__status=ClassEnrollment.STATUS_ACTIVE,
        ).distinct()

    rows, pagination = paginate(request, students, serialize_student)
    return api_response(rows, pagination=pagination)


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required('schooladmin', read_roles=READ_ROLES)
def student_detail(request, pk):
    school = request.current_school
    student = get_object_or_404(Student, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_student(student, include_balance=True))

    if request.method == 'DELETE':
        student.delete()
        log_audit_event(
            request=request,
            action='students.student_deactivated',
            school=school,
            target=student,
            details=f"Admission={student.admission_number}",
        )
        return api_response(message='Student deactivated.')

    data = merge_instance_data(student, STUDENT_FIELDS, json_body(request))
    form = StudentForm(data, instance=student, school=school)
    if not form.is_valid():
        return form_error_response(form)
    student = form.save()
    log_audit_event(
        request=request,
        action='students.student_updated',
        school=school,
        target=student,
        details=f"Admission={student.admission_number}",
    )
    return api_response(serialize_student(student), message='Student updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def enrollment_list(request):
    school = request.current_school

    if request.method == 'POST':
        form = ClassEnrollmentForm(json_body(request), school=school)
        if not form.is_valid():
            return form_error_response(form)
        try:
            enrollment = enroll_student(
                student=form.cleaned_data['student'],
                school_class=form.cleaned_data['school_class'],
                term=form.cleaned_data['term'],
                enrolled_by=request.user,
            )
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='students.enrolled',
            school=school,
            target=enrollment,
            details=(
                f"Student={enrollment.student.admission_number}, Class={enrollment.school_class.display_name}, "
                f"Term={enrollment.term.label}"
            ),
        )
        return api_response(serialize_enrollment(enrollment), message='Student enrolled.', status=201)

    enrollments = ClassEnrollment.objects.filter(school=school).select_related(
        'student',
        'school_class',
        'term__session',
        'tuition_assignment',
    )
    for name in ('student_id', 'term_id'):
        value = query_int(request, name)
        if value:
            enrollments = enrollments.filter(**{name: value})
    class_id = query_int(request, 'class_id')
    if class_id:
        enrollments = enrollments.filter(school_class_id=class_id)
    status = request.GET.get('status')
    if status:
        enrollments = enrollments.filter(status=status)

    rows, pagination = paginate(request, enrollments, serialize_enrollment)
    return api_response(rows, pagination=pagination)


@require_POST
@api_role_required(FINANCE_ROLES)
def enrollment_withdraw(request, pk):
    school = request.current_school
    enrollment = get_object_or_404(ClassEnrollment, pk=pk, school=school)
    reason = str(json_body(request).get('reason') or '').strip()
    try:
        result = withdraw_enrollment(enrollment=enrollment, reason=reason, withdrawn_by=request.user)
    except ValidationError as exc:
        return api_error(validation_message(exc))

    enrollment = result['enrollment']
    log_audit_event(
        request=request,
        action='students.withdrawn',
        school=school,
        target=enrollment,
        details=f"Student={enrollment.student.admission_number}, ChargeReversed={result['charge_reversed']}",
    )
    data = serialize_enrollment(enrollment)
    data['charge_reversed'] = result['charge_reversed']
    return api_response(data, message='Enrollment withdrawn.')
