from django.core.exceptions import ValidationError
from django.db.models import Q
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods, require_POST

from apps.core.fees.views import collect_payment_from_request, filter_payments, serialize_payment
from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import FINANCE_ROLES, READ_ROLES, api_role_required
from apps.core.utils.api import (
    api_error,
    api_response,
    form_error_response,
    json_body,
    merge_instance_data,
    paginate,
    parse_date_param,
    query_int,
    validation_message,
)

from .forms import BoardingEnrollmentForm, BoardingFeeForm, HostelForm, RoomForm
from .models import BoardingEnrollment, BoardingFee, BoardingFeesPayment, Hostel, Room
from .services import check_in_boarder, check_out_boarder, enroll_boarder, withdraw_boarder

HOSTEL_FIELDS = HostelForm._meta.fields
ROOM_FIELDS = RoomForm._meta.fields
BOARDING_FEE_FIELDS = BoardingFeeForm._meta.fields


def serialize_hostel(hostel, term=None):
    data = {
        'id': hostel.id,
        'name': hostel.name,
        'gender': hostel.gender,
        'capacity': hostel.capacity,
        'description': hostel.description,
        'is_active': hostel.is_active,
    }
    if term is not None:
        occupied = hostel.occupancy(term)
        data['occupied'] = occupied
        data['available'] = max(hostel.capacity - occupied, 0)
    return data


def serialize_room(room, term=None):
    data = {
        'id': room.id,
        'hostel': room.hostel_id,
        'hostel_name': room.hostel.name,
        'room_number': room.room_number,
        'room_type': room.room_type,
        'floor': room.floor,
        'capacity': room.capacity,
        'description': room.description,
        'is_active': room.is_active,
    }
    if term is not None:
        occupied = room.occupancy(term)
        data['occupied'] = occupied
        data['available'] = max(room.capacity - occupied, 0)
    return data


def serialize_boarding_fee(fee):
    return {
        'id': fee.id,
        'hostel': fee.hostel_id,
        'hostel_name': fee.hostel.name,
        'term': fee.term_id,
        'term_label': fee.term.label,
        'currency': fee.currency.code,
        'amount': fee.amount,
        'is_active': fee.is_active,
    }


def serialize_boarding_enrollment(enrollment):
    assignment = enrollment.fee_assignment
    return {
        'id': enrollment.id,
        'student': enrollment.student_id,
        'admission_number': enrollment.student.admission_number,
        'student_name': enrollment.student.full_name,
        'hostel': enrollment.hostel_id,
        'hostel_name': enrollment.hostel.name,
        'room': enrollment.room_id,
        'room_number': enrollment.room.room_number,
        'term': enrollment.term_id,
        'term_label': enrollment.term.label,
        'status': enrollment.status,
        'fee_assignment': assignment.id if assignment else None,
        'amount_billed': assignment.amount if assignment else None,
        'enrolled_at': enrollment.enrolled_at,
        'checked_in_on': enrollment.checked_in_on,
        'checked_out_on': enrollment.checked_out_on,
        'check_out_reason': enrollment.check_out_reason,
        'withdrawn_at': enrollment.withdrawn_at,
        'withdrawal_reason': enrollment.withdrawal_reason,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def hostel_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(Hostel(), HOSTEL_FIELDS, json_body(request))
        form = HostelForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        hostel = form.save()
        log_audit_event(
            request=request,
            action='boarding.hostel_created',
            school=school,
            target=hostel,
            details=f"Hostel={hostel.name}, Capacity={hostel.capacity}",
        )
        return api_response(serialize_hostel(hostel), message='Hostel created.', status=201)

    hostels = Hostel.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        hostels = hostels.filter(is_active=True)
    return api_response([serialize_hostel(row, term=request.current_term) for row in hostels])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def hostel_detail(request, pk):
    school = request.current_school
    hostel = get_object_or_404(Hostel, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_hostel(hostel, term=request.current_term))

    if request.method == 'DELETE':
        try:
            hostel.delete()
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='boarding.hostel_deactivated',
            school=school,
            target=hostel,
            details=f"Hostel={hostel.name}",
        )
        return api_response(message='Hostel deactivated.')

    data = merge_instance_data(hostel, HOSTEL_FIELDS, json_body(request))
    form = HostelForm(data, instance=hostel, school=school)
    if not form.is_valid():
        return form_error_response(form)
    hostel = form.save()
    log_audit_event(
        request=request,
        action='boarding.hostel_updated',
        school=school,
        target=hostel,
        details=f"Hostel={hostel.name}, Capacity={hostel.capacity}",
    )
    return api_response(serialize_hostel(hostel), message='Hostel updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def room_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(Room(), ROOM_FIELDS, json_body(request))
        form = RoomForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        room = form.save()
        log_audit_event(
            request=request,
            action='boarding.room_created',
            school=school,
            target=room,
            details=f"Room={room}, Capacity={room.capacity}",
        )
        return api_response(serialize_room(room), message='Room created.', status=201)

    rooms = Room.objects.filter(school=school).select_related('hostel')
    if request.GET.get('include_inactive') != '1':
        rooms = rooms.filter(is_active=True)
    hostel_id = query_int(request, 'hostel_id')
    if hostel_id:
        rooms = rooms.filter(hostel_id=hostel_id)
    floor = query_int(request, 'floor')
    if floor is not None:
        rooms = rooms.filter(floor=floor)
    room_type = request.GET.get('room_type')
    if room_type:
        rooms = rooms.filter(room_type=room_type)
    search = (request.GET.get('search') or '').strip()
    if search:
        rooms = rooms.filter(Q(room_number__icontains=search) | Q(hostel__name__icontains=search))
    term = request.current_term
    rows, pagination = paginate(request, rooms, lambda room: serialize_room(room, term=term))
    return api_response(rows, pagination=pagination)


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def room_detail(request, pk):
    school = request.current_school
    room = get_object_or_404(Room.objects.select_related('hostel'), pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_room(room, term=request.current_term))

    if request.method == 'DELETE':
        try:
            room.delete()
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='boarding.room_deactivated',
            school=school,
            target=room,
            details=f"Room={room}",
        )
        return api_response(message='Room deactivated.')

    data = merge_instance_data(room, ROOM_FIELDS, json_body(request))
    form = RoomForm(data, instance=room, school=school)
    if not form.is_valid():
        return form_error_response(form)
    room = form.save()
    log_audit_event(
        request=request,
        action='boarding.room_updated',
        school=school,
        target=room,
        details=f"Room={room}, Capacity={room.capacity}",
    )
    return api_response(serialize_room(room), message='Room updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def boarding_fee_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(BoardingFee(), BOARDING_FEE_FIELDS, json_body(request))
        form = BoardingFeeForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        fee = form.save()
        log_audit_event(
            request=request,
            action='boarding.fee_created',
            school=school,
            target=fee,
            details=f"Fee={fee}, Amount={fee.amount} {fee.currency.code}",
        )
        return api_response(serialize_boarding_fee(fee), message='Boarding fee created.', status=201)

    fees = BoardingFee.objects.filter(school=school).select_related('hostel', 'term__session', 'currency')
    if request.GET.get('include_inactive') != '1':
        fees = fees.filter(is_active=True)
    hostel_id = query_int(request, 'hostel_id')
    if hostel_id:
        fees = fees.filter(hostel_id=hostel_id)
    term_id = query_int(request, 'term_id')
    if term_id:
        fees = fees.filter(term_id=term_id)
    return api_response([serialize_boarding_fee(row) for row in fees])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def boarding_fee_detail(request, pk):
    school = request.current_school
    fee = get_object_or_404(BoardingFee, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_boarding_fee(fee))

    if request.method == 'DELETE':
        fee.delete()
        log_audit_event(
            request=request,
            action='boarding.fee_deactivated',
            school=school,
            target=fee,
            details=f"Fee={fee}",
        )
        return api_response(message='Boarding fee deactivated.')

    data = merge_instance_data(fee, BOARDING_FEE_FIELDS, json_body(request))
    form = BoardingFeeForm(data, instance=fee, school=school)
    if not form.is_valid():
        return form_error_response(form)
    fee = form.save()
    log_audit_event(
        request=request,
        action='boarding.fee_updated',
        school=school,
        target=fee,
        details=f"Fee={fee}, Amount={fee.amount} {fee.currency.code}",
    )
    return api_response(serialize_boarding_fee(fee), message='Boarding fee updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def boarding_enrollment_list(request):
    school = request.current_school

    if request.method == 'POST':
        form = BoardingEnrollmentForm(json_body(request), school=school)
        if not form.is_valid():
            return form_error_response(form)
        try:
            enrollment = enroll_boarder(
                student=form.cleaned_data['student'],
                room=form.cleaned_data['room'],
                term=form.cleaned_data['term'],
                enrolled_by=request.user,
            )
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='boarding.student_enrolled',
            school=school,
            target=enrollment,
            details=f"Student={enrollment.student.admission_number}, Room={enrollment.room}",
        )
        return api_response(serialize_boarding_enrollment(enrollment), message='Student enrolled in boarding.', status=201)

    enrollments = BoardingEnrollment.objects.filter(school=school).select_related(
        'student',
        'hostel',
        'room',
        'term__session',
        'fee_assignment',
    )
    for name in ('hostel_id', 'room_id', 'term_id', 'student_id'):
        value = query_int(request, name)
        if value:
            enrollments = enrollments.filter(**{name: value})
    status = request.GET.get('status')
    if status:
        enrollments = enrollments.filter(status=status)
    rows, pagination = paginate(request, enrollments, serialize_boarding_enrollment)
    return api_response(rows, pagination=pagination)


@require_POST
@api_role_required(FINANCE_ROLES)
def boarding_enrollment_withdraw(request, pk):
    school = request.current_school
    enrollment = get_object_or_404(BoardingEnrollment, pk=pk, school=school)
    reason = str(json_body(request).get('reason') or '').strip()
    try:
        result = withdraw_boarder(enrollment=enrollment, reason=reason, withdrawn_by=request.user)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    enrollment = result['enrollment']
    log_audit_event(
        request=request,
        action='boarding.student_withdrawn',
        school=school,
        target=enrollment,
        details=f"Student={enrollment.student.admission_number}, ChargeReversed={result['charge_reversed']}",
    )
    data = serialize_boarding_enrollment(enrollment)
    data['charge_reversed'] = result['charge_reversed']
    return api_response(data, message='Student withdrawn from boarding.')


@require_POST
@api_role_required(FINANCE_ROLES)
def boarding_enrollment_check_in(request, pk):
    school = request.current_school
    enrollment = get_object_or_404(BoardingEnrollment, pk=pk, school=school)
    payload = json_body(request)
    try:
        check_in_date = parse_date_param(payload.get('check_in_date'), 'check_in_date')
        enrollment = check_in_boarder(enrollment=enrollment, check_in_date=check_in_date)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='boarding.student_checked_in',
        school=school,
        target=enrollment,
        details=f"Student={enrollment.student.admission_number}, Date={enrollment.checked_in_on}",
    )
    return api_response(serialize_boarding_enrollment(enrollment), message='Student checked in.')


@require_POST
@api_role_required(FINANCE_ROLES)
def boarding_enrollment_check_out(request, pk):
    school = request.current_school
    enrollment = get_object_or_404(BoardingEnrollment, pk=pk, school=school)
    payload = json_body(request)
    reason = str(payload.get('reason') or '').strip()
    try:
        check_out_date = parse_date_param(payload.get('check_out_date'), 'check_out_date')
        enrollment = check_out_boarder(enrollment=enrollment, check_out_date=check_out_date, reason=reason)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='boarding.student_checked_out',
        school=school,
        target=enrollment,
        details=f"Student={enrollment.student.admission_number}, Date={enrollment.checked_out_on}",
    )
    return api_response(serialize_boarding_enrollment(enrollment), message='Student checked out.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def boarding_payment_list(request):
    school = request.current_school

    if request.method == 'POST':
        payment, error = collect_payment_from_request(
            request,
            school,
            json_body(request),
            category=BoardingFeesPayment.CATEGORY_BOARDING,
        )
        if error is not None:
            return error
        return api_response(
            serialize_payment(payment, include_allocations=True),
            message=f'Boarding payment recorded. Receipt {payment.receipt_number}.',
            status=201,
        )

    payments = BoardingFeesPayment.objects.filter(school=school).select_related(
        'student',
        'currency',
        'hostel',
        'term__session',
    )
    hostel_id = query_int(request, 'hostel_id')
    if hostel_id:
        payments = payments.filter(hostel_id=hostel_id)
    rows, pagination = paginate(request, filter_payments(request, payments), serialize_payment)
    return api_response(rows, pagination=pagination)
