import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.accounting import services as accounting
from apps.core.fees.models import StudentFeeAssignment, StudentTransaction
from apps.core.fees.services import post_charge, release_withdrawn_charge

from .models import BoardingEnrollment, BoardingFee, Hostel, Room

logger = logging.getLogger(__name__)


def resolve_boarding_fee(*, hostel: Hostel, term) -> BoardingFee:
    fee = BoardingFee.objects.filter(hostel=hostel, term=term, is_active=True).select_related('currency').first()
    if fee is None:
        raise ValidationError(f'No boarding fee is configured for {hostel.name} in {term.label}.')
    return fee


@transaction.atomic
def enroll_boarder(*, student, room: Room, term, enrolled_by=None) -> BoardingEnrollment:
    """
    Places a student in a hostel room for a term and bills the boarding fee.
    Both the room and its hostel must have a free bed for the term.
    """
    school = student.school
    if room.school_id != school.id or term.school_id != school.id:
        raise ValidationError('Room and term must belong to the student\'s school.')
    if not student.is_active:
        raise ValidationError('Inactive students cannot be enrolled in boarding.')

    # Serialises concurrent enrollments into the same hostel and room.
    hostel = Hostel.objects.select_for_update().get(pk=room.hostel_id)
    room = Room.objects.select_for_update().get(pk=room.pk)
    if not hostel.is_active:
        raise ValidationError(f'{hostel.name} is not active.')
    if not room.is_active:
        raise ValidationError(f'Room {room.room_number} in {hostel.name} is not active.')
    if BoardingEnrollment.objects.filter(
        student=student,
        term=term,
        status__in=BoardingEnrollment.OCCUPYING_STATUSES,
    ).exists():
        raise ValidationError(f'{student.full_name} already has an active boarding enrollment for {term.label}.')
    if not hostel.accepts_gender(student.gender):
        raise ValidationError(f'{hostel.name} only accepts {hostel.get_gender_display().lower()}.')
    if hostel.occupancy(term) >= hostel.capacity:
        raise ValidationError(f'{hostel.name} is full ({hostel.capacity} beds).')
    if room.occupancy(term) >= room.capacity:
        raise ValidationError(f'Room {room.room_number} in {hostel.name} is full ({room.capacity} beds).')
    fee = resolve_boarding_fee(hostel=hostel, term=term)

    enrollment = BoardingEnrollment.objects.create(
        school=school,
        student=student,
        hostel=hostel,
        room=room,
        term=term,
        boarding_fee=fee,
        enrolled_by=enrolled_by,
    )
    enrollment.fee_assignment = post_charge(
        student=student,
        category=StudentFeeAssignment.CATEGORY_BOARDING,
        transaction_category=StudentTransaction.CATEGORY_BOARDING_INVOICE,
        amount=fee.amount,
        currency=fee.currency,
        description=f"Boarding Enrollment - {hostel.name} ({term.label})",
        debit_account=accounting.AR_OTHER,
        credit_account=accounting.BOARDING_REVENUE,
        term=term,
        hostel=hostel,
        due_date=term.start_date,
        created_by=enrolled_by,
    )
    enrollment.save(update_fields=['fee_assignment'])

    logger.info(
        'Enrolled %s in %s for %s',
        student.admission_number,
        room,
        term.label,
    )
    return enrollment


@transaction.atomic
def withdraw_boarder(*, enrollment: BoardingEnrollment, reason='', withdrawn_by=None):
    enrollment = BoardingEnrollment.objects.select_for_update().select_related(
        'fee_assignment__transaction',
    ).get(pk=enrollment.pk)
    if enrollment.status not in BoardingEnrollment.OCCUPYING_STATUSES:
        raise ValidationError('Boarding enrollment is not active.')

    enrollment.status = BoardingEnrollment.STATUS_WITHDRAWN
    enrollment.withdrawn_at = timezone.now()
    enrollment.withdrawn_by = withdrawn_by
    enrollment.withdrawal_reason = (reason or '')[:255]
    enrollment.save(update_fields=['status', 'withdrawn_at', 'withdrawn_by', 'withdrawal_reason'])

    charge_reversed = release_withdrawn_charge(
        assignment=enrollment.fee_assignment,
        reason=reason or 'Boarding withdrawn',
        reversed_by=withdrawn_by,
    )
    logger.info(
        'Withdrew %s from hostel %s (charge reversed: %s)',
        enrollment.student.admission_number,
        enrollment.hostel.name,
        charge_reversed,
    )
    return {'enrollment': enrollment, 'charge_reversed': charge_reversed}


@transaction.atomic
def check_in_boarder(*, enrollment: BoardingEnrollment, check_in_date=None) -> BoardingEnrollment:
    enrollment = BoardingEnrollment.objects.select_for_update().get(pk=enrollment.pk)
    if enrollment.status == BoardingEnrollment.STATUS_CHECKED_IN:
        raise ValidationError('Student is already checked in.')
    if enrollment.status != BoardingEnrollment.STATUS_ACTIVE:
        raise ValidationError(f'Cannot check in a {enrollment.get_status_display().lower()} enrollment.')

    enrollment.status = BoardingEnrollment.STATUS_CHECKED_IN
    enrollment.checked_in_on = check_in_date or timezone.localdate()
    enrollment.save(update_fields=['status', 'checked_in_on'])
    logger.info('Checked in %s to %s', enrollment.student.admission_number, enrollment.room)
    return enrollment


@transaction.atomic
def check_out_boarder(*, enrollment: BoardingEnrollment, check_out_date=None, reason='') -> BoardingEnrollment:
    """
    Frees the student's bed. The boarding charge stays on the ledger; use
    ``withdraw_boarder`` to cancel a placement that should not be billed.
    """
    enrollment = BoardingEnrollment.objects.select_for_update().get(pk=enrollment.pk)
    if enrollment.status == BoardingEnrollment.STATUS_CHECKED_OUT:
        raise ValidationError('Student is already checked out.')
    if enrollment.status != BoardingEnrollment.STATUS_CHECKED_IN:
        raise ValidationError('Only checked-in students can be checked out.')

    check_out_date = check_out_date or timezone.localdate()
    if enrollment.checked_in_on and check_out_date < enrollment.checked_in_on:
        raise ValidationError('Check-out date cannot be before the check-in date.')

    enrollment.status = BoardingEnrollment.STATUS_CHECKED_OUT
    enrollment.checked_out_on = check_out_date
    enrollment.check_out_reason = (reason or '')[:255]
    enrollment.save(update_fields=['status', 'checked_out_on', 'check_out_reason'])
    logger.info('Checked out %s from %s', enrollment.student.admission_number, enrollment.room)
    return enrollment
