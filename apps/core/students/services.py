import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.fees.services import bill_class_enrollment, release_withdrawn_charge

from .models import ClassEnrollment, Student

logger = logging.getLogger(__name__)


@transaction.atomic
def enroll_student(*, student: Student, school_class, term, enrolled_by=None) -> ClassEnrollment:
    """
    Enrolls a student in a class for a term and bills tuition from the
    class's invoice structure. Fails without an invoice structure.
    """
    school = student.school
    if school_class.school_id != school.id or term.school_id != school.id:
        raise ValidationError('Class and term must belong to the student\'s school.')
    if not student.is_active:
        raise ValidationError('Inactive students cannot be enrolled.')
    if not school_class.is_active:
        raise ValidationError(f'{school_class.display_name} is not active.')

    # Lock the student so two enrollments for the same term cannot race.
    Student.objects.select_for_update().filter(pk=student.pk).first()
    current = ClassEnrollment.objects.filter(
        student=student,
        term=term,
        status=ClassEnrollment.STATUS_ACTIVE,
    ).select_related('school_class').first()
    if current:
        raise ValidationError(
            f'{student.full_name} is already enrolled in {current.school_class.display_name} for {term.label}.'
        )

    enrollment = ClassEnrollment.objects.create(
        school=school,
        student=student,
        school_class=school_class,
        term=term,
        enrolled_by=enrolled_by,
    )
    bill_class_enrollment(enrollment=enrollment, created_by=enrolled_by)

    logger.info(
        'Enrolled %s in %s for %s',
        student.admission_number,
        school_class.display_name,
        term.label,
    )
    return enrollment


@transaction.atomic
def withdraw_enrollment(*, enrollment: ClassEnrollment, reason='', withdrawn_by=None):
    enrollment = ClassEnrollment.objects.select_for_update().select_related(
        'student',
        'school_class',
        'tuition_assignment__transaction',
    ).get(pk=enrollment.pk)
    if enrollment.status != ClassEnrollment.STATUS_ACTIVE:
        raise ValidationError('Enrollment is not active.')

    enrollment.status = ClassEnrollment.STATUS_WITHDRAWN
    enrollment.withdrawn_at = timezone.now()
    enrollment.withdrawn_by = withdrawn_by
    enrollment.withdrawal_reason = (reason or '')[:255]
    enrollment.save(update_fields=['status', 'withdrawn_at', 'withdrawn_by', 'withdrawal_reason'])

    charge_reversed = release_withdrawn_charge(
        assignment=enrollment.tuition_assignment,
        reason=reason or 'Enrollment withdrawn',
        reversed_by=withdrawn_by,
    )
    logger.info(
        'Withdrew %s from %s (charge reversed: %s)',
        enrollment.student.admission_number,
        enrollment.school_class.display_name,
        charge_reversed,
    )
    return {'enrollment': enrollment, 'charge_reversed': charge_reversed}
