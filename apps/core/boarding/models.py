from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.academic_sessions.models import Term
from apps.core.accounting.models import Currency
from apps.core.fees.models import FeePayment, StudentFeeAssignment
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.utils.managers import SchoolManager


class Hostel(models.Model):
    GENDER_BOYS = 'boys'
    GENDER_GIRLS = 'girls'
    GENDER_MIXED = 'mixed'
    GENDER_CHOICES = (
        (GENDER_BOYS, 'Boys'),
        (GENDER_GIRLS, 'Girls'),
        (GENDER_MIXED, 'Mixed'),
    )
    # Student.gender values accepted by each hostel.
    ALLOWED_STUDENT_GENDERS = {
        GENDER_BOYS: (Student.GENDER_MALE,),
        GENDER_GIRLS: (Student.GENDER_FEMALE,),
    }

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='hostels')
    objects = SchoolManager()

    name = models.CharField(max_length=100)
    gender = models.CharField(max_length=10, choices=GENDER_CHOICES, default=GENDER_MIXED)
    capacity = models.PositiveIntegerField()
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        constraints = [
            models.UniqueConstraint(fields=['school', 'name'], name='unique_hostel_name_per_school'),
            models.CheckConstraint(condition=Q(capacity__gt=0), name='hostel_capacity_positive'),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if not self.name:
            raise ValidationError({'name': 'Hostel name is required.'})
        if self.capacity is not None and self.capacity <= 0:
            raise ValidationError({'capacity': 'Capacity must be greater than zero.'})

    def accepts_gender(self, gender):
        allowed = self.ALLOWED_STUDENT_GENDERS.get(self.gender)
        return allowed is None or gender in allowed

    def occupancy(self, term):
        return self.enrollments.filter(term=term, status__in=BoardingEnrollment.OCCUPYING_STATUSES).count()

    def delete(self, *args, **kwargs):
        if self.enrollments.filter(status__in=BoardingEnrollment.OCCUPYING_STATUSES).exists():
            raise ValidationError('Cannot deactivate hostel while students are actively enrolled.')
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return self.name


class Room(models.Model):
    TYPE_SINGLE = 'single'
    TYPE_DOUBLE = 'double'
    TYPE_DORMITORY = 'dormitory'
    TYPE_CHOICES = (
        (TYPE_SINGLE, 'Single'),
        (TYPE_DOUBLE, 'Double'),
        (TYPE_DORMITORY, 'Dormitory'),
    )

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='hostel_rooms')
    objects = SchoolManager()

    hostel = models.ForeignKey(Hostel, on_delete=models.PROTECT, related_name='rooms')
    room_number = models.CharField(max_length=20)
    room_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_DORMITORY)
    floor = models.PositiveSmallIntegerField(default=1)
    capacity = models.PositiveIntegerField()
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['hostel__name', 'floor', 'room_number', 'id']
        constraints = [
            models.UniqueConstraint(fields=['hostel', 'room_number'], name='unique_room_number_per_hostel'),
            models.CheckConstraint(condition=Q(capacity__gt=0), name='room_capacity_positive'),
        ]

    def clean(self):
        super().clean()
        if self.room_number:
            self.room_number = self.room_number.strip()
        if not self.room_number:
            raise ValidationError({'room_number': 'Room number is required.'})
        if self.hostel_id and self.hostel.school_id != self.school_id:
            raise ValidationError({'hostel': 'Hostel must belong to selected school.'})
        if self.capacity is not None and self.capacity <= 0:
            raise ValidationError({'capacity': 'Capacity must be greater than zero.'})

    def occupancy(self, term):
        return self.enrollments.filter(term=term, status__in=BoardingEnrollment.OCCUPYING_STATUSES).count()

    def delete(self, *args, **kwargs):
        if self.enrollments.filter(status__in=BoardingEnrollment.OCCUPYING_STATUSES).exists():
            raise ValidationError('Cannot deactivate room while students are assigned to it.')
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return f"{self.hostel.name} {self.room_number}"


class BoardingFee(models.Model):
    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='boarding_fees')
    objects = SchoolManager()

    hostel = models.ForeignKey(Hostel, on_delete=models.PROTECT, related_name='fees')
    term = models.ForeignKey(Term, on_delete=models.PROTECT, related_name='boarding_fees')
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name='boarding_fees')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['hostel__name', '-term__start_date', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['hostel', 'term'],
                condition=Q(is_active=True),
                name='unique_active_boarding_fee_per_hostel_term',
            ),
            models.CheckConstraint(condition=Q(amount__gt=0), name='boarding_fee_amount_positive'),
        ]

    def clean(self):
        super().clean()
        if self.hostel_id and self.hostel.school_id != self.school_id:
            raise ValidationError({'hostel': 'Hostel must belong to selected school.'})
        if self.term_id and self.term.school_id != self.school_id:
            raise ValidationError({'term': 'Term must belong to selected school.'})
        if self.amount is not None and self.amount <= 0:
            raise ValidationError({'amount': 'Boarding fee must be greater than zero.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return f"{self.hostel.name} - {self.term.label}"


class BoardingEnrollment(models.Model):
    STATUS_ACTIVE = 'active'
    STATUS_CHECKED_IN = 'checked_in'
    STATUS_CHECKED_OUT = 'checked_out'
    STATUS_WITHDRAWN = 'withdrawn'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Enrolled'),
        (STATUS_CHECKED_IN, 'Checked in'),
        (STATUS_CHECKED_OUT, 'Checked out'),
        (STATUS_WITHDRAWN, 'Withdrawn'),
    )
    # Enrollments in these states hold a bed.
    OCCUPYING_STATUSES = (STATUS_ACTIVE, STATUS_CHECKED_IN)

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='boarding_enrollments')
    objects = SchoolManager()

    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='boarding_enrollments')
    hostel = models.ForeignKey(Hostel, on_delete=models.PROTECT, related_name='enrollments')
    room = models.ForeignKey(Room, on_delete=models.PROTECT, related_name='enrollments')
    term = models.ForeignKey(Term, on_delete=models.PROTECT, related_name='boarding_enrollments')
    boarding_fee = models.ForeignKey(BoardingFee, on_delete=models.PROTECT, related_name='enrollments')
    fee_assignment = models.OneToOneField(
        StudentFeeAssignment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='boarding_enrollment',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)

    enrolled_at = models.DateTimeField(auto_now_add=True)
    enrolled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='boarding_enrollments_created',
    )
    withdrawn_at = models.DateTimeField(null=True, blank=True)
    withdrawn_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='boarding_enrollments_withdrawn',
    )
    withdrawal_reason = models.CharField(max_length=255, blank=True)
    checked_in_on = models.DateField(null=True, blank=True)
    checked_out_on = models.DateField(null=True, blank=True)
    check_out_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['-enrolled_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'term'],
                condition=Q(status__in=('active', 'checked_in')),
                name='unique_active_boarding_enrollment_per_term',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'hostel', 'term', 'status']),
        ]

    def clean(self):
        super().clean()
        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.hostel_id and self.hostel.school_id != self.school_id:
            raise ValidationError({'hostel': 'Hostel must belong to selected school.'})
        if self.room_id and self.room.hostel_id != self.hostel_id:
            raise ValidationError({'room': 'Room must belong to the selected hostel.'})

    def __str__(self):
        return f"{self.student.admission_number} - {self.room} ({self.term.label})"


class BoardingPaymentManager(SchoolManager):
    def get_queryset(self):
        return super().get_queryset().filter(category=FeePayment.CATEGORY_BOARDING)


class BoardingFeesPayment(FeePayment):
    """Boarding view of FeePayment; rows live in the fee payment table."""

    objects = BoardingPaymentManager()

    class Meta:
        proxy = True
        ordering = ['-payment_date', '-id']
        verbose_name = 'boarding fees payment'
