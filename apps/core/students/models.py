from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.academic_sessions.models import Term
from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager


class Student(models.Model):
    GENDER_MALE = 'male'
    GENDER_FEMALE = 'female'
    GENDER_CHOICES = (
        (GENDER_MALE, 'Male'),
        (GENDER_FEMALE, 'Female'),
    )

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='students')
    objects = SchoolManager()

    admission_number = models.CharField(max_length=50)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True)
    gender = models.CharField(max_length=10, choices=GENDER_CHOICES, blank=True)
    date_of_birth = models.DateField(null=True, blank=True)
    admission_date = models.DateField(default=timezone.localdate)

    guardian_name = models.CharField(max_length=120, blank=True)
    guardian_phone = models.CharField(max_length=20, blank=True)
    guardian_email = models.EmailField(blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['admission_number', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'admission_number'],
                name='unique_student_admission_number_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active']),
            models.Index(fields=['school', 'last_name', 'first_name']),
        ]

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def clean(self):
        super().clean()
        if self.admission_number:
            self.admission_number = self.admission_number.strip().upper()
        if not self.admission_number:
            raise ValidationError({'admission_number': 'Admission number is required.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return f"{self.admission_number} - {self.full_name}"


class ClassEnrollment(models.Model):
    STATUS_ACTIVE = 'active'
    STATUS_WITHDRAWN = 'withdrawn'
    STATUS_COMPLETED = 'completed'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_WITHDRAWN, 'Withdrawn'),
        (STATUS_COMPLETED, 'Completed'),
    )

    school = models.ForeignKey(School, on_delete=models.CASCADE, related_name='class_enrollments')
    objects = SchoolManager()

    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='class_enrollments')
    school_class = models.ForeignKey(SchoolClass, on_delete=models.PROTECT, related_name='enrollments')
    term = models.ForeignKey(Term, on_delete=models.PROTECT, related_name='class_enrollments')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)

    tuition_assignment = models.OneToOneField(
        'fees.StudentFeeAssignment',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='class_enrollment',
    )

    enrolled_at = models.DateTimeField(auto_now_add=True)
    enrolled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='class_enrollments_created',
    )
    withdrawn_at = models.DateTimeField(null=True, blank=True)
    withdrawn_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='class_enrollments_withdrawn',
    )
    withdrawal_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['-enrolled_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['student', 'term'],
                condition=Q(status='active'),
                name='unique_active_class_enrollment_per_term',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'term', 'status']),
            models.Index(fields=['school', 'school_class', 'status']),
        ]

    def clean(self):
        super().clean()
        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.school_class_id and self.school_class.school_id != self.school_id:
            raise ValidationError({'school_class': 'Class must belong to selected school.'})
        if self.term_id and self.term.school_id != self.school_id:
            raise ValidationError({'term': 'Term must belong to selected school.'})

    def __str__(self):
        return f"{self.student.admission_number} - {self.school_class} ({self.term})"
