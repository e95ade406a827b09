from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q

from apps.core.utils.managers import SchoolManager


class AcademicSession(models.Model):
    school = models.ForeignKey(
        'schools.School',
        on_delete=models.CASCADE,
        related_name='academic_sessions'
    )
    objects = SchoolManager()

    name = models.CharField(max_length=20)  # e.g. 2026 or 2026-27
    start_date = models.DateField()
    end_date = models.DateField()
    is_active = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-start_date', '-id']
        constraints = [
            models.UniqueConstraint(fields=['school', 'name'], name='unique_session_name_per_school'),
            models.UniqueConstraint(
                fields=['school'],
                condition=Q(is_active=True),
                name='unique_active_session_per_school',
            ),
            models.CheckConstraint(
                condition=Q(end_date__gt=F('start_date')),
                name='session_end_after_start',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active']),
            models.Index(fields=['school', 'start_date']),
        ]

    def __str__(self):
        return f"{self.school.name} - {self.name}"


class Term(models.Model):
    TERM_NUMBER_CHOICES = (
        (1, 'Term 1'),
        (2, 'Term 2'),
        (3, 'Term 3'),
    )

    school = models.ForeignKey(
        'schools.School',
        on_delete=models.CASCADE,
        related_name='terms',
    )
    session = models.ForeignKey(
        AcademicSession,
        on_delete=models.CASCADE,
        related_name='terms',
    )
    objects = SchoolManager()

    number = models.PositiveSmallIntegerField(choices=TERM_NUMBER_CHOICES)
    start_date = models.DateField()
    end_date = models.DateField()
    is_current = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-session__start_date', 'number']
        constraints = [
            models.UniqueConstraint(fields=['session', 'number'], name='unique_term_number_per_session'),
            models.UniqueConstraint(
                fields=['school'],
                condition=Q(is_current=True),
                name='unique_current_term_per_school',
            ),
            models.CheckConstraint(
                condition=Q(end_date__gt=F('start_date')),
                name='term_end_after_start',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_current']),
        ]

    @property
    def name(self):
        return f"Term {self.number}"

    @property
    def label(self):
        return f"{self.name} {self.session.name}"

    def clean(self):
        super().clean()
        if self.session_id and self.school_id and self.session.school_id != self.school_id:
            raise ValidationError({'session': 'Session must belong to selected school.'})
        if self.session_id and self.start_date and self.end_date:
            if self.start_date < self.session.start_date or self.end_date > self.session.end_date:
                raise ValidationError('Term dates must fall within the academic session.')

    def __str__(self):
        return self.label
