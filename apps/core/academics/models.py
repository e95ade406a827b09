from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager


class SchoolClass(models.Model):
    """Grade-level class, optionally split into streams (e.g. Form 1 / East)."""

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='classes',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=50)  # e.g. Form 1, Grade 7
    stream = models.CharField(max_length=50, blank=True)
    code = models.CharField(max_length=20, blank=True)
    display_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['display_order', 'name', 'stream', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'name', 'stream'],
                name='unique_class_name_stream_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'is_active']),
        ]

    @property
    def display_name(self):
        if self.stream:
            return f"{self.name} ({self.stream})"
        return self.name

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if self.stream:
            self.stream = self.stream.strip()
        if not self.name:
            raise ValidationError({'name': 'Class name is required.'})

    def delete(self, *args, **kwargs):
        if self.enrollments.filter(status='active').exists():
            raise ValidationError('Cannot deactivate class while students are actively enrolled.')
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.display_name
