from uuid import uuid4

from django.db import models
from django.utils.text import slugify


class School(models.Model):
    uuid = models.UUIDField(default=uuid4, editable=False, db_index=True)
    name = models.CharField(max_length=255)
    code = models.CharField(max_length=40, unique=True, null=True, blank=True)
    address = models.TextField(blank=True)
    phone = models.CharField(max_length=20, blank=True)
    email = models.EmailField(blank=True)
    timezone = models.CharField(max_length=64, default='UTC')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    current_session = models.ForeignKey(
        'academic_sessions.AcademicSession',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='current_for_schools'
    )
    current_term = models.ForeignKey(
        'academic_sessions.Term',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='current_for_schools'
    )

    class Meta:
        ordering = ['name']
        indexes = [
            models.Index(fields=['code']),
            models.Index(fields=['is_active']),
        ]

    def save(self, *args, **kwargs):
        if not self.code:
            base_code = slugify(self.name).replace('-', '_')[:30] or 'school'
            candidate = base_code
            sequence = 1
            while School.objects.exclude(pk=self.pk).filter(code=candidate).exists():
                suffix = f'_{sequence}'
                candidate = f'{base_code[:30 - len(suffix)]}{suffix}'
                sequence += 1
            self.code = candidate

        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.code})"
