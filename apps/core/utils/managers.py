from django.db import models


class SchoolQuerySet(models.QuerySet):
    """Tenant-scoped rows. ``active()`` hides soft-deleted rows on models with ``is_active``."""

    def for_school(self, school):
        return self.filter(school=school)

    def active(self):
        return self.filter(is_active=True)


SchoolManager = models.Manager.from_queryset(SchoolQuerySet, 'SchoolManager')
