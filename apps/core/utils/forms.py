from django import forms
from django.core.exceptions import ValidationError


class SchoolScopedModelForm(forms.ModelForm):
    """
    ModelForm for tenant rows whose ``school`` is set by the view, not posted.

    ModelForm skips unique constraints that touch fields outside the form,
    so constraints scoped by school are validated here with the scope fields
    put back in.
    """

    scope_fields = ('school',)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        if self.school is not None and not self.instance.school_id:
            self.instance.school = self.school

    def validate_unique(self):
        exclude = self._get_validation_exclusions()
        for field_name in self.scope_fields:
            exclude.discard(field_name)
        try:
            self.instance.validate_unique(exclude=exclude)
            self.instance.validate_constraints(exclude=exclude)
        except ValidationError as exc:
            self._update_errors(exc)
