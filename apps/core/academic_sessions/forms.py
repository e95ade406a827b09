from apps.core.utils.forms import SchoolScopedModelForm

from .models import AcademicSession, Term


class AcademicSessionForm(SchoolScopedModelForm):
    class Meta:
        model = AcademicSession
        fields = ['name', 'start_date', 'end_date']

    def clean(self):
        cleaned = super().clean()
        start_date = cleaned.get('start_date')
        end_date = cleaned.get('end_date')
        if start_date and end_date and end_date <= start_date:
            self.add_error('end_date', 'End date must be after start date.')
        return cleaned


class TermForm(SchoolScopedModelForm):
    scope_fields = ('school', 'session')

    class Meta:
        model = Term
        fields = ['number', 'start_date', 'end_date']

    def __init__(self, *args, **kwargs):
        session = kwargs.pop('session', None)
        if session is not None:
            kwargs.setdefault('school', session.school)
        super().__init__(*args, **kwargs)
        if session is not None and not self.instance.session_id:
            self.instance.session = session
