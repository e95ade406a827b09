from django import forms
from django.core.exceptions import ValidationError

from apps.core.academic_sessions.models import Term
from apps.core.academics.models import SchoolClass
from apps.core.utils.forms import SchoolScopedModelForm

from .models import Student


class StudentForm(SchoolScopedModelForm):
    class Meta:
        model = Student
        fields = [
            'admission_number',
            'first_name',
            'last_name',
            'gender',
            'date_of_birth',
            'admission_date',
            'guardian_name',
            'guardian_phone',
            'guardian_email',
            'is_active',
        ]

    def clean_admission_number(self):
        # Stored uppercase, so the uniqueness check must see the same value.
        value = (self.cleaned_data.get('admission_number') or '').strip().upper()
        if not value:
            raise ValidationError('Admission number is required.')
        return value


class ClassEnrollmentForm(forms.Form):
    student = forms.ModelChoiceField(queryset=Student.objects.none())
    school_class = forms.ModelChoiceField(queryset=SchoolClass.objects.none())
    term = forms.ModelChoiceField(queryset=Term.objects.none(), required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['student'].queryset = Student.objects.filter(school=self.school)
        self.fields['school_class'].queryset = SchoolClass.objects.filter(school=self.school)
        self.fields['term'].queryset = Term.objects.filter(school=self.school)

    def clean_term(self):
        term = self.cleaned_data.get('term') or getattr(self.school, 'current_term', None)
        if term is None:
            raise ValidationError('Select a term. The school has no current term.')
        return term
