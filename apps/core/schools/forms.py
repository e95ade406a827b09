import re

from django import forms
from django.contrib.auth import get_user_model
from django.utils.text import slugify

from apps.core.schools.models import School


class SchoolForm(forms.ModelForm):
    class Meta:
        model = School
        fields = ['name', 'address', 'phone', 'email', 'timezone']


class SchoolOnboardingForm(forms.Form):
    school_name = forms.CharField(max_length=255)
    school_code = forms.CharField(
        max_length=40,
        required=False,
        help_text='Optional tenant code. Auto-generated when blank.',
    )
    school_timezone = forms.CharField(max_length=64, required=False, initial='UTC')
    school_address = forms.CharField(required=False)
    school_phone = forms.CharField(max_length=20, required=False)
    school_email = forms.EmailField(required=False)
    base_currency = forms.CharField(max_length=3, required=False)

    admin_username = forms.CharField(max_length=150)
    admin_email = forms.EmailField(required=False)
    admin_password = forms.CharField(min_length=8)

    session_name = forms.CharField(max_length=20, required=False, help_text='Example: 2026')
    session_start_date = forms.DateField(required=False)
    session_end_date = forms.DateField(required=False)

    def clean(self):
        cleaned_data = super().clean()
        session_name = cleaned_data.get('session_name')
        start_date = cleaned_data.get('session_start_date')
        end_date = cleaned_data.get('session_end_date')

        if session_name and not (start_date and end_date):
            self.add_error('session_start_date', 'Session dates are required with a session name.')
        if start_date and end_date and start_date >= end_date:
            self.add_error('session_end_date', 'End date must be after start date.')
        return cleaned_data

    def clean_admin_username(self):
        username = self.cleaned_data['admin_username']
        user_model = get_user_model()
        if user_model.objects.filter(username=username).exists():
            raise forms.ValidationError('This username is already in use.')
        return username

    def clean_school_code(self):
        code = self.cleaned_data.get('school_code', '').strip()
        if not code:
            return ''
        normalized = slugify(code).replace('-', '_')
        if School.objects.filter(code=normalized).exists():
            raise forms.ValidationError('This school code is already in use.')
        return normalized

    def clean_base_currency(self):
        code = self.cleaned_data.get('base_currency', '').strip().upper()
        if code and not re.fullmatch(r'[A-Z]{3}', code):
            raise forms.ValidationError('Currency code must be three letters.')
        return code
