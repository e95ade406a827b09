from django import forms
from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password

from .models import User


class LoginForm(forms.Form):
    username = forms.CharField(max_length=150)
    password = forms.CharField(max_length=128, strip=False)


class SchoolUserForm(forms.Form):
    ROLE_CHOICES = tuple(
        choice for choice in User.ROLE_CHOICES if choice[0] != User.ROLE_SUPERADMIN
    )

    username = forms.CharField(max_length=150)
    password = forms.CharField(max_length=128, strip=False)
    email = forms.EmailField(required=False)
    first_name = forms.CharField(max_length=150, required=False)
    last_name = forms.CharField(max_length=150, required=False)
    role = forms.ChoiceField(choices=ROLE_CHOICES)

    def clean_username(self):
        username = self.cleaned_data['username'].strip()
        if get_user_model().objects.filter(username=username).exists():
            raise forms.ValidationError('This username is already in use.')
        return username

    def clean_password(self):
        password = self.cleaned_data['password']
        validate_password(password)
        return password
