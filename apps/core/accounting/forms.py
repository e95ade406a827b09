from django import forms

from apps.core.utils.forms import SchoolScopedModelForm

from .models import ChartOfAccount, Currency


class CurrencyForm(SchoolScopedModelForm):
    class Meta:
        model = Currency
        fields = ['code', 'name', 'symbol', 'exchange_rate', 'is_active']

    def clean_code(self):
        return (self.cleaned_data.get('code') or '').strip().upper()

    def clean_exchange_rate(self):
        rate = self.cleaned_data.get('exchange_rate')
        if rate is None or rate <= 0:
            raise forms.ValidationError('Exchange rate must be greater than zero.')
        if self.instance.is_base and rate != 1:
            raise forms.ValidationError('Base currency exchange rate must be 1.')
        return rate


class ChartOfAccountForm(SchoolScopedModelForm):
    class Meta:
        model = ChartOfAccount
        fields = ['code', 'name', 'account_type', 'parent', 'description', 'is_active']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        school = self.school or getattr(self.instance, 'school', None)
        self.fields['parent'].queryset = ChartOfAccount.objects.filter(school=school)

    def clean(self):
        cleaned = super().clean()
        if self.instance.pk and self.instance.is_system:
            for field in ('code', 'account_type'):
                if field in cleaned and cleaned[field] != getattr(self.instance, field):
                    self.add_error(field, 'System account code and type cannot be changed.')
        return cleaned


class CurrencyChoiceField(forms.ModelChoiceField):
    """Accepts a currency id or its ISO code."""

    def to_python(self, value):
        if value in self.empty_values:
            return None
        if isinstance(value, Currency):
            return value
        value = str(value).strip()
        lookup = {'pk': int(value)} if value.isdigit() else {'code': value.upper()}
        try:
            return self.queryset.get(**lookup)
        except Currency.DoesNotExist:
            raise forms.ValidationError(
                self.error_messages['invalid_choice'],
                code='invalid_choice',
                params={'value': value},
            )
