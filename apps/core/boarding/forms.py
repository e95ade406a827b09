from django import forms
from django.core.exceptions import ValidationError

from apps.core.academic_sessions.models import Term
from apps.core.accounting.forms import CurrencyChoiceField
from apps.core.accounting.models import Currency
from apps.core.accounting.services import get_base_currency
from apps.core.students.models import Student
from apps.core.utils.forms import SchoolScopedModelForm

from .models import BoardingEnrollment, BoardingFee, Hostel, Room


class HostelForm(SchoolScopedModelForm):
    class Meta:
        model = Hostel
        fields = ['name', 'gender', 'capacity', 'description', 'is_active']

    def clean_capacity(self):
        capacity = self.cleaned_data.get('capacity')
        if not capacity:
            raise ValidationError('Capacity must be greater than zero.')
        if self.instance.pk and self.school is not None:
            term = getattr(self.school, 'current_term', None)
            if term is not None and capacity < self.instance.occupancy(term):
                raise ValidationError('Capacity cannot be below the current number of boarders.')
        return capacity


class RoomForm(SchoolScopedModelForm):
    class Meta:
        model = Room
        fields = ['hostel', 'room_number', 'room_type', 'floor', 'capacity', 'description', 'is_active']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['hostel'].queryset = Hostel.objects.for_school(self.school).active()

    def clean_capacity(self):
        capacity = self.cleaned_data.get('capacity')
        if not capacity:
            raise ValidationError('Capacity must be greater than zero.')
        if self.instance.pk and self.school is not None:
            term = getattr(self.school, 'current_term', None)
            if term is not None and capacity < self.instance.occupancy(term):
                raise ValidationError('Capacity cannot be below the current number of boarders.')
        return capacity

    def clean(self):
        cleaned_data = super().clean()
        hostel = cleaned_data.get('hostel')
        if self.instance.pk and hostel is not None and hostel.pk != self.instance.hostel_id:
            if self.instance.enrollments.filter(status__in=BoardingEnrollment.OCCUPYING_STATUSES).exists():
                self.add_error('hostel', 'Cannot move a room with boarders to another hostel.')
        return cleaned_data


class BoardingFeeForm(SchoolScopedModelForm):
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)

    class Meta:
        model = BoardingFee
        fields = ['hostel', 'term', 'currency', 'amount', 'is_active']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['hostel'].queryset = Hostel.objects.for_school(self.school).active()
        self.fields['term'].queryset = Term.objects.for_school(self.school)
        self.fields['currency'].queryset = Currency.objects.for_school(self.school).active()

    def clean_currency(self):
        return self.cleaned_data.get('currency') or get_base_currency(self.school)

    def clean_amount(self):
        amount = self.cleaned_data.get('amount')
        if amount is None or amount <= 0:
            raise ValidationError('Boarding fee must be greater than zero.')
        return amount


class BoardingEnrollmentForm(forms.Form):
    student = forms.ModelChoiceField(queryset=Student.objects.none())
    room = forms.ModelChoiceField(queryset=Room.objects.none())
    hostel = forms.ModelChoiceField(queryset=Hostel.objects.none(), required=False)
    term = forms.ModelChoiceField(queryset=Term.objects.none(), required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['student'].queryset = Student.objects.filter(school=self.school)
        self.fields['room'].queryset = Room.objects.for_school(self.school).select_related('hostel')
        self.fields['hostel'].queryset = Hostel.objects.filter(school=self.school)
        self.fields['term'].queryset = Term.objects.for_school(self.school)

    def clean_term(self):
        term = self.cleaned_data.get('term') or getattr(self.school, 'current_term', None)
        if term is None:
            raise ValidationError('Select a term. The school has no current term.')
        return term

    def clean(self):
        cleaned_data = super().clean()
        room = cleaned_data.get('room')
        hostel = cleaned_data.get('hostel')
        if room is not None and hostel is not None and room.hostel_id != hostel.id:
            self.add_error('room', 'Room does not belong to the selected hostel.')
        return cleaned_data
