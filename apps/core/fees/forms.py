from django import forms
from django.core.exceptions import ValidationError

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.forms import CurrencyChoiceField
from apps.core.accounting.models import Currency
from apps.core.accounting.services import get_base_currency
from apps.core.boarding.models import Hostel
from apps.core.students.models import Student
from apps.core.utils.forms import SchoolScopedModelForm

from .models import (
    FeePayment,
    FeeStructure,
    FeeWaiver,
    InvoiceStructure,
    StudentFeeAssignment,
    WaiverCategory,
)


def _school_currencies(school):
    return Currency.objects.for_school(school).active()


class InvoiceStructureForm(SchoolScopedModelForm):
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)

    class Meta:
        model = InvoiceStructure
        fields = ['name', 'school_class', 'term', 'currency', 'notes']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['school_class'].queryset = SchoolClass.objects.for_school(self.school).active()
        self.fields['term'].queryset = Term.objects.for_school(self.school)
        self.fields['currency'].queryset = _school_currencies(self.school)

    def validate_unique(self):
        # The active-per-class-and-term rule is checked by save_invoice_structure.
        pass


class FeeStructureForm(SchoolScopedModelForm):
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)

    class Meta:
        model = FeeStructure
        fields = ['name', 'description', 'amount', 'currency', 'fee_type', 'is_active']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields['currency'].queryset = _school_currencies(self.school)

    def clean_currency(self):
        return self.cleaned_data.get('currency') or get_base_currency(self.school)

    def clean_amount(self):
        amount = self.cleaned_data.get('amount')
        if amount is None or amount <= 0:
            raise ValidationError('Fee amount must be greater than zero.')
        return amount


class WaiverCategoryForm(SchoolScopedModelForm):
    class Meta:
        model = WaiverCategory
        fields = ['name', 'description', 'is_active']


class FeeAssignForm(forms.Form):
    students = forms.ModelMultipleChoiceField(queryset=Student.objects.none(), required=False)
    school_class = forms.ModelChoiceField(queryset=SchoolClass.objects.none(), required=False)
    session = forms.ModelChoiceField(queryset=AcademicSession.objects.none(), required=False)
    term = forms.ModelChoiceField(queryset=Term.objects.none(), required=False)
    due_date = forms.DateField(required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['students'].queryset = Student.objects.for_school(self.school)
        self.fields['school_class'].queryset = SchoolClass.objects.filter(school=self.school)
        self.fields['session'].queryset = AcademicSession.objects.filter(school=self.school)
        self.fields['term'].queryset = Term.objects.for_school(self.school)

    def clean(self):
        cleaned = super().clean()
        if not cleaned.get('students') and not cleaned.get('school_class'):
            raise ValidationError('Select students or a class.')
        return cleaned

    def selected_students(self, current_term=None):
        students = list(self.cleaned_data.get('students') or [])
        school_class = self.cleaned_data.get('school_class')
        if school_class is not None:
            term = self.cleaned_data.get('term') or current_term
            enrolled = Student.objects.filter(
                class_enrollments__school_class=school_class,
                class_enrollments__status='active',
            )
            if term is not None:
                enrolled = enrolled.filter(class_enrollments__term=term)
            seen = {student.id for student in students}
            students.extend(student for student in enrolled.distinct() if student.id not in seen)
        return students


class GenerateAnnualFeesForm(forms.Form):
    session = forms.ModelChoiceField(queryset=AcademicSession.objects.none(), required=False)
    due_date = forms.DateField(required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['session'].queryset = AcademicSession.objects.filter(school=self.school)

    def clean_session(self):
        session = self.cleaned_data.get('session') or getattr(self.school, 'current_session', None)
        if session is None:
            raise ValidationError('Select an academic session.')
        return session


class FeePaymentForm(forms.Form):
    student = forms.ModelChoiceField(queryset=Student.objects.none())
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)
    payment_method = forms.CharField(max_length=30)
    category = forms.ChoiceField(choices=FeePayment.CATEGORY_CHOICES, required=False)
    term = forms.ModelChoiceField(queryset=Term.objects.none(), required=False)
    hostel = forms.ModelChoiceField(queryset=Hostel.objects.none(), required=False)
    fee_assignment = forms.ModelChoiceField(queryset=StudentFeeAssignment.objects.none(), required=False)
    payment_date = forms.DateField(required=False)
    reference_number = forms.CharField(max_length=120, required=False)
    notes = forms.CharField(required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['student'].queryset = Student.objects.for_school(self.school)
        self.fields['currency'].queryset = _school_currencies(self.school)
        self.fields['term'].queryset = Term.objects.for_school(self.school)
        self.fields['hostel'].queryset = Hostel.objects.filter(school=self.school)
        self.fields['fee_assignment'].queryset = StudentFeeAssignment.objects.filter(
            school=self.school,
            is_cancelled=False,
        )

    def clean_category(self):
        return self.cleaned_data.get('category') or FeePayment.CATEGORY_TUITION

    def clean(self):
        cleaned = super().clean()
        student = cleaned.get('student')
        assignment = cleaned.get('fee_assignment')
        if student and assignment and assignment.student_id != student.id:
            self.add_error('fee_assignment', 'Fee assignment does not belong to this student.')
        if cleaned.get('category') == FeePayment.CATEGORY_BOARDING and not cleaned.get('hostel'):
            self.add_error('hostel', 'Hostel is required for boarding payments.')
        return cleaned


class ReasonForm(forms.Form):
    reason = forms.CharField(max_length=255)


class FeeRefundForm(forms.Form):
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    reason = forms.CharField(max_length=255)
    refund_date = forms.DateField(required=False)


class FeeWaiverForm(forms.Form):
    student = forms.ModelChoiceField(queryset=Student.objects.none())
    category = forms.ModelChoiceField(queryset=WaiverCategory.objects.none())
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)
    waiver_type = forms.ChoiceField(choices=FeeWaiver.WAIVER_TYPE_CHOICES, required=False)
    reason = forms.CharField(max_length=255)
    term = forms.ModelChoiceField(queryset=Term.objects.none(), required=False)
    notes = forms.CharField(required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['student'].queryset = Student.objects.for_school(self.school)
        self.fields['category'].queryset = WaiverCategory.objects.for_school(self.school).active()
        self.fields['currency'].queryset = _school_currencies(self.school)
        self.fields['term'].queryset = Term.objects.for_school(self.school)

    def clean_waiver_type(self):
        return self.cleaned_data.get('waiver_type') or FeeWaiver.TYPE_TUITION


class OpeningBalanceForm(forms.Form):
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)
    as_of = forms.DateField(required=False)
    notes = forms.CharField(max_length=120, required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['currency'].queryset = _school_currencies(self.school)


class ManualAdjustmentForm(forms.Form):
    TYPE_CHOICES = (
        ('debit', 'Debit'),
        ('credit', 'Credit'),
    )

    adjustment_type = forms.ChoiceField(choices=TYPE_CHOICES)
    amount = forms.DecimalField(max_digits=12, decimal_places=2, min_value=0.01)
    description = forms.CharField(max_length=150)
    reference = forms.CharField(max_length=60, required=False)
    currency = CurrencyChoiceField(queryset=Currency.objects.none(), required=False)

    def __init__(self, *args, **kwargs):
        self.school = kwargs.pop('school', None)
        super().__init__(*args, **kwargs)
        self.fields['currency'].queryset = _school_currencies(self.school)