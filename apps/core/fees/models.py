from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q, Sum
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.models import Currency, FinancialRecordModel, JournalEntry
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.utils.managers import SchoolManager

ZERO = Decimal('0.00')


class InvoiceStructure(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='invoice_structures',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=150, blank=True)
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        related_name='invoice_structures',
    )
    term = models.ForeignKey(
        Term,
        on_delete=models.PROTECT,
        related_name='invoice_structures',
    )
    currency = models.ForeignKey(
        Currency,
        on_delete=models.PROTECT,
        related_name='invoice_structures',
    )
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    notes = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='invoice_structures_created',
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['school_class__display_order', 'school_class__name', '-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['school_class', 'term'],
                condition=Q(is_active=True),
                name='unique_active_invoice_structure_per_class_term',
            ),
            models.CheckConstraint(
                condition=Q(total_amount__gt=0),
                name='invoice_structure_total_positive',
            ),
        ]

    def clean(self):
        super().clean()
        if self.school_class_id and self.school_class.school_id != self.school_id:
            raise ValidationError({'school_class': 'Class must belong to selected school.'})
        if self.term_id and self.term.school_id != self.school_id:
            raise ValidationError({'term': 'Term must belong to selected school.'})
        if self.currency_id and self.currency.school_id != self.school_id:
            raise ValidationError({'currency': 'Currency must belong to selected school.'})
        if self.total_amount is not None and self.total_amount <= 0:
            raise ValidationError({'total_amount': 'Total amount must be greater than zero.'})

    def save(self, *args, **kwargs):
        if not self.name and self.school_class_id and self.term_id:
            self.name = f"{self.school_class.display_name} - {self.term.label}"
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return self.name or f"Invoice structure #{self.pk}"


class InvoiceItem(models.Model):
    structure = models.ForeignKey(
        InvoiceStructure,
        on_delete=models.CASCADE,
        related_name='items',
    )
    item_name = models.CharField(max_length=120)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    description = models.CharField(max_length=255, blank=True)
    display_order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['display_order', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='invoice_item_amount_positive',
            ),
        ]

    def __str__(self):
        return f"{self.item_name} ({self.amount})"


class FeeStructure(models.Model):
    TYPE_ONE_TIME = 'one_time'
    TYPE_ANNUAL = 'annual'
    TYPE_TERMLY = 'termly'
    FEE_TYPE_CHOICES = (
        (TYPE_ONE_TIME, 'One Time'),
        (TYPE_ANNUAL, 'Annual'),
        (TYPE_TERMLY, 'Termly'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_structures',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=120)
    description = models.CharField(max_length=255, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.ForeignKey(
        Currency,
        on_delete=models.PROTECT,
        related_name='fee_structures',
    )
    fee_type = models.CharField(max_length=20, choices=FEE_TYPE_CHOICES, default=TYPE_ONE_TIME)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        constraints = [
            models.UniqueConstraint(fields=['school', 'name'], name='unique_fee_structure_name_per_school'),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_structure_amount_positive',
            ),
        ]

    def clean(self):
        super().clean()
        if self.name:
            self.name = self.name.strip()
        if self.currency_id and self.currency.school_id != self.school_id:
            raise ValidationError({'currency': 'Currency must belong to selected school.'})
        if self.amount is not None and self.amount <= 0:
            raise ValidationError({'amount': 'Fee amount must be greater than zero.'})

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return self.name


class StudentTransaction(FinancialRecordModel):
    TYPE_DEBIT = 'DEBIT'
    TYPE_CREDIT = 'CREDIT'
    TRANSACTION_TYPE_CHOICES = (
        (TYPE_DEBIT, 'Debit'),
        (TYPE_CREDIT, 'Credit'),
    )

    CATEGORY_TUITION_INVOICE = 'tuition_invoice'
    CATEGORY_BOARDING_INVOICE = 'boarding_invoice'
    CATEGORY_ADDITIONAL_FEE = 'additional_fee'
    CATEGORY_OPENING_BALANCE = 'opening_balance'
    CATEGORY_MANUAL_ADJUSTMENT = 'manual_adjustment'
    CATEGORY_FEE_PAYMENT = 'fee_payment'
    CATEGORY_BOARDING_PAYMENT = 'boarding_payment'
    CATEGORY_REFUND = 'refund'
    CATEGORY_WAIVER = 'waiver'
    CATEGORY_PAYMENT_REVERSAL = 'payment_reversal'
    CATEGORY_REVERSAL = 'reversal'
    CATEGORY_CHOICES = (
        (CATEGORY_TUITION_INVOICE, 'Tuition Invoice'),
        (CATEGORY_BOARDING_INVOICE, 'Boarding Invoice'),
        (CATEGORY_ADDITIONAL_FEE, 'Additional Fee'),
        (CATEGORY_OPENING_BALANCE, 'Opening Balance'),
        (CATEGORY_MANUAL_ADJUSTMENT, 'Manual Adjustment'),
        (CATEGORY_FEE_PAYMENT, 'Fee Payment'),
        (CATEGORY_BOARDING_PAYMENT, 'Boarding Payment'),
        (CATEGORY_REFUND, 'Refund'),
        (CATEGORY_WAIVER, 'Waiver'),
        (CATEGORY_PAYMENT_REVERSAL, 'Payment Reversal'),
        (CATEGORY_REVERSAL, 'Reversal'),
    )
    REVERSIBLE_CATEGORIES = (
        CATEGORY_TUITION_INVOICE,
        CATEGORY_BOARDING_INVOICE,
        CATEGORY_ADDITIONAL_FEE,
        CATEGORY_OPENING_BALANCE,
        CATEGORY_MANUAL_ADJUSTMENT,
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='student_transactions',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='transactions',
    )
    transaction_type = models.CharField(max_length=10, choices=TRANSACTION_TYPE_CHOICES)
    category = models.CharField(max_length=30, choices=CATEGORY_CHOICES)
    # Base currency amount; the original amount and rate are snapshotted beside it.
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.ForeignKey(
        Currency,
        on_delete=models.PROTECT,
        related_name='student_transactions',
    )
    original_amount = models.DecimalField(max_digits=12, decimal_places=2)
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal('1.000000'))
    description = models.CharField(max_length=255)
    reference = models.CharField(max_length=120, blank=True)

    term = models.ForeignKey(
        Term,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_transactions',
    )
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_transactions',
    )
    hostel = models.ForeignKey(
        'boarding.Hostel',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_transactions',
    )
    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='student_transactions',
    )

    reversal_of = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reversal_transaction',
    )
    is_reversed = models.BooleanField(default=False)
    reversed_at = models.DateTimeField(null=True, blank=True)

    balance_after = models.DecimalField(max_digits=14, decimal_places=2)
    transaction_date = models.DateField(default=timezone.localdate)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='student_transactions_created',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-transaction_date', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='student_transaction_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'student', 'transaction_date']),
            models.Index(fields=['school', 'category']),
            models.Index(fields=['school', 'transaction_type', 'transaction_date']),
        ]

    @property
    def signed_amount(self):
        return self.amount if self.transaction_type == self.TYPE_CREDIT else -self.amount

    def clean(self):
        super().clean()
        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Transaction amount must be greater than zero.'})

        if not self.pk:
            return
        previous = StudentTransaction.objects.filter(pk=self.pk).first()
        if not previous:
            return
        immutable_fields = [
            'school_id',
            'student_id',
            'transaction_type',
            'category',
            'amount',
            'original_amount',
            'exchange_rate',
            'balance_after',
            'transaction_date',
        ]
        if any(getattr(previous, field) != getattr(self, field) for field in immutable_fields):
            raise ValidationError('Ledger transactions are immutable. Reverse and re-enter instead of editing.')
        if previous.is_reversed and not self.is_reversed:
            raise ValidationError('Reversed transaction cannot be reverted.')

    def __str__(self):
        return f"{self.transaction_type} {self.amount} - {self.description}"


class StudentBalance(models.Model):
    """Cached ledger balance. Negative means the student owes the school."""

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='student_balances',
    )
    objects = SchoolManager()

    student = models.OneToOneField(
        Student,
        on_delete=models.CASCADE,
        related_name='balance',
    )
    current_balance = models.DecimalField(max_digits=14, decimal_places=2, default=ZERO)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['current_balance']
        indexes = [
            models.Index(fields=['school', 'current_balance']),
        ]

    @property
    def outstanding(self):
        return max(ZERO, -self.current_balance)

    def __str__(self):
        return f"{self.student.admission_number}: {self.current_balance}"


class StudentFeeAssignment(models.Model):
    CATEGORY_TUITION = 'tuition'
    CATEGORY_BOARDING = 'boarding'
    CATEGORY_ADDITIONAL = 'additional'
    CATEGORY_OPENING_BALANCE = 'opening_balance'
    CATEGORY_MANUAL = 'manual'
    CATEGORY_CHOICES = (
        (CATEGORY_TUITION, 'Tuition'),
        (CATEGORY_BOARDING, 'Boarding'),
        (CATEGORY_ADDITIONAL, 'Additional Fee'),
        (CATEGORY_OPENING_BALANCE, 'Opening Balance'),
        (CATEGORY_MANUAL, 'Manual Adjustment'),
    )

    STATUS_PENDING = 'pending'
    STATUS_PARTIAL = 'partial'
    STATUS_PAID = 'paid'
    STATUS_CANCELLED = 'cancelled'

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_assignments',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='fee_assignments',
    )
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES)
    description = models.CharField(max_length=255)
    fee_structure = models.ForeignKey(
        FeeStructure,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='assignments',
    )
    invoice_structure = models.ForeignKey(
        InvoiceStructure,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='assignments',
    )
    session = models.ForeignKey(
        AcademicSession,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_assignments',
    )
    term = models.ForeignKey(
        Term,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_assignments',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    due_date = models.DateField(null=True, blank=True)
    transaction = models.OneToOneField(
        StudentTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_assignment',
    )

    is_cancelled = models.BooleanField(default=False)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='fee_assignments_created',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['due_date', 'created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['student'],
                condition=Q(category='opening_balance', is_cancelled=False),
                name='unique_active_opening_balance_per_student',
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_assignment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'student', 'is_cancelled']),
            models.Index(fields=['school', 'category', 'is_cancelled']),
            models.Index(fields=['fee_structure', 'session', 'term']),
        ]

    @property
    def paid_amount(self):
        value = self.allocations.exclude(
            payment__status=FeePayment.STATUS_REVERSED,
        ).aggregate(total=Sum('amount')).get('total')
        return Decimal(value or ZERO)

    @property
    def due_amount(self):
        if self.is_cancelled:
            return ZERO
        return max(ZERO, Decimal(self.amount) - self.paid_amount)

    @property
    def status(self):
        if self.is_cancelled:
            return self.STATUS_CANCELLED
        paid = self.paid_amount
        if paid <= 0:
            return self.STATUS_PENDING
        if paid < self.amount:
            return self.STATUS_PARTIAL
        return self.STATUS_PAID

    def clean(self):
        super().clean()
        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Assignment amount must be greater than zero.'})

    def delete(self, *args, **kwargs):
        raise ValidationError('Fee assignments cannot be deleted. Reverse the charge instead.')

    def __str__(self):
        return f"{self.student.admission_number} - {self.description} ({self.amount})"


class FeePayment(FinancialRecordModel):
    CATEGORY_TUITION = 'tuition'
    CATEGORY_BOARDING = 'boarding'
    CATEGORY_OTHER = 'other'
    CATEGORY_CHOICES = (
        (CATEGORY_TUITION, 'Tuition'),
        (CATEGORY_BOARDING, 'Boarding'),
        (CATEGORY_OTHER, 'Other'),
    )
    RECEIPT_PREFIXES = {
        CATEGORY_TUITION: 'FP',
        CATEGORY_BOARDING: 'BF',
        CATEGORY_OTHER: 'OF',
    }

    METHOD_CASH = 'Cash'
    METHOD_BANK_TRANSFER = 'Bank Transfer'
    METHOD_CHEQUE = 'Cheque'
    METHOD_MOBILE_MONEY = 'Mobile Money'
    METHOD_OTHER = 'Other'
    PAYMENT_METHOD_CHOICES = (
        (METHOD_CASH, 'Cash'),
        (METHOD_BANK_TRANSFER, 'Bank Transfer'),
        (METHOD_CHEQUE, 'Cheque'),
        (METHOD_MOBILE_MONEY, 'Mobile Money'),
        (METHOD_OTHER, 'Other'),
    )

    STATUS_COMPLETED = 'completed'
    STATUS_PARTIALLY_REFUNDED = 'partially_refunded'
    STATUS_REFUNDED = 'refunded'
    STATUS_REVERSED = 'reversed'
    STATUS_CHOICES = (
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_PARTIALLY_REFUNDED, 'Partially Refunded'),
        (STATUS_REFUNDED, 'Refunded'),
        (STATUS_REVERSED, 'Reversed'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_payments',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='fee_payments',
    )
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES, default=CATEGORY_TUITION)
    term = models.ForeignKey(
        Term,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='fee_payments',
    )
    hostel = models.ForeignKey(
        'boarding.Hostel',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_payments',
    )
    fee_assignment = models.ForeignKey(
        StudentFeeAssignment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='targeted_payments',
    )

    currency = models.ForeignKey(
        Currency,
        on_delete=models.PROTECT,
        related_name='fee_payments',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=6)
    base_amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default=METHOD_CASH)
    payment_date = models.DateField(default=timezone.localdate)
    reference_number = models.CharField(max_length=120, blank=True)
    notes = models.TextField(blank=True)
    receipt_number = models.CharField(max_length=40, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_COMPLETED)
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_payments',
    )
    transaction = models.OneToOneField(
        StudentTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_payment',
    )
    received_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='received_fee_payments',
    )
    reversed_at = models.DateTimeField(null=True, blank=True)
    reversed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reversed_fee_payments',
    )
    reversal_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-payment_date', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'receipt_number'],
                condition=~Q(receipt_number=''),
                name='unique_fee_receipt_number_per_school',
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0) & Q(base_amount__gt=0),
                name='fee_payment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'student', 'payment_date']),
            models.Index(fields=['school', 'category', 'status']),
            models.Index(fields=['school', 'payment_date']),
        ]

    @property
    def is_reversed(self):
        return self.status == self.STATUS_REVERSED

    @property
    def refundable_amount(self):
        if self.is_reversed:
            return ZERO
        return max(ZERO, Decimal(self.base_amount) - Decimal(self.refunded_amount))

    def clean(self):
        super().clean()

        if self.student_id and self.student.school_id != self.school_id:
            raise ValidationError({'student': 'Student must belong to selected school.'})
        if self.currency_id and self.currency.school_id != self.school_id:
            raise ValidationError({'currency': 'Currency must belong to selected school.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Payment amount must be greater than zero.'})
        if self.category == self.CATEGORY_BOARDING and not self.hostel_id:
            raise ValidationError({'hostel': 'Hostel is required for boarding payments.'})

        if self.status == self.STATUS_REVERSED:
            if not self.reversed_at:
                raise ValidationError({'reversed_at': 'Reversal timestamp is required for reversed payment.'})
            if not self.reversal_reason.strip():
                raise ValidationError({'reversal_reason': 'Reversal reason is required.'})

        if not self.pk:
            return

        previous = FeePayment.objects.filter(pk=self.pk).first()
        if not previous:
            return

        immutable_fields = [
            'school_id',
            'student_id',
            'category',
            'currency_id',
            'amount',
            'exchange_rate',
            'base_amount',
            'payment_date',
            'payment_method',
            'reference_number',
            'received_by_id',
        ]
        if any(getattr(previous, field) != getattr(self, field) for field in immutable_fields):
            raise ValidationError('Fee payments are immutable. Reverse and re-enter instead of editing.')

        if previous.status == self.STATUS_REVERSED and self.status != self.STATUS_REVERSED:
            raise ValidationError('Reversed payment cannot be reverted.')

    def __str__(self):
        return f"{self.receipt_number or self.pk} - {self.student.admission_number}"


class FeePaymentAllocation(FinancialRecordModel):
    """
    Share of a payment applied to a fee assignment.

    Refunds add release rows with a negative amount so the history of what
    was applied stays intact.
    """

    payment = models.ForeignKey(
        FeePayment,
        on_delete=models.CASCADE,
        related_name='allocations',
    )
    assignment = models.ForeignKey(
        StudentFeeAssignment,
        on_delete=models.PROTECT,
        related_name='allocations',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    is_release = models.BooleanField(default=False)
    refund = models.ForeignKey(
        'FeeRefund',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='releases',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=(
                    (Q(is_release=False) & Q(amount__gt=0))
                    | (Q(is_release=True) & Q(amount__lt=0))
                ),
                name='fee_allocation_amount_sign',
            ),
        ]

    def clean(self):
        super().clean()
        if self.assignment_id and self.payment_id:
            if self.assignment.student_id != self.payment.student_id:
                raise ValidationError({'assignment': 'Assignment must belong to payment student.'})

    def __str__(self):
        return f"Allocation #{self.id} - Payment #{self.payment_id}"


class FeeRefund(FinancialRecordModel):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_refunds',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='fee_refunds',
    )
    payment = models.ForeignKey(
        FeePayment,
        on_delete=models.PROTECT,
        related_name='refunds',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=255)
    refund_date = models.DateField(default=timezone.localdate)
    transaction = models.OneToOneField(
        StudentTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_refund',
    )
    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_refunds',
    )
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='approved_fee_refunds',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-refund_date', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='fee_refund_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'student', 'refund_date']),
        ]

    def clean(self):
        super().clean()
        if self.payment_id:
            if self.payment.school_id != self.school_id:
                raise ValidationError({'payment': 'Payment school mismatch.'})
            if self.payment.student_id != self.student_id:
                raise ValidationError({'payment': 'Payment student mismatch.'})
        if self.amount is None or self.amount <= 0:
            raise ValidationError({'amount': 'Refund amount must be greater than zero.'})
        if not self.reason.strip():
            raise ValidationError({'reason': 'Refund reason is required.'})

    def __str__(self):
        return f"Refund #{self.id} - Payment #{self.payment_id}"


class WaiverCategory(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='waiver_categories',
    )
    objects = SchoolManager()

    name = models.CharField(max_length=100)
    description = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        verbose_name_plural = 'waiver categories'
        constraints = [
            models.UniqueConstraint(fields=['school', 'name'], name='unique_waiver_category_per_school'),
        ]

    def delete(self, *args, **kwargs):
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return self.name


class FeeWaiver(FinancialRecordModel):
    TYPE_TUITION = 'tuition'
    TYPE_BOARDING = 'boarding'
    TYPE_OTHER = 'other'
    WAIVER_TYPE_CHOICES = (
        (TYPE_TUITION, 'Tuition'),
        (TYPE_BOARDING, 'Boarding'),
        (TYPE_OTHER, 'Other'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_waivers',
    )
    objects = SchoolManager()

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='fee_waivers',
    )
    category = models.ForeignKey(
        WaiverCategory,
        on_delete=models.PROTECT,
        related_name='waivers',
    )
    waiver_type = models.CharField(max_length=20, choices=WAIVER_TYPE_CHOICES, default=TYPE_TUITION)
    currency = models.ForeignKey(
        Currency,
        on_delete=models.PROTECT,
        related_name='fee_waivers',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=6)
    base_amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=255)
    notes = models.TextField(blank=True)
    term = models.ForeignKey(
        Term,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='fee_waivers',
    )
    transaction = models.OneToOneField(
        StudentTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_waiver',
    )
    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='fee_waivers',
    )
    granted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='fee_waivers_granted',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0) & Q(base_amount__gt=0),
                name='fee_waiver_amount_positive',
            ),
        ]

    def __str__(self):
        return f"{self.student.admission_number} - {self.category} ({self.base_amount})"
