from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Use reversal workflow.')


class Currency(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='currencies',
    )
    objects = SchoolManager()

    code = models.CharField(max_length=3)
    name = models.CharField(max_length=60)
    symbol = models.CharField(max_length=8, blank=True)
    # Units of base currency bought by one unit of this currency.
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=6, default=Decimal('1.000000'))
    is_base = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-is_base', 'code']
        verbose_name_plural = 'currencies'
        constraints = [
            models.UniqueConstraint(fields=['school', 'code'], name='unique_currency_code_per_school'),
            models.UniqueConstraint(
                fields=['school'],
                condition=Q(is_base=True),
                name='unique_base_currency_per_school',
            ),
            models.CheckConstraint(
                condition=Q(exchange_rate__gt=0),
                name='currency_exchange_rate_positive',
            ),
        ]

    def clean(self):
        super().clean()
        if self.code:
            self.code = self.code.strip().upper()
        if not self.code or len(self.code) != 3 or not self.code.isalpha():
            raise ValidationError({'code': 'Currency code must be a 3-letter ISO code.'})
        if self.is_base and self.exchange_rate != Decimal('1'):
            raise ValidationError({'exchange_rate': 'Base currency exchange rate must be 1.'})

    def delete(self, *args, **kwargs):
        if self.is_base:
            raise ValidationError('The base currency cannot be deactivated.')
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active', 'updated_at'])

    def __str__(self):
        return self.code


class ChartOfAccount(models.Model):
    TYPE_ASSET = 'asset'
    TYPE_LIABILITY = 'liability'
    TYPE_EQUITY = 'equity'
    TYPE_REVENUE = 'revenue'
    TYPE_EXPENSE = 'expense'
    ACCOUNT_TYPE_CHOICES = (
        (TYPE_ASSET, 'Asset'),
        (TYPE_LIABILITY, 'Liability'),
        (TYPE_EQUITY, 'Equity'),
        (TYPE_REVENUE, 'Revenue'),
        (TYPE_EXPENSE, 'Expense'),
    )
    DEBIT_NORMAL_TYPES = (TYPE_ASSET, TYPE_EXPENSE)

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='chart_of_accounts',
    )
    objects = SchoolManager()

    code = models.CharField(max_length=20)
    name = models.CharField(max_length=120)
    account_type = models.CharField(max_length=20, choices=ACCOUNT_TYPE_CHOICES)
    parent = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='children',
    )
    description = models.CharField(max_length=255, blank=True)
    is_system = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['code']
        constraints = [
            models.UniqueConstraint(fields=['school', 'code'], name='unique_account_code_per_school'),
        ]
        indexes = [
            models.Index(fields=['school', 'account_type', 'is_active']),
        ]

    @property
    def is_debit_normal(self):
        return self.account_type in self.DEBIT_NORMAL_TYPES

    def signed_movement(self, debit, credit):
        if self.is_debit_normal:
            return Decimal(debit) - Decimal(credit)
        return Decimal(credit) - Decimal(debit)

    def clean(self):
        super().clean()
        if self.code:
            self.code = self.code.strip()
        if self.parent_id:
            if self.parent.school_id != self.school_id:
                raise ValidationError({'parent': 'Parent account must belong to the same school.'})
            if self.parent.account_type != self.account_type:
                raise ValidationError({'parent': 'Parent account must have the same account type.'})
            if self.pk and self.parent_id == self.pk:
                raise ValidationError({'parent': 'An account cannot be its own parent.'})

    def delete(self, *args, **kwargs):
        if self.is_system:
            raise ValidationError('System accounts cannot be deactivated.')
        if self.is_active:
            self.is_active = False
            self.save(update_fields=['is_active'])

    def __str__(self):
        return f"{self.code} - {self.name}"


class JournalEntry(FinancialRecordModel):
    STATUS_POSTED = 'posted'
    STATUS_REVERSED = 'reversed'
    STATUS_CHOICES = (
        (STATUS_POSTED, 'Posted'),
        (STATUS_REVERSED, 'Reversed'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='journal_entries',
    )
    objects = SchoolManager()

    entry_number = models.CharField(max_length=40, blank=True)
    entry_date = models.DateField(default=timezone.localdate)
    description = models.CharField(max_length=255)
    external_reference = models.CharField(max_length=120, blank=True)
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name='journal_entries')
    exchange_rate = models.DecimalField(max_digits=18, decimal_places=6)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_POSTED)

    reference_model = models.CharField(max_length=100, blank=True)
    reference_id = models.CharField(max_length=64, blank=True)

    reversal_of = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reversal_entry',
    )
    reversed_at = models.DateTimeField(null=True, blank=True)
    reversed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reversed_journal_entries',
    )
    reversal_reason = models.CharField(max_length=255, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='journal_entries_created',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-entry_date', '-id']
        verbose_name_plural = 'journal entries'
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'entry_number'],
                condition=~Q(entry_number=''),
                name='unique_journal_entry_number_per_school',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'entry_date']),
            models.Index(fields=['school', 'reference_model', 'reference_id']),
            models.Index(fields=['school', 'status']),
        ]

    @property
    def is_reversal(self):
        return self.reversal_of_id is not None

    def __str__(self):
        return f"{self.entry_number or self.pk} - {self.description}"


class JournalEntryLine(FinancialRecordModel):
    entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.CASCADE,
        related_name='lines',
    )
    account = models.ForeignKey(
        ChartOfAccount,
        on_delete=models.PROTECT,
        related_name='journal_lines',
    )
    description = models.CharField(max_length=255, blank=True)
    debit = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    credit = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    base_debit = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))
    base_credit = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        ordering = ['id']
        constraints = [
            models.CheckConstraint(
                condition=(
                    (Q(debit__gt=0) & Q(credit=0))
                    | (Q(debit=0) & Q(credit__gt=0))
                ),
                name='journal_line_single_side',
            ),
            models.CheckConstraint(
                condition=Q(base_debit__gte=0) & Q(base_credit__gte=0),
                name='journal_line_base_non_negative',
            ),
        ]
        indexes = [
            models.Index(fields=['account']),
        ]

    def __str__(self):
        side = 'Dr' if self.debit else 'Cr'
        return f"{side} {self.account.code} {self.debit or self.credit}"


class AccountBalance(models.Model):
    """Running balance per account and currency, signed by the account's normal side."""

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='account_balances',
    )
    objects = SchoolManager()

    account = models.ForeignKey(
        ChartOfAccount,
        on_delete=models.CASCADE,
        related_name='balances',
    )
    currency = models.ForeignKey(Currency, on_delete=models.PROTECT, related_name='account_balances')
    balance = models.DecimalField(max_digits=16, decimal_places=2, default=Decimal('0.00'))
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['account__code', 'currency__code']
        constraints = [
            models.UniqueConstraint(fields=['account', 'currency'], name='unique_balance_per_account_currency'),
        ]

    def __str__(self):
        return f"{self.account.code} {self.currency.code} {self.balance}"
