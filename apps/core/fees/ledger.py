"""
Student ledger: the only code that writes StudentTransaction rows and the
cached StudentBalance.

Balance convention: CREDIT raises the balance, DEBIT lowers it, so a
negative balance is money owed to the school.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Q, Sum
from django.utils import timezone

from apps.core.accounting.models import JournalEntry
from apps.core.accounting.services import get_base_currency, reverse_journal_entry
from apps.core.students.models import Student
from apps.core.utils.money import ZERO, quantize, sum_amount, to_decimal

from .models import FeePayment, FeePaymentAllocation, StudentBalance, StudentFeeAssignment, StudentTransaction

logger = logging.getLogger(__name__)


def lock_student_balance(student: Student) -> StudentBalance:
    """Returns the student's balance row locked for update. Call inside a transaction."""
    balance, _ = StudentBalance.objects.select_for_update().get_or_create(
        student=student,
        defaults={'school': student.school},
    )
    return balance


def ledger_balance(student: Student) -> Decimal:
    totals = StudentTransaction.objects.filter(student=student).aggregate(
        credits=Sum('amount', filter=Q(transaction_type=StudentTransaction.TYPE_CREDIT)),
        debits=Sum('amount', filter=Q(transaction_type=StudentTransaction.TYPE_DEBIT)),
    )
    return quantize(to_decimal(totals['credits']) - to_decimal(totals['debits']))


def current_balance(student: Student) -> Decimal:
    balance = StudentBalance.objects.filter(student=student).values_list('current_balance', flat=True).first()
    return quantize(balance)


@transaction.atomic
def post_student_transaction(
    *,
    student: Student,
    transaction_type,
    amount,
    description,
    category,
    currency=None,
    original_amount=None,
    exchange_rate=None,
    term=None,
    school_class=None,
    hostel=None,
    journal_entry=None,
    reversal_of=None,
    reference='',
    transaction_date=None,
    created_by=None,
) -> StudentTransaction:
    """
    Appends one line to the student's ledger and moves the cached balance.
    ``amount`` is in base currency; the original amount and rate are kept
    for display.
    """
    if transaction_type not in (StudentTransaction.TYPE_DEBIT, StudentTransaction.TYPE_CREDIT):
        raise ValidationError('Transaction type must be DEBIT or CREDIT.')
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError('Transaction amount must be greater than zero.')
    description = (description or '').strip()
    if not description:
        raise ValidationError('Transaction description is required.')

    if currency is None:
        currency = get_base_currency(student.school)
        exchange_rate = Decimal('1')
    if original_amount is None:
        original_amount = amount
    if exchange_rate is None:
        exchange_rate = Decimal('1')

    balance = lock_student_balance(student)
    if transaction_type == StudentTransaction.TYPE_CREDIT:
        new_balance = quantize(balance.current_balance + amount)
    else:
        new_balance = quantize(balance.current_balance - amount)

    row = StudentTransaction.objects.create(
        school=student.school,
        student=student,
        transaction_type=transaction_type,
        category=category,
        amount=amount,
        currency=currency,
        original_amount=quantize(original_amount),
        exchange_rate=exchange_rate,
        description=description[:255],
        reference=(reference or '')[:120],
        term=term,
        school_class=school_class,
        hostel=hostel,
        journal_entry=journal_entry,
        reversal_of=reversal_of,
        balance_after=new_balance,
        transaction_date=transaction_date or timezone.localdate(),
        created_by=created_by,
    )
    balance.current_balance = new_balance
    balance.save(update_fields=['current_balance', 'updated_at'])

    logger.info(
        'Ledger %s %s for student %s (%s), balance %s',
        transaction_type,
        amount,
        student.admission_number,
        category,
        new_balance,
    )
    return row


@transaction.atomic
def recalculate_student_balance(student: Student):
    balance = lock_student_balance(student)
    previous = quantize(balance.current_balance)
    recalculated = ledger_balance(student)
    if previous != recalculated:
        balance.current_balance = recalculated
        balance.save(update_fields=['current_balance', 'updated_at'])
        logger.warning(
            'Student %s balance drifted: cached %s, ledger %s',
            student.admission_number,
            previous,
            recalculated,
        )
    return {
        'student_id': student.id,
        'previous_balance': previous,
        'recalculated_balance': recalculated,
        'difference': quantize(recalculated - previous),
    }


def active_allocations(queryset=None):
    queryset = FeePaymentAllocation.objects.all() if queryset is None else queryset
    return queryset.exclude(payment__status=FeePayment.STATUS_REVERSED)


def charges_outstanding(student: Student) -> Decimal:
    charged = sum_amount(StudentFeeAssignment.objects.filter(student=student, is_cancelled=False))
    allocated = sum_amount(
        active_allocations().filter(assignment__student=student, assignment__is_cancelled=False)
    )
    return quantize(charged - allocated)


def reconcile_student_balance(student: Student):
    """Read-only consistency report for one student's ledger."""
    cached = current_balance(student)
    ledger = ledger_balance(student)
    last = StudentTransaction.objects.filter(student=student).order_by('-id').first()
    last_running = quantize(last.balance_after) if last else ZERO
    outstanding = charges_outstanding(student)
    return {
        'student_id': student.id,
        'cached_balance': cached,
        'ledger_balance': ledger,
        'last_running_balance': last_running,
        'charges_outstanding': outstanding,
        # Credits not applied to any charge: overpayments, waivers and manual credits.
        'unallocated_credits': quantize(outstanding + ledger),
        'transaction_count': StudentTransaction.objects.filter(student=student).count(),
        'is_consistent': cached == ledger == last_running,
    }


def is_within_reversal_window(row: StudentTransaction) -> bool:
    # Measured from posting time, not the (possibly backdated) transaction date.
    return row.created_at >= timezone.now() - timedelta(days=settings.LEDGER_REVERSAL_WINDOW_DAYS)


@transaction.atomic
def reverse_student_transaction(*, transaction: StudentTransaction, reason='', reversed_by=None):
    """
    Reverses a charge or manual adjustment with an opposite ledger line.
    Payments, refunds and waivers go through their own workflows.
    """
    row = StudentTransaction.objects.select_for_update().select_related('student', 'journal_entry').get(
        pk=transaction.pk
    )
    if row.is_reversed:
        raise ValidationError('Transaction has already been reversed.')
    if row.reversal_of_id:
        raise ValidationError('A reversal line cannot itself be reversed.')
    if row.category not in StudentTransaction.REVERSIBLE_CATEGORIES:
        raise ValidationError(
            f"{row.get_category_display()} transactions must be reversed through their own workflow."
        )
    if not is_within_reversal_window(row):
        raise ValidationError(
            f'Transactions older than {settings.LEDGER_REVERSAL_WINDOW_DAYS} days cannot be reversed.'
        )

    assignment = StudentFeeAssignment.objects.select_for_update().filter(transaction=row).first()
    if assignment and sum_amount(active_allocations(assignment.allocations.all())) > 0:
        raise ValidationError('Charge has payments allocated to it. Reverse or refund the payments first.')

    reason = (reason or '').strip()
    reversal_entry = None
    if row.journal_entry_id and row.journal_entry.status == JournalEntry.STATUS_POSTED:
        reversal_entry = reverse_journal_entry(
            entry=row.journal_entry,
            reason=reason or 'Correction',
            reversed_by=reversed_by,
        )

    opposite = (
        StudentTransaction.TYPE_CREDIT
        if row.transaction_type == StudentTransaction.TYPE_DEBIT
        else StudentTransaction.TYPE_DEBIT
    )
    reversal = post_student_transaction(
        student=row.student,
        transaction_type=opposite,
        amount=row.amount,
        description=f"Reversal: {row.description} - {reason or 'Correction'}",
        category=StudentTransaction.CATEGORY_REVERSAL,
        currency=row.currency,
        original_amount=row.original_amount,
        exchange_rate=row.exchange_rate,
        term=row.term,
        school_class=row.school_class,
        hostel=row.hostel,
        journal_entry=reversal_entry,
        reversal_of=row,
        reference=row.reference,
        created_by=reversed_by,
    )

    row.is_reversed = True
    row.reversed_at = timezone.now()
    row.save(update_fields=['is_reversed', 'reversed_at'])

    if assignment and not assignment.is_cancelled:
        assignment.is_cancelled = True
        assignment.cancelled_at = timezone.now()
        assignment.cancellation_reason = (reason or 'Charge reversed')[:255]
        assignment.save(update_fields=['is_cancelled', 'cancelled_at', 'cancellation_reason'])

    logger.info(
        'Reversed ledger line %s for student %s: %s',
        row.id,
        row.student.admission_number,
        reason or 'Correction',
    )
    return reversal


def student_statement(student: Student, start=None, end=None):
    rows = StudentTransaction.objects.filter(student=student).select_related('currency', 'term')
    opening = ZERO
    if start:
        before = rows.filter(transaction_date__lt=start).aggregate(
            credits=Sum('amount', filter=Q(transaction_type=StudentTransaction.TYPE_CREDIT)),
            debits=Sum('amount', filter=Q(transaction_type=StudentTransaction.TYPE_DEBIT)),
        )
        opening = quantize(to_decimal(before['credits']) - to_decimal(before['debits']))
        rows = rows.filter(transaction_date__gte=start)
    if end:
        rows = rows.filter(transaction_date__lte=end)

    running = opening
    total_debits = ZERO
    total_credits = ZERO
    lines = []
    for row in rows.order_by('transaction_date', 'id'):
        if row.transaction_type == StudentTransaction.TYPE_CREDIT:
            running += row.amount
            total_credits += row.amount
        else:
            running -= row.amount
            total_debits += row.amount
        lines.append({
            'id': row.id,
            'date': row.transaction_date,
            'type': row.transaction_type,
            'category': row.category,
            'description': row.description,
            'reference': row.reference,
            'amount': row.amount,
            'currency': row.currency.code,
            'original_amount': row.original_amount,
            'exchange_rate': row.exchange_rate,
            'term': row.term.label if row.term_id else None,
            'is_reversed': row.is_reversed,
            'running_balance': quantize(running),
        })

    return {
        'student_id': student.id,
        'admission_number': student.admission_number,
        'student_name': student.full_name,
        'start_date': start,
        'end_date': end,
        'opening_balance': opening,
        'transactions': lines,
        'total_debits': quantize(total_debits),
        'total_credits': quantize(total_credits),
        'closing_balance': quantize(running),
    }
