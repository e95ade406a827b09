from __future__ import annotations

import logging
import secrets

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Avg, Case, Count, F, IntegerField, Min, Q, Sum, Value, When
from django.utils import timezone

from apps.core.accounting import services as accounting
from apps.core.accounting.models import JournalEntry
from apps.core.students.models import Student
from apps.core.utils.money import ZERO, quantize, sum_amount, to_decimal

from .ledger import (
    active_allocations,
    is_within_reversal_window,
    lock_student_balance,
    post_student_transaction,
    reverse_student_transaction,
)
from .models import (
    FeePayment,
    FeePaymentAllocation,
    FeeRefund,
    FeeStructure,
    FeeWaiver,
    InvoiceItem,
    InvoiceStructure,
    StudentBalance,
    StudentFeeAssignment,
    StudentTransaction,
)

logger = logging.getLogger(__name__)

PAYMENT_METHOD_ALIASES = {
    'cash': FeePayment.METHOD_CASH,
    'bank': FeePayment.METHOD_BANK_TRANSFER,
    'bank transfer': FeePayment.METHOD_BANK_TRANSFER,
    'bank_transfer': FeePayment.METHOD_BANK_TRANSFER,
    'cheque': FeePayment.METHOD_CHEQUE,
    'check': FeePayment.METHOD_CHEQUE,
    'mobile money': FeePayment.METHOD_MOBILE_MONEY,
    'mobile_money': FeePayment.METHOD_MOBILE_MONEY,
    'momo': FeePayment.METHOD_MOBILE_MONEY,
    'mpesa': FeePayment.METHOD_MOBILE_MONEY,
    'other': FeePayment.METHOD_OTHER,
}

# Assignment category a payment category settles first.
PREFERRED_ASSIGNMENT_CATEGORY = {
    FeePayment.CATEGORY_TUITION: StudentFeeAssignment.CATEGORY_TUITION,
    FeePayment.CATEGORY_BOARDING: StudentFeeAssignment.CATEGORY_BOARDING,
    FeePayment.CATEGORY_OTHER: StudentFeeAssignment.CATEGORY_ADDITIONAL,
}

WAIVER_EXPENSE_ACCOUNTS = {
    FeeWaiver.TYPE_TUITION: accounting.TUITION_WAIVERS,
    FeeWaiver.TYPE_BOARDING: accounting.BOARDING_WAIVERS,
    FeeWaiver.TYPE_OTHER: accounting.OTHER_WAIVERS,
}

OPENING_BALANCE_DESCRIPTION = 'Opening Balance - Historical Debt'


def normalize_payment_method(value) -> str:
    method = PAYMENT_METHOD_ALIASES.get(str(value or '').strip().lower())
    if method is None:
        raise ValidationError(
            f"Unsupported payment method '{value}'. Use Cash, Bank Transfer, Cheque, Mobile Money or Other."
        )
    return method


def _receivable_account(category) -> str:
    if category in (FeePayment.CATEGORY_TUITION, FeeWaiver.TYPE_TUITION):
        return accounting.AR_TUITION
    return accounting.AR_OTHER


def _convert(school, amount, currency):
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError('Amount must be greater than zero.')
    currency = accounting.resolve_currency(school=school, currency=currency)
    base_amount, rate = accounting.convert_to_base(amount, currency)
    if base_amount <= 0:
        raise ValidationError('Amount is too small to convert to the base currency.')
    return currency, amount, base_amount, rate


# Charges

@transaction.atomic
def post_charge(
    *,
    student: Student,
    category,
    transaction_category,
    amount,
    description,
    debit_account,
    credit_account,
    currency=None,
    term=None,
    session=None,
    school_class=None,
    hostel=None,
    fee_structure=None,
    invoice_structure=None,
    due_date=None,
    transaction_date=None,
    reference='',
    created_by=None,
) -> StudentFeeAssignment:
    """
    Bills a student: journal entry, DEBIT ledger line and the fee assignment
    that payments are later allocated to.
    """
    school = student.school
    currency, amount, base_amount, rate = _convert(school, amount, currency)

    entry = accounting.post_journal_entry(
        school=school,
        description=description,
        lines=[
            {'account': debit_account, 'debit': amount, 'description': student.admission_number},
            {'account': credit_account, 'credit': amount, 'description': student.admission_number},
        ],
        entry_date=transaction_date,
        external_reference=reference,
        currency=currency,
        exchange_rate=rate,
        reference_model='Student',
        reference_id=student.id,
        created_by=created_by,
    )
    row = post_student_transaction(
        student=student,
        transaction_type=StudentTransaction.TYPE_DEBIT,
        amount=base_amount,
        description=description,
        category=transaction_category,
        currency=currency,
        original_amount=amount,
        exchange_rate=rate,
        term=term,
        school_class=school_class,
        hostel=hostel,
        journal_entry=entry,
        reference=reference,
        transaction_date=transaction_date,
        created_by=created_by,
    )
    return StudentFeeAssignment.objects.create(
        school=school,
        student=student,
        category=category,
        description=description[:255],
        fee_structure=fee_structure,
        invoice_structure=invoice_structure,
        session=session or (term.session if term else None),
        term=term,
        amount=base_amount,
        due_date=due_date,
        transaction=row,
        created_by=created_by,
    )


# Invoice structures

def _clean_items(items):
    cleaned = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f'Invoice item {index} must be an object.')
        item_name = str(item.get('item_name') or item.get('name') or '').strip()
        if not item_name:
            raise ValidationError(f'Invoice item {index} needs an item name.')
        try:
            amount = quantize(item.get('amount'))
        except ArithmeticError:
            raise ValidationError(f'Invoice item {index} amount must be a number.')
        if amount <= 0:
            raise ValidationError(f'Invoice item {index} amount must be greater than zero.')
        cleaned.append({
            'item_name': item_name[:120],
            'amount': amount,
            'description': str(item.get('description') or '')[:255],
            'display_order': index,
        })
    return cleaned


@transaction.atomic
def save_invoice_structure(
    *,
    school,
    school_class,
    term,
    currency=None,
    total_amount=None,
    items=None,
    notes='',
    name='',
    structure=None,
    created_by=None,
) -> InvoiceStructure:
    """
    Creates or updates a tuition invoice structure. When items are given the
    total is their sum and they replace any existing items.
    """
    if school_class.school_id != school.id or term.school_id != school.id:
        raise ValidationError('Class and term must belong to this school.')

    cleaned_items = _clean_items(items) if items else []
    if cleaned_items:
        total = sum((item['amount'] for item in cleaned_items), ZERO)
    else:
        if total_amount in (None, ''):
            raise ValidationError('total_amount is required when no items are given.')
        total = quantize(total_amount)
        if total <= 0:
            raise ValidationError('total_amount must be greater than zero.')

    duplicates = InvoiceStructure.objects.filter(school_class=school_class, term=term, is_active=True)
    if structure is not None and structure.pk:
        duplicates = duplicates.exclude(pk=structure.pk)
    if duplicates.exists():
        raise ValidationError(f'An active invoice structure already exists for {school_class} in {term.label}.')

    structure = structure or InvoiceStructure(school=school, created_by=created_by)
    structure.school_class = school_class
    structure.term = term
    structure.currency = accounting.resolve_currency(school=school, currency=currency)
    structure.total_amount = total
    structure.notes = notes or ''
    structure.name = (name or '').strip()
    structure.save()

    if items is not None:
        structure.items.all().delete()
        InvoiceItem.objects.bulk_create([InvoiceItem(structure=structure, **item) for item in cleaned_items])

    logger.info(
        'Saved invoice structure %s (%s %s) for school %s',
        structure,
        structure.total_amount,
        structure.currency.code,
        school.code,
    )
    return structure


def resolve_invoice_structure(*, school_class, term) -> InvoiceStructure:
    """Active structure for the class and term, else the class's most recent one."""
    structures = InvoiceStructure.objects.filter(
        school=school_class.school,
        school_class=school_class,
        is_active=True,
    ).select_related('currency', 'term')
    structure = structures.filter(term=term).first()
    if structure:
        return structure
    structure = structures.order_by('-term__start_date', '-created_at').first()
    if structure:
        logger.info('No invoice structure for %s in %s, using %s', school_class, term.label, structure)
        return structure
    raise ValidationError(f'No invoice structure is configured for {school_class.display_name}.')


@transaction.atomic
def bill_class_enrollment(*, enrollment, created_by=None) -> StudentFeeAssignment:
    if enrollment.tuition_assignment_id:
        raise ValidationError('Tuition has already been billed for this enrollment.')
    structure = resolve_invoice_structure(school_class=enrollment.school_class, term=enrollment.term)

    assignment = post_charge(
        student=enrollment.student,
        category=StudentFeeAssignment.CATEGORY_TUITION,
        transaction_category=StudentTransaction.CATEGORY_TUITION_INVOICE,
        amount=structure.total_amount,
        currency=structure.currency,
        description=f"TUITION INVOICE - {enrollment.school_class.display_name}",
        debit_account=accounting.AR_TUITION,
        credit_account=accounting.TUITION_REVENUE,
        term=enrollment.term,
        school_class=enrollment.school_class,
        invoice_structure=structure,
        due_date=enrollment.term.start_date,
        created_by=created_by,
    )
    enrollment.tuition_assignment = assignment
    enrollment.save(update_fields=['tuition_assignment'])
    return assignment


def release_withdrawn_charge(*, assignment, reason='', reversed_by=None) -> bool:
    """
    Reverses the charge behind a withdrawn enrollment when nothing has been
    allocated to it and it is still inside the reversal window. Otherwise
    the charge stands. Returns whether it was reversed.
    """
    if assignment is None or assignment.is_cancelled or not assignment.transaction_id:
        return False
    row = assignment.transaction
    if row.is_reversed:
        return False
    if sum_amount(active_allocations(assignment.allocations.all())) > 0:
        logger.info('Charge %s has payments allocated, leaving it on withdrawal', row.id)
        return False
    if not is_within_reversal_window(row):
        logger.info('Charge %s is outside the reversal window, leaving it on withdrawal', row.id)
        return False
    reverse_student_transaction(
        transaction=row,
        reason=reason or 'Enrollment withdrawn',
        reversed_by=reversed_by,
    )
    return True


# Additional fees

@transaction.atomic
def assign_fee_structure(*, fee_structure: FeeStructure, students, session=None, term=None, due_date=None, created_by=None):
    if not fee_structure.is_active:
        raise ValidationError('Fee structure is inactive.')
    if term is not None:
        if term.school_id != fee_structure.school_id:
            raise ValidationError('Term must belong to this school.')
        session = session or term.session
    if fee_structure.fee_type == FeeStructure.TYPE_TERMLY and term is None:
        raise ValidationError('A term is required for termly fees.')
    if fee_structure.fee_type == FeeStructure.TYPE_ANNUAL and session is None:
        raise ValidationError('An academic session is required for annual fees.')

    existing = set(
        StudentFeeAssignment.objects.filter(
            fee_structure=fee_structure,
            session=session,
            term=term,
            is_cancelled=False,
        ).values_list('student_id', flat=True)
    )
    description = f"{fee_structure.name} - {fee_structure.description or 'Additional Fee'}"

    created = []
    skipped = []
    for student in students:
        if student.school_id != fee_structure.school_id or not student.is_active:
            skipped.append({'student_id': student.id, 'reason': 'inactive'})
            continue
        if student.id in existing:
            skipped.append({'student_id': student.id, 'reason': 'already_assigned'})
            continue
        created.append(
            post_charge(
                student=student,
                category=StudentFeeAssignment.CATEGORY_ADDITIONAL,
                transaction_category=StudentTransaction.CATEGORY_ADDITIONAL_FEE,
                amount=fee_structure.amount,
                currency=fee_structure.currency,
                description=description,
                debit_account=accounting.AR_OTHER,
                credit_account=accounting.ADDITIONAL_FEES_REVENUE,
                term=term,
                session=session,
                fee_structure=fee_structure,
                due_date=due_date,
                created_by=created_by,
            )
        )
        existing.add(student.id)

    logger.info(
        'Assigned fee structure %s to %s students (%s skipped)',
        fee_structure.name,
        len(created),
        len(skipped),
    )
    return {'created': created, 'skipped': skipped}


def generate_annual_fees(*, fee_structure: FeeStructure, session, due_date=None, created_by=None):
    if fee_structure.fee_type != FeeStructure.TYPE_ANNUAL:
        raise ValidationError('Only annual fee structures can be generated for a whole session.')
    if session.school_id != fee_structure.school_id:
        raise ValidationError('Session must belong to this school.')
    students = Student.objects.filter(school=fee_structure.school, is_active=True).order_by('id')
    return assign_fee_structure(
        fee_structure=fee_structure,
        students=students,
        session=session,
        due_date=due_date,
        created_by=created_by,
    )


# Opening balances and manual adjustments

@transaction.atomic
def record_opening_balance(*, student: Student, amount, currency=None, as_of=None, notes='', created_by=None):
    lock_student_balance(student)
    if StudentFeeAssignment.objects.filter(
        student=student,
        category=StudentFeeAssignment.CATEGORY_OPENING_BALANCE,
        is_cancelled=False,
    ).exists():
        raise ValidationError('Student already has an active opening balance.')

    assignment = post_charge(
        student=student,
        category=StudentFeeAssignment.CATEGORY_OPENING_BALANCE,
        transaction_category=StudentTransaction.CATEGORY_OPENING_BALANCE,
        amount=amount,
        currency=currency,
        description=OPENING_BALANCE_DESCRIPTION,
        debit_account=accounting.AR_TUITION,
        credit_account=accounting.OPENING_BALANCE_EQUITY,
        due_date=as_of,
        transaction_date=as_of,
        reference=(notes or '')[:120],
        created_by=created_by,
    )
    logger.info('Recorded opening balance %s for student %s', assignment.amount, student.admission_number)
    return assignment


def generate_adjustment_reference() -> str:
    return f"MBU-{timezone.now().strftime('%Y%m%d%H%M%S')}-{secrets.randbelow(10 ** 6):06d}"


@transaction.atomic
def apply_manual_adjustment(
    *,
    student: Student,
    adjustment_type,
    amount,
    description,
    reference='',
    currency=None,
    created_by=None,
):
    adjustment_type = str(adjustment_type or '').strip().lower()
    if adjustment_type not in ('debit', 'credit'):
        raise ValidationError("Adjustment type must be 'debit' or 'credit'.")
    description = (description or '').strip()
    if not description:
        raise ValidationError('Adjustment description is required.')
    reference = (reference or '').strip() or generate_adjustment_reference()
    full_description = f"MANUAL BALANCE ADJUSTMENT - {description} - {reference}"

    if adjustment_type == 'debit':
        assignment = post_charge(
            student=student,
            category=StudentFeeAssignment.CATEGORY_MANUAL,
            transaction_category=StudentTransaction.CATEGORY_MANUAL_ADJUSTMENT,
            amount=amount,
            currency=currency,
            description=full_description,
            debit_account=accounting.AR_TUITION,
            credit_account=accounting.OTHER_FEE_INCOME,
            reference=reference,
            created_by=created_by,
        )
        row = assignment.transaction
    else:
        school = student.school
        currency, amount, base_amount, rate = _convert(school, amount, currency)
        entry = accounting.post_journal_entry(
            school=school,
            description=full_description,
            lines=[
                {'account': accounting.FEE_ADJUSTMENTS, 'debit': amount},
                {'account': accounting.AR_TUITION, 'credit': amount},
            ],
            external_reference=reference,
            currency=currency,
            exchange_rate=rate,
            reference_model='Student',
            reference_id=student.id,
            created_by=created_by,
        )
        row = post_student_transaction(
            student=student,
            transaction_type=StudentTransaction.TYPE_CREDIT,
            amount=base_amount,
            description=full_description,
            category=StudentTransaction.CATEGORY_MANUAL_ADJUSTMENT,
            currency=currency,
            original_amount=amount,
            exchange_rate=rate,
            journal_entry=entry,
            reference=reference,
            created_by=created_by,
        )

    logger.info(
        'Manual %s adjustment %s for student %s (%s)',
        adjustment_type,
        row.amount,
        student.admission_number,
        reference,
    )
    return row


# Payments

def _receipt_number(payment: FeePayment) -> str:
    prefix = FeePayment.RECEIPT_PREFIXES[payment.category]
    return f"{prefix}-{payment.payment_date.strftime('%Y%m%d')}-{payment.id:06d}"


def _due_assignments(student, preferred_category):
    return (
        StudentFeeAssignment.objects.select_for_update()
        .filter(student=student, is_cancelled=False)
        .annotate(
            preference=Case(
                When(category=preferred_category, then=Value(0)),
                default=Value(1),
                output_field=IntegerField(),
            )
        )
        .order_by('preference', F('due_date').asc(nulls_last=True), 'created_at', 'id')
    )


def _allocate_payment(payment: FeePayment, amount, target=None):
    remaining = quantize(amount)
    if target is not None:
        targets = [target]
    else:
        targets = _due_assignments(payment.student, PREFERRED_ASSIGNMENT_CATEGORY[payment.category])

    allocations = []
    for assignment in targets:
        if remaining <= 0:
            break
        due = assignment.due_amount
        if due <= 0:
            continue
        portion = min(due, remaining)
        allocations.append(FeePaymentAllocation(payment=payment, assignment=assignment, amount=portion))
        remaining -= portion

    FeePaymentAllocation.objects.bulk_create(allocations)
    return allocations, quantize(remaining)


@transaction.atomic
def collect_payment(
    *,
    student: Student,
    amount,
    payment_method,
    category=FeePayment.CATEGORY_TUITION,
    currency=None,
    term=None,
    hostel=None,
    fee_assignment=None,
    payment_date=None,
    reference_number='',
    notes='',
    received_by=None,
) -> FeePayment:
    school = student.school
    if category not in FeePayment.RECEIPT_PREFIXES:
        raise ValidationError(f"Unknown payment category '{category}'.")
    if category == FeePayment.CATEGORY_BOARDING and hostel is None:
        raise ValidationError('Hostel is required for boarding payments.')
    if hostel is not None and hostel.school_id != school.id:
        raise ValidationError('Hostel must belong to this school.')
    if term is not None and term.school_id != school.id:
        raise ValidationError('Term must belong to this school.')
    method = normalize_payment_method(payment_method)
    currency, amount, base_amount, rate = _convert(school, amount, currency)
    reference_number = (reference_number or '').strip()

    balance = lock_student_balance(student)
    if reference_number and FeePayment.objects.filter(
        student=student,
        reference_number=reference_number,
    ).exclude(status=FeePayment.STATUS_REVERSED).exists():
        raise ValidationError(f"A payment with reference '{reference_number}' already exists for this student.")

    outstanding = max(ZERO, -quantize(balance.current_balance))
    if base_amount > outstanding and not settings.FEES_ALLOW_OVERPAYMENT:
        logger.warning(
            'Rejected payment of %s for student %s: outstanding %s',
            base_amount,
            student.admission_number,
            outstanding,
        )
        raise ValidationError(
            f'Payment amount {base_amount} exceeds the outstanding balance of {outstanding}.'
        )

    if fee_assignment is not None:
        fee_assignment = StudentFeeAssignment.objects.select_for_update().get(pk=fee_assignment.pk)
        if fee_assignment.student_id != student.id:
            raise ValidationError('Fee assignment does not belong to this student.')
        if fee_assignment.is_cancelled:
            raise ValidationError('Fee assignment has been cancelled.')
        if base_amount > fee_assignment.due_amount:
            raise ValidationError(
                f'Payment amount {base_amount} exceeds the amount due on this fee ({fee_assignment.due_amount}).'
            )

    payment = FeePayment.objects.create(
        school=school,
        student=student,
        category=category,
        term=term,
        hostel=hostel,
        fee_assignment=fee_assignment,
        currency=currency,
        amount=amount,
        exchange_rate=rate,
        base_amount=base_amount,
        payment_method=method,
        payment_date=payment_date or timezone.localdate(),
        reference_number=reference_number,
        notes=notes or '',
        received_by=received_by,
    )
    payment.receipt_number = _receipt_number(payment)

    if category == FeePayment.CATEGORY_BOARDING:
        description = f"BOARDING PAYMENT - {method} - Receipt #{payment.receipt_number}"
        transaction_category = StudentTransaction.CATEGORY_BOARDING_PAYMENT
    else:
        description = f"Fee Payment - Receipt #{payment.receipt_number}"
        transaction_category = StudentTransaction.CATEGORY_FEE_PAYMENT

    entry = accounting.post_journal_entry(
        school=school,
        description=description,
        lines=[
            {'account': accounting.payment_account_code(method), 'debit': amount},
            {'account': _receivable_account(category), 'credit': amount},
        ],
        entry_date=payment.payment_date,
        external_reference=reference_number or payment.receipt_number,
        currency=currency,
        exchange_rate=rate,
        reference_model='FeePayment',
        reference_id=payment.id,
        created_by=received_by,
    )
    row = post_student_transaction(
        student=student,
        transaction_type=StudentTransaction.TYPE_CREDIT,
        amount=base_amount,
        description=description,
        category=transaction_category,
        currency=currency,
        original_amount=amount,
        exchange_rate=rate,
        term=term,
        hostel=hostel,
        journal_entry=entry,
        reference=payment.receipt_number,
        transaction_date=payment.payment_date,
        created_by=received_by,
    )
    payment.journal_entry = entry
    payment.transaction = row
    payment.save(update_fields=['receipt_number', 'journal_entry', 'transaction'])

    allocations, unallocated = _allocate_payment(payment, base_amount, target=fee_assignment)
    logger.info(
        'Collected payment %s: %s %s (%s base) from student %s, %s allocation(s), %s unallocated',
        payment.receipt_number,
        amount,
        currency.code,
        base_amount,
        student.admission_number,
        len(allocations),
        unallocated,
    )
    return payment


@transaction.atomic
def reverse_payment(*, payment: FeePayment, reason, reversed_by=None) -> FeePayment:
    payment = FeePayment.objects.select_for_update().select_related('student', 'transaction').get(pk=payment.pk)
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('Reversal reason is required.')
    if payment.status != FeePayment.STATUS_COMPLETED:
        raise ValidationError(f'Only completed payments can be reversed (status: {payment.get_status_display()}).')

    reversal_entry = None
    if payment.journal_entry_id and payment.journal_entry.status == JournalEntry.STATUS_POSTED:
        reversal_entry = accounting.reverse_journal_entry(
            entry=payment.journal_entry,
            reason=reason,
            reversed_by=reversed_by,
        )

    post_student_transaction(
        student=payment.student,
        transaction_type=StudentTransaction.TYPE_DEBIT,
        amount=payment.base_amount,
        description=f"Payment Reversal - Receipt #{payment.receipt_number}",
        category=StudentTransaction.CATEGORY_PAYMENT_REVERSAL,
        currency=payment.currency,
        original_amount=payment.amount,
        exchange_rate=payment.exchange_rate,
        term=payment.term,
        hostel=payment.hostel,
        journal_entry=reversal_entry,
        reversal_of=payment.transaction,
        reference=payment.receipt_number,
        created_by=reversed_by,
    )
    if payment.transaction_id:
        payment.transaction.is_reversed = True
        payment.transaction.reversed_at = timezone.now()
        payment.transaction.save(update_fields=['is_reversed', 'reversed_at'])

    payment.status = FeePayment.STATUS_REVERSED
    payment.reversed_at = timezone.now()
    payment.reversed_by = reversed_by
    payment.reversal_reason = reason[:255]
    payment.save(update_fields=['status', 'reversed_at', 'reversed_by', 'reversal_reason'])

    logger.info('Reversed payment %s for student %s: %s', payment.receipt_number, payment.student.admission_number, reason)
    return payment


def _release_allocations(payment: FeePayment, refund: FeeRefund, amount):
    """Releases up to ``amount`` from the payment's allocations, newest first."""
    remaining = quantize(amount)
    net_by_assignment = {
        row['assignment_id']: quantize(row['net'])
        for row in payment.allocations.values('assignment_id').annotate(net=Sum('amount'))
    }
    releases = []
    for allocation in payment.allocations.filter(is_release=False).order_by('-id'):
        if remaining <= 0:
            break
        available = net_by_assignment.get(allocation.assignment_id, ZERO)
        portion = min(available, allocation.amount, remaining)
        if portion <= 0:
            continue
        releases.append(
            FeePaymentAllocation(
                payment=payment,
                assignment_id=allocation.assignment_id,
                amount=-portion,
                is_release=True,
                refund=refund,
            )
        )
        net_by_assignment[allocation.assignment_id] = available - portion
        remaining -= portion
    FeePaymentAllocation.objects.bulk_create(releases)
    return releases


@transaction.atomic
def refund_payment(*, payment: FeePayment, amount, reason, approved_by=None, refund_date=None) -> FeeRefund:
    """Refunds part or all of a payment. ``amount`` is in base currency."""
    payment = FeePayment.objects.select_for_update().select_related('student').get(pk=payment.pk)
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('Refund reason is required.')
    if payment.status in (FeePayment.STATUS_REVERSED, FeePayment.STATUS_REFUNDED):
        raise ValidationError(f'Payment {payment.receipt_number} cannot be refunded (status: {payment.get_status_display()}).')
    amount = quantize(amount)
    if amount <= 0:
        raise ValidationError('Refund amount must be greater than zero.')
    if amount > payment.refundable_amount:
        raise ValidationError(
            f'Refund amount {amount} exceeds the refundable amount of {payment.refundable_amount}.'
        )

    school = payment.school
    description = f"Payment Refund - Receipt #{payment.receipt_number}"
    entry = accounting.post_journal_entry(
        school=school,
        description=description,
        lines=[
            {'account': _receivable_account(payment.category), 'debit': amount},
            {'account': accounting.payment_account_code(payment.payment_method), 'credit': amount},
        ],
        entry_date=refund_date,
        external_reference=payment.receipt_number,
        currency=accounting.get_base_currency(school),
        reference_model='FeePayment',
        reference_id=payment.id,
        created_by=approved_by,
    )
    row = post_student_transaction(
        student=payment.student,
        transaction_type=StudentTransaction.TYPE_DEBIT,
        amount=amount,
        description=description,
        category=StudentTransaction.CATEGORY_REFUND,
        term=payment.term,
        hostel=payment.hostel,
        journal_entry=entry,
        reference=payment.receipt_number,
        transaction_date=refund_date,
        created_by=approved_by,
    )
    refund = FeeRefund.objects.create(
        school=school,
        student=payment.student,
        payment=payment,
        amount=amount,
        reason=reason[:255],
        refund_date=refund_date or timezone.localdate(),
        transaction=row,
        journal_entry=entry,
        approved_by=approved_by,
    )

    # The unallocated part of the payment is given back first.
    allocated = sum_amount(payment.allocations.all())
    unallocated = max(ZERO, payment.refundable_amount - allocated)
    _release_allocations(payment, refund, max(ZERO, amount - unallocated))

    payment.refunded_amount = quantize(to_decimal(payment.refunded_amount) + amount)
    if payment.refunded_amount >= payment.base_amount:
        payment.status = FeePayment.STATUS_REFUNDED
    else:
        payment.status = FeePayment.STATUS_PARTIALLY_REFUNDED
    payment.save(update_fields=['refunded_amount', 'status'])

    logger.info('Refunded %s on payment %s: %s', amount, payment.receipt_number, reason)
    return refund


# Waivers

@transaction.atomic
def grant_fee_waiver(
    *,
    student: Student,
    category,
    amount,
    waiver_type=FeeWaiver.TYPE_TUITION,
    reason='',
    term=None,
    notes='',
    currency=None,
    granted_by=None,
) -> FeeWaiver:
    school = student.school
    if category.school_id != school.id or not category.is_active:
        raise ValidationError('Waiver category is not available for this school.')
    if waiver_type not in WAIVER_EXPENSE_ACCOUNTS:
        raise ValidationError(f"Unknown waiver type '{waiver_type}'.")
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('Waiver reason is required.')
    currency, amount, base_amount, rate = _convert(school, amount, currency)

    balance = lock_student_balance(student)
    outstanding = max(ZERO, -quantize(balance.current_balance))
    if base_amount > outstanding and not settings.FEES_ALLOW_OVERPAYMENT:
        raise ValidationError(f'Waiver amount {base_amount} exceeds the outstanding balance of {outstanding}.')

    description = f"Fee Waiver - {category.name}: {reason}"
    entry = accounting.post_journal_entry(
        school=school,
        description=description,
        lines=[
            {'account': WAIVER_EXPENSE_ACCOUNTS[waiver_type], 'debit': amount},
            {'account': _receivable_account(waiver_type), 'credit': amount},
        ],
        currency=currency,
        exchange_rate=rate,
        reference_model='Student',
        reference_id=student.id,
        created_by=granted_by,
    )
    row = post_student_transaction(
        student=student,
        transaction_type=StudentTransaction.TYPE_CREDIT,
        amount=base_amount,
        description=description,
        category=StudentTransaction.CATEGORY_WAIVER,
        currency=currency,
        original_amount=amount,
        exchange_rate=rate,
        term=term,
        journal_entry=entry,
        created_by=granted_by,
    )
    waiver = FeeWaiver.objects.create(
        school=school,
        student=student,
        category=category,
        waiver_type=waiver_type,
        currency=currency,
        amount=amount,
        exchange_rate=rate,
        base_amount=base_amount,
        reason=reason[:255],
        notes=notes or '',
        term=term,
        transaction=row,
        journal_entry=entry,
        granted_by=granted_by,
    )
    logger.info('Granted %s waiver of %s to student %s', category.name, base_amount, student.admission_number)
    return waiver


# Balance queries

def students_with_opening_balance(*, school, student_ids):
    """Active opening balances for the given students, fetched in one query."""
    rows = StudentFeeAssignment.objects.filter(
        school=school,
        student_id__in=list(student_ids),
        category=StudentFeeAssignment.CATEGORY_OPENING_BALANCE,
        is_cancelled=False,
    ).values('id', 'student_id', 'amount', 'created_at')
    return {
        row['student_id']: {
            'assignment_id': row['id'],
            'amount': row['amount'],
            'recorded_at': row['created_at'],
        }
        for row in rows
    }


def outstanding_balances(*, school, search='', school_class=None, term=None, min_amount=None):
    balances = StudentBalance.objects.filter(
        school=school,
        current_balance__lt=0,
        student__is_active=True,
    ).select_related('student')

    search = (search or '').strip()
    if search:
        balances = balances.filter(
            Q(student__admission_number__icontains=search)
            | Q(student__first_name__icontains=search)
            | Q(student__last_name__icontains=search)
        )
    if school_class is not None:
        enrollments = Q(
            student__class_enrollments__school_class=school_class,
            student__class_enrollments__status='active',
        )
        if term is not None:
            enrollments &= Q(student__class_enrollments__term=term)
        balances = balances.filter(enrollments).distinct()
    if min_amount is not None:
        balances = balances.filter(current_balance__lte=-quantize(min_amount))
    return balances.order_by('current_balance', 'student__admission_number')


def outstanding_summary(balances):
    totals = balances.order_by().aggregate(
        count=Count('id'),
        total=Sum('current_balance'),
        average=Avg('current_balance'),
        lowest=Min('current_balance'),
    )
    return {
        'student_count': totals['count'] or 0,
        'total_outstanding': quantize(-to_decimal(totals['total'])),
        'average_outstanding': quantize(-to_decimal(totals['average'])),
        'max_outstanding': quantize(-to_decimal(totals['lowest'])),
    }


def student_outstanding_summary(student: Student):
    balance = quantize(
        StudentBalance.objects.filter(student=student).values_list('current_balance', flat=True).first()
    )
    assignments = []
    for assignment in StudentFeeAssignment.objects.filter(student=student, is_cancelled=False).select_related('term'):
        paid = quantize(
            sum_amount(active_allocations(assignment.allocations.all()))
        )
        due = max(ZERO, quantize(assignment.amount - paid))
        if due <= 0:
            continue
        assignments.append({
            'id': assignment.id,
            'category': assignment.category,
            'description': assignment.description,
            'term': assignment.term.label if assignment.term_id else None,
            'amount': assignment.amount,
            'paid': paid,
            'due': due,
            'due_date': assignment.due_date,
        })
    return {
        'student_id': student.id,
        'admission_number': student.admission_number,
        'student_name': student.full_name,
        'balance': balance,
        'outstanding': max(ZERO, -balance),
        'credit': max(ZERO, balance),
        'assignments': assignments,
    }
