"""
Read-only financial reports over student balances, fee assignments and
payments. All amounts are in the school's base currency.
"""
import datetime
import logging
from decimal import Decimal

from django.db.models import Avg, Count, Max, Min, Q, Sum
from django.utils import timezone

from apps.core.fees.ledger import active_allocations
from apps.core.fees.models import (
    FeePayment,
    FeeRefund,
    StudentBalance,
    StudentFeeAssignment,
    StudentTransaction,
)
from apps.core.students.models import ClassEnrollment, Student
from apps.core.utils.money import ZERO, distribute_percentages, percentage, quantize, sum_amount, to_decimal

logger = logging.getLogger(__name__)

# (label, lower bound inclusive, upper bound exclusive) on the amount owed.
DEBT_BUCKETS = (
    ('Under 100', None, Decimal('100')),
    ('100-500', Decimal('100'), Decimal('500')),
    ('500-1,000', Decimal('500'), Decimal('1000')),
    ('1,000-2,000', Decimal('1000'), Decimal('2000')),
    ('Over 2,000', Decimal('2000'), None),
)

SMALL_DEBT_LIMIT = Decimal('100')
MEDIUM_DEBT_LIMIT = Decimal('500')

# Completion row for charges that no class enrollment accounts for.
UNASSIGNED_CLASS = 'Unassigned'

CHARGE_CATEGORIES = (
    StudentTransaction.CATEGORY_TUITION_INVOICE,
    StudentTransaction.CATEGORY_BOARDING_INVOICE,
    StudentTransaction.CATEGORY_ADDITIONAL_FEE,
    StudentTransaction.CATEGORY_OPENING_BALANCE,
    StudentTransaction.CATEGORY_MANUAL_ADJUSTMENT,
)


def _owed(value):
    """Turns an aggregated (negative) balance into a positive amount owed."""
    return quantize(-to_decimal(value)) if value is not None else ZERO


def _class_name(name, stream):
    return f"{name} ({stream})" if stream else name


def balances_by_class(*, school, term):
    rows = (
        ClassEnrollment.objects.filter(school=school, term=term, status=ClassEnrollment.STATUS_ACTIVE)
        .values('school_class_id', 'school_class__name', 'school_class__stream', 'school_class__display_order')
        .annotate(
            student_count=Count('student', distinct=True),
            debtor_count=Count('student', filter=Q(student__balance__current_balance__lt=0), distinct=True),
            total=Sum('student__balance__current_balance', filter=Q(student__balance__current_balance__lt=0)),
            average=Avg('student__balance__current_balance', filter=Q(student__balance__current_balance__lt=0)),
            smallest=Max('student__balance__current_balance', filter=Q(student__balance__current_balance__lt=0)),
            largest=Min('student__balance__current_balance', filter=Q(student__balance__current_balance__lt=0)),
        )
        .order_by('school_class__display_order', 'school_class__name', 'school_class__stream')
    )

    classes = []
    for row in rows:
        classes.append({
            'class_id': row['school_class_id'],
            'class_name': _class_name(row['school_class__name'], row['school_class__stream']),
            'student_count': row['student_count'],
            'debtor_count': row['debtor_count'],
            'total_outstanding': _owed(row['total']),
            'average_outstanding': _owed(row['average']),
            'min_outstanding': _owed(row['smallest']),
            'max_outstanding': _owed(row['largest']),
        })
    classes.sort(key=lambda item: item['total_outstanding'], reverse=True)

    return {
        'term': term.label,
        'classes': classes,
        'total_students_with_balances': sum(item['debtor_count'] for item in classes),
        'total_outstanding': quantize(sum((item['total_outstanding'] for item in classes), ZERO)),
    }


def _debtor_balances(school):
    return StudentBalance.objects.filter(school=school, current_balance__lt=0, student__is_active=True)


def debt_summary(*, school):
    debtors = _debtor_balances(school)
    totals = debtors.aggregate(
        count=Count('id'),
        total=Sum('current_balance'),
        average=Avg('current_balance'),
        largest=Min('current_balance'),
    )

    bucket_rows = []
    for label, lower, upper in DEBT_BUCKETS:
        # Owed >= lower means balance <= -lower; owed < upper means balance > -upper.
        rows = debtors
        if lower is not None:
            rows = rows.filter(current_balance__lte=-lower)
        if upper is not None:
            rows = rows.filter(current_balance__gt=-upper)
        bucket = rows.aggregate(count=Count('id'), total=Sum('current_balance'))
        bucket_rows.append({'range': label, 'student_count': bucket['count'], 'total_amount': _owed(bucket['total'])})

    shares = distribute_percentages([row['student_count'] for row in bucket_rows])
    for row, share in zip(bucket_rows, shares):
        row['percentage'] = share

    return {
        'total_students_with_debt': totals['count'],
        'total_outstanding_debt': _owed(totals['total']),
        'average_debt_per_student': _owed(totals['average']),
        'highest_debt': _owed(totals['largest']),
        'debt_distribution': bucket_rows,
    }


def financial_health_summary(*, school):
    total_students = Student.objects.filter(school=school, is_active=True).count()
    counts = _debtor_balances(school).aggregate(
        small=Count('id', filter=Q(current_balance__gte=-SMALL_DEBT_LIMIT)),
        medium=Count('id', filter=Q(current_balance__lt=-SMALL_DEBT_LIMIT, current_balance__gte=-MEDIUM_DEBT_LIMIT)),
        large=Count('id', filter=Q(current_balance__lt=-MEDIUM_DEBT_LIMIT)),
    )
    # Students without a balance row have never been billed and count as paid up.
    paid_up = total_students - counts['small'] - counts['medium'] - counts['large']

    buckets = [
        ('paid_up', paid_up),
        ('small_debt', counts['small']),
        ('medium_debt', counts['medium']),
        ('large_debt', counts['large']),
    ]
    shares = distribute_percentages([count for _, count in buckets])
    return {
        'total_students': total_students,
        'buckets': [
            {'bucket': name, 'student_count': count, 'percentage': share}
            for (name, count), share in zip(buckets, shares)
        ],
    }


def _charged_and_paid(assignments):
    charged = sum_amount(assignments)
    paid = sum_amount(active_allocations().filter(assignment__in=assignments))
    return charged, paid


def _charges_by_class(assignments, enrollments):
    """
    Splits charged and paid amounts by the class the student was actively
    enrolled in for the charge's term. Charges without a term, or for a term
    with no active enrollment, are keyed under ``None``.
    """
    class_for = {
        (row['student_id'], row['term_id']): row['school_class_id']
        for row in enrollments.values('student_id', 'term_id', 'school_class_id')
    }
    paid_for = {
        row['assignment_id']: row['total']
        for row in active_allocations()
        .filter(assignment__in=assignments)
        .values('assignment_id')
        .annotate(total=Sum('amount'))
        .order_by()
    }

    totals = {}
    for row in assignments.values('id', 'student_id', 'term_id', 'amount'):
        class_id = class_for.get((row['student_id'], row['term_id'])) if row['term_id'] else None
        bucket = totals.setdefault(class_id, {'charged': ZERO, 'paid': ZERO, 'students': set()})
        bucket['charged'] += to_decimal(row['amount'])
        bucket['paid'] += to_decimal(paid_for.get(row['id']))
        bucket['students'].add(row['student_id'])
    return totals


def payment_completion_rates(*, school, term=None):
    assignments = StudentFeeAssignment.objects.filter(school=school, is_cancelled=False)
    if term is not None:
        assignments = assignments.filter(term=term)
    total_charged, total_paid = _charged_and_paid(assignments)

    enrollments = ClassEnrollment.objects.filter(school=school, status=ClassEnrollment.STATUS_ACTIVE)
    if term is not None:
        enrollments = enrollments.filter(term=term)
    class_rows = enrollments.values(
        'school_class_id',
        'school_class__name',
        'school_class__stream',
        'school_class__display_order',
    ).annotate(
        total_students=Count('student', distinct=True),
        students_paid_up=Count(
            'student',
            filter=Q(student__balance__isnull=True) | Q(student__balance__current_balance__gte=0),
            distinct=True,
        ),
    ).order_by('school_class__display_order', 'school_class__name')

    charges = _charges_by_class(assignments, enrollments)
    by_class = []
    for row in class_rows:
        bucket = charges.get(row['school_class_id'], {})
        charged = quantize(bucket.get('charged', ZERO))
        paid = quantize(bucket.get('paid', ZERO))
        by_class.append({
            'class_id': row['school_class_id'],
            'class_name': _class_name(row['school_class__name'], row['school_class__stream']),
            'total_students': row['total_students'],
            'students_paid_up': row['students_paid_up'],
            'outstanding_students': row['total_students'] - row['students_paid_up'],
            'total_charged': charged,
            'total_paid': paid,
            'completion_rate': percentage(paid, charged),
        })

    unassigned = charges.get(None)
    if unassigned:
        students = Student.objects.filter(pk__in=unassigned['students'])
        paid_up = students.filter(Q(balance__isnull=True) | Q(balance__current_balance__gte=0)).count()
        charged = quantize(unassigned['charged'])
        paid = quantize(unassigned['paid'])
        by_class.append({
            'class_id': None,
            'class_name': UNASSIGNED_CLASS,
            'total_students': len(unassigned['students']),
            'students_paid_up': paid_up,
            'outstanding_students': len(unassigned['students']) - paid_up,
            'total_charged': charged,
            'total_paid': paid,
            'completion_rate': percentage(paid, charged),
        })

    return {
        'term': term.label if term is not None else None,
        'total_charged': total_charged,
        'total_paid': total_paid,
        'outstanding_amount': quantize(total_charged - total_paid),
        'overall_completion_rate': percentage(total_paid, total_charged),
        'completion_by_class': by_class,
    }


def default_period(school):
    """Current term dates when there is one, otherwise the calendar year to date."""
    today = timezone.localdate()
    term = getattr(school, 'current_term', None)
    if term is not None:
        return term.start_date, term.end_date
    return datetime.date(today.year, 1, 1), today


def collection_efficiency(*, school, date_from, date_to):
    charges = StudentTransaction.objects.filter(
        school=school,
        transaction_type=StudentTransaction.TYPE_DEBIT,
        category__in=CHARGE_CATEGORIES,
        is_reversed=False,
        transaction_date__range=(date_from, date_to),
    )
    payments = FeePayment.objects.filter(
        school=school,
        payment_date__range=(date_from, date_to),
    ).exclude(status=FeePayment.STATUS_REVERSED)
    refunds = FeeRefund.objects.filter(school=school, refund_date__range=(date_from, date_to))

    billed = sum_amount(charges)
    collected = sum_amount(payments, 'base_amount')
    refunded = sum_amount(refunds)
    payment_totals = payments.aggregate(count=Count('id'), students=Count('student', distinct=True))

    methods = [
        {
            'payment_method': row['payment_method'],
            'payment_count': row['payment_count'],
            'total_amount': quantize(row['total_amount']),
        }
        for row in payments.values('payment_method').annotate(
            payment_count=Count('id'),
            total_amount=Sum('base_amount'),
        ).order_by('-total_amount')
    ]
    categories = {
        row['category']: quantize(row['total'])
        for row in payments.values('category').annotate(total=Sum('base_amount')).order_by()
    }

    students_paid = payment_totals['students']
    return {
        'date_from': date_from,
        'date_to': date_to,
        'charges_billed': billed,
        'payments_collected': collected,
        'refunds': refunded,
        'net_collected': quantize(collected - refunded),
        'collection_rate': percentage(collected, billed),
        'payment_count': payment_totals['count'],
        'students_paid': students_paid,
        'average_payment_per_student': quantize(collected / students_paid) if students_paid else ZERO,
        'collected_by_category': categories,
        'payment_methods': methods,
    }
