from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from apps.core.utils.money import CENT, ZERO, quantize, to_decimal

from .models import AccountBalance, ChartOfAccount, Currency, JournalEntry, JournalEntryLine

logger = logging.getLogger(__name__)

CASH = '1000'
BANK = '1010'
AR_TUITION = '1100'
AR_OTHER = '1110'
OPENING_BALANCE_EQUITY = '3000'
TUITION_REVENUE = '4000'
BOARDING_REVENUE = '4100'
ADDITIONAL_FEES_REVENUE = '4200'
OTHER_FEE_INCOME = '4900'
TUITION_WAIVERS = '5600'
BOARDING_WAIVERS = '5610'
OTHER_WAIVERS = '5640'
FEE_ADJUSTMENTS = '5690'

DEFAULT_ACCOUNTS = (
    (CASH, 'Cash on Hand', ChartOfAccount.TYPE_ASSET),
    (BANK, 'Bank Account', ChartOfAccount.TYPE_ASSET),
    (AR_TUITION, 'Accounts Receivable - Tuition', ChartOfAccount.TYPE_ASSET),
    (AR_OTHER, 'Accounts Receivable - Other Fees', ChartOfAccount.TYPE_ASSET),
    (OPENING_BALANCE_EQUITY, 'Opening Balance Equity', ChartOfAccount.TYPE_EQUITY),
    (TUITION_REVENUE, 'Tuition Revenue', ChartOfAccount.TYPE_REVENUE),
    (BOARDING_REVENUE, 'Boarding Revenue', ChartOfAccount.TYPE_REVENUE),
    (ADDITIONAL_FEES_REVENUE, 'Additional Fees Revenue', ChartOfAccount.TYPE_REVENUE),
    (OTHER_FEE_INCOME, 'Other Fee Income', ChartOfAccount.TYPE_REVENUE),
    (TUITION_WAIVERS, 'Tuition Waivers', ChartOfAccount.TYPE_EXPENSE),
    (BOARDING_WAIVERS, 'Boarding Waivers', ChartOfAccount.TYPE_EXPENSE),
    (OTHER_WAIVERS, 'Other Fee Waivers', ChartOfAccount.TYPE_EXPENSE),
    (FEE_ADJUSTMENTS, 'Fee Adjustments', ChartOfAccount.TYPE_EXPENSE),
)

DEFAULT_CURRENCY_NAMES = {
    'USD': ('US Dollar', '$'),
    'EUR': ('Euro', '€'),
    'GBP': ('Pound Sterling', '£'),
    'KES': ('Kenyan Shilling', 'KSh'),
    'UGX': ('Ugandan Shilling', 'USh'),
    'ZAR': ('South African Rand', 'R'),
    'ZWG': ('Zimbabwe Gold', 'ZiG'),
}


# Currencies

def get_base_currency(school) -> Currency:
    """Returns the school's base currency, creating DEFAULT_BASE_CURRENCY on first use."""
    currency = Currency.objects.filter(school=school, is_base=True).first()
    if currency:
        return currency

    code = settings.DEFAULT_BASE_CURRENCY.upper()
    name, symbol = DEFAULT_CURRENCY_NAMES.get(code, (code, ''))
    currency, created = Currency.objects.get_or_create(
        school=school,
        code=code,
        defaults={'name': name, 'symbol': symbol, 'exchange_rate': Decimal('1'), 'is_base': True},
    )
    if not created:
        currency.is_base = True
        currency.is_active = True
        currency.exchange_rate = Decimal('1')
        currency.save(update_fields=['is_base', 'is_active', 'exchange_rate', 'updated_at'])
    logger.info('Base currency %s initialised for school %s', code, school.code)
    return currency


def resolve_currency(*, school, currency=None, allow_inactive=False) -> Currency:
    """Accepts a Currency, an id, a code or None (base currency)."""
    if currency is None or currency == '':
        return get_base_currency(school)
    if isinstance(currency, Currency):
        if currency.school_id != school.id:
            raise ValidationError('Currency does not belong to this school.')
        found = currency
    elif isinstance(currency, int) or str(currency).isdigit():
        found = Currency.objects.filter(school=school, pk=int(currency)).first()
    else:
        found = Currency.objects.filter(school=school, code=str(currency).strip().upper()).first()
        if found is None and str(currency).strip().upper() == settings.DEFAULT_BASE_CURRENCY.upper():
            found = get_base_currency(school)

    if found is None:
        raise ValidationError(f"Currency '{currency}' is not configured for this school.")
    if not found.is_active and not allow_inactive:
        raise ValidationError(f'Currency {found.code} is inactive.')
    return found


def convert_to_base(amount, currency: Currency):
    """Returns (base_amount, rate) using the currency's current rate."""
    amount = to_decimal(amount)
    if currency.is_base:
        return quantize(amount), Decimal('1')
    rate = to_decimal(currency.exchange_rate)
    if rate <= 0:
        raise ValidationError(f'No valid exchange rate configured for {currency.code}.')
    return quantize(amount * rate), rate


@transaction.atomic
def set_base_currency(*, school, currency: Currency) -> Currency:
    if currency.school_id != school.id:
        raise ValidationError('Currency does not belong to this school.')
    if currency.is_base:
        return currency

    current = Currency.objects.select_for_update().filter(school=school, is_base=True).first()
    if current and JournalEntry.objects.filter(school=school).exists():
        raise ValidationError('Base currency cannot be changed after journal entries have been posted.')

    Currency.objects.filter(school=school, is_base=True).update(is_base=False)
    currency.is_base = True
    currency.is_active = True
    currency.exchange_rate = Decimal('1')
    currency.save(update_fields=['is_base', 'is_active', 'exchange_rate', 'updated_at'])
    logger.info('Base currency for school %s set to %s', school.code, currency.code)
    return currency


def update_exchange_rate(*, currency: Currency, rate) -> Currency:
    rate = to_decimal(rate)
    if currency.is_base:
        raise ValidationError('The base currency rate is fixed at 1.')
    if rate <= 0:
        raise ValidationError('Exchange rate must be greater than zero.')
    currency.exchange_rate = rate
    currency.save(update_fields=['exchange_rate', 'updated_at'])
    logger.info('Exchange rate for %s (%s) updated to %s', currency.code, currency.school.code, rate)
    return currency


# Chart of accounts

@transaction.atomic
def ensure_chart_of_accounts(school):
    """Creates the default fee accounts that do not exist yet. Returns the created rows."""
    existing = set(ChartOfAccount.objects.filter(school=school).values_list('code', flat=True))
    created = []
    for code, name, account_type in DEFAULT_ACCOUNTS:
        if code in existing:
            continue
        created.append(
            ChartOfAccount.objects.create(
                school=school,
                code=code,
                name=name,
                account_type=account_type,
                is_system=True,
            )
        )
    if created:
        logger.info('Seeded %s accounts for school %s', len(created), school.code)
    return created


def get_account(school, code) -> ChartOfAccount:
    account = ChartOfAccount.objects.filter(school=school, code=code).first()
    if account is None:
        ensure_chart_of_accounts(school)
        account = ChartOfAccount.objects.filter(school=school, code=code).first()
    if account is None:
        raise ValidationError(f'Account {code} is not configured for this school.')
    if not account.is_active:
        raise ValidationError(f'Account {account} is inactive.')
    return account


def payment_account_code(method) -> str:
    return CASH if method in ('Cash', 'Mobile Money') else BANK


# Journal

def _resolve_line_account(school, account, allow_inactive=False):
    if isinstance(account, ChartOfAccount):
        if account.school_id != school.id:
            raise ValidationError('Journal line account must belong to the same school.')
        found = account
    elif isinstance(account, int):
        found = ChartOfAccount.objects.filter(school=school, pk=account).first()
        if found is None:
            raise ValidationError(f'Account {account} does not exist.')
    else:
        return get_account(school, str(account))
    if not found.is_active and not allow_inactive:
        raise ValidationError(f'Account {found} is inactive.')
    return found


def _apply_balance(*, school, account, currency, debit, credit):
    balance, _ = AccountBalance.objects.select_for_update().get_or_create(
        school=school,
        account=account,
        currency=currency,
    )
    balance.balance = quantize(to_decimal(balance.balance) + account.signed_movement(debit, credit))
    balance.save(update_fields=['balance', 'updated_at'])


@transaction.atomic
def post_journal_entry(
    *,
    school,
    description,
    lines,
    entry_date=None,
    external_reference='',
    currency=None,
    exchange_rate=None,
    reference_model='',
    reference_id='',
    created_by=None,
    reversal_of=None,
) -> JournalEntry:
    """
    Posts a balanced double-entry journal.

    ``lines`` is a list of dicts with ``account`` (code, id or ChartOfAccount)
    and exactly one positive ``debit`` or ``credit`` amount in the entry
    currency. Base amounts use ``exchange_rate`` when given, otherwise the
    currency's current rate.
    """
    description = (description or '').strip()
    if not description:
        raise ValidationError('Journal entry description is required.')
    if len(lines) < 2:
        raise ValidationError('A journal entry needs at least two lines.')

    currency = resolve_currency(school=school, currency=currency, allow_inactive=reversal_of is not None)
    if exchange_rate is None:
        _, rate = convert_to_base(Decimal('1'), currency)
    else:
        rate = Decimal('1') if currency.is_base else to_decimal(exchange_rate)
    if rate <= 0:
        raise ValidationError('Exchange rate must be greater than zero.')

    prepared = []
    total_debit = ZERO
    total_credit = ZERO
    for line in lines:
        if not isinstance(line, dict):
            raise ValidationError('Each journal line must be an object.')
        try:
            debit = quantize(line.get('debit'))
            credit = quantize(line.get('credit'))
        except InvalidOperation:
            raise ValidationError('Journal line amounts must be numbers.')
        if debit < 0 or credit < 0:
            raise ValidationError('Journal line amounts cannot be negative.')
        if (debit > 0) == (credit > 0):
            raise ValidationError('Each journal line must have either a debit or a credit amount.')
        prepared.append({
            'account': _resolve_line_account(school, line.get('account'), allow_inactive=reversal_of is not None),
            'description': (line.get('description') or '')[:255],
            'debit': debit,
            'credit': credit,
            'base_debit': quantize(debit * rate),
            'base_credit': quantize(credit * rate),
        })
        total_debit += debit
        total_credit += credit

    if total_debit != total_credit:
        raise ValidationError(
            f'Journal entry is not balanced: debits {total_debit} do not equal credits {total_credit}.'
        )

    base_debit = sum((line['base_debit'] for line in prepared), ZERO)
    base_credit = sum((line['base_credit'] for line in prepared), ZERO)
    difference = base_debit - base_credit
    if difference:
        # Conversion rounding lands on the last line of the smaller side.
        side = 'base_credit' if difference > 0 else 'base_debit'
        for line in reversed(prepared):
            if line[side] > 0:
                line[side] = quantize(line[side] + abs(difference))
                break

    entry = JournalEntry.objects.create(
        school=school,
        entry_date=entry_date or timezone.localdate(),
        description=description[:255],
        external_reference=(external_reference or '')[:120],
        currency=currency,
        exchange_rate=rate,
        reference_model=reference_model or '',
        reference_id=str(reference_id or ''),
        created_by=created_by,
        reversal_of=reversal_of,
    )
    entry.entry_number = f"JE-{entry.entry_date.strftime('%Y%m%d')}-{entry.id:06d}"
    entry.save(update_fields=['entry_number'])

    JournalEntryLine.objects.bulk_create([JournalEntryLine(entry=entry, **line) for line in prepared])
    for line in prepared:
        _apply_balance(
            school=school,
            account=line['account'],
            currency=currency,
            debit=line['debit'],
            credit=line['credit'],
        )

    logger.info(
        'Posted journal entry %s (%s %s) for school %s',
        entry.entry_number,
        total_debit,
        currency.code,
        school.code,
    )
    return entry


@transaction.atomic
def reverse_journal_entry(*, entry: JournalEntry, reason='', reversed_by=None, entry_date=None) -> JournalEntry:
    entry = JournalEntry.objects.select_for_update().get(pk=entry.pk)
    if entry.status == JournalEntry.STATUS_REVERSED:
        raise ValidationError(f'Journal entry {entry.entry_number} is already reversed.')
    if entry.is_reversal:
        raise ValidationError('A reversal entry cannot itself be reversed.')

    lines = [
        {
            'account': line.account,
            'description': line.description,
            'debit': line.credit,
            'credit': line.debit,
        }
        for line in entry.lines.select_related('account')
    ]
    reason = (reason or '').strip()
    reversal = post_journal_entry(
        school=entry.school,
        description=f"Reversal of {entry.entry_number}: {reason or entry.description}",
        lines=lines,
        entry_date=entry_date,
        external_reference=entry.external_reference,
        currency=entry.currency,
        exchange_rate=entry.exchange_rate,
        reference_model=entry.reference_model,
        reference_id=entry.reference_id,
        created_by=reversed_by,
        reversal_of=entry,
    )

    entry.status = JournalEntry.STATUS_REVERSED
    entry.reversed_at = timezone.now()
    entry.reversed_by = reversed_by
    entry.reversal_reason = reason[:255]
    entry.save(update_fields=['status', 'reversed_at', 'reversed_by', 'reversal_reason'])

    logger.info('Reversed journal entry %s with %s', entry.entry_number, reversal.entry_number)
    return reversal


@transaction.atomic
def recalculate_account_balances(school):
    """Rebuilds AccountBalance rows from journal lines. Returns the accounts whose balance changed."""
    totals = (
        JournalEntryLine.objects.filter(entry__school=school)
        .values('account_id', 'entry__currency_id')
        .annotate(total_debit=Sum('debit'), total_credit=Sum('credit'))
    )
    accounts = {account.id: account for account in ChartOfAccount.objects.filter(school=school)}
    expected = {}
    for row in totals:
        account = accounts[row['account_id']]
        expected[(row['account_id'], row['entry__currency_id'])] = quantize(
            account.signed_movement(to_decimal(row['total_debit']), to_decimal(row['total_credit']))
        )

    changed = []
    existing = {
        (row.account_id, row.currency_id): row
        for row in AccountBalance.objects.select_for_update().filter(school=school)
    }
    for key in set(existing) | set(expected):
        value = expected.get(key, ZERO)
        row = existing.get(key)
        if row is None:
            row = AccountBalance.objects.create(
                school=school,
                account_id=key[0],
                currency_id=key[1],
                balance=value,
            )
            changed.append({'account': accounts[key[0]].code, 'previous': ZERO, 'balance': value})
            continue
        if quantize(row.balance) != value:
            changed.append({'account': accounts[key[0]].code, 'previous': quantize(row.balance), 'balance': value})
            row.balance = value
            row.save(update_fields=['balance', 'updated_at'])

    logger.info('Recalculated account balances for school %s (%s changed)', school.code, len(changed))
    return changed


def trial_balance(school, as_of=None):
    lines = JournalEntryLine.objects.filter(entry__school=school)
    if as_of:
        lines = lines.filter(entry__entry_date__lte=as_of)
    totals = {
        row['account_id']: row
        for row in lines.values('account_id').annotate(debit=Sum('base_debit'), credit=Sum('base_credit'))
    }

    rows = []
    total_debit = ZERO
    total_credit = ZERO
    for account in ChartOfAccount.objects.filter(school=school, id__in=list(totals)).order_by('code'):
        row = totals[account.id]
        debit = quantize(row['debit'])
        credit = quantize(row['credit'])
        balance = quantize(account.signed_movement(debit, credit))
        net = debit - credit
        debit_column = net if net > 0 else ZERO
        credit_column = -net if net < 0 else ZERO
        total_debit += debit_column
        total_credit += credit_column
        rows.append({
            'account_id': account.id,
            'code': account.code,
            'name': account.name,
            'account_type': account.account_type,
            'total_debit': debit,
            'total_credit': credit,
            'balance': balance,
            'debit': debit_column,
            'credit': credit_column,
        })

    difference = quantize(total_debit - total_credit)
    return {
        'as_of': as_of,
        'currency': get_base_currency(school).code,
        'accounts': rows,
        'total_debit': quantize(total_debit),
        'total_credit': quantize(total_credit),
        'difference': difference,
        'is_balanced': abs(difference) < CENT,
    }
