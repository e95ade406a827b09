from django.core.exceptions import ValidationError
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from apps.core.users.audit import log_audit_event
from apps.core.users.decorators import FINANCE_ROLES, READ_ROLES, api_role_required
from apps.core.utils.api import (
    api_error,
    api_response,
    form_error_response,
    json_body,
    merge_instance_data,
    paginate,
    parse_date_param,
    validation_message,
)

from .forms import ChartOfAccountForm, CurrencyForm
from .models import AccountBalance, ChartOfAccount, Currency, JournalEntry
from .services import (
    get_base_currency,
    post_journal_entry,
    recalculate_account_balances,
    reverse_journal_entry,
    set_base_currency,
    trial_balance,
)

CURRENCY_FIELDS = CurrencyForm._meta.fields
ACCOUNT_FIELDS = ChartOfAccountForm._meta.fields


def serialize_currency(currency):
    return {
        'id': currency.id,
        'code': currency.code,
        'name': currency.name,
        'symbol': currency.symbol,
        'exchange_rate': currency.exchange_rate,
        'is_base': currency.is_base,
        'is_active': currency.is_active,
    }


def serialize_account(account):
    return {
        'id': account.id,
        'code': account.code,
        'name': account.name,
        'account_type': account.account_type,
        'parent': account.parent_id,
        'description': account.description,
        'is_system': account.is_system,
        'is_active': account.is_active,
    }


def serialize_journal_entry(entry, include_lines=False):
    data = {
        'id': entry.id,
        'entry_number': entry.entry_number,
        'entry_date': entry.entry_date,
        'description': entry.description,
        'external_reference': entry.external_reference,
        'currency': entry.currency.code,
        'exchange_rate': entry.exchange_rate,
        'status': entry.status,
        'reference_model': entry.reference_model,
        'reference_id': entry.reference_id,
        'reversal_of': entry.reversal_of_id,
        'reversal_reason': entry.reversal_reason,
        'created_at': entry.created_at,
    }
    if include_lines:
        data['lines'] = [
            {
                'account': line.account.code,
                'account_name': line.account.name,
                'description': line.description,
                'debit': line.debit,
                'credit': line.credit,
                'base_debit': line.base_debit,
                'base_credit': line.base_credit,
            }
            for line in entry.lines.select_related('account')
        ]
    return data


def _serialize_balance(row):
    return {
        'account': row.account.code,
        'account_name': row.account.name,
        'account_type': row.account.account_type,
        'currency': row.currency.code,
        'balance': row.balance,
        'updated_at': row.updated_at,
    }


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def currency_list(request):
    school = request.current_school
    get_base_currency(school)

    if request.method == 'POST':
        data = merge_instance_data(Currency(), CURRENCY_FIELDS, json_body(request))
        form = CurrencyForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        currency = form.save()
        log_audit_event(
            request=request,
            action='accounting.currency_created',
            school=school,
            target=currency,
            details=f"Code={currency.code}, Rate={currency.exchange_rate}",
        )
        return api_response(serialize_currency(currency), message='Currency created.', status=201)

    currencies = Currency.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        currencies = currencies.filter(is_active=True)
    return api_response([serialize_currency(row) for row in currencies])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def currency_detail(request, pk):
    school = request.current_school
    currency = get_object_or_404(Currency, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_currency(currency))

    if request.method == 'DELETE':
        try:
            currency.delete()
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='accounting.currency_deactivated',
            school=school,
            target=currency,
            details=f"Code={currency.code}",
        )
        return api_response(message='Currency deactivated.')

    data = merge_instance_data(currency, CURRENCY_FIELDS, json_body(request))
    form = CurrencyForm(data, instance=currency, school=school)
    if not form.is_valid():
        return form_error_response(form)
    currency = form.save()
    log_audit_event(
        request=request,
        action='accounting.currency_updated',
        school=school,
        target=currency,
        details=f"Code={currency.code}, Rate={currency.exchange_rate}",
    )
    return api_response(serialize_currency(currency), message='Currency updated.')


@require_POST
@api_role_required('schooladmin')
def currency_set_base(request, pk):
    school = request.current_school
    currency = get_object_or_404(Currency, pk=pk, school=school)
    try:
        currency = set_base_currency(school=school, currency=currency)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='accounting.base_currency_set',
        school=school,
        target=currency,
        details=f"Code={currency.code}",
    )
    return api_response(serialize_currency(currency), message=f'{currency.code} is now the base currency.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def account_list(request):
    school = request.current_school

    if request.method == 'POST':
        data = merge_instance_data(ChartOfAccount(), ACCOUNT_FIELDS, json_body(request))
        form = ChartOfAccountForm(data, school=school)
        if not form.is_valid():
            return form_error_response(form)
        account = form.save()
        log_audit_event(
            request=request,
            action='accounting.account_created',
            school=school,
            target=account,
            details=f"Account={account}",
        )
        return api_response(serialize_account(account), message='Account created.', status=201)

    accounts = ChartOfAccount.objects.filter(school=school)
    if request.GET.get('include_inactive') != '1':
        accounts = accounts.filter(is_active=True)
    account_type = request.GET.get('account_type')
    if account_type:
        accounts = accounts.filter(account_type=account_type)
    return api_response([serialize_account(row) for row in accounts])


@require_http_methods(['GET', 'PUT', 'PATCH', 'DELETE'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def account_detail(request, pk):
    school = request.current_school
    account = get_object_or_404(ChartOfAccount, pk=pk, school=school)

    if request.method == 'GET':
        return api_response(serialize_account(account))

    if request.method == 'DELETE':
        try:
            account.delete()
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='accounting.account_deactivated',
            school=school,
            target=account,
            details=f"Account={account}",
        )
        return api_response(message='Account deactivated.')

    data = merge_instance_data(account, ACCOUNT_FIELDS, json_body(request))
    form = ChartOfAccountForm(data, instance=account, school=school)
    if not form.is_valid():
        return form_error_response(form)
    account = form.save()
    log_audit_event(
        request=request,
        action='accounting.account_updated',
        school=school,
        target=account,
        details=f"Account={account}",
    )
    return api_response(serialize_account(account), message='Account updated.')


@require_http_methods(['GET', 'POST'])
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def journal_entry_list(request):
    school = request.current_school

    if request.method == 'POST':
        payload = json_body(request)
        lines = payload.get('lines')
        if not isinstance(lines, list):
            return api_error('lines must be a list of journal lines.')
        try:
            entry = post_journal_entry(
                school=school,
                description=payload.get('description'),
                lines=lines,
                entry_date=parse_date_param(payload.get('entry_date'), 'entry_date'),
                external_reference=payload.get('external_reference') or '',
                currency=payload.get('currency'),
                reference_model='manual',
                created_by=request.user,
            )
        except ValidationError as exc:
            return api_error(validation_message(exc))
        log_audit_event(
            request=request,
            action='accounting.journal_entry_posted',
            school=school,
            target=entry,
            details=f"Entry={entry.entry_number}",
        )
        return api_response(
            serialize_journal_entry(entry, include_lines=True),
            message='Journal entry posted.',
            status=201,
        )

    entries = JournalEntry.objects.filter(school=school).select_related('currency')
    status = request.GET.get('status')
    if status:
        entries = entries.filter(status=status)
    reference_model = request.GET.get('reference_model')
    if reference_model:
        entries = entries.filter(reference_model=reference_model)
    date_from = parse_date_param(request.GET.get('date_from'), 'date_from')
    date_to = parse_date_param(request.GET.get('date_to'), 'date_to')
    if date_from:
        entries = entries.filter(entry_date__gte=date_from)
    if date_to:
        entries = entries.filter(entry_date__lte=date_to)

    rows, pagination = paginate(request, entries, serialize_journal_entry)
    return api_response(rows, pagination=pagination)


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def journal_entry_detail(request, pk):
    entry = get_object_or_404(
        JournalEntry.objects.select_related('currency'),
        pk=pk,
        school=request.current_school,
    )
    return api_response(serialize_journal_entry(entry, include_lines=True))


@require_POST
@api_role_required(FINANCE_ROLES)
def journal_entry_reverse(request, pk):
    school = request.current_school
    entry = get_object_or_404(JournalEntry, pk=pk, school=school)
    payload = json_body(request)
    reason = (payload.get('reason') or '').strip()
    if not reason:
        return api_error('A reversal reason is required.')
    if entry.reference_model and entry.reference_model != 'manual':
        return api_error('Entries posted by fee workflows must be reversed through those workflows.')

    try:
        reversal = reverse_journal_entry(entry=entry, reason=reason, reversed_by=request.user)
    except ValidationError as exc:
        return api_error(validation_message(exc))
    log_audit_event(
        request=request,
        action='accounting.journal_entry_reversed',
        school=school,
        target=entry,
        details=f"Entry={entry.entry_number}, Reversal={reversal.entry_number}",
    )
    return api_response(serialize_journal_entry(reversal, include_lines=True), message='Journal entry reversed.')


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def account_balance_list(request):
    balances = AccountBalance.objects.filter(school=request.current_school).select_related('account', 'currency')
    currency = request.GET.get('currency')
    if currency:
        balances = balances.filter(currency__code=currency.upper())
    return api_response([_serialize_balance(row) for row in balances])


@require_POST
@api_role_required(FINANCE_ROLES)
def account_balance_recalculate(request):
    school = request.current_school
    changed = recalculate_account_balances(school)
    log_audit_event(
        request=request,
        action='accounting.balances_recalculated',
        school=school,
        details=f"Changed={len(changed)}",
    )
    return api_response({'changed': changed}, message='Account balances recalculated.')


@require_GET
@api_role_required(FINANCE_ROLES, read_roles=READ_ROLES)
def trial_balance_view(request):
    as_of = parse_date_param(request.GET.get('as_of'), 'as_of')
    return api_response(trial_balance(request.current_school, as_of=as_of))
