from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse

from apps.core.accounting.models import AccountBalance, ChartOfAccount, Currency, JournalEntry
from apps.core.accounting.services import (
    AR_TUITION,
    CASH,
    TUITION_REVENUE,
    convert_to_base,
    ensure_chart_of_accounts,
    get_base_currency,
    post_journal_entry,
    recalculate_account_balances,
    reverse_journal_entry,
    set_base_currency,
    trial_balance,
)
from apps.core.schools.models import School


@override_settings(DEFAULT_BASE_CURRENCY='USD')
class AccountingServiceTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Ledger School', code='ledger_school')
        ensure_chart_of_accounts(self.school)
        self.usd = get_base_currency(self.school)
        self.zar = Currency.objects.create(
            school=self.school,
            code='ZAR',
            name='South African Rand',
            exchange_rate=Decimal('0.055000'),
        )

    def _post_tuition(self, amount, currency=None):
        return post_journal_entry(
            school=self.school,
            description='Tuition billed',
            currency=currency,
            lines=[
                {'account': AR_TUITION, 'debit': amount},
                {'account': TUITION_REVENUE, 'credit': amount},
            ],
        )

    def test_default_chart_is_seeded_once(self):
        self.assertEqual(ensure_chart_of_accounts(self.school), [])
        codes = set(ChartOfAccount.objects.filter(school=self.school).values_list('code', flat=True))
        self.assertTrue({'1000', '1010', '1100', '1110', '3000', '4000', '4100', '5690'}.issubset(codes))

    def test_base_currency_is_created_with_rate_one(self):
        self.assertEqual(self.usd.code, 'USD')
        self.assertTrue(self.usd.is_base)
        self.assertEqual(self.usd.exchange_rate, Decimal('1'))

    def test_convert_to_base_rounds_half_up(self):
        base_amount, rate = convert_to_base(Decimal('1000.10'), self.zar)
        self.assertEqual(rate, Decimal('0.055000'))
        self.assertEqual(base_amount, Decimal('55.01'))

    def test_convert_rejects_missing_rate(self):
        self.zar.exchange_rate = Decimal('0')
        with self.assertRaises(ValidationError):
            convert_to_base(Decimal('10.00'), self.zar)

    def test_unbalanced_entry_is_rejected(self):
        with self.assertRaises(ValidationError):
            post_journal_entry(
                school=self.school,
                description='Broken',
                lines=[
                    {'account': CASH, 'debit': '100.00'},
                    {'account': TUITION_REVENUE, 'credit': '90.00'},
                ],
            )
        self.assertFalse(JournalEntry.objects.filter(school=self.school).exists())

    def test_line_with_both_sides_is_rejected(self):
        with self.assertRaises(ValidationError):
            post_journal_entry(
                school=self.school,
                description='Broken',
                lines=[
                    {'account': CASH, 'debit': '10.00', 'credit': '10.00'},
                    {'account': TUITION_REVENUE, 'credit': '0.00', 'debit': '0.00'},
                ],
            )

    def test_posting_updates_normal_side_balances(self):
        entry = self._post_tuition(Decimal('250.00'))

        self.assertTrue(entry.entry_number.startswith('JE-'))
        self.assertEqual(entry.lines.count(), 2)
        receivable = AccountBalance.objects.get(account__code=AR_TUITION, school=self.school)
        revenue = AccountBalance.objects.get(account__code=TUITION_REVENUE, school=self.school)
        self.assertEqual(receivable.balance, Decimal('250.00'))
        self.assertEqual(revenue.balance, Decimal('250.00'))

    def test_foreign_currency_entry_balances_in_base(self):
        entry = post_journal_entry(
            school=self.school,
            description='Split tuition',
            currency='ZAR',
            lines=[
                {'account': AR_TUITION, 'debit': '33.33'},
                {'account': AR_TUITION, 'debit': '33.33'},
                {'account': TUITION_REVENUE, 'credit': '66.66'},
            ],
        )
        lines = list(entry.lines.all())
        self.assertEqual(
            sum(line.base_debit for line in lines),
            sum(line.base_credit for line in lines),
        )
        self.assertEqual(entry.exchange_rate, Decimal('0.055000'))

    def test_reversal_mirrors_lines_and_marks_original(self):
        entry = self._post_tuition(Decimal('80.00'))
        reversal = reverse_journal_entry(entry=entry, reason='Billed twice')

        entry.refresh_from_db()
        self.assertEqual(entry.status, JournalEntry.STATUS_REVERSED)
        self.assertEqual(reversal.reversal_of_id, entry.id)
        receivable = AccountBalance.objects.get(account__code=AR_TUITION, school=self.school)
        self.assertEqual(receivable.balance, Decimal('0.00'))

        with self.assertRaises(ValidationError):
            reverse_journal_entry(entry=entry, reason='Again')

    def test_journal_entries_cannot_be_deleted(self):
        entry = self._post_tuition(Decimal('10.00'))
        with self.assertRaises(ValidationError):
            entry.delete()

    def test_trial_balance_is_balanced(self):
        self._post_tuition(Decimal('120.00'))
        self._post_tuition(Decimal('1000.00'), currency=self.zar)

        report = trial_balance(self.school)
        self.assertTrue(report['is_balanced'])
        self.assertEqual(report['total_debit'], report['total_credit'])
        self.assertEqual(report['total_debit'], Decimal('175.00'))

    def test_recalculate_repairs_drifted_balance(self):
        self._post_tuition(Decimal('40.00'))
        AccountBalance.objects.filter(account__code=AR_TUITION).update(balance=Decimal('1.00'))

        changed = recalculate_account_balances(self.school)

        self.assertEqual([row['account'] for row in changed], [AR_TUITION])
        self.assertEqual(
            AccountBalance.objects.get(account__code=AR_TUITION).balance,
            Decimal('40.00'),
        )

    def test_base_currency_is_locked_after_posting(self):
        self._post_tuition(Decimal('10.00'))
        with self.assertRaises(ValidationError):
            set_base_currency(school=self.school, currency=self.zar)

    def test_setting_new_base_demotes_old_base(self):
        self.zar.is_active = False
        self.zar.save(update_fields=['is_active'])

        base = set_base_currency(school=self.school, currency=self.zar)

        self.zar.refresh_from_db()
        self.usd.refresh_from_db()
        self.assertEqual(base, self.zar)
        self.assertTrue(self.zar.is_base)
        self.assertTrue(self.zar.is_active)
        self.assertEqual(self.zar.exchange_rate, Decimal('1'))
        self.assertFalse(self.usd.is_base)
        self.assertEqual(
            list(Currency.objects.filter(school=self.school, is_base=True).values_list('code', flat=True)),
            ['ZAR'],
        )
        self.assertEqual(get_base_currency(self.school), self.zar)
        self.assertEqual(convert_to_base(Decimal('10.00'), self.zar), (Decimal('10.00'), Decimal('1')))

    def test_setup_chart_of_accounts_command(self):
        other = School.objects.create(name='Fresh School', code='fresh_school')
        out = StringIO()
        call_command('setup_chart_of_accounts', '--school', 'fresh_school', stdout=out)
        self.assertIn('fresh_school', out.getvalue())
        self.assertTrue(ChartOfAccount.objects.filter(school=other, code=CASH).exists())
        self.assertTrue(Currency.objects.filter(school=other, is_base=True).exists())


class AccountingApiTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.school = School.objects.create(name='Api Ledger School', code='api_ledger')
        ensure_chart_of_accounts(self.school)
        self.accountant = user_model.objects.create_user(
            username='ledger_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )
        self.staff = user_model.objects.create_user(
            username='ledger_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

    def test_accountant_can_post_and_reverse_manual_entry(self):
        self.client.login(username='ledger_accountant', password='pass12345')

        response = self.client.post(
            reverse('journal_entry_list'),
            {
                'description': 'Opening cash float',
                'lines': [
                    {'account': '1000', 'debit': '500.00'},
                    {'account': '3000', 'credit': '500.00'},
                ],
            },
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertTrue(payload['success'])
        self.assertEqual(len(payload['data']['lines']), 2)
        entry_id = payload['data']['id']

        response = self.client.post(
            reverse('journal_entry_reverse', args=[entry_id]),
            {'reason': 'Posted in error'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(JournalEntry.objects.get(pk=entry_id).status, JournalEntry.STATUS_REVERSED)

    def test_unbalanced_manual_entry_returns_400(self):
        self.client.login(username='ledger_accountant', password='pass12345')
        response = self.client.post(
            reverse('journal_entry_list'),
            {
                'description': 'Bad',
                'lines': [
                    {'account': '1000', 'debit': '5.00'},
                    {'account': '3000', 'credit': '4.00'},
                ],
            },
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])

    def test_currency_create_and_trial_balance(self):
        self.client.login(username='ledger_accountant', password='pass12345')
        response = self.client.post(
            reverse('currency_list'),
            {'code': 'kes', 'name': 'Kenyan Shilling', 'exchange_rate': '0.0078'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['code'], 'KES')

        response = self.client.get(reverse('trial_balance'))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['data']['is_balanced'])

    def test_currency_requires_positive_rate(self):
        self.client.login(username='ledger_accountant', password='pass12345')
        response = self.client.post(
            reverse('currency_list'),
            {'code': 'EUR', 'name': 'Euro', 'exchange_rate': '0'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('exchange_rate', response.json()['errors'])

    def test_staff_cannot_post_entries(self):
        self.client.login(username='ledger_staff', password='pass12345')
        response = self.client.get(reverse('account_list'))
        self.assertEqual(response.status_code, 200)

        response = self.client.post(
            reverse('journal_entry_list'),
            {'description': 'x', 'lines': []},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 403)

    def test_system_account_cannot_be_deactivated(self):
        self.client.login(username='ledger_accountant', password='pass12345')
        cash = ChartOfAccount.objects.get(school=self.school, code='1000')
        response = self.client.delete(reverse('account_detail', args=[cash.id]))
        self.assertEqual(response.status_code, 400)
        cash.refresh_from_db()
        self.assertTrue(cash.is_active)

    @override_settings(DEFAULT_BASE_CURRENCY='USD')
    def test_set_base_currency_endpoint(self):
        usd = get_base_currency(self.school)
        zar = Currency.objects.create(
            school=self.school,
            code='ZAR',
            name='South African Rand',
            exchange_rate=Decimal('0.055000'),
        )
        self.client.login(username='ledger_accountant', password='pass12345')

        response = self.client.post(reverse('currency_set_base', args=[zar.id]), content_type='application/json')

        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertTrue(data['is_base'])
        self.assertEqual(Decimal(data['exchange_rate']), Decimal('1'))
        usd.refresh_from_db()
        self.assertFalse(usd.is_base)
        self.assertEqual(Currency.objects.filter(school=self.school, is_base=True).count(), 1)

        listing = self.client.get(reverse('currency_list')).json()
        self.assertEqual(listing['data'][0]['code'], 'ZAR')

    def test_staff_cannot_set_base_currency(self):
        zar = Currency.objects.create(
            school=self.school,
            code='ZAR',
            name='South African Rand',
            exchange_rate=Decimal('0.055000'),
        )
        self.client.login(username='ledger_staff', password='pass12345')
        response = self.client.post(reverse('currency_set_base', args=[zar.id]), content_type='application/json')
        self.assertEqual(response.status_code, 403)
        zar.refresh_from_db()
        self.assertFalse(zar.is_base)
