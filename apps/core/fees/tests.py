import datetime
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.models import Currency, JournalEntry
from apps.core.accounting.services import ensure_chart_of_accounts, get_base_currency
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.students.services import enroll_student

from .ledger import (
    ledger_balance,
    recalculate_student_balance,
    reconcile_student_balance,
    reverse_student_transaction,
    student_statement,
)
from .models import (
    FeePayment,
    FeeStructure,
    StudentBalance,
    StudentFeeAssignment,
    StudentTransaction,
    WaiverCategory,
)
from .services import (
    apply_manual_adjustment,
    assign_fee_structure,
    collect_payment,
    generate_annual_fees,
    grant_fee_waiver,
    normalize_payment_method,
    record_opening_balance,
    refund_payment,
    reverse_payment,
    save_invoice_structure,
    students_with_opening_balance,
)


def build_school(name, code):
    school = School.objects.create(name=name, code=code)
    ensure_chart_of_accounts(school)
    session = AcademicSession.objects.create(
        school=school,
        name='2026',
        start_date=datetime.date(2026, 1, 5),
        end_date=datetime.date(2026, 12, 4),
        is_active=True,
    )
    term = Term.objects.create(
        school=school,
        session=session,
        number=1,
        start_date=datetime.date(2026, 1, 12),
        end_date=datetime.date(2026, 4, 10),
        is_current=True,
    )
    school.current_session = session
    school.current_term = term
    school.save(update_fields=['current_session', 'current_term'])
    return school, session, term


@override_settings(DEFAULT_BASE_CURRENCY='USD', FEES_ALLOW_OVERPAYMENT=False, LEDGER_REVERSAL_WINDOW_DAYS=30)
class StudentLedgerServiceTests(TestCase):
    def setUp(self):
        self.school, self.session, self.term = build_school('Ledger High', 'ledger_high')
        self.usd = get_base_currency(self.school)
        self.zar = Currency.objects.create(
            school=self.school,
            code='ZAR',
            name='South African Rand',
            exchange_rate=Decimal('0.055000'),
        )
        self.school_class = SchoolClass.objects.create(school=self.school, name='Form 1', stream='East')
        self.structure = save_invoice_structure(
            school=self.school,
            school_class=self.school_class,
            term=self.term,
            items=[
                {'item_name': 'Tuition', 'amount': '400.00'},
                {'item_name': 'Development Levy', 'amount': '100.00'},
            ],
        )
        self.student = Student.objects.create(
            school=self.school,
            admission_number='ADM001',
            first_name='Tendai',
            last_name='Moyo',
            gender=Student.GENDER_MALE,
        )
        self.enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        self.tuition = self.enrollment.tuition_assignment

    def _balance(self):
        return StudentBalance.objects.get(student=self.student).current_balance

    def _pay(self, amount, **kwargs):
        kwargs.setdefault('payment_method', 'Cash')
        return collect_payment(student=self.student, amount=Decimal(amount), **kwargs)

    def test_enrollment_bills_tuition_with_journal_entry(self):
        self.assertEqual(self._balance(), Decimal('-500.00'))
        row = self.tuition.transaction
        self.assertEqual(row.transaction_type, StudentTransaction.TYPE_DEBIT)
        self.assertEqual(row.description, 'TUITION INVOICE - Form 1 (East)')
        self.assertEqual(row.balance_after, Decimal('-500.00'))
        self.assertEqual(self.tuition.category, StudentFeeAssignment.CATEGORY_TUITION)
        self.assertEqual(self.tuition.due_date, self.term.start_date)

        lines = {line.account.code: line for line in row.journal_entry.lines.select_related('account')}
        self.assertEqual(lines['1100'].debit, Decimal('500.00'))
        self.assertEqual(lines['4000'].credit, Decimal('500.00'))

    def test_invoice_structure_total_follows_items(self):
        self.assertEqual(self.structure.total_amount, Decimal('500.00'))
        self.assertEqual(self.structure.name, 'Form 1 (East) - Term 1 2026')

        updated = save_invoice_structure(
            school=self.school,
            school_class=self.school_class,
            term=self.term,
            items=[{'item_name': 'Tuition', 'amount': '450.00'}],
            structure=self.structure,
        )
        self.assertEqual(updated.total_amount, Decimal('450.00'))
        self.assertEqual(updated.items.count(), 1)

    def test_invoice_structure_needs_total_without_items(self):
        other_class = SchoolClass.objects.create(school=self.school, name='Form 2')
        with self.assertRaises(ValidationError):
            save_invoice_structure(school=self.school, school_class=other_class, term=self.term)
        with self.assertRaises(ValidationError):
            save_invoice_structure(school=self.school, school_class=other_class, term=self.term, total_amount='0')

    def test_second_active_structure_for_class_and_term_is_rejected(self):
        with self.assertRaises(ValidationError):
            save_invoice_structure(
                school=self.school,
                school_class=self.school_class,
                term=self.term,
                total_amount='300.00',
            )

    def test_enrollment_without_invoice_structure_fails(self):
        bare_class = SchoolClass.objects.create(school=self.school, name='Form 4')
        other = Student.objects.create(school=self.school, admission_number='ADM009', first_name='Rudo')
        with self.assertRaises(ValidationError):
            enroll_student(student=other, school_class=bare_class, term=self.term)
        self.assertFalse(other.class_enrollments.exists())

    def test_payment_reduces_balance_and_allocates(self):
        payment = self._pay('200.00')

        self.assertEqual(self._balance(), Decimal('-300.00'))
        self.assertTrue(payment.receipt_number.startswith('FP-'))
        self.assertEqual(payment.transaction.description, f'Fee Payment - Receipt #{payment.receipt_number}')
        self.assertEqual(payment.allocations.get().assignment, self.tuition)
        self.assertEqual(self.tuition.status, StudentFeeAssignment.STATUS_PARTIAL)
        self.assertEqual(self.tuition.due_amount, Decimal('300.00'))

        lines = {line.account.code: line for line in payment.journal_entry.lines.select_related('account')}
        self.assertEqual(lines['1000'].debit, Decimal('200.00'))
        self.assertEqual(lines['1100'].credit, Decimal('200.00'))

    def test_bank_payment_posts_to_bank_account(self):
        payment = self._pay('50.00', payment_method='bank_transfer')
        self.assertEqual(payment.payment_method, FeePayment.METHOD_BANK_TRANSFER)
        self.assertTrue(payment.journal_entry.lines.filter(account__code='1010', debit=Decimal('50.00')).exists())

    def test_payment_cannot_exceed_outstanding_balance(self):
        with self.assertRaises(ValidationError):
            self._pay('500.01')
        self.assertEqual(self._balance(), Decimal('-500.00'))
        self.assertFalse(FeePayment.objects.exists())

    @override_settings(FEES_ALLOW_OVERPAYMENT=True)
    def test_overpayment_becomes_unallocated_credit_when_allowed(self):
        self._pay('600.00')

        self.assertEqual(self._balance(), Decimal('100.00'))
        report = reconcile_student_balance(self.student)
        self.assertEqual(report['charges_outstanding'], Decimal('0.00'))
        self.assertEqual(report['unallocated_credits'], Decimal('100.00'))
        self.assertTrue(report['is_consistent'])

    def test_foreign_currency_payment_is_converted_at_snapshot_rate(self):
        payment = self._pay('1000.10', currency=self.zar)

        self.assertEqual(payment.amount, Decimal('1000.10'))
        self.assertEqual(payment.exchange_rate, Decimal('0.055000'))
        self.assertEqual(payment.base_amount, Decimal('55.01'))
        self.assertEqual(self._balance(), Decimal('-444.99'))

        self.zar.exchange_rate = Decimal('0.060000')
        self.zar.save()
        payment.refresh_from_db()
        self.assertEqual(payment.base_amount, Decimal('55.01'))

    def test_payment_method_aliases(self):
        self.assertEqual(normalize_payment_method('momo'), 'Mobile Money')
        self.assertEqual(normalize_payment_method('check'), 'Cheque')
        self.assertEqual(normalize_payment_method('Bank'), 'Bank Transfer')
        with self.assertRaises(ValidationError):
            normalize_payment_method('bitcoin')

    def test_duplicate_reference_for_student_is_rejected(self):
        self._pay('100.00', reference_number='BANK-778')
        with self.assertRaises(ValidationError):
            self._pay('50.00', reference_number='BANK-778')

    def test_reversed_payment_stops_counting(self):
        payment = self._pay('200.00')
        reverse_payment(payment=payment, reason='Cheque bounced')

        payment.refresh_from_db()
        self.assertEqual(payment.status, FeePayment.STATUS_REVERSED)
        self.assertEqual(self._balance(), Decimal('-500.00'))
        self.assertEqual(self.tuition.due_amount, Decimal('500.00'))
        self.assertEqual(payment.journal_entry.status, JournalEntry.STATUS_REVERSED)
        self.assertTrue(
            StudentTransaction.objects.filter(
                student=self.student,
                description=f'Payment Reversal - Receipt #{payment.receipt_number}',
            ).exists()
        )
        with self.assertRaises(ValidationError):
            reverse_payment(payment=payment, reason='Again')

    def test_payment_reversal_needs_reason(self):
        payment = self._pay('200.00')
        with self.assertRaises(ValidationError):
            reverse_payment(payment=payment, reason='  ')

    def test_partial_refund_releases_allocation(self):
        payment = self._pay('300.00')
        refund = refund_payment(payment=payment, amount=Decimal('100.00'), reason='Family relocation')

        payment.refresh_from_db()
        self.assertEqual(payment.status, FeePayment.STATUS_PARTIALLY_REFUNDED)
        self.assertEqual(payment.refunded_amount, Decimal('100.00'))
        self.assertEqual(self._balance(), Decimal('-300.00'))
        self.assertEqual(self.tuition.paid_amount, Decimal('200.00'))
        self.assertEqual(refund.releases.get().amount, Decimal('-100.00'))

        with self.assertRaises(ValidationError):
            refund_payment(payment=payment, amount=Decimal('250.00'), reason='Too much')

        refund_payment(payment=payment, amount=Decimal('200.00'), reason='Withdrawn')
        payment.refresh_from_db()
        self.assertEqual(payment.status, FeePayment.STATUS_REFUNDED)
        self.assertEqual(self._balance(), Decimal('-500.00'))

    def test_waiver_credits_student_and_books_expense(self):
        bursary = WaiverCategory.objects.create(school=self.school, name='Bursary')
        waiver = grant_fee_waiver(
            student=self.student,
            category=bursary,
            amount=Decimal('100.00'),
            reason='Sibling discount',
        )

        self.assertEqual(self._balance(), Decimal('-400.00'))
        self.assertEqual(waiver.transaction.description, 'Fee Waiver - Bursary: Sibling discount')
        self.assertTrue(waiver.journal_entry.lines.filter(account__code='5600', debit=Decimal('100.00')).exists())
        self.assertTrue(waiver.journal_entry.lines.filter(account__code='1100', credit=Decimal('100.00')).exists())

    def test_waiver_cannot_exceed_outstanding(self):
        bursary = WaiverCategory.objects.create(school=self.school, name='Bursary')
        with self.assertRaises(ValidationError):
            grant_fee_waiver(student=self.student, category=bursary, amount=Decimal('600.00'), reason='Full')

    def test_opening_balance_is_recorded_once(self):
        assignment = record_opening_balance(student=self.student, amount=Decimal('250.00'))

        self.assertEqual(self._balance(), Decimal('-750.00'))
        self.assertEqual(assignment.category, StudentFeeAssignment.CATEGORY_OPENING_BALANCE)
        self.assertTrue(
            assignment.transaction.journal_entry.lines.filter(account__code='3000', credit=Decimal('250.00')).exists()
        )
        found = students_with_opening_balance(school=self.school, student_ids=[self.student.id])
        self.assertEqual(found[self.student.id]['amount'], Decimal('250.00'))

        with self.assertRaises(ValidationError):
            record_opening_balance(student=self.student, amount=Decimal('10.00'))

    def test_manual_adjustments_move_balance_both_ways(self):
        debit = apply_manual_adjustment(
            student=self.student,
            adjustment_type='debit',
            amount=Decimal('50.00'),
            description='Lost library book',
        )
        self.assertEqual(self._balance(), Decimal('-550.00'))
        self.assertTrue(debit.reference.startswith('MBU-'))
        self.assertEqual(debit.fee_assignment.category, StudentFeeAssignment.CATEGORY_MANUAL)

        credit = apply_manual_adjustment(
            student=self.student,
            adjustment_type='CREDIT',
            amount=Decimal('30.00'),
            description='Duplicate charge',
            reference='ADJ-1',
        )
        self.assertEqual(credit.transaction_type, StudentTransaction.TYPE_CREDIT)
        self.assertEqual(credit.description, 'MANUAL BALANCE ADJUSTMENT - Duplicate charge - ADJ-1')
        self.assertEqual(self._balance(), Decimal('-520.00'))

    def test_unpaid_charge_can_be_reversed_once(self):
        row = apply_manual_adjustment(
            student=self.student,
            adjustment_type='debit',
            amount=Decimal('50.00'),
            description='Trip',
        )
        reversal = reverse_student_transaction(transaction=row, reason='Trip cancelled')

        self.assertEqual(reversal.transaction_type, StudentTransaction.TYPE_CREDIT)
        self.assertEqual(reversal.reversal_of, row)
        self.assertEqual(self._balance(), Decimal('-500.00'))
        row.refresh_from_db()
        self.assertTrue(row.is_reversed)
        self.assertTrue(row.fee_assignment.is_cancelled)
        with self.assertRaises(ValidationError):
            reverse_student_transaction(transaction=row)
        with self.assertRaises(ValidationError):
            reverse_student_transaction(transaction=reversal)

    def test_charge_with_payments_cannot_be_reversed(self):
        self._pay('100.00')
        with self.assertRaises(ValidationError):
            reverse_student_transaction(transaction=self.tuition.transaction)

    def test_reversal_window_is_enforced(self):
        row = self.tuition.transaction
        StudentTransaction.objects.filter(pk=row.pk).update(created_at=timezone.now() - timedelta(days=31))
        row.refresh_from_db()
        with self.assertRaises(ValidationError):
            reverse_student_transaction(transaction=row)

    def test_payment_lines_use_their_own_workflow(self):
        payment = self._pay('100.00')
        with self.assertRaises(ValidationError):
            reverse_student_transaction(transaction=payment.transaction)

    def test_balance_reconciles_after_mixed_activity(self):
        bursary = WaiverCategory.objects.create(school=self.school, name='Bursary')
        record_opening_balance(student=self.student, amount=Decimal('120.00'))
        first = self._pay('300.00')
        self._pay('1000.10', currency=self.zar, payment_method='momo')
        grant_fee_waiver(student=self.student, category=bursary, amount=Decimal('40.00'), reason='Merit')
        refund_payment(payment=first, amount=Decimal('25.00'), reason='Overcharge')
        apply_manual_adjustment(student=self.student, adjustment_type='credit', amount='10.00', description='Fix')

        expected = Decimal('-620.00') + Decimal('300.00') + Decimal('55.01') + Decimal('40.00') - Decimal(
            '25.00'
        ) + Decimal('10.00')
        self.assertEqual(self._balance(), expected)
        self.assertEqual(ledger_balance(self.student), expected)

        report = reconcile_student_balance(self.student)
        self.assertTrue(report['is_consistent'])
        self.assertEqual(report['last_running_balance'], expected)
        self.assertEqual(report['transaction_count'], 7)

        StudentBalance.objects.filter(student=self.student).update(current_balance=Decimal('0'))
        self.assertFalse(reconcile_student_balance(self.student)['is_consistent'])
        result = recalculate_student_balance(self.student)
        self.assertEqual(result['recalculated_balance'], expected)
        self.assertEqual(self._balance(), expected)

    def test_statement_running_balance_matches_ledger(self):
        self._pay('200.00')
        apply_manual_adjustment(student=self.student, adjustment_type='debit', amount='20.00', description='Tie')

        statement = student_statement(self.student)
        self.assertEqual(statement['opening_balance'], Decimal('0.00'))
        self.assertEqual([row['running_balance'] for row in statement['transactions']], [
            Decimal('-500.00'),
            Decimal('-300.00'),
            Decimal('-320.00'),
        ])
        self.assertEqual(statement['total_debits'], Decimal('520.00'))
        self.assertEqual(statement['total_credits'], Decimal('200.00'))
        self.assertEqual(statement['closing_balance'], self._balance())

        later = student_statement(self.student, start=timezone.localdate() + timedelta(days=1))
        self.assertEqual(later['opening_balance'], self._balance())
        self.assertEqual(later['transactions'], [])

    def test_additional_fee_assignment_skips_inactive_and_duplicates(self):
        sports = FeeStructure.objects.create(
            school=self.school,
            name='Sports',
            description='Athletics kit',
            amount=Decimal('40.00'),
            currency=self.usd,
            fee_type=FeeStructure.TYPE_TERMLY,
        )
        inactive = Student.objects.create(
            school=self.school,
            admission_number='ADM002',
            first_name='Old',
            is_active=False,
        )

        result = assign_fee_structure(fee_structure=sports, students=[self.student, inactive], term=self.term)
        self.assertEqual(len(result['created']), 1)
        self.assertEqual(result['skipped'], [{'student_id': inactive.id, 'reason': 'inactive'}])
        assignment = result['created'][0]
        self.assertEqual(assignment.description, 'Sports - Athletics kit')
        self.assertTrue(
            assignment.transaction.journal_entry.lines.filter(account__code='4200', credit=Decimal('40.00')).exists()
        )
        self.assertEqual(self._balance(), Decimal('-540.00'))

        again = assign_fee_structure(fee_structure=sports, students=[self.student], term=self.term)
        self.assertEqual(again['created'], [])
        self.assertEqual(again['skipped'][0]['reason'], 'already_assigned')

    def test_annual_generation_needs_annual_structure(self):
        termly = FeeStructure.objects.create(
            school=self.school,
            name='Lab',
            amount=Decimal('15.00'),
            currency=self.usd,
            fee_type=FeeStructure.TYPE_TERMLY,
        )
        with self.assertRaises(ValidationError):
            generate_annual_fees(fee_structure=termly, session=self.session)

        annual = FeeStructure.objects.create(
            school=self.school,
            name='Insurance',
            amount=Decimal('12.00'),
            currency=self.usd,
            fee_type=FeeStructure.TYPE_ANNUAL,
        )
        result = generate_annual_fees(fee_structure=annual, session=self.session)
        self.assertEqual(len(result['created']), 1)
        self.assertEqual(self._balance(), Decimal('-512.00'))

    def test_payment_settles_its_own_category_first(self):
        uniform = FeeStructure.objects.create(
            school=self.school,
            name='Uniform',
            amount=Decimal('60.00'),
            currency=self.usd,
            fee_type=FeeStructure.TYPE_ONE_TIME,
        )
        extra = assign_fee_structure(
            fee_structure=uniform,
            students=[self.student],
            due_date=datetime.date(2026, 1, 1),
        )['created'][0]

        self._pay('520.00')
        self.assertEqual(self.tuition.due_amount, Decimal('0.00'))
        self.assertEqual(self.tuition.status, StudentFeeAssignment.STATUS_PAID)
        self.assertEqual(extra.paid_amount, Decimal('20.00'))

    def test_targeted_payment_cannot_exceed_assignment_due(self):
        uniform = FeeStructure.objects.create(
            school=self.school,
            name='Uniform',
            amount=Decimal('60.00'),
            currency=self.usd,
            fee_type=FeeStructure.TYPE_ONE_TIME,
        )
        extra = assign_fee_structure(fee_structure=uniform, students=[self.student])['created'][0]
        with self.assertRaises(ValidationError):
            self._pay('70.00', category=FeePayment.CATEGORY_OTHER, fee_assignment=extra)

        payment = self._pay('60.00', category=FeePayment.CATEGORY_OTHER, fee_assignment=extra)
        self.assertTrue(payment.receipt_number.startswith('OF-'))
        self.assertEqual(extra.status, StudentFeeAssignment.STATUS_PAID)

    def test_financial_records_cannot_be_deleted(self):
        payment = self._pay('100.00')
        with self.assertRaises(ValidationError):
            payment.delete()
        with self.assertRaises(ValidationError):
            payment.transaction.delete()
        with self.assertRaises(ValidationError):
            self.tuition.delete()


@override_settings(DEFAULT_BASE_CURRENCY='USD', FEES_ALLOW_OVERPAYMENT=False)
class FeeApiTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.school, self.session, self.term = build_school('Api Fees School', 'api_fees')
        self.school_class = SchoolClass.objects.create(school=self.school, name='Grade 7')
        save_invoice_structure(
            school=self.school,
            school_class=self.school_class,
            term=self.term,
            total_amount='500.00',
        )
        self.student = Student.objects.create(
            school=self.school,
            admission_number='API001',
            first_name='Nyasha',
            last_name='Banda',
        )
        enroll_student(student=self.student, school_class=self.school_class, term=self.term)

        self.accountant = user_model.objects.create_user(
            username='fees_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )
        self.staff = user_model.objects.create_user(
            username='fees_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

        other_school, _, _ = build_school('Other Fees School', 'other_fees')
        self.foreign_student = Student.objects.create(
            school=other_school,
            admission_number='OTH001',
            first_name='Other',
        )

    def _post(self, url, payload):
        return self.client.post(url, payload, content_type='application/json')

    def test_accountant_records_payment(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self._post(reverse('fee_payment_list'), {
            'student': self.student.id,
            'amount': '200.00',
            'payment_method': 'Cash',
            'reference_number': 'RCPT-1',
        })

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertTrue(body['data']['receipt_number'].startswith('FP-'))
        self.assertEqual(body['data']['base_amount'], '200.00')
        self.assertEqual(len(body['data']['allocations']), 1)

        balance = self.client.get(reverse('student_balance', args=[self.student.id])).json()['data']
        self.assertEqual(balance['outstanding'], '300.00')

    def test_overpayment_returns_400(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self._post(reverse('fee_payment_list'), {
            'student': self.student.id,
            'amount': '900.00',
            'payment_method': 'Cash',
        })
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])
        self.assertIn('exceeds the outstanding balance', response.json()['message'])

    def test_unknown_payment_method_returns_400(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self._post(reverse('fee_payment_list'), {
            'student': self.student.id,
            'amount': '10.00',
            'payment_method': 'barter',
        })
        self.assertEqual(response.status_code, 400)

    def test_staff_can_read_but_not_collect(self):
        self.client.login(username='fees_staff', password='pass12345')
        self.assertEqual(self.client.get(reverse('fee_payment_list')).status_code, 200)
        response = self._post(reverse('fee_payment_list'), {
            'student': self.student.id,
            'amount': '10.00',
            'payment_method': 'Cash',
        })
        self.assertEqual(response.status_code, 403)

    def test_unauthenticated_request_returns_401(self):
        response = self.client.get(reverse('fee_payment_list'))
        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])

    def test_reverse_requires_reason(self):
        self.client.login(username='fees_accountant', password='pass12345')
        payment = collect_payment(student=self.student, amount=Decimal('50.00'), payment_method='Cash')

        response = self._post(reverse('fee_payment_reverse', args=[payment.id]), {})
        self.assertEqual(response.status_code, 400)
        self.assertIn('reason', response.json()['errors'])

        response = self._post(reverse('fee_payment_reverse', args=[payment.id]), {'reason': 'Entered twice'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['status'], FeePayment.STATUS_REVERSED)

    def test_outstanding_list_includes_summary(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self.client.get(reverse('outstanding_balance_list'), {'min_amount': '100'})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['pagination']['total_items'], 1)
        self.assertEqual(body['data'][0]['outstanding'], '500.00')
        self.assertEqual(body['summary']['total_outstanding'], '500.00')

    def test_outstanding_list_rejects_non_finite_min_amount(self):
        self.client.login(username='fees_accountant', password='pass12345')
        for value in ('Infinity', '-inf', 'NaN', 'ten'):
            response = self.client.get(reverse('outstanding_balance_list'), {'min_amount': value})
            self.assertEqual(response.status_code, 400, value)
            body = response.json()
            self.assertFalse(body['success'])
            self.assertIn('min_amount must be a number.', body['message'])

    def test_adjustment_type_is_case_insensitive(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self._post(reverse('student_adjustment', args=[self.student.id]), {
            'adjustment_type': 'DEBIT',
            'amount': '25.00',
            'description': 'Broken window',
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['type'], StudentTransaction.TYPE_DEBIT)

    def test_opening_balance_endpoints(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self._post(reverse('student_opening_balance', args=[self.student.id]), {'amount': '80.00'})
        self.assertEqual(response.status_code, 201)

        lookup = self.client.get(reverse('opening_balance_lookup'), {'ids': f'{self.student.id},999'})
        self.assertEqual(list(lookup.json()['data']), [str(self.student.id)])

        again = self._post(reverse('student_opening_balance', args=[self.student.id]), {'amount': '5.00'})
        self.assertEqual(again.status_code, 400)

    def test_statement_and_reconcile(self):
        self.client.login(username='fees_accountant', password='pass12345')
        statement = self.client.get(reverse('student_transactions', args=[self.student.id])).json()['data']
        self.assertEqual(statement['closing_balance'], '-500.00')

        report = self.client.get(reverse('student_balance_reconcile', args=[self.student.id])).json()['data']
        self.assertTrue(report['is_consistent'])

    def test_invoice_structure_api_sums_items_and_blocks_duplicates(self):
        self.client.login(username='fees_accountant', password='pass12345')
        other_class = SchoolClass.objects.create(school=self.school, name='Grade 8')
        payload = {
            'school_class': other_class.id,
            'term': self.term.id,
            'currency': 'USD',
            'items': [
                {'item_name': 'Tuition', 'amount': '600.00'},
                {'item_name': 'Sports', 'amount': '150.00'},
            ],
        }
        response = self._post(reverse('invoice_structure_list'), payload)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['total_amount'], '750.00')

        duplicate = self._post(reverse('invoice_structure_list'), payload)
        self.assertEqual(duplicate.status_code, 400)

    def test_other_school_student_is_not_found(self):
        self.client.login(username='fees_accountant', password='pass12345')
        response = self.client.get(reverse('student_balance', args=[self.foreign_student.id]))
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()['success'])
