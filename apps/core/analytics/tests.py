import datetime
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.services import ensure_chart_of_accounts
from apps.core.fees.services import (
    apply_manual_adjustment,
    collect_payment,
    refund_payment,
    save_invoice_structure,
)
from apps.core.schools.models import School
from apps.core.students.models import Student
from apps.core.students.services import enroll_student

from .services import (
    balances_by_class,
    collection_efficiency,
    debt_summary,
    financial_health_summary,
    payment_completion_rates,
)


class AnalyticsFixtureMixin:
    """
    Five students: one owing 50, one owing 300, one owing 1500, one paid up
    and one never billed.
    """

    def build_analytics_school(self):
        self.school = School.objects.create(name='Analytics School', code='analytics_school')
        ensure_chart_of_accounts(self.school)
        self.session = session = AcademicSession.objects.create(
            school=self.school,
            name='2026',
            start_date=datetime.date(2026, 1, 5),
            end_date=datetime.date(2026, 12, 4),
            is_active=True,
        )
        self.term = Term.objects.create(
            school=self.school,
            session=session,
            number=1,
            start_date=datetime.date(2026, 1, 12),
            end_date=datetime.date(2026, 4, 10),
            is_current=True,
        )
        self.school.current_session = session
        self.school.current_term = self.term
        self.school.save(update_fields=['current_session', 'current_term'])

        self.form_one = SchoolClass.objects.create(school=self.school, name='Form 1', display_order=1)
        self.form_four = SchoolClass.objects.create(school=self.school, name='Form 4', display_order=4)
        save_invoice_structure(school=self.school, school_class=self.form_one, term=self.term, total_amount='50.00')
        save_invoice_structure(school=self.school, school_class=self.form_four, term=self.term, total_amount='1500.00')

        self.small = self._student('AN001')
        self.medium = self._student('AN002')
        self.large = self._student('AN003')
        self.paid = self._student('AN004')
        self.unbilled = self._student('AN005')

        enroll_student(student=self.small, school_class=self.form_one, term=self.term)
        enroll_student(student=self.medium, school_class=self.form_one, term=self.term)
        apply_manual_adjustment(
            student=self.medium,
            adjustment_type='debit',
            amount=Decimal('250.00'),
            description='Damaged furniture',
        )
        enroll_student(student=self.large, school_class=self.form_four, term=self.term)
        enroll_student(student=self.paid, school_class=self.form_one, term=self.term)
        self.payment = collect_payment(student=self.paid, amount=Decimal('50.00'), payment_method='cash')

    def _student(self, admission_number):
        return Student.objects.create(
            school=self.school,
            admission_number=admission_number,
            first_name='Analytics',
            last_name=admission_number,
        )


class AnalyticsServiceTests(AnalyticsFixtureMixin, TestCase):
    def setUp(self):
        self.build_analytics_school()

    def test_balances_by_class(self):
        report = balances_by_class(school=self.school, term=self.term)

        self.assertEqual(report['term'], 'Term 1 2026')
        self.assertEqual(report['total_students_with_balances'], 3)
        self.assertEqual(report['total_outstanding'], Decimal('1850.00'))

        largest, form_one = report['classes']
        self.assertEqual(largest['class_name'], 'Form 4')
        self.assertEqual(largest['total_outstanding'], Decimal('1500.00'))
        self.assertEqual(form_one['student_count'], 3)
        self.assertEqual(form_one['debtor_count'], 2)
        self.assertEqual(form_one['total_outstanding'], Decimal('350.00'))
        self.assertEqual(form_one['average_outstanding'], Decimal('175.00'))
        self.assertEqual(form_one['min_outstanding'], Decimal('50.00'))
        self.assertEqual(form_one['max_outstanding'], Decimal('300.00'))

    def test_debt_summary_percentages_sum_to_one_hundred(self):
        report = debt_summary(school=self.school)

        self.assertEqual(report['total_students_with_debt'], 3)
        self.assertEqual(report['total_outstanding_debt'], Decimal('1850.00'))
        self.assertEqual(report['highest_debt'], Decimal('1500.00'))
        self.assertEqual(report['average_debt_per_student'], Decimal('616.67'))

        distribution = {row['range']: row for row in report['debt_distribution']}
        self.assertEqual(distribution['Under 100']['student_count'], 1)
        self.assertEqual(distribution['100-500']['total_amount'], Decimal('300.00'))
        self.assertEqual(distribution['500-1,000']['student_count'], 0)
        self.assertEqual(distribution['1,000-2,000']['total_amount'], Decimal('1500.00'))
        self.assertEqual(distribution['Over 2,000']['percentage'], Decimal('0.00'))
        self.assertEqual(
            sum(row['percentage'] for row in report['debt_distribution']),
            Decimal('100.00'),
        )
        self.assertEqual(
            sorted(row['percentage'] for row in report['debt_distribution'] if row['student_count']),
            [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')],
        )

    def test_debt_summary_ignores_inactive_students(self):
        self.large.delete()
        report = debt_summary(school=self.school)

        self.assertEqual(report['total_students_with_debt'], 2)
        self.assertEqual(report['highest_debt'], Decimal('300.00'))

    def test_empty_school_reports_zero_percentages(self):
        empty = School.objects.create(name='Empty', code='empty_analytics')
        report = debt_summary(school=empty)

        self.assertEqual(report['total_students_with_debt'], 0)
        self.assertEqual(report['total_outstanding_debt'], Decimal('0.00'))
        self.assertTrue(all(row['percentage'] == Decimal('0.00') for row in report['debt_distribution']))

    def test_financial_health_buckets(self):
        report = financial_health_summary(school=self.school)
        buckets = {row['bucket']: row for row in report['buckets']}

        self.assertEqual(report['total_students'], 5)
        self.assertEqual(buckets['paid_up']['student_count'], 2)
        self.assertEqual(buckets['paid_up']['percentage'], Decimal('40.00'))
        self.assertEqual(buckets['small_debt']['student_count'], 1)
        self.assertEqual(buckets['medium_debt']['student_count'], 1)
        self.assertEqual(buckets['large_debt']['percentage'], Decimal('20.00'))
        self.assertEqual(sum(row['percentage'] for row in report['buckets']), Decimal('100.00'))

    def test_payment_completion_rates(self):
        report = payment_completion_rates(school=self.school, term=self.term)

        self.assertEqual(report['total_charged'], Decimal('1650.00'))
        self.assertEqual(report['total_paid'], Decimal('50.00'))
        self.assertEqual(report['outstanding_amount'], Decimal('1600.00'))
        self.assertEqual(report['overall_completion_rate'], Decimal('3.03'))

        by_class = {row['class_name']: row for row in report['completion_by_class']}
        self.assertEqual(by_class['Form 1']['total_students'], 3)
        self.assertEqual(by_class['Form 1']['students_paid_up'], 1)
        self.assertEqual(by_class['Form 1']['outstanding_students'], 2)
        self.assertEqual(by_class['Form 1']['completion_rate'], Decimal('33.33'))
        self.assertEqual(by_class['Form 4']['completion_rate'], Decimal('0.00'))

    def test_payment_completion_without_term_includes_manual_charges(self):
        report = payment_completion_rates(school=self.school)

        self.assertIsNone(report['term'])
        self.assertEqual(report['total_charged'], Decimal('1900.00'))

        by_class = {row['class_name']: row for row in report['completion_by_class']}
        self.assertEqual(by_class['Form 1']['total_charged'], Decimal('150.00'))
        self.assertEqual(by_class['Unassigned']['total_charged'], Decimal('250.00'))
        self.assertIsNone(by_class['Unassigned']['class_id'])
        self.assertEqual(by_class['Unassigned']['total_students'], 1)
        self.assertEqual(by_class['Unassigned']['students_paid_up'], 0)

    def test_completion_by_class_partitions_total_across_terms(self):
        term_two = Term.objects.create(
            school=self.school,
            session=self.session,
            number=2,
            start_date=datetime.date(2026, 5, 11),
            end_date=datetime.date(2026, 8, 7),
        )
        enroll_student(student=self.small, school_class=self.form_four, term=term_two)

        report = payment_completion_rates(school=self.school)

        self.assertEqual(report['total_charged'], Decimal('3400.00'))
        by_class = {row['class_name']: row for row in report['completion_by_class']}
        self.assertEqual(by_class['Form 1']['total_charged'], Decimal('150.00'))
        self.assertEqual(by_class['Form 4']['total_charged'], Decimal('3000.00'))
        self.assertEqual(by_class['Form 1']['total_paid'], Decimal('50.00'))
        self.assertEqual(
            sum(row['total_charged'] for row in report['completion_by_class']),
            report['total_charged'],
        )
        self.assertEqual(
            sum(row['total_paid'] for row in report['completion_by_class']),
            report['total_paid'],
        )

        term_two_report = payment_completion_rates(school=self.school, term=term_two)
        self.assertEqual(term_two_report['total_charged'], Decimal('1500.00'))
        self.assertEqual(
            [(row['class_name'], row['total_charged']) for row in term_two_report['completion_by_class']],
            [('Form 4', Decimal('1500.00'))],
        )

    def test_collection_efficiency_counts_refunds(self):
        refund_payment(payment=self.payment, amount=Decimal('20.00'), reason='Overcharged levy')
        today = timezone.localdate()

        report = collection_efficiency(
            school=self.school,
            date_from=today - timedelta(days=1),
            date_to=today + timedelta(days=1),
        )

        self.assertEqual(report['charges_billed'], Decimal('1900.00'))
        self.assertEqual(report['payments_collected'], Decimal('50.00'))
        self.assertEqual(report['refunds'], Decimal('20.00'))
        self.assertEqual(report['net_collected'], Decimal('30.00'))
        self.assertEqual(report['collection_rate'], Decimal('2.63'))
        self.assertEqual(report['students_paid'], 1)
        self.assertEqual(report['collected_by_category'], {'tuition': Decimal('50.00')})
        self.assertEqual(report['payment_methods'][0]['payment_method'], 'Cash')

    def test_collection_efficiency_outside_period_is_empty(self):
        report = collection_efficiency(
            school=self.school,
            date_from=datetime.date(2020, 1, 1),
            date_to=datetime.date(2020, 12, 31),
        )

        self.assertEqual(report['charges_billed'], Decimal('0.00'))
        self.assertEqual(report['collection_rate'], Decimal('0.00'))
        self.assertEqual(report['average_payment_per_student'], Decimal('0.00'))


class AnalyticsApiTests(AnalyticsFixtureMixin, TestCase):
    def setUp(self):
        self.build_analytics_school()
        user_model = get_user_model()
        user_model.objects.create_user(
            username='analytics_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )
        user_model.objects.create_user(
            username='analytics_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

    def test_accountant_reads_reports(self):
        self.client.login(username='analytics_accountant', password='pass12345')

        response = self.client.get(reverse('analytics_balances_by_class'), {'term_id': self.term.id})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['success'])
        self.assertEqual(response.json()['data']['total_outstanding'], '1850.00')

        health = self.client.get(reverse('analytics_financial_health')).json()['data']
        self.assertEqual(
            sum(Decimal(row['percentage']) for row in health['buckets']),
            Decimal('100.00'),
        )

        debt = self.client.get(reverse('analytics_debt_summary')).json()['data']
        self.assertEqual(debt['total_students_with_debt'], 3)

        completion = self.client.get(reverse('analytics_payment_completion'))
        self.assertEqual(completion.status_code, 200)
        self.assertEqual(completion.json()['data']['total_charged'], '1900.00')

    def test_balances_by_class_defaults_to_current_term(self):
        self.client.login(username='analytics_accountant', password='pass12345')
        response = self.client.get(reverse('analytics_balances_by_class'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['term'], 'Term 1 2026')

    def test_unknown_term_returns_400(self):
        self.client.login(username='analytics_accountant', password='pass12345')
        response = self.client.get(reverse('analytics_balances_by_class'), {'term': '9', 'academic_year': '2026'})

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])

    def test_collection_efficiency_rejects_inverted_period(self):
        self.client.login(username='analytics_accountant', password='pass12345')
        response = self.client.get(reverse('analytics_collection_efficiency'), {
            'start_date': '2026-05-01',
            'end_date': '2026-04-01',
        })
        self.assertEqual(response.status_code, 400)

        today = timezone.localdate()
        response = self.client.get(reverse('analytics_collection_efficiency'), {
            'start_date': (today - timedelta(days=1)).isoformat(),
            'end_date': today.isoformat(),
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['payments_collected'], '50.00')

    def test_staff_and_anonymous_are_refused(self):
        self.assertEqual(self.client.get(reverse('analytics_debt_summary')).status_code, 401)

        self.client.login(username='analytics_staff', password='pass12345')
        self.assertEqual(self.client.get(reverse('analytics_debt_summary')).status_code, 403)
