import datetime
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.services import ensure_chart_of_accounts
from apps.core.fees.ledger import current_balance
from apps.core.fees.models import StudentTransaction
from apps.core.fees.services import collect_payment, save_invoice_structure
from apps.core.schools.models import School

from .models import ClassEnrollment, Student
from .services import enroll_student, withdraw_enrollment


class EnrollmentServiceTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Enrollment School', code='enrollment_school')
        ensure_chart_of_accounts(self.school)
        self.session = AcademicSession.objects.create(
            school=self.school,
            name='2026',
            start_date=datetime.date(2026, 1, 5),
            end_date=datetime.date(2026, 12, 4),
            is_active=True,
        )
        self.term = Term.objects.create(
            school=self.school,
            session=self.session,
            number=1,
            start_date=datetime.date(2026, 1, 12),
            end_date=datetime.date(2026, 4, 10),
            is_current=True,
        )
        self.next_term = Term.objects.create(
            school=self.school,
            session=self.session,
            number=2,
            start_date=datetime.date(2026, 5, 11),
            end_date=datetime.date(2026, 8, 7),
        )
        self.school_class = SchoolClass.objects.create(school=self.school, name='Form 2')
        save_invoice_structure(
            school=self.school,
            school_class=self.school_class,
            term=self.term,
            total_amount='480.00',
        )
        self.student = Student.objects.create(
            school=self.school,
            admission_number='ENR001',
            first_name='Chipo',
            last_name='Dube',
            gender=Student.GENDER_FEMALE,
        )

    def test_enrollment_bills_tuition_once(self):
        enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.term)

        self.assertEqual(enrollment.status, ClassEnrollment.STATUS_ACTIVE)
        self.assertEqual(enrollment.tuition_assignment.amount, Decimal('480.00'))
        self.assertEqual(current_balance(self.student), Decimal('-480.00'))

        with self.assertRaises(ValidationError):
            enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        self.assertEqual(
            StudentTransaction.objects.filter(
                student=self.student,
                category=StudentTransaction.CATEGORY_TUITION_INVOICE,
            ).count(),
            1,
        )

    def test_later_term_falls_back_to_latest_structure(self):
        enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.next_term)

        self.assertEqual(enrollment.tuition_assignment.amount, Decimal('480.00'))
        self.assertEqual(current_balance(self.student), Decimal('-960.00'))

    def test_class_without_structure_cannot_enroll(self):
        bare_class = SchoolClass.objects.create(school=self.school, name='Form 5')
        with self.assertRaises(ValidationError):
            enroll_student(student=self.student, school_class=bare_class, term=self.term)
        self.assertFalse(ClassEnrollment.objects.filter(student=self.student).exists())
        self.assertEqual(current_balance(self.student), Decimal('0.00'))

    def test_inactive_student_cannot_enroll(self):
        self.student.is_active = False
        self.student.save(update_fields=['is_active'])
        with self.assertRaises(ValidationError):
            enroll_student(student=self.student, school_class=self.school_class, term=self.term)

    def test_withdrawal_reverses_unpaid_charge(self):
        enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        result = withdraw_enrollment(enrollment=enrollment, reason='Moved away')

        self.assertTrue(result['charge_reversed'])
        self.assertEqual(result['enrollment'].status, ClassEnrollment.STATUS_WITHDRAWN)
        self.assertEqual(current_balance(self.student), Decimal('0.00'))
        self.assertTrue(
            StudentTransaction.objects.filter(
                student=self.student,
                category=StudentTransaction.CATEGORY_REVERSAL,
                description__contains='Moved away',
            ).exists()
        )

        with self.assertRaises(ValidationError):
            withdraw_enrollment(enrollment=enrollment)

    def test_withdrawal_keeps_charge_with_payments(self):
        enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        collect_payment(student=self.student, amount=Decimal('100.00'), payment_method='Cash')

        result = withdraw_enrollment(enrollment=enrollment, reason='Transferred')

        self.assertFalse(result['charge_reversed'])
        self.assertEqual(current_balance(self.student), Decimal('-380.00'))

    def test_withdrawal_keeps_charge_outside_reversal_window(self):
        enrollment = enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        StudentTransaction.objects.filter(pk=enrollment.tuition_assignment.transaction_id).update(
            created_at=timezone.now() - timedelta(days=60),
        )

        result = withdraw_enrollment(enrollment=enrollment)

        self.assertFalse(result['charge_reversed'])
        self.assertEqual(current_balance(self.student), Decimal('-480.00'))

    def test_student_delete_is_soft(self):
        self.student.delete()
        self.student.refresh_from_db()
        self.assertFalse(self.student.is_active)


class StudentApiTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.school = School.objects.create(name='Student Api School', code='student_api')
        ensure_chart_of_accounts(self.school)
        session = AcademicSession.objects.create(
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

        self.school_class = SchoolClass.objects.create(school=self.school, name='Grade 6', stream='Blue')
        save_invoice_structure(
            school=self.school,
            school_class=self.school_class,
            term=self.term,
            total_amount='350.00',
        )
        self.student = Student.objects.create(
            school=self.school,
            admission_number='STU001',
            first_name='Farai',
            last_name='Ncube',
        )

        self.admin = user_model.objects.create_user(
            username='students_admin',
            password='pass12345',
            role='schooladmin',
            school=self.school,
        )
        self.accountant = user_model.objects.create_user(
            username='students_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )

    def _post(self, url, payload):
        return self.client.post(url, payload, content_type='application/json')

    def test_admin_creates_student_with_uppercase_admission_number(self):
        self.client.login(username='students_admin', password='pass12345')
        response = self._post(reverse('student_list'), {
            'admission_number': 'stu002',
            'first_name': 'Tariro',
            'last_name': 'Sibanda',
            'gender': 'female',
        })

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['admission_number'], 'STU002')

        duplicate = self._post(reverse('student_list'), {'admission_number': 'STU002', 'first_name': 'Again'})
        self.assertEqual(duplicate.status_code, 400)
        self.assertFalse(duplicate.json()['success'])
        self.assertEqual(Student.objects.filter(admission_number='STU002').count(), 1)

    def test_accountant_cannot_create_students(self):
        self.client.login(username='students_accountant', password='pass12345')
        response = self._post(reverse('student_list'), {'admission_number': 'X1', 'first_name': 'No'})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get(reverse('student_list')).status_code, 200)

    def test_enrollment_endpoint_bills_and_withdraws(self):
        self.client.login(username='students_accountant', password='pass12345')
        response = self._post(reverse('enrollment_list'), {
            'student': self.student.id,
            'school_class': self.school_class.id,
        })

        self.assertEqual(response.status_code, 201)
        data = response.json()['data']
        self.assertEqual(data['term'], self.term.id)
        self.assertEqual(data['amount_billed'], '350.00')

        detail = self.client.get(reverse('student_detail', args=[self.student.id])).json()['data']
        self.assertEqual(detail['outstanding'], '350.00')

        withdrawn = self._post(reverse('enrollment_withdraw', args=[data['id']]), {'reason': 'Left school'})
        self.assertEqual(withdrawn.status_code, 200)
        self.assertTrue(withdrawn.json()['data']['charge_reversed'])
        self.assertEqual(current_balance(self.student), Decimal('0.00'))

    def test_enrollment_without_structure_returns_400(self):
        self.client.login(username='students_accountant', password='pass12345')
        bare_class = SchoolClass.objects.create(school=self.school, name='Grade 9')
        response = self._post(reverse('enrollment_list'), {
            'student': self.student.id,
            'school_class': bare_class.id,
            'term': self.term.id,
        })

        self.assertEqual(response.status_code, 400)
        self.assertIn('No invoice structure', response.json()['message'])
        self.assertFalse(ClassEnrollment.objects.exists())

    def test_student_search_and_class_filter(self):
        enroll_student(student=self.student, school_class=self.school_class, term=self.term)
        Student.objects.create(school=self.school, admission_number='STU009', first_name='Other')
        self.client.login(username='students_admin', password='pass12345')

        by_search = self.client.get(reverse('student_list'), {'search': 'ncube'}).json()
        self.assertEqual([row['id'] for row in by_search['data']], [self.student.id])

        by_class = self.client.get(reverse('student_list'), {'class_id': self.school_class.id}).json()
        self.assertEqual(by_class['pagination']['total_items'], 1)
