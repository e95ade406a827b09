from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import IntegrityError
from django.test import TestCase
from django.urls import reverse

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.academic_sessions.services import activate_term, parse_term_number, resolve_term
from apps.core.schools.models import School


class AcademicSessionLifecycleTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Session School', code='session_school')
        self.school_admin = self.user_model.objects.create_user(
            username='session_admin',
            password='pass12345',
            role='schooladmin',
            school=self.school,
        )
        self.accountant = self.user_model.objects.create_user(
            username='session_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )

        self.session_one = AcademicSession.objects.create(
            school=self.school,
            name='2025',
            start_date='2025-01-06',
            end_date='2025-12-05',
            is_active=True,
        )
        self.session_two = AcademicSession.objects.create(
            school=self.school,
            name='2026',
            start_date='2026-01-05',
            end_date='2026-12-04',
            is_active=False,
        )
        self.school.current_session = self.session_one
        self.school.save(update_fields=['current_session'])

    def test_session_activate_switches_active_and_current_session(self):
        self.client.login(username='session_admin', password='pass12345')
        response = self.client.post(reverse('session_activate', args=[self.session_two.id]))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['success'])

        self.session_one.refresh_from_db()
        self.session_two.refresh_from_db()
        self.school.refresh_from_db()

        self.assertFalse(self.session_one.is_active)
        self.assertTrue(self.session_two.is_active)
        self.assertEqual(self.school.current_session_id, self.session_two.id)

    def test_session_create_validates_dates(self):
        self.client.login(username='session_admin', password='pass12345')
        response = self.client.post(
            reverse('session_list'),
            {'name': '2027', 'start_date': '2027-12-01', 'end_date': '2027-01-01'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body['success'])
        self.assertIn('end_date', body['errors'])

    def test_session_activate_rejects_get(self):
        self.client.login(username='session_admin', password='pass12345')
        response = self.client.get(reverse('session_activate', args=[self.session_two.id]))
        self.assertEqual(response.status_code, 405)

    def test_accountant_can_list_but_not_create_sessions(self):
        self.client.login(username='session_accountant', password='pass12345')
        response = self.client.get(reverse('session_list'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()['data']), 2)

        response = self.client.post(
            reverse('session_list'),
            {'name': '2027', 'start_date': '2027-01-04', 'end_date': '2027-12-03'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 403)

    def test_term_create_and_activate(self):
        self.client.login(username='session_admin', password='pass12345')
        response = self.client.post(
            reverse('term_list', args=[self.session_two.id]),
            {'number': 1, 'start_date': '2026-01-05', 'end_date': '2026-04-02'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 201)
        term_id = response.json()['data']['id']
        self.assertEqual(response.json()['data']['label'], 'Term 1 2026')

        response = self.client.post(reverse('term_activate', args=[term_id]))
        self.assertEqual(response.status_code, 200)

        self.school.refresh_from_db()
        self.assertEqual(self.school.current_term_id, term_id)
        self.assertEqual(self.school.current_session_id, self.session_two.id)

    def test_term_outside_session_is_rejected(self):
        self.client.login(username='session_admin', password='pass12345')
        response = self.client.post(
            reverse('term_list', args=[self.session_two.id]),
            {'number': 2, 'start_date': '2025-05-01', 'end_date': '2025-08-01'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)


class TermResolutionTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Term School')
        self.session = AcademicSession.objects.create(
            school=self.school,
            name='2026',
            start_date='2026-01-05',
            end_date='2026-12-04',
            is_active=True,
        )
        self.term_one = Term.objects.create(
            school=self.school,
            session=self.session,
            number=1,
            start_date='2026-01-05',
            end_date='2026-04-02',
        )
        self.term_two = Term.objects.create(
            school=self.school,
            session=self.session,
            number=2,
            start_date='2026-05-04',
            end_date='2026-08-06',
        )

    def test_parse_term_number_accepts_common_formats(self):
        self.assertEqual(parse_term_number('Term 2'), 2)
        self.assertEqual(parse_term_number('term3'), 3)
        self.assertEqual(parse_term_number(1), 1)
        with self.assertRaises(ValidationError):
            parse_term_number('Semester A')

    def test_resolve_term_by_label_and_year(self):
        self.assertEqual(resolve_term(school=self.school, term='Term 2', academic_year='2026'), self.term_two)
        with self.assertRaises(ValidationError):
            resolve_term(school=self.school, term='Term 3', academic_year='2026')

    def test_resolve_term_defaults_to_current_term(self):
        with self.assertRaises(ValidationError):
            resolve_term(school=self.school)

        activate_term(school=self.school, term=self.term_one)
        self.assertEqual(resolve_term(school=self.school), self.term_one)

    def test_activate_term_moves_current_flag(self):
        activate_term(school=self.school, term=self.term_one)
        activate_term(school=self.school, term=self.term_two)

        self.term_one.refresh_from_db()
        self.assertFalse(self.term_one.is_current)
        self.assertEqual(Term.objects.filter(school=self.school, is_current=True).count(), 1)


class AcademicSessionConstraintTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Constraint School', code='constraint_school')

    def test_only_one_active_session_allowed_per_school(self):
        AcademicSession.objects.create(
            school=self.school,
            name='2025',
            start_date='2025-01-06',
            end_date='2025-12-05',
            is_active=True,
        )
        with self.assertRaises(IntegrityError):
            AcademicSession.objects.create(
                school=self.school,
                name='2026',
                start_date='2026-01-05',
                end_date='2026-12-04',
                is_active=True,
            )
