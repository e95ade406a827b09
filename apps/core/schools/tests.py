import datetime

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse

from apps.core.academic_sessions.models import AcademicSession
from apps.core.accounting.models import ChartOfAccount, Currency
from apps.core.schools.models import School
from apps.core.schools.services import onboard_school
from apps.core.users.models import AuditLog


class SchoolOnboardingTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.superadmin = self.user_model.objects.create_user(
            username='superadmin1',
            password='pass12345',
            role='superadmin',
        )

    def _payload(self, **overrides):
        payload = {
            'school_name': 'Beta School',
            'school_code': 'Beta Main',
            'school_timezone': 'Africa/Harare',
            'school_address': 'Main Road',
            'school_phone': '0771234567',
            'school_email': 'beta@example.com',
            'base_currency': 'usd',
            'admin_username': 'beta_admin',
            'admin_email': 'beta_admin@example.com',
            'admin_password': 'pass12345',
            'session_name': '2026',
            'session_start_date': '2026-01-05',
            'session_end_date': '2026-12-04',
        }
        payload.update(overrides)
        return payload

    def test_onboard_school_service_prepares_ledger(self):
        result = onboard_school(
            name='Gamma School',
            admin_username='gamma_admin',
            admin_password='pass12345',
            base_currency='zar',
            session_name='2026',
            session_start_date=datetime.date(2026, 1, 5),
            session_end_date=datetime.date(2026, 12, 4),
        )

        school = result['school']
        self.assertEqual(school.code, 'gamma_school')
        self.assertEqual(result['base_currency'].code, 'ZAR')
        self.assertEqual(result['base_currency'].name, 'South African Rand')
        self.assertTrue(Currency.objects.get(school=school, code='ZAR').is_base)
        self.assertTrue(ChartOfAccount.objects.filter(school=school, code='1100').exists())
        self.assertTrue(ChartOfAccount.objects.filter(school=school, code='4000').exists())
        self.assertEqual(school.current_session_id, result['session'].id)
        self.assertEqual(result['admin_user'].role, 'schooladmin')
        self.assertEqual(result['admin_user'].school_id, school.id)

    def test_onboarding_without_currency_uses_default(self):
        result = onboard_school(name='Delta School', admin_username='delta_admin', admin_password='pass12345')

        self.assertEqual(result['base_currency'].code, 'USD')
        self.assertIsNone(result['session'])

    def test_superadmin_can_onboard_school_over_api(self):
        self.client.login(username='superadmin1', password='pass12345')
        response = self.client.post(reverse('school_list'), self._payload(), content_type='application/json')

        self.assertEqual(response.status_code, 201)
        data = response.json()['data']
        self.assertEqual(data['code'], 'beta_main')
        self.assertEqual(data['base_currency'], 'USD')
        self.assertEqual(data['admin_username'], 'beta_admin')
        self.assertEqual(data['current_session'], '2026')

        school = School.objects.get(name='Beta School')
        session = AcademicSession.objects.get(school=school, name='2026')
        self.assertTrue(session.is_active)
        self.assertEqual(self.user_model.objects.get(username='beta_admin').school_id, school.id)
        self.assertTrue(AuditLog.objects.filter(action='school.onboarded', school=school).exists())

        listing = self.client.get(reverse('school_list')).json()['data']
        self.assertEqual([row['name'] for row in listing], ['Beta School'])
        self.assertEqual(listing[0]['total_users'], 1)

    def test_onboarding_validates_payload(self):
        self.client.login(username='superadmin1', password='pass12345')
        response = self.client.post(
            reverse('school_list'),
            self._payload(base_currency='dollars', session_end_date='2025-12-01', admin_username='superadmin1'),
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 400)
        errors = response.json()['errors']
        self.assertIn('base_currency', errors)
        self.assertIn('session_end_date', errors)
        self.assertIn('admin_username', errors)
        self.assertFalse(School.objects.exists())

    def test_school_admin_cannot_onboard_schools(self):
        school = School.objects.create(name='Existing School')
        self.user_model.objects.create_user(
            username='existing_admin',
            password='pass12345',
            role='schooladmin',
            school=school,
        )
        self.client.login(username='existing_admin', password='pass12345')

        response = self.client.post(reverse('school_list'), self._payload(), content_type='application/json')
        self.assertEqual(response.status_code, 403)
        self.assertFalse(School.objects.filter(name='Beta School').exists())


class CurrentSchoolTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Current School', code='current_school')
        self.user_model.objects.create_user(
            username='current_admin',
            password='pass12345',
            role='schooladmin',
            school=self.school,
        )
        self.user_model.objects.create_user(
            username='current_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

    def test_staff_reads_current_school(self):
        self.client.login(username='current_staff', password='pass12345')
        response = self.client.get(reverse('school_current'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['code'], 'current_school')
        self.assertIsNone(response.json()['data']['current_term'])

        patch = self.client.patch(reverse('school_current'), {'phone': '123'}, content_type='application/json')
        self.assertEqual(patch.status_code, 403)

    def test_school_admin_updates_contact_details(self):
        self.client.login(username='current_admin', password='pass12345')
        response = self.client.patch(
            reverse('school_current'),
            {'phone': '0242700000', 'email': 'office@current.example.com'},
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 200)
        self.school.refresh_from_db()
        self.assertEqual(self.school.phone, '0242700000')
        self.assertEqual(self.school.name, 'Current School')
        self.assertTrue(AuditLog.objects.filter(action='school.updated', school=self.school).exists())

    def test_invalid_email_is_rejected(self):
        self.client.login(username='current_admin', password='pass12345')
        response = self.client.patch(
            reverse('school_current'),
            {'email': 'not-an-email'},
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn('email', response.json()['errors'])

    def test_inactive_school_blocks_api_access(self):
        self.school.is_active = False
        self.school.save(update_fields=['is_active'])
        self.client.login(username='current_admin', password='pass12345')

        self.assertEqual(self.client.get(reverse('school_current')).status_code, 403)
