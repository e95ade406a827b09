from datetime import timedelta

from django.conf import settings
from django.contrib.auth import get_user_model
from django.test import Client, TestCase
from django.urls import reverse
from django.utils import timezone

from apps.core.schools.models import School
from apps.core.users.models import ApiToken, AuditLog, hash_token_key


class ApiTokenAuthTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Token School', code='token_school')
        self.accountant = self.user_model.objects.create_user(
            username='token_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )

    def _login(self, username='token_accountant', password='pass12345'):
        return self.client.post(
            reverse('api_login'),
            {'username': username, 'password': password},
            content_type='application/json',
        )

    def test_login_issues_bearer_token(self):
        response = self._login()

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['data']['token_type'], 'Bearer')
        self.assertEqual(body['data']['user']['role'], 'accountant')

        raw_key = body['data']['token']
        token = ApiToken.objects.get(user=self.accountant)
        self.assertEqual(token.key_digest, hash_token_key(raw_key))
        self.assertEqual(token.prefix, raw_key[:8])
        self.assertTrue(
            AuditLog.objects.filter(action='user.login', user=self.accountant, school=self.school).exists()
        )

    def test_bearer_token_authenticates_requests(self):
        raw_key = self._login().json()['data']['token']
        self.client.logout()

        response = self.client.get(reverse('api_me'), HTTP_AUTHORIZATION=f'Bearer {raw_key}')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['username'], 'token_accountant')
        self.assertIsNotNone(ApiToken.objects.get(user=self.accountant).last_used_at)

    def test_wrong_password_returns_401(self):
        response = self._login(password='wrong-password')

        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])
        self.assertFalse(ApiToken.objects.exists())

    def test_missing_credentials_return_field_errors(self):
        response = self.client.post(reverse('api_login'), {}, content_type='application/json')

        self.assertEqual(response.status_code, 400)
        self.assertIn('username', response.json()['errors'])

    def test_invalid_or_expired_token_is_rejected(self):
        self.assertEqual(
            self.client.get(reverse('api_me'), HTTP_AUTHORIZATION='Bearer not-a-real-key').status_code,
            401,
        )

        token, raw_key = ApiToken.issue(self.accountant)
        ApiToken.objects.filter(pk=token.pk).update(expires_at=timezone.now() - timedelta(minutes=1))
        response = self.client.get(reverse('api_me'), HTTP_AUTHORIZATION=f'Bearer {raw_key}')
        self.assertEqual(response.status_code, 401)

    def test_logout_revokes_token(self):
        raw_key = self._login().json()['data']['token']
        self.client.logout()
        headers = {'HTTP_AUTHORIZATION': f'Bearer {raw_key}'}

        response = self.client.post(reverse('api_logout'), **headers)
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(ApiToken.objects.get(user=self.accountant).revoked_at)
        self.assertTrue(AuditLog.objects.filter(action='user.logout', user=self.accountant).exists())

        self.assertEqual(self.client.get(reverse('api_me'), **headers).status_code, 401)

    def test_session_logout_without_token_returns_400(self):
        self.client.login(username='token_accountant', password='pass12345')
        response = self.client.post(reverse('api_logout'))
        self.assertEqual(response.status_code, 400)

    def test_session_writes_require_csrf_token_but_bearer_writes_do_not(self):
        browser = Client(enforce_csrf_checks=True)
        browser.login(username='token_accountant', password='pass12345')

        self.assertEqual(browser.get(reverse('api_me')).status_code, 200)
        rejected = browser.post(reverse('api_logout'))
        self.assertEqual(rejected.status_code, 403)
        self.assertIn('CSRF verification failed', rejected.json()['message'])

        secret = 'a' * 32
        browser.cookies[settings.CSRF_COOKIE_NAME] = secret
        accepted = browser.post(reverse('api_logout'), HTTP_X_CSRFTOKEN=secret)
        self.assertEqual(accepted.status_code, 400)
        self.assertEqual(accepted.json()['message'], 'Logout requires a bearer token.')

        raw_key = browser.post(
            reverse('api_login'),
            {'username': 'token_accountant', 'password': 'pass12345'},
            content_type='application/json',
        ).json()['data']['token']
        response = Client(enforce_csrf_checks=True).post(
            reverse('api_logout'),
            HTTP_AUTHORIZATION=f'Bearer {raw_key}',
        )
        self.assertEqual(response.status_code, 200)

    def test_inactive_user_token_stops_working(self):
        token, raw_key = ApiToken.issue(self.accountant)
        self.accountant.is_active = False
        self.accountant.save(update_fields=['is_active'])

        response = self.client.get(reverse('api_me'), HTTP_AUTHORIZATION=f'Bearer {raw_key}')
        self.assertEqual(response.status_code, 401)


class UserManagementTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Users School', code='users_school')
        self.other_school = School.objects.create(name='Other School', code='other_users_school')
        self.school_admin = self.user_model.objects.create_user(
            username='users_admin',
            password='pass12345',
            role='schooladmin',
            school=self.school,
        )
        self.staff = self.user_model.objects.create_user(
            username='users_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )
        self.user_model.objects.create_user(
            username='other_admin',
            password='pass12345',
            role='schooladmin',
            school=self.other_school,
        )

    def test_non_superadmin_requires_school(self):
        with self.assertRaises(ValueError):
            self.user_model.objects.create_user(username='orphan', password='pass12345', role='staff')

        superadmin = self.user_model.objects.create_superuser('root', 'root@example.com', 'pass12345')
        self.assertEqual(superadmin.role, 'superadmin')
        self.assertIsNone(superadmin.school_id)

    def test_school_admin_creates_user_in_own_school(self):
        self.client.login(username='users_admin', password='pass12345')
        response = self.client.post(reverse('api_user_list'), {
            'username': 'new_accountant',
            'password': 'Ledger-Key-2026',
            'role': 'accountant',
        }, content_type='application/json')

        self.assertEqual(response.status_code, 201)
        created = self.user_model.objects.get(username='new_accountant')
        self.assertEqual(created.school_id, self.school.id)
        self.assertEqual(created.role, 'accountant')
        self.assertTrue(
            AuditLog.objects.filter(action='users.user_created', school=self.school, target_id=str(created.id)).exists()
        )

    def test_school_admin_cannot_create_superadmin(self):
        self.client.login(username='users_admin', password='pass12345')
        response = self.client.post(reverse('api_user_list'), {
            'username': 'sneaky',
            'password': 'Ledger-Key-2026',
            'role': 'superadmin',
        }, content_type='application/json')

        self.assertEqual(response.status_code, 400)
        self.assertIn('role', response.json()['errors'])

    def test_user_list_is_scoped_to_school(self):
        self.client.login(username='users_admin', password='pass12345')
        response = self.client.get(reverse('api_user_list'))

        self.assertEqual(response.status_code, 200)
        usernames = {row['username'] for row in response.json()['data']}
        self.assertEqual(usernames, {'users_admin', 'users_staff'})
        self.assertEqual(response.json()['pagination']['total_items'], 2)

    def test_staff_cannot_manage_users(self):
        self.client.login(username='users_staff', password='pass12345')
        self.assertEqual(self.client.get(reverse('api_user_list')).status_code, 403)
        self.assertEqual(self.client.get(reverse('api_audit_log_list')).status_code, 403)

    def test_audit_log_list_filters_by_action(self):
        self.client.login(username='users_staff', password='pass12345')
        self.client.login(username='users_admin', password='pass12345')

        response = self.client.get(reverse('api_audit_log_list'), {'action': 'user.login'})

        self.assertEqual(response.status_code, 200)
        users = {row['user'] for row in response.json()['data']}
        self.assertEqual(users, {'users_staff', 'users_admin'})
        self.assertTrue(all(row['action'] == 'user.login' for row in response.json()['data']))
