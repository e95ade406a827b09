from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse

from apps.core.academics.models import SchoolClass
from apps.core.schools.models import School


class SchoolClassApiTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.school = School.objects.create(name='Class School', code='class_school')
        self.other_school = School.objects.create(name='Other School', code='other_school')
        self.admin = self.user_model.objects.create_user(
            username='class_admin',
            password='pass12345',
            role='schooladmin',
            school=self.school,
        )
        self.staff = self.user_model.objects.create_user(
            username='class_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

    def test_school_admin_can_create_update_and_deactivate_class(self):
        self.client.login(username='class_admin', password='pass12345')

        response = self.client.post(
            reverse('class_list'),
            {'name': 'Form 1', 'stream': 'East', 'display_order': 1},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 201)
        data = response.json()['data']
        self.assertEqual(data['display_name'], 'Form 1 (East)')
        self.assertTrue(data['is_active'])

        response = self.client.patch(
            reverse('class_detail', args=[data['id']]),
            {'code': 'F1E'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['code'], 'F1E')
        self.assertEqual(response.json()['data']['stream'], 'East')

        response = self.client.delete(reverse('class_detail', args=[data['id']]))
        self.assertEqual(response.status_code, 200)
        self.assertFalse(SchoolClass.objects.get(pk=data['id']).is_active)

    def test_duplicate_class_stream_is_rejected(self):
        SchoolClass.objects.create(school=self.school, name='Form 2', stream='West')
        self.client.login(username='class_admin', password='pass12345')
        response = self.client.post(
            reverse('class_list'),
            {'name': 'Form 2', 'stream': 'West'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()['success'])

    def test_class_from_other_school_returns_json_404(self):
        foreign = SchoolClass.objects.create(school=self.other_school, name='Form 3')
        self.client.login(username='class_admin', password='pass12345')
        response = self.client.get(reverse('class_detail', args=[foreign.id]))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'success': False, 'message': 'Resource not found.'})

    def test_staff_is_read_only(self):
        SchoolClass.objects.create(school=self.school, name='Form 4')
        self.client.login(username='class_staff', password='pass12345')

        response = self.client.get(reverse('class_list'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()['data']), 1)

        response = self.client.post(
            reverse('class_list'),
            {'name': 'Form 5'},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 403)

    def test_anonymous_request_gets_401(self):
        response = self.client.get(reverse('class_list'))
        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])
