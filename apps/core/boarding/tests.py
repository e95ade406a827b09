import datetime
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.test import TestCase
from django.urls import reverse

from apps.core.academic_sessions.models import AcademicSession, Term
from apps.core.accounting.services import ensure_chart_of_accounts, get_base_currency
from apps.core.fees.ledger import current_balance
from apps.core.fees.models import FeePayment, StudentFeeAssignment
from apps.core.fees.services import collect_payment
from apps.core.schools.models import School
from apps.core.students.models import Student

from .models import BoardingEnrollment, BoardingFee, BoardingFeesPayment, Hostel, Room
from .services import check_in_boarder, check_out_boarder, enroll_boarder, withdraw_boarder


class BoardingTestMixin:
    def build_boarding(self):
        self.school = School.objects.create(name='Boarding School', code='boarding_school')
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

        self.hostel = Hostel.objects.create(
            school=self.school,
            name='Kariba House',
            gender=Hostel.GENDER_BOYS,
            capacity=2,
        )
        self.room = Room.objects.create(
            school=self.school,
            hostel=self.hostel,
            room_number='K1',
            capacity=4,
        )
        self.fee = BoardingFee.objects.create(
            school=self.school,
            hostel=self.hostel,
            term=self.term,
            currency=get_base_currency(self.school),
            amount=Decimal('300.00'),
        )
        self.boy = Student.objects.create(
            school=self.school,
            admission_number='BRD001',
            first_name='Tatenda',
            gender=Student.GENDER_MALE,
        )
        self.girl = Student.objects.create(
            school=self.school,
            admission_number='BRD002',
            first_name='Rumbi',
            gender=Student.GENDER_FEMALE,
        )


class BoardingServiceTests(BoardingTestMixin, TestCase):
    def setUp(self):
        self.build_boarding()

    def test_enrollment_bills_boarding_fee(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)

        assignment = enrollment.fee_assignment
        self.assertEqual(assignment.category, StudentFeeAssignment.CATEGORY_BOARDING)
        self.assertEqual(assignment.amount, Decimal('300.00'))
        self.assertEqual(assignment.description, 'Boarding Enrollment - Kariba House (Term 1 2026)')
        self.assertEqual(current_balance(self.boy), Decimal('-300.00'))

        lines = {line.account.code: line for line in assignment.transaction.journal_entry.lines.all()}
        self.assertEqual(lines['1110'].debit, Decimal('300.00'))
        self.assertEqual(lines['4100'].credit, Decimal('300.00'))
        self.assertEqual(self.hostel.occupancy(self.term), 1)

    def test_hostel_gender_is_enforced(self):
        with self.assertRaises(ValidationError):
            enroll_boarder(student=self.girl, room=self.room, term=self.term)

        mixed = Hostel.objects.create(school=self.school, name='Mixed House', capacity=5)
        mixed_room = Room.objects.create(school=self.school, hostel=mixed, room_number='M1', capacity=5)
        BoardingFee.objects.create(
            school=self.school,
            hostel=mixed,
            term=self.term,
            currency=get_base_currency(self.school),
            amount=Decimal('250.00'),
        )
        enrollment = enroll_boarder(student=self.girl, room=mixed_room, term=self.term)
        self.assertEqual(enrollment.status, BoardingEnrollment.STATUS_ACTIVE)

    def test_hostel_capacity_is_enforced(self):
        second = Student.objects.create(
            school=self.school,
            admission_number='BRD003',
            first_name='Kuda',
            gender=Student.GENDER_MALE,
        )
        third = Student.objects.create(
            school=self.school,
            admission_number='BRD004',
            first_name='Simba',
            gender=Student.GENDER_MALE,
        )
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        enroll_boarder(student=second, room=self.room, term=self.term)

        with self.assertRaises(ValidationError):
            enroll_boarder(student=third, room=self.room, term=self.term)
        self.assertEqual(current_balance(third), Decimal('0.00'))

    def test_room_capacity_is_enforced(self):
        single = Room.objects.create(
            school=self.school,
            hostel=self.hostel,
            room_number='K2',
            room_type=Room.TYPE_SINGLE,
            capacity=1,
        )
        second = Student.objects.create(
            school=self.school,
            admission_number='BRD006',
            first_name='Farai',
            gender=Student.GENDER_MALE,
        )
        enroll_boarder(student=self.boy, room=single, term=self.term)

        with self.assertRaisesMessage(ValidationError, 'Room K2 in Kariba House is full'):
            enroll_boarder(student=second, room=single, term=self.term)
        self.assertEqual(current_balance(second), Decimal('0.00'))

        enrollment = enroll_boarder(student=second, room=self.room, term=self.term)
        self.assertEqual(enrollment.room, self.room)
        self.assertEqual(single.occupancy(self.term), 1)
        self.assertEqual(self.room.occupancy(self.term), 1)

    def test_inactive_room_blocks_enrollment(self):
        self.room.is_active = False
        self.room.save(update_fields=['is_active'])
        with self.assertRaises(ValidationError):
            enroll_boarder(student=self.boy, room=self.room, term=self.term)
        self.assertFalse(BoardingEnrollment.objects.exists())

    def test_check_in_and_check_out_free_the_bed_but_keep_the_charge(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)

        enrollment = check_in_boarder(enrollment=enrollment, check_in_date=datetime.date(2026, 1, 12))
        self.assertEqual(enrollment.status, BoardingEnrollment.STATUS_CHECKED_IN)
        self.assertEqual(self.room.occupancy(self.term), 1)
        with self.assertRaises(ValidationError):
            check_in_boarder(enrollment=enrollment)
        with self.assertRaises(ValidationError):
            check_out_boarder(enrollment=enrollment, check_out_date=datetime.date(2026, 1, 11))

        enrollment = check_out_boarder(
            enrollment=enrollment,
            check_out_date=datetime.date(2026, 4, 10),
            reason='End of term',
        )
        self.assertEqual(enrollment.status, BoardingEnrollment.STATUS_CHECKED_OUT)
        self.assertEqual(enrollment.checked_out_on, datetime.date(2026, 4, 10))
        self.assertEqual(self.room.occupancy(self.term), 0)
        self.assertEqual(self.hostel.occupancy(self.term), 0)
        self.assertEqual(current_balance(self.boy), Decimal('-300.00'))

        with self.assertRaises(ValidationError):
            check_out_boarder(enrollment=enrollment)
        with self.assertRaises(ValidationError):
            withdraw_boarder(enrollment=enrollment)

    def test_check_out_requires_check_in(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        with self.assertRaises(ValidationError):
            check_out_boarder(enrollment=enrollment)

    def test_checked_in_boarder_can_be_withdrawn(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        check_in_boarder(enrollment=enrollment)

        result = withdraw_boarder(enrollment=enrollment, reason='Transferred')
        self.assertTrue(result['charge_reversed'])
        self.assertEqual(self.room.occupancy(self.term), 0)

    def test_room_with_boarders_cannot_be_deleted(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        with self.assertRaises(ValidationError):
            self.room.delete()

        withdraw_boarder(enrollment=enrollment)
        self.room.delete()
        self.room.refresh_from_db()
        self.assertFalse(self.room.is_active)

    def test_one_active_boarding_enrollment_per_term(self):
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        with self.assertRaises(ValidationError):
            enroll_boarder(student=self.boy, room=self.room, term=self.term)

    def test_missing_boarding_fee_blocks_enrollment(self):
        self.fee.delete()
        with self.assertRaises(ValidationError):
            enroll_boarder(student=self.boy, room=self.room, term=self.term)
        self.assertFalse(BoardingEnrollment.objects.exists())

    def test_withdrawal_reverses_unpaid_boarding_charge(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        result = withdraw_boarder(enrollment=enrollment, reason='Became a day scholar')

        self.assertTrue(result['charge_reversed'])
        self.assertEqual(result['enrollment'].status, BoardingEnrollment.STATUS_WITHDRAWN)
        self.assertEqual(current_balance(self.boy), Decimal('0.00'))
        self.assertEqual(self.hostel.occupancy(self.term), 0)

    def test_withdrawal_keeps_paid_boarding_charge(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        collect_payment(
            student=self.boy,
            amount=Decimal('120.00'),
            payment_method='Cash',
            category=FeePayment.CATEGORY_BOARDING,
            hostel=self.hostel,
        )

        result = withdraw_boarder(enrollment=enrollment)
        self.assertFalse(result['charge_reversed'])
        self.assertEqual(current_balance(self.boy), Decimal('-180.00'))

    def test_boarding_payment_needs_hostel(self):
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        with self.assertRaises(ValidationError):
            collect_payment(
                student=self.boy,
                amount=Decimal('50.00'),
                payment_method='Cash',
                category=FeePayment.CATEGORY_BOARDING,
            )

    def test_boarding_payment_proxy_lists_only_boarding(self):
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        boarding = collect_payment(
            student=self.boy,
            amount=Decimal('100.00'),
            payment_method='momo',
            category=FeePayment.CATEGORY_BOARDING,
            hostel=self.hostel,
        )
        collect_payment(student=self.boy, amount=Decimal('20.00'), payment_method='Cash')

        self.assertEqual(list(BoardingFeesPayment.objects.values_list('id', flat=True)), [boarding.id])
        self.assertTrue(boarding.receipt_number.startswith('BF-'))
        self.assertEqual(
            boarding.transaction.description,
            f'BOARDING PAYMENT - Mobile Money - Receipt #{boarding.receipt_number}',
        )

    def test_hostel_with_boarders_cannot_be_deleted(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        with self.assertRaises(ValidationError):
            self.hostel.delete()

        withdraw_boarder(enrollment=enrollment)
        self.hostel.delete()
        self.hostel.refresh_from_db()
        self.assertFalse(self.hostel.is_active)


class BoardingApiTests(BoardingTestMixin, TestCase):
    def setUp(self):
        self.build_boarding()
        user_model = get_user_model()
        self.accountant = user_model.objects.create_user(
            username='boarding_accountant',
            password='pass12345',
            role='accountant',
            school=self.school,
        )
        self.staff = user_model.objects.create_user(
            username='boarding_staff',
            password='pass12345',
            role='staff',
            school=self.school,
        )

    def _post(self, url, payload):
        return self.client.post(url, payload, content_type='application/json')

    def test_hostel_crud(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        created = self._post(reverse('hostel_list'), {'name': 'Zambezi House', 'gender': 'girls', 'capacity': 40})
        self.assertEqual(created.status_code, 201)
        hostel_id = created.json()['data']['id']

        listing = self.client.get(reverse('hostel_list')).json()
        self.assertTrue(listing['success'])
        zambezi = next(row for row in listing['data'] if row['id'] == hostel_id)
        self.assertEqual(zambezi['occupied'], 0)
        self.assertEqual(zambezi['available'], 40)

        updated = self.client.patch(
            reverse('hostel_detail', args=[hostel_id]),
            {'capacity': 45},
            content_type='application/json',
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()['data']['capacity'], 45)

        deleted = self.client.delete(reverse('hostel_detail', args=[hostel_id]))
        self.assertEqual(deleted.status_code, 200)
        self.assertFalse(Hostel.objects.get(pk=hostel_id).is_active)

    def test_invalid_hostel_payload_returns_field_errors(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self._post(reverse('hostel_list'), {'name': 'Empty House', 'capacity': 0})
        self.assertEqual(response.status_code, 400)
        self.assertIn('capacity', response.json()['errors'])

        duplicate = self._post(reverse('hostel_list'), {'name': 'Kariba House', 'capacity': 10})
        self.assertEqual(duplicate.status_code, 400)

    def test_capacity_cannot_drop_below_boarders(self):
        second = Student.objects.create(
            school=self.school,
            admission_number='BRD005',
            first_name='Tino',
            gender=Student.GENDER_MALE,
        )
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        enroll_boarder(student=second, room=self.room, term=self.term)
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self.client.patch(
            reverse('hostel_detail', args=[self.hostel.id]),
            {'capacity': 1},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('capacity', response.json()['errors'])

    def test_hostel_delete_with_boarders_returns_400(self):
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self.client.delete(reverse('hostel_detail', args=[self.hostel.id]))
        self.assertEqual(response.status_code, 400)
        self.assertTrue(Hostel.objects.get(pk=self.hostel.id).is_active)

    def test_enrollment_and_boarding_payment_endpoints(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        enrolled = self._post(reverse('boarding_enrollment_list'), {
            'student': self.boy.id,
            'hostel': self.hostel.id,
            'room': self.room.id,
        })
        self.assertEqual(enrolled.status_code, 201)
        self.assertEqual(enrolled.json()['data']['amount_billed'], '300.00')

        missing_hostel = self._post(reverse('boarding_payment_list'), {
            'student': self.boy.id,
            'amount': '100.00',
            'payment_method': 'Cash',
        })
        self.assertEqual(missing_hostel.status_code, 400)
        self.assertIn('hostel', missing_hostel.json()['errors'])

        paid = self._post(reverse('boarding_payment_list'), {
            'student': self.boy.id,
            'hostel': self.hostel.id,
            'amount': '100.00',
            'payment_method': 'Bank',
        })
        self.assertEqual(paid.status_code, 201)
        data = paid.json()['data']
        self.assertEqual(data['category'], FeePayment.CATEGORY_BOARDING)
        self.assertEqual(data['hostel_name'], 'Kariba House')
        self.assertEqual(data['allocations'][0]['amount'], '100.00')

        listing = self.client.get(reverse('boarding_payment_list'), {'hostel_id': self.hostel.id}).json()
        self.assertEqual(listing['pagination']['total_items'], 1)

    def test_gender_mismatch_returns_400(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self._post(reverse('boarding_enrollment_list'), {
            'student': self.girl.id,
            'room': self.room.id,
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn('only accepts', response.json()['message'])

    def test_staff_reads_but_cannot_create_hostels(self):
        self.client.login(username='boarding_staff', password='pass12345')
        self.assertEqual(self.client.get(reverse('hostel_list')).status_code, 200)
        response = self._post(reverse('hostel_list'), {'name': 'Blocked', 'capacity': 5})
        self.assertEqual(response.status_code, 403)

    def test_boarding_fee_must_be_positive(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        hostel = Hostel.objects.create(school=self.school, name='Save House', capacity=3)
        response = self._post(reverse('boarding_fee_list'), {
            'hostel': hostel.id,
            'term': self.term.id,
            'amount': '0',
        })
        self.assertEqual(response.status_code, 400)

        response = self._post(reverse('boarding_fee_list'), {
            'hostel': hostel.id,
            'term': self.term.id,
            'amount': '275.00',
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['currency'], 'USD')

    def test_room_crud(self):
        self.client.login(username='boarding_accountant', password='pass12345')
        created = self._post(reverse('room_list'), {
            'hostel': self.hostel.id,
            'room_number': ' K2 ',
            'room_type': 'double',
            'floor': 2,
            'capacity': 2,
        })
        self.assertEqual(created.status_code, 201)
        room = created.json()['data']
        self.assertEqual(room['room_number'], 'K2')
        self.assertEqual(room['hostel_name'], 'Kariba House')

        duplicate = self._post(reverse('room_list'), {'hostel': self.hostel.id, 'room_number': 'K1', 'capacity': 3})
        self.assertEqual(duplicate.status_code, 400)

        listing = self.client.get(reverse('room_list'), {'hostel_id': self.hostel.id, 'floor': 2}).json()
        self.assertEqual([row['room_number'] for row in listing['data']], ['K2'])
        self.assertEqual(listing['data'][0]['available'], 2)

        updated = self.client.patch(
            reverse('room_detail', args=[room['id']]),
            {'capacity': 3},
            content_type='application/json',
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()['data']['capacity'], 3)

        deleted = self.client.delete(reverse('room_detail', args=[room['id']]))
        self.assertEqual(deleted.status_code, 200)
        self.assertFalse(Room.objects.get(pk=room['id']).is_active)

    def test_room_capacity_cannot_drop_below_boarders(self):
        second = Student.objects.create(
            school=self.school,
            admission_number='BRD007',
            first_name='Nyasha',
            gender=Student.GENDER_MALE,
        )
        enroll_boarder(student=self.boy, room=self.room, term=self.term)
        enroll_boarder(student=second, room=self.room, term=self.term)
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self.client.patch(
            reverse('room_detail', args=[self.room.id]),
            {'capacity': 1},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn('capacity', response.json()['errors'])

        delete = self.client.delete(reverse('room_detail', args=[self.room.id]))
        self.assertEqual(delete.status_code, 400)

    def test_enrollment_room_must_match_hostel(self):
        other = Hostel.objects.create(school=self.school, name='Other House', capacity=5)
        self.client.login(username='boarding_accountant', password='pass12345')
        response = self._post(reverse('boarding_enrollment_list'), {
            'student': self.boy.id,
            'hostel': other.id,
            'room': self.room.id,
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn('room', response.json()['errors'])

        missing_room = self._post(reverse('boarding_enrollment_list'), {'student': self.boy.id})
        self.assertEqual(missing_room.status_code, 400)
        self.assertIn('room', missing_room.json()['errors'])

    def test_check_in_and_check_out_endpoints(self):
        enrollment = enroll_boarder(student=self.boy, room=self.room, term=self.term)
        self.client.login(username='boarding_accountant', password='pass12345')

        early = self._post(reverse('boarding_enrollment_check_out', args=[enrollment.id]), {})
        self.assertEqual(early.status_code, 400)

        checked_in = self._post(
            reverse('boarding_enrollment_check_in', args=[enrollment.id]),
            {'check_in_date': '2026-01-12'},
        )
        self.assertEqual(checked_in.status_code, 200)
        self.assertEqual(checked_in.json()['data']['status'], 'checked_in')
        self.assertEqual(checked_in.json()['data']['checked_in_on'], '2026-01-12')

        bad_date = self._post(
            reverse('boarding_enrollment_check_out', args=[enrollment.id]),
            {'check_out_date': '10/04/2026'},
        )
        self.assertEqual(bad_date.status_code, 400)

        checked_out = self._post(
            reverse('boarding_enrollment_check_out', args=[enrollment.id]),
            {'check_out_date': '2026-04-10', 'reason': 'End of term'},
        )
        self.assertEqual(checked_out.status_code, 200)
        data = checked_out.json()['data']
        self.assertEqual(data['status'], 'checked_out')
        self.assertEqual(data['check_out_reason'], 'End of term')
        self.assertEqual(data['room_number'], 'K1')

        listing = self.client.get(reverse('room_list'), {'hostel_id': self.hostel.id}).json()
        self.assertEqual(listing['data'][0]['occupied'], 0)
