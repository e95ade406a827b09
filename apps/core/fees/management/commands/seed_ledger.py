import datetime
import random
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from faker import Faker

from apps.core.academic_sessions.models import Term
from apps.core.academic_sessions.services import activate_term
from apps.core.academics.models import SchoolClass
from apps.core.accounting.models import Currency
from apps.core.boarding.models import BoardingFee, Hostel, Room
from apps.core.boarding.services import enroll_boarder
from apps.core.fees.ledger import current_balance
from apps.core.fees.models import FeePayment, FeeStructure, WaiverCategory
from apps.core.fees.services import (
    assign_fee_structure,
    collect_payment,
    grant_fee_waiver,
    record_opening_balance,
    save_invoice_structure,
)
from apps.core.schools.models import School
from apps.core.schools.services import onboard_school
from apps.core.students.models import Student
from apps.core.students.services import enroll_student
from apps.core.users.models import User

CLASS_FEES = {
    'Form 1': Decimal('450.00'),
    'Form 2': Decimal('450.00'),
    'Form 3': Decimal('500.00'),
    'Form 4': Decimal('550.00'),
}
PAYMENT_METHODS = ['Cash', 'Bank Transfer', 'Mobile Money', 'Cheque']


class Command(BaseCommand):
    help = 'Seeds a demo school with students, fees and a realistic spread of ledger activity.'

    def add_arguments(self, parser):
        parser.add_argument('--students', type=int, default=40, help='Students per class.')
        parser.add_argument('--seed', type=int, default=None, help='Random seed for repeatable data.')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding ledger data...')

        fake = Faker()
        if options['seed'] is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        year = datetime.date.today().year
        school = School.objects.filter(code='demo_school').first()
        if school is None:
            result = onboard_school(
                name='Demo School',
                code='demo_school',
                admin_username='schooladmin',
                admin_password='password',
                admin_email=fake.email(),
                address=fake.address(),
                phone=fake.numerify('07########'),
                email=fake.company_email(),
                base_currency='USD',
                session_name=str(year),
                session_start_date=datetime.date(year, 1, 5),
                session_end_date=datetime.date(year, 12, 4),
            )
            school = result['school']
            session = result['session']
            self.stdout.write(self.style.SUCCESS(f'Successfully created school: {school.name}'))
        else:
            session = school.current_session

        if not User.objects.filter(username='accountant').exists():
            User.objects.create_user('accountant', fake.email(), 'password', role='accountant', school=school)
            self.stdout.write(self.style.SUCCESS('Successfully created accountant user.'))

        term_dates = [
            (datetime.date(year, 1, 12), datetime.date(year, 4, 10)),
            (datetime.date(year, 5, 11), datetime.date(year, 8, 7)),
            (datetime.date(year, 9, 7), datetime.date(year, 12, 4)),
        ]
        for number, (start, end) in enumerate(term_dates, start=1):
            Term.objects.get_or_create(
                school=school,
                session=session,
                number=number,
                defaults={'start_date': start, 'end_date': end},
            )
        term = Term.objects.get(school=school, session=session, number=1)
        activate_term(school=school, term=term)

        Currency.objects.get_or_create(
            school=school,
            code='ZAR',
            defaults={'name': 'South African Rand', 'symbol': 'R', 'exchange_rate': Decimal('0.055000')},
        )

        classes = []
        for order, (name, total) in enumerate(CLASS_FEES.items(), start=1):
            school_class, created = SchoolClass.objects.get_or_create(
                school=school,
                name=name,
                stream='',
                defaults={'display_order': order},
            )
            classes.append(school_class)
            if created:
                save_invoice_structure(
                    school=school,
                    school_class=school_class,
                    term=term,
                    items=[
                        {'item_name': 'Tuition', 'amount': total - Decimal('50.00')},
                        {'item_name': 'Development Levy', 'amount': Decimal('50.00')},
                    ],
                )
                self.stdout.write(self.style.SUCCESS(f'Successfully created class: {school_class.display_name}'))

        hostels = []
        for name, gender in (('Livingstone House', Hostel.GENDER_BOYS), ('Mzilikazi House', Hostel.GENDER_GIRLS)):
            hostel, created = Hostel.objects.get_or_create(
                school=school,
                name=name,
                defaults={'gender': gender, 'capacity': 30},
            )
            hostels.append(hostel)
            for number in range(1, 6):
                Room.objects.get_or_create(
                    school=school,
                    hostel=hostel,
                    room_number=f'{name[0]}{number:02d}',
                    defaults={'room_type': Room.TYPE_DORMITORY, 'floor': 1 + (number - 1) // 3, 'capacity': 6},
                )
            if created:
                BoardingFee.objects.create(
                    school=school,
                    hostel=hostel,
                    term=term,
                    currency=Currency.objects.get(school=school, is_base=True),
                    amount=Decimal('300.00'),
                )

        sports, _ = FeeStructure.objects.get_or_create(
            school=school,
            name='Sports Levy',
            defaults={
                'description': 'Athletics and ball games',
                'amount': Decimal('25.00'),
                'currency': Currency.objects.get(school=school, is_base=True),
                'fee_type': FeeStructure.TYPE_TERMLY,
            },
        )
        bursary, _ = WaiverCategory.objects.get_or_create(school=school, name='Bursary')
        zar = Currency.objects.get(school=school, code='ZAR')

        created_students = []
        for school_class in classes:
            for _ in range(options['students']):
                gender = random.choice([Student.GENDER_MALE, Student.GENDER_FEMALE])
                first_name = fake.first_name_male() if gender == Student.GENDER_MALE else fake.first_name_female()
                student = Student.objects.create(
                    school=school,
                    admission_number=f'ADM{fake.unique.random_number(digits=6, fix_len=True)}',
                    first_name=first_name,
                    last_name=fake.last_name(),
                    gender=gender,
                    date_of_birth=fake.date_of_birth(minimum_age=12, maximum_age=18),
                    guardian_name=fake.name(),
                    guardian_phone=fake.numerify('07########'),
                )
                enroll_student(student=student, school_class=school_class, term=term)
                created_students.append(student)

        assign_fee_structure(fee_structure=sports, students=created_students, term=term)

        boarders = 0
        for student in random.sample(created_students, k=len(created_students) // 4):
            hostel = hostels[0] if student.gender == Student.GENDER_MALE else hostels[1]
            if hostel.occupancy(term) >= hostel.capacity:
                continue
            room = next((room for room in hostel.rooms.filter(is_active=True) if room.occupancy(term) < room.capacity), None)
            if room is None:
                continue
            enroll_boarder(student=student, room=room, term=term)
            boarders += 1

        payments = 0
        for student in created_students:
            if random.random() < 0.15:
                record_opening_balance(student=student, amount=Decimal(random.randrange(20, 400)))
            if random.random() < 0.1:
                grant_fee_waiver(
                    student=student,
                    category=bursary,
                    amount=Decimal('50.00'),
                    reason=fake.sentence(nb_words=4),
                )

            outstanding = -current_balance(student)
            share = random.choice([Decimal('0'), Decimal('0.25'), Decimal('0.5'), Decimal('0.8'), Decimal('1')])
            amount = (outstanding * share).quantize(Decimal('0.01'))
            if amount <= 0:
                continue
            if random.random() < 0.2:
                collect_payment(
                    student=student,
                    amount=(amount / zar.exchange_rate).quantize(Decimal('0.01')) - Decimal('1.00'),
                    currency=zar,
                    payment_method='Mobile Money',
                    term=term,
                    reference_number=fake.bothify('MM-########'),
                )
            else:
                collect_payment(
                    student=student,
                    amount=amount,
                    payment_method=random.choice(PAYMENT_METHODS),
                    category=FeePayment.CATEGORY_TUITION,
                    term=term,
                    payment_date=fake.date_between(
                        start_date=term.start_date,
                        end_date=max(term.start_date, datetime.date.today()),
                    ),
                    reference_number=fake.bothify('REF-########'),
                )
            payments += 1

        self.stdout.write(
            self.style.SUCCESS(
                f'Ledger seeding complete: {len(created_students)} students, {boarders} boarders, '
                f'{payments} payments.'
            )
        )
