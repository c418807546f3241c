import random
from datetime import time, timedelta

from django.core.management.base import BaseCommand
from django.db import transaction
from faker import Faker

from apps.core.enrolments.models import BillingPlan, Enrolment, EnrolmentClassAssignment
from apps.core.families.models import Family, Student
from apps.core.schedule.models import DAY_CHOICES, ClassTemplate, Holiday, Level
from apps.core.utils import dates


DAY_LABELS = dict(DAY_CHOICES)


class Command(BaseCommand):
    help = 'Seeds the database with demo families, classes and billing plans.'

    def add_arguments(self, parser):
        parser.add_argument('--families', type=int, default=10)
        parser.add_argument('--seed', type=int, default=None, help='Random seed for repeatable data.')

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding billing data...')

        fake = Faker('en_AU')
        rng = random.Random(options['seed'])
        if options['seed'] is not None:
            Faker.seed(options['seed'])

        today = dates.today()
        term_start = today - timedelta(days=today.weekday()) - timedelta(weeks=4)

        levels = []
        for order, name in enumerate(['Beginner', 'Intermediate', 'Advanced'], start=1):
            level, created = Level.objects.get_or_create(name=name, defaults={'display_order': order})
            levels.append(level)
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created level: {level.name}'))

        templates = {}
        for level in levels:
            for day_of_week in (0, 2, 5):
                template, _ = ClassTemplate.objects.get_or_create(
                    name=f'{level.name} {DAY_LABELS[day_of_week]}',
                    level=level,
                    day_of_week=day_of_week,
                    defaults={'start_time': time(16 if day_of_week != 5 else 9, 0), 'capacity': 12},
                )
                templates[(level.id, day_of_week)] = template

        plans = {}
        for level in levels:
            plans[(level.id, 'weekly')], _ = BillingPlan.objects.get_or_create(
                name=f'{level.name} term (10 weeks)',
                level=level,
                defaults={
                    'billing_type': BillingPlan.TYPE_PER_WEEK,
                    'price_cents': 22000,
                    'duration_weeks': 10,
                    'sessions_per_week': 1,
                },
            )
            plans[(level.id, 'twice')], _ = BillingPlan.objects.get_or_create(
                name=f'{level.name} twice weekly (4 weeks)',
                level=level,
                defaults={
                    'billing_type': BillingPlan.TYPE_PER_WEEK,
                    'price_cents': 16000,
                    'duration_weeks': 4,
                    'sessions_per_week': 2,
                },
            )
            plans[(level.id, 'block')], _ = BillingPlan.objects.get_or_create(
                name=f'{level.name} 5-class pass',
                level=level,
                defaults={
                    'billing_type': BillingPlan.TYPE_PER_CLASS,
                    'price_cents': 12500,
                    'block_class_count': 5,
                },
            )

        Holiday.objects.get_or_create(
            name='Mid-term break',
            start_date=term_start + timedelta(weeks=6),
            end_date=term_start + timedelta(weeks=7, days=-1),
        )

        for _ in range(options['families']):
            last_name = fake.last_name()
            family = Family.objects.create(
                name=f'{last_name} family',
                email=fake.email(),
                phone=fake.phone_number()[:20],
            )
            for _ in range(rng.randint(1, 3)):
                student = Student.objects.create(
                    family=family,
                    first_name=fake.first_name(),
                    last_name=last_name,
                    date_of_birth=fake.date_of_birth(minimum_age=4, maximum_age=15),
                )
                level = rng.choice(levels)
                kind = rng.choice(['weekly', 'twice', 'block'])
                days = [0, 2] if kind == 'twice' else [rng.choice([0, 2, 5])]
                enrolment = Enrolment.objects.create(
                    student=student,
                    plan=plans[(level.id, kind)],
                    template=templates[(level.id, days[0])],
                    start_date=term_start + timedelta(days=days[0]),
                )
                for day_of_week in days:
                    EnrolmentClassAssignment.objects.create(
                        enrolment=enrolment,
                        template=templates[(level.id, day_of_week)],
                    )
            self.stdout.write(self.style.SUCCESS(f'Created family: {family.name}'))

        self.stdout.write(self.style.SUCCESS('Billing data seeded.'))
