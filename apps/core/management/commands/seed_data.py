"""
Seed management command.

Populates the database with demo data:
  - 2 providers with weekly availability (Mon–Sat, 10:00–19:00)
  - 4 services (2 per provider)
  - time slots for the next 14 days
  - 1 client account
  - platform default policies from the built-in templates

Usage:
    python manage.py seed_data
    python manage.py seed_data --days 30

Re-running is safe: existing records are reused and ranges that already
have slots are skipped.
"""
from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.accounts.models import Account
from apps.availability.engine import generate_time_slots, set_weekly_availability
from apps.core.exceptions import ConflictError
from apps.policies.engine import get_policy_templates
from apps.policies.models import BookingPolicy
from apps.services.models import Service


PROVIDERS = [
    {
        'name': 'Asha Menon',
        'email': 'asha@servicehub.local',
        'services': [
            ('Deep Tissue Massage', 60, Decimal('1800.00')),
            ('Aromatherapy Session', 45, Decimal('1400.00')),
        ],
    },
    {
        'name': 'Kiran Rao',
        'email': 'kiran@servicehub.local',
        'services': [
            ('Home Yoga Class', 60, Decimal('900.00')),
            ('Guided Meditation', 30, Decimal('500.00')),
        ],
    },
]

WORKING_WEEK = [
    {'weekday': day, 'start_time': '10:00', 'end_time': '19:00'} for day in range(6)
]


class Command(BaseCommand):
    help = 'Seed demo providers, services, availability, slots and platform policies'

    def add_arguments(self, parser):
        parser.add_argument(
            '--days', type=int, default=14,
            help='How many days of slots to generate, starting tomorrow',
        )

    def handle(self, *args, **options):
        start = timezone.localdate() + timedelta(days=1)
        end = start + timedelta(days=options['days'] - 1)

        self.stdout.write('Seeding providers and services...')
        for profile in PROVIDERS:
            provider, _ = Account.objects.get_or_create(
                email=profile['email'],
                defaults={'name': profile['name'], 'is_professional': True},
            )
            for title, minutes, price in profile['services']:
                Service.objects.get_or_create(
                    provider=provider, title=title,
                    defaults={'duration_minutes': minutes, 'price': price},
                )

            set_weekly_availability(provider.id, WORKING_WEEK, provider.id)
            try:
                slots = generate_time_slots(provider.id, start, end, 30)
                self.stdout.write(self.style.SUCCESS(f'  ✔ {provider.name}: {len(slots)} slots'))
            except ConflictError:
                self.stdout.write(f'  - {provider.name}: slots already exist, skipped')

        self.stdout.write('Seeding client...')
        Account.objects.get_or_create(email='client@servicehub.local', defaults={'name': 'Demo Client'})

        self.stdout.write('Seeding platform policies...')
        created = 0
        for template in get_policy_templates():
            _, was_created = BookingPolicy.objects.get_or_create(
                service=None, type=template['type'], name=template['name'],
                defaults={
                    'description': template['description'],
                    'hours_before_booking': template['hours_before_booking'],
                    'penalty_type': template['penalty_type'],
                    'penalty_value': template['penalty_value'],
                },
            )
            created += was_created
        self.stdout.write(self.style.SUCCESS(f'  ✔ {created} platform policies created'))

        self.stdout.write(self.style.SUCCESS(f'\n✅ Seed complete! Slots from {start} to {end}.'))
