from django.core.management.base import BaseCommand, CommandError

from apps.core.accounting.services import ensure_chart_of_accounts, get_base_currency
from apps.core.schools.models import School


class Command(BaseCommand):
    help = 'Create the default fee accounts and base currency for one or all schools.'

    def add_arguments(self, parser):
        parser.add_argument('--school', help='School code. Defaults to every active school.')

    def handle(self, *args, **options):
        schools = School.objects.filter(is_active=True)
        if options.get('school'):
            schools = schools.filter(code=options['school'])
            if not schools.exists():
                raise CommandError(f"School '{options['school']}' does not exist.")

        for school in schools.order_by('code'):
            self.stdout.write(f'Setting up chart of accounts for {school.name}...')
            currency = get_base_currency(school)
            created = ensure_chart_of_accounts(school)
            for account in created:
                self.stdout.write(f'  + {account}')
            self.stdout.write(
                self.style.SUCCESS(
                    f'{school.code}: {len(created)} account(s) created, base currency {currency.code}.'
                )
            )
