from django.core.management.base import BaseCommand, CommandError

from apps.core.billing.services import format_cents
from apps.core.billing.summary import compute_family_net_owing
from apps.core.families.models import Family
from apps.core.utils import dates


class Command(BaseCommand):
    help = 'Prints the net-owing breakdown for a family.'

    def add_arguments(self, parser):
        parser.add_argument('family_id', type=int)
        parser.add_argument('--as-of', dest='as_of', help='Evaluate on this day (YYYY-MM-DD) instead of today.')

    def handle(self, *args, **options):
        family = Family.objects.filter(pk=options['family_id']).first()
        if family is None:
            raise CommandError(f"Family {options['family_id']} does not exist.")

        try:
            today = dates.civil_day(options['as_of']) if options['as_of'] else dates.today()
        except ValueError as exc:
            raise CommandError(str(exc)) from exc

        breakdown = compute_family_net_owing(family.pk, today=today)

        self.stdout.write(f'{family.name} as of {dates.day_key(today)}')
        self.stdout.write(f'  Overdue entitlement:  {format_cents(breakdown.overdue_owing_cents)}')
        self.stdout.write(f'  Open invoices:        {format_cents(breakdown.invoice_outstanding_cents)}')
        self.stdout.write(f'  Unallocated credit:   {format_cents(breakdown.unallocated_credit_cents)}')
        style = self.style.ERROR if breakdown.net_owing_cents > 0 else self.style.SUCCESS
        self.stdout.write(style(f'  Net owing:            {format_cents(breakdown.net_owing_cents)}'))
