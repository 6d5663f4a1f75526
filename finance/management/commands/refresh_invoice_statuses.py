from datetime import date

from django.core.management.base import BaseCommand, CommandError

from finance.services import InvoiceService


class Command(BaseCommand):
    help = 'Re-derive invoice statuses so unpaid invoices past their due date become overdue'

    def add_arguments(self, parser):
        parser.add_argument('--date', help='Evaluate as of this date (YYYY-MM-DD). Defaults to today.')

    def handle(self, *args, **options):
        today = None
        if options.get('date'):
            try:
                today = date.fromisoformat(options['date'])
            except ValueError:
                raise CommandError(f"Invalid date: {options['date']}")

        self.stdout.write(self.style.WARNING('🔄 Refreshing invoice statuses...'))
        changed = InvoiceService.refresh_statuses(today=today)
        self.stdout.write(self.style.SUCCESS(f'✅ {changed} invoice(s) updated'))
