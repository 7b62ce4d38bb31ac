from collections import Counter

from django.core.management.base import BaseCommand

from blockchain.arc_client import ArcClientError, get_arc_client
from payroll.execution import refresh_payroll_run
from payroll.models import PayrollRun


class Command(BaseCommand):
    help = 'Settle payroll items stuck in SUBMITTED status from their Arc receipts'

    def add_arguments(self, parser):
        parser.add_argument('--run-id', type=str, help='Only refresh this run')

    def handle(self, *args, **options):
        client = get_arc_client()

        runs = PayrollRun.objects.select_related('business__owner').filter(items__status='SUBMITTED').distinct()
        if options.get('run_id'):
            runs = runs.filter(run_id=options['run_id'])

        self.stdout.write(f"Found {runs.count()} runs with SUBMITTED items")

        totals = Counter()
        for run in runs:
            try:
                refresh_payroll_run(run, client=client)
            except ArcClientError as e:
                self.stdout.write(self.style.ERROR(f"  ✗ {run.run_id}: {e}"))
                continue
            counts = Counter(run.items.values_list('status', flat=True))
            totals.update(counts)
            self.stdout.write(f"  {run.run_id}: {run.status} | items={dict(counts)}")

        self.stdout.write(self.style.SUCCESS(
            f"\nCompleted: {totals['CONFIRMED']} confirmed, {totals['FAILED']} failed, "
            f"{totals['SUBMITTED']} still pending"
        ))
