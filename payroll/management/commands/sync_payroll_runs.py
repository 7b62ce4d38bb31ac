from collections import Counter

from django.core.management.base import BaseCommand

from payroll.execution import recompute_run_status
from payroll.models import PayrollRun


class Command(BaseCommand):
    help = "Recompute PayrollRun.status from child PayrollItems (dry-run by default)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--apply",
            action="store_true",
            help="Persist the recomputed statuses. If omitted, only prints differences.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Limit the number of runs processed (most recent first).",
        )

    def handle(self, *args, **options):
        apply_changes = options["apply"]
        limit = options.get("limit")

        qs = PayrollRun.objects.exclude(status="CANCELLED").order_by("-created_at")
        if limit:
            qs = qs[:limit]

        updated = 0
        scanned = 0
        for run in qs:
            statuses = list(run.items.values_list("status", flat=True))
            if not statuses:
                continue
            scanned += 1

            old_status = run.status
            new_status = recompute_run_status(run, save=False)
            if new_status != old_status:
                self.stdout.write(
                    f"[{run.run_id}] {old_status} -> {new_status} | items={dict(Counter(statuses))}"
                )
                if apply_changes:
                    run.save(update_fields=["status", "completed_at", "updated_at"])
                    updated += 1

        if apply_changes:
            self.stdout.write(self.style.SUCCESS(f"Updated {updated} runs (scanned {scanned})."))
        else:
            self.stdout.write(self.style.WARNING(f"Dry-run complete. {scanned} runs scanned; rerun with --apply to persist."))
