import re
from pathlib import Path

from decouple import config
from django.core.management.base import BaseCommand, CommandError
from eth_account import Account

from blockchain.arc_client import ArcClientError, get_arc_client
from payroll.execution import execute_payroll_run
from payroll.models import PayrollError, PayrollRun

PRIVATE_KEY_PATTERN = re.compile(r"0x[0-9a-fA-F]{64}")


def read_private_key(key_file=None) -> str:
    """ARC_PRIVATE_KEY from the environment, else the contents of pk.txt"""
    key = config('ARC_PRIVATE_KEY', default='')
    if not key:
        path = Path(key_file or 'pk.txt')
        if path.exists():
            key = path.read_text(encoding='utf-8').strip()
    if key and not key.startswith('0x'):
        key = '0x' + key
    if not PRIVATE_KEY_PATTERN.fullmatch(key or ''):
        raise CommandError("ARC_PRIVATE_KEY not set and pk.txt missing or invalid (need 0x + 64 hex)")
    return key


class Command(BaseCommand):
    help = "Sign and execute a payroll run with the business wallet's private key"

    def add_arguments(self, parser):
        parser.add_argument('run_id', type=str, help='Payroll run to execute')
        parser.add_argument('--key-file', type=str, default=None, help='File holding the private key (default pk.txt)')

    def handle(self, *args, **options):
        run = PayrollRun.objects.select_related('business__owner').filter(run_id=options['run_id']).first()
        if not run:
            raise CommandError(f"Payroll run {options['run_id']} not found")

        account = Account.from_key(read_private_key(options.get('key_file')))
        self.stdout.write(f"Executing {run.run_id} for {run.business.name} from {account.address}")

        try:
            run = execute_payroll_run(run, account, client=get_arc_client())
        except PayrollError as e:
            raise CommandError(str(e))
        except ArcClientError as e:
            raise CommandError(f"Arc network error: {e}")

        for index, tx_hash in enumerate(run.transaction_hashes):
            self.stdout.write(f"  step {index}: {tx_hash}")
        for item in run.items.select_related('staff'):
            self.stdout.write(
                f"  {item.staff.name or item.recipient_address}: {item.status} "
                f"{item.token_amount} {item.token_type}"
            )

        style = self.style.SUCCESS if run.status == 'COMPLETED' else self.style.WARNING
        self.stdout.write(style(f"Run {run.run_id} is {run.status} ({run.execution_mode} mode)"))
