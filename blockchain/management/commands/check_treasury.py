from django.core.management.base import BaseCommand, CommandError

from blockchain.arc_client import ArcClientError, get_arc_client
from blockchain.balance_service import BalanceService
from blockchain.payroll_transaction_builder import PayrollTransactionBuilder
from users.models import Business


class Command(BaseCommand):
    help = "Show USDC/USYC/gas balances for a treasury wallet and whether batch payroll is available"

    def add_arguments(self, parser):
        parser.add_argument('--address', type=str, help='Wallet address to inspect')
        parser.add_argument('--business-id', type=int, help='Inspect the treasury of this business')

    def handle(self, *args, **opts):
        address = opts.get('address')
        if opts.get('business_id'):
            business = Business.objects.select_related('owner').filter(id=opts['business_id']).first()
            if not business:
                raise CommandError(f"Business {opts['business_id']} not found")
            address = business.treasury_address
        if not address:
            raise CommandError("Pass --address or --business-id")

        client = get_arc_client()
        try:
            balances = BalanceService.get_balances(address, force_refresh=True, client=client)
            gas = client.native_balance(address)
            batching = PayrollTransactionBuilder(client=client).batching_available()
        except ArcClientError as e:
            raise CommandError(str(e))

        self.stdout.write(f"Treasury {address} (chain {client.chain_id})")
        self.stdout.write(f"  USDC: {balances['USDC']}")
        self.stdout.write(f"  USYC: {balances['USYC']}")
        self.stdout.write(f"  Gas (native USDC): {gas}")
        if batching:
            self.stdout.write(self.style.SUCCESS("  Batch payroll contract: available"))
        else:
            self.stdout.write(self.style.WARNING("  Batch payroll contract: unavailable, runs will use sequential transfers"))
