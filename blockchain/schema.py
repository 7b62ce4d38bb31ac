"""
Blockchain GraphQL schema - Arc treasury balances and USYC conversion
"""
import logging

import graphene
from django.conf import settings

from users.context import get_authenticated_user, get_business_context

from .arc_client import ArcClientError, get_arc_client
from .balance_service import BalanceService
from .constants import from_base_units, to_base_units
from .payroll_transaction_builder import PayrollTransactionBuilder

logger = logging.getLogger(__name__)


class TokenBalancesType(graphene.ObjectType):
    address = graphene.String()
    usdc = graphene.String()
    usyc = graphene.String()
    errors = graphene.List(graphene.String)


class TreasuryType(graphene.ObjectType):
    address = graphene.String()
    usdc_balance = graphene.String()
    usyc_balance = graphene.String()
    chain_id = graphene.Int()
    faucet_url = graphene.String()
    explorer_url = graphene.String()
    batch_payroll_available = graphene.Boolean()
    errors = graphene.List(graphene.String)


def _balances_for(address, force_refresh=False):
    balances = BalanceService.get_balances(address, force_refresh=force_refresh)
    return str(balances['USDC']), str(balances['USYC'])


class Query(graphene.ObjectType):
    """Blockchain-related queries"""
    treasury = graphene.Field(TreasuryType, force_refresh=graphene.Boolean(default_value=False))
    my_balances = graphene.Field(TokenBalancesType, force_refresh=graphene.Boolean(default_value=False))

    def resolve_treasury(self, info, force_refresh=False):
        business = get_business_context(info)
        if not business:
            return None

        address = business.treasury_address
        result = TreasuryType(
            address=address,
            chain_id=settings.ARC_CHAIN_ID,
            faucet_url=settings.ARC_FAUCET_URL,
            explorer_url=settings.ARC_EXPLORER_URL,
            errors=[],
        )
        try:
            result.usdc_balance, result.usyc_balance = _balances_for(address, force_refresh)
        except ArcClientError as e:
            logger.error("Treasury balance read failed for business %s: %s", business.id, e)
            result.errors.append("Could not load balances from Arc")
        try:
            result.batch_payroll_available = PayrollTransactionBuilder().batching_available()
        except ArcClientError as e:
            logger.warning("Batch payroll availability check failed: %s", e)
            result.batch_payroll_available = False
        return result

    def resolve_my_balances(self, info, force_refresh=False):
        user = get_authenticated_user(info)
        if not user:
            return None
        try:
            usdc, usyc = _balances_for(user.wallet_address, force_refresh)
        except ArcClientError as e:
            logger.error("Balance read failed for %s: %s", user.wallet_address, e)
            return TokenBalancesType(address=user.wallet_address, errors=["Could not load balances from Arc"])
        return TokenBalancesType(address=user.wallet_address, usdc=usdc, usyc=usyc, errors=[])


class PrepareUsycSwap(graphene.Mutation):
    """Unsigned transactions converting treasury USDC into USYC"""

    class Arguments:
        amount = graphene.String(required=True)

    success = graphene.Boolean()
    errors = graphene.List(graphene.String)
    transactions = graphene.JSONString()
    expected_shares = graphene.String()
    min_shares = graphene.String()

    @classmethod
    def mutate(cls, root, info, amount):
        business = get_business_context(info)
        if not business:
            return PrepareUsycSwap(success=False, errors=["Business account required"])
        try:
            base_amount = to_base_units(amount)
        except Exception:
            return PrepareUsycSwap(success=False, errors=["Invalid amount"])
        if base_amount <= 0:
            return PrepareUsycSwap(success=False, errors=["Amount must be greater than zero"])

        try:
            plan, unsigned = PayrollTransactionBuilder(client=get_arc_client()).prepare_usyc_swap(
                business.treasury_address, base_amount
            )
        except ArcClientError as e:
            logger.error("USYC swap preparation failed for business %s: %s", business.id, e)
            return PrepareUsycSwap(success=False, errors=["Could not reach the USYC teller"])
        except ValueError as e:
            return PrepareUsycSwap(success=False, errors=[str(e)])

        logger.info("Prepared USYC swap of %s for business %s (%s txs)", amount, business.id, len(unsigned))
        return PrepareUsycSwap(
            success=True,
            errors=None,
            transactions=unsigned,
            expected_shares=str(from_base_units(plan.usyc_expected_shares)),
            min_shares=str(from_base_units(plan.usyc_min_shares)),
        )


class Mutation(graphene.ObjectType):
    prepare_usyc_swap = PrepareUsycSwap.Field()
