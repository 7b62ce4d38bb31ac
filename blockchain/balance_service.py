"""
Cached USDC / USYC balances for Arc wallets
"""
import logging
from decimal import Decimal
from typing import Dict, Optional

from django.core.cache import cache

from .arc_client import ArcClient, get_arc_client
from .constants import PAYROLL_TOKENS, from_base_units

logger = logging.getLogger(__name__)


class BalanceService:
    """
    Balance reads go to the chain at most once per CACHE_TTL per wallet and
    token. Payroll submissions invalidate the employer's entries.
    """

    CACHE_TTL = 60

    @staticmethod
    def _cache_key(address: str, token: str) -> str:
        return f"balance:{address.lower()}:{token}"

    @classmethod
    def get_balance(cls, address: str, token: str = 'USDC', force_refresh: bool = False,
                    client: Optional[ArcClient] = None) -> Decimal:
        cache_key = cls._cache_key(address, token)
        if not force_refresh:
            cached = cache.get(cache_key)
            if cached is not None:
                return Decimal(cached)

        client = client or get_arc_client()
        amount = from_base_units(client.token_balance(token, address))
        cache.set(cache_key, str(amount), cls.CACHE_TTL)
        logger.debug("Fetched %s balance for %s: %s", token, address, amount)
        return amount

    @classmethod
    def get_balances(cls, address: str, force_refresh: bool = False,
                     client: Optional[ArcClient] = None) -> Dict[str, Decimal]:
        return {
            token: cls.get_balance(address, token, force_refresh=force_refresh, client=client)
            for token in PAYROLL_TOKENS
        }

    @classmethod
    def invalidate(cls, address: str):
        cache.delete_many([cls._cache_key(address, token) for token in PAYROLL_TOKENS])
