"""
Wallet signature login.

The dashboard asks for a nonce, has the wallet sign the returned message
(EIP-191 personal_sign) and posts the signature back. The signer recovered
from the signature must be the wallet that asked for the nonce.
"""
import logging
import secrets

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

logger = logging.getLogger(__name__)


class WalletAuthError(ValueError):
    pass


def normalize_wallet_address(address):
    """Return the checksummed form of `address` or raise WalletAuthError."""
    if not address or not Web3.is_address(str(address).strip()):
        raise WalletAuthError("Invalid wallet address")
    return Web3.to_checksum_address(str(address).strip())


def _nonce_cache_key(address):
    return f"wallet_login_nonce:{address.lower()}"


def build_login_message(address, nonce):
    return (
        f"Sign in to {settings.WALLET_LOGIN_APP_NAME}\n\n"
        f"Wallet: {address}\n"
        f"Chain ID: {settings.ARC_CHAIN_ID}\n"
        f"Nonce: {nonce}"
    )


def issue_login_nonce(wallet_address):
    """Create a single-use nonce for `wallet_address` and return the message to sign."""
    address = normalize_wallet_address(wallet_address)
    nonce = secrets.token_hex(16)
    cache.set(_nonce_cache_key(address), nonce, timeout=settings.WALLET_LOGIN_NONCE_TTL)
    return build_login_message(address, nonce)


def recover_signer(message, signature):
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        logger.warning("Signature recovery failed: %s", e)
        raise WalletAuthError("Invalid signature") from e


def authenticate_wallet(wallet_address, signature):
    """
    Verify `signature` over the pending login message and return (user, created).

    The nonce is consumed whether or not verification succeeds.
    """
    address = normalize_wallet_address(wallet_address)
    key = _nonce_cache_key(address)
    nonce = cache.get(key)
    if not nonce:
        raise WalletAuthError("Login nonce expired or missing; request a new one")
    cache.delete(key)

    signer = recover_signer(build_login_message(address, nonce), signature)
    if signer.lower() != address.lower():
        logger.warning("Wallet login signer mismatch claimed=%s recovered=%s", address, signer)
        raise WalletAuthError("Signature does not match wallet address")

    User = get_user_model()
    with transaction.atomic():
        user, created = User.objects.get_or_create(
            wallet_address=address,
            defaults={'username': address.lower()},
        )
        user.last_wallet_login_at = timezone.now()
        user.last_login = user.last_wallet_login_at
        user.save(update_fields=['last_wallet_login_at', 'last_login'])

    if created:
        logger.info("Created wallet user %s", address)
    return user, created
