"""
Executor for signed payroll transactions

Verifies wallet-signed transactions against the business wallet, broadcasts
them in nonce order and reads their receipts. Also signs and sends with a
local account for the server-side `run_payroll` path.
"""
import logging
from typing import Callable, List, Optional, Sequence

from eth_account import Account
from eth_account.typed_transactions import TypedTransaction
from hexbytes import HexBytes
from web3 import Web3

from .arc_client import ArcClient, ArcClientError

logger = logging.getLogger(__name__)

RECEIPT_CONFIRMED = 'confirmed'
RECEIPT_FAILED = 'failed'
RECEIPT_PENDING = 'pending'

# Fields a signed transaction must share with the prepared one
MATCHED_FIELDS = ('to', 'data', 'nonce', 'chainId', 'value')


class TransactionReverted(ArcClientError):
    """A payroll step was mined but reverted on chain."""

    def __init__(self, tx_hash: str, step_index: int, sent_hashes: Optional[List[str]] = None):
        self.tx_hash = tx_hash
        self.step_index = step_index
        self.sent_hashes = list(sent_hashes or [])
        super().__init__(f"Step {step_index} reverted ({tx_hash})")


def _to_bytes(raw) -> bytes:
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    if isinstance(raw, str):
        return bytes(HexBytes(raw))
    raise ValueError(f"Invalid signed transaction format: {type(raw)}")


def transaction_hash(raw) -> str:
    """Hash of a signed raw transaction (keccak of the encoded bytes)."""
    return Web3.to_hex(Web3.keccak(_to_bytes(raw)))


def _normalized(tx: dict, field: str):
    value = tx.get(field)
    if field == 'to':
        return Web3.to_checksum_address(Web3.to_hex(HexBytes(value))) if value else None
    if field == 'data':
        return HexBytes(value or b'')
    return int(value or 0)


def decode_signed_transaction(raw) -> dict:
    """Decode a signed typed transaction into its fields."""
    return TypedTransaction.from_bytes(HexBytes(_to_bytes(raw))).as_dict()


def verify_signed_transactions(raw_transactions: Sequence, expected_count: int, sender: str,
                               unsigned: Optional[Sequence[dict]] = None) -> List[bytes]:
    """
    Check that the client returned one signed transaction per planned step and
    that every one of them was signed by `sender`.

    The result is ordered by nonce. When `unsigned` is given, each transaction
    must carry the same recipient, calldata, nonce, chain and value as the
    unsigned transaction at its position.
    """
    if len(raw_transactions) != expected_count:
        raise ValueError(
            f"Expected {expected_count} signed transactions, received {len(raw_transactions)}"
        )
    if unsigned is not None and len(unsigned) != expected_count:
        raise ValueError("Prepared transactions do not match the payroll plan")

    expected = Web3.to_checksum_address(sender)
    decoded = []
    for index, raw in enumerate(raw_transactions):
        raw_bytes = _to_bytes(raw)
        try:
            signer = Account.recover_transaction(raw_bytes)
            fields = decode_signed_transaction(raw_bytes)
        except Exception as e:
            raise ValueError(f"Signed transaction {index} could not be decoded: {e}") from e
        if Web3.to_checksum_address(signer) != expected:
            raise ValueError(f"Signed transaction {index} was not signed by the business wallet")
        decoded.append((int(fields['nonce']), raw_bytes, fields))

    decoded.sort(key=lambda entry: entry[0])
    if unsigned is not None:
        for index, (_, _, fields) in enumerate(decoded):
            for field in MATCHED_FIELDS:
                if _normalized(fields, field) != _normalized(unsigned[index], field):
                    raise ValueError(
                        f"Signed transaction {index} does not match the prepared transaction ({field})"
                    )
    return [raw_bytes for _, raw_bytes, _ in decoded]


def broadcast_signed(client: ArcClient, raw_transactions: Sequence,
                     on_sent: Optional[Callable[[int, str], None]] = None) -> List[str]:
    """Broadcast signed transactions in order and return their hashes."""
    hashes = []
    for index, raw in enumerate(raw_transactions):
        tx_hash = client.send_raw_transaction(_to_bytes(raw))
        logger.info("[Payroll] Broadcast step %s: %s", index, tx_hash)
        hashes.append(tx_hash)
        if on_sent:
            on_sent(index, tx_hash)
    return hashes


def sign_and_send(client: ArcClient, unsigned: Sequence[dict], account,
                  on_sent: Optional[Callable[[int, str], None]] = None) -> List[str]:
    """
    Sign each unsigned transaction with `account`, send it and wait for its
    receipt before moving on. Raises TransactionReverted at the first revert.
    """
    hashes: List[str] = []
    for index, tx in enumerate(unsigned):
        signed = account.sign_transaction(dict(tx))
        tx_hash = client.send_raw_transaction(signed.raw_transaction)
        hashes.append(tx_hash)
        if on_sent:
            on_sent(index, tx_hash)
        logger.info("[Payroll] Sent step %s: %s", index, tx_hash)
        receipt = client.wait_for_receipt(tx_hash)
        if receipt.get('status') != 1:
            logger.error("[Payroll] Step %s reverted: %s", index, tx_hash)
            raise TransactionReverted(tx_hash, index, hashes)
    return hashes


def receipt_status(client: ArcClient, tx_hash: Optional[str]) -> str:
    if not tx_hash:
        return RECEIPT_PENDING
    receipt = client.get_receipt(tx_hash)
    if receipt is None:
        return RECEIPT_PENDING
    return RECEIPT_CONFIRMED if receipt.get('status') == 1 else RECEIPT_FAILED
