"""
Arc network client built on web3.py

Thin wrapper around a Web3 HTTP connection that knows the payroll contracts
(USDC, USYC, the USYC teller and the batch payroll contract) and exposes the
handful of reads and writes the payroll flow needs.
"""
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.middleware import ExtraDataToPOAMiddleware

from .constants import CONTRACT_ABIS, NATIVE_DECIMALS, from_base_units

logger = logging.getLogger(__name__)

GAS_BUFFER_NUMERATOR = 12  # estimated gas * 1.2
GAS_BUFFER_DENOMINATOR = 10
FALLBACK_BASE_FEE_GWEI = 160
FALLBACK_PRIORITY_FEE_GWEI = 1


class ArcClientError(Exception):
    """Raised when the Arc RPC cannot answer a read or accept a transaction."""


class ArcClient:
    """Read and write access to the payroll contracts on Arc."""

    def __init__(self, rpc_url: Optional[str] = None, chain_id: Optional[int] = None,
                 contracts: Optional[Dict[str, str]] = None, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url or settings.ARC_RPC_URL
        self.chain_id = chain_id or settings.ARC_CHAIN_ID
        self.contracts = dict(contracts or settings.ARC_CONTRACTS)
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(
                self.rpc_url,
                request_kwargs={'timeout': settings.ARC_RPC_TIMEOUT},
            ))
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3
        self._contracts = {}

    # ------------------------------------------------------------------
    # Addresses and contracts
    # ------------------------------------------------------------------

    def address(self, name: str) -> str:
        try:
            return Web3.to_checksum_address(self.contracts[name])
        except KeyError:
            raise ArcClientError(f"Unknown contract '{name}'")

    def contract(self, name: str):
        if name not in self._contracts:
            abi = CONTRACT_ABIS.get(name)
            if abi is None:
                raise ArcClientError(f"No ABI registered for '{name}'")
            self._contracts[name] = self.w3.eth.contract(address=self.address(name), abi=abi)
        return self._contracts[name]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def token_balance(self, token: str, holder: str) -> int:
        try:
            return int(self.contract(token).functions.balanceOf(
                Web3.to_checksum_address(holder)
            ).call())
        except ArcClientError:
            raise
        except Exception as e:
            raise ArcClientError(f"Failed to read {token} balance for {holder}: {e}") from e

    def allowance(self, token: str, owner: str, spender: str) -> int:
        try:
            return int(self.contract(token).functions.allowance(
                Web3.to_checksum_address(owner),
                Web3.to_checksum_address(spender),
            ).call())
        except ArcClientError:
            raise
        except Exception as e:
            raise ArcClientError(f"Failed to read {token} allowance: {e}") from e

    def has_code(self, address: str) -> bool:
        try:
            code = self.w3.eth.get_code(Web3.to_checksum_address(address))
        except Exception as e:
            raise ArcClientError(f"Failed to read code at {address}: {e}") from e
        return len(code or b'') > 0

    def preview_deposit(self, amount: int) -> int:
        """Shares the USYC teller would mint for `amount` USDC base units."""
        try:
            return int(self.contract('USYC_TELLER').functions.previewDeposit(int(amount)).call())
        except Exception as e:
            raise ArcClientError(f"USYC teller preview failed: {e}") from e

    def native_balance(self, address: str):
        """Gas token balance (native USDC, 18 decimals) as a Decimal."""
        try:
            wei = self.w3.eth.get_balance(Web3.to_checksum_address(address))
        except Exception as e:
            raise ArcClientError(f"Failed to read native balance for {address}: {e}") from e
        return from_base_units(wei, NATIVE_DECIMALS)

    def pending_nonce(self, address: str) -> int:
        try:
            return int(self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), 'pending'))
        except Exception as e:
            raise ArcClientError(f"Failed to read nonce for {address}: {e}") from e

    def fee_params(self) -> Dict[str, int]:
        """EIP-1559 fee fields: maxFee = 2 * baseFee + priorityFee."""
        try:
            latest = self.w3.eth.get_block('latest')
            base_fee = latest.get('baseFeePerGas') or Web3.to_wei(FALLBACK_BASE_FEE_GWEI, 'gwei')
        except Exception as e:
            logger.warning("[Arc] Could not read latest block, using fallback base fee: %s", e)
            base_fee = Web3.to_wei(FALLBACK_BASE_FEE_GWEI, 'gwei')
        try:
            priority_fee = self.w3.eth.max_priority_fee
        except Exception:
            priority_fee = Web3.to_wei(FALLBACK_PRIORITY_FEE_GWEI, 'gwei')
        return {
            'maxFeePerGas': int(base_fee) * 2 + int(priority_fee),
            'maxPriorityFeePerGas': int(priority_fee),
        }

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _encode_args(self, step) -> list:
        args = []
        for value in step.args:
            if isinstance(value, str) and Web3.is_address(value):
                args.append(Web3.to_checksum_address(value))
            elif isinstance(value, list):
                # executeBatchPayroll payments: [[recipient, amount], ...]
                args.append([
                    (Web3.to_checksum_address(recipient), int(amount))
                    for recipient, amount in value
                ])
            else:
                args.append(value)
        return args

    def build_transaction(self, step, sender: str, nonce: int, fees: Dict[str, int]) -> Dict[str, Any]:
        """
        Build an unsigned EIP-1559 transaction for a plan step.

        Gas is estimated and padded by 20%. Later steps of a plan usually depend
        on earlier approvals that are not mined yet, so a failed estimate falls
        back to the step's default gas limit.
        """
        sender = Web3.to_checksum_address(sender)
        fn = getattr(self.contract(step.contract).functions, step.function)(*self._encode_args(step))
        try:
            estimated = fn.estimate_gas({'from': sender})
            gas = int(estimated) * GAS_BUFFER_NUMERATOR // GAS_BUFFER_DENOMINATOR
        except Exception as e:
            logger.debug("[Arc] Gas estimation failed for %s.%s, using fallback %s: %s",
                         step.contract, step.function, step.gas_fallback, e)
            gas = step.gas_fallback

        tx = fn.build_transaction({
            'from': sender,
            'nonce': int(nonce),
            'chainId': int(self.chain_id),
            'gas': gas,
            'maxFeePerGas': fees['maxFeePerGas'],
            'maxPriorityFeePerGas': fees['maxPriorityFeePerGas'],
            'value': 0,
        })
        unsigned = dict(tx)
        if isinstance(unsigned.get('data'), (bytes, HexBytes)):
            unsigned['data'] = Web3.to_hex(unsigned['data'])
        unsigned['type'] = 2
        return unsigned

    def send_raw_transaction(self, raw: bytes) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except Exception as e:
            raise ArcClientError(f"Broadcast rejected: {e}") from e
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[int] = None):
        try:
            return self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout or settings.ARC_RECEIPT_TIMEOUT
            )
        except TimeExhausted as e:
            raise ArcClientError(f"Timed out waiting for {tx_hash}") from e

    def get_receipt(self, tx_hash: str):
        """Receipt for `tx_hash`, or None while it is still pending."""
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ArcClientError(f"Failed to read receipt for {tx_hash}: {e}") from e

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{settings.ARC_EXPLORER_URL.rstrip('/')}/tx/{tx_hash}"


_client: Optional[ArcClient] = None


def get_arc_client() -> ArcClient:
    """Shared client for the process (one HTTP session per worker)."""
    global _client
    if _client is None:
        _client = ArcClient()
    return _client
