"""
Payroll Transaction Builder

Plans the on-chain steps for a payroll run on Arc and turns them into unsigned
EIP-1559 transactions the business wallet signs:
- USYC leg: approve the teller (if needed) and deposit the USYC-bound USDC with a
  slippage-guarded minimum mint, then split the guaranteed shares pro rata.
- Payout leg: one executeBatchPayroll per token when the batch contract is
  deployed, otherwise one ERC-20 transfer per payee.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from django.conf import settings
from web3 import Web3

from .arc_client import ArcClient, get_arc_client
from .constants import BPS_DENOMINATOR

logger = logging.getLogger(__name__)

MODE_BATCH = 'batch'
MODE_SEQUENTIAL = 'sequential'

STEP_APPROVE = 'approve'
STEP_SWAP = 'swap'
STEP_BATCH_PAYOUT = 'batch_payout'
STEP_TRANSFER = 'transfer'

PAYOUT_STEP_KINDS = (STEP_BATCH_PAYOUT, STEP_TRANSFER)


@dataclass(frozen=True)
class Payout:
    item_id: str
    recipient: str
    amount: int  # USDC base units
    prefer_usyc: bool = False


@dataclass
class PayrollStep:
    kind: str
    contract: str
    function: str
    args: list
    item_ids: List[str] = field(default_factory=list)
    gas_fallback: int = 100_000
    description: str = ''
    tx_hash: Optional[str] = None

    @property
    def is_payout(self) -> bool:
        return self.kind in PAYOUT_STEP_KINDS

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'PayrollStep':
        return cls(**data)


@dataclass
class PayrollPlan:
    employer: str
    mode: str
    steps: List[PayrollStep]
    # item_id -> {'token': 'USDC' | 'USYC', 'amount': base units delivered}
    allocations: Dict[str, dict]
    usdc_total: int = 0
    usyc_deposit_amount: int = 0
    usyc_expected_shares: int = 0
    usyc_min_shares: int = 0

    def payout_step_for(self, item_id: str) -> Optional[PayrollStep]:
        for step in self.steps:
            if step.is_payout and item_id in step.item_ids:
                return step
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data['steps'] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'PayrollPlan':
        data = dict(data)
        data['steps'] = [PayrollStep.from_dict(s) for s in data.get('steps', [])]
        return cls(**data)


def allocate_usyc_shares(payouts: Sequence[Payout], min_shares: int) -> Dict[str, int]:
    """
    Split the guaranteed mint across USYC payees in proportion to their USDC.

    Every payee but the last gets floor(min_shares * amount / total); the last
    takes the remainder so the allocation sums to exactly `min_shares`.
    """
    if not payouts:
        return {}
    total = sum(p.amount for p in payouts)
    shares: Dict[str, int] = {}
    allocated = 0
    for payout in payouts[:-1]:
        portion = min_shares * payout.amount // total
        shares[payout.item_id] = portion
        allocated += portion
    shares[payouts[-1].item_id] = min_shares - allocated
    return shares


class PayrollTransactionBuilder:
    """Builds payroll execution plans for the Arc payroll contracts."""

    APPROVE_GAS = 80_000
    TRANSFER_GAS = 90_000
    DEPOSIT_GAS = 350_000
    BATCH_BASE_GAS = 80_000
    BATCH_PER_PAYMENT_GAS = 45_000

    def __init__(self, client: Optional[ArcClient] = None,
                 use_batch_contract: Optional[bool] = None,
                 slippage_bps: Optional[int] = None):
        self.client = client or get_arc_client()
        self.use_batch_contract = (
            settings.ARC_USE_BATCH_CONTRACT if use_batch_contract is None else use_batch_contract
        )
        self.slippage_bps = settings.USYC_SLIPPAGE_BPS if slippage_bps is None else slippage_bps

    def batching_available(self) -> bool:
        if not self.use_batch_contract:
            return False
        return self.client.has_code(self.client.address('BATCH_PAYROLL'))

    def min_shares_for(self, expected_shares: int) -> int:
        return expected_shares * (BPS_DENOMINATOR - self.slippage_bps) // BPS_DENOMINATOR

    def _approval_step(self, token: str, owner: str, spender: str, amount: int) -> Optional[PayrollStep]:
        spender_address = self.client.address(spender)
        current = self.client.allowance(token, owner, spender_address)
        if current >= amount:
            logger.info("[Payroll] %s allowance for %s already covers %s", token, spender, amount)
            return None
        return PayrollStep(
            kind=STEP_APPROVE,
            contract=token,
            function='approve',
            args=[spender_address, amount],
            gas_fallback=self.APPROVE_GAS,
            description=f"Approve {spender} to spend {token}",
        )

    def _swap_steps(self, employer: str, amount: int) -> Tuple[List[PayrollStep], int, int]:
        expected = self.client.preview_deposit(amount)
        min_shares = self.min_shares_for(expected)
        if min_shares <= 0:
            raise ValueError("USYC teller quoted zero shares for the deposit")

        steps = []
        approve = self._approval_step('USDC', employer, 'USYC_TELLER', amount)
        if approve:
            steps.append(approve)
        steps.append(PayrollStep(
            kind=STEP_SWAP,
            contract='USYC_TELLER',
            function='deposit',
            args=[amount, min_shares],
            gas_fallback=self.DEPOSIT_GAS,
            description='Convert USDC to USYC',
        ))
        return steps, expected, min_shares

    def _payout_steps(self, employer: str, token: str, recipients: List[Tuple[str, str, int]],
                      mode: str) -> List[PayrollStep]:
        """`recipients` is a list of (item_id, address, amount) for one token."""
        if not recipients:
            return []
        if mode == MODE_BATCH:
            total = sum(amount for _, _, amount in recipients)
            steps = []
            approve = self._approval_step(token, employer, 'BATCH_PAYROLL', total)
            if approve:
                steps.append(approve)
            steps.append(PayrollStep(
                kind=STEP_BATCH_PAYOUT,
                contract='BATCH_PAYROLL',
                function='executeBatchPayroll',
                args=[self.client.address(token), [[addr, amount] for _, addr, amount in recipients]],
                item_ids=[item_id for item_id, _, _ in recipients],
                gas_fallback=self.BATCH_BASE_GAS + self.BATCH_PER_PAYMENT_GAS * len(recipients),
                description=f"Batch pay {len(recipients)} staff in {token}",
            ))
            return steps

        return [
            PayrollStep(
                kind=STEP_TRANSFER,
                contract=token,
                function='transfer',
                args=[addr, amount],
                item_ids=[item_id],
                gas_fallback=self.TRANSFER_GAS,
                description=f"Pay {addr} in {token}",
            )
            for item_id, addr, amount in recipients
        ]

    def plan(self, employer: str, payouts: Sequence[Payout]) -> PayrollPlan:
        """Plan every step needed to pay `payouts` from the `employer` wallet."""
        if not payouts:
            raise ValueError("Payroll plan needs at least one payout")
        for payout in payouts:
            if payout.amount <= 0:
                raise ValueError(f"Payout {payout.item_id} has no amount")
            if not Web3.is_address(payout.recipient):
                raise ValueError(f"Payout {payout.item_id} has an invalid wallet address")

        employer = Web3.to_checksum_address(employer)
        usdc_payouts = [p for p in payouts if not p.prefer_usyc]
        usyc_payouts = [p for p in payouts if p.prefer_usyc]

        mode = MODE_BATCH if self.batching_available() else MODE_SEQUENTIAL
        steps: List[PayrollStep] = []
        allocations: Dict[str, dict] = {}

        usyc_deposit = sum(p.amount for p in usyc_payouts)
        expected_shares = min_shares = 0
        if usyc_payouts:
            swap_steps, expected_shares, min_shares = self._swap_steps(employer, usyc_deposit)
            steps.extend(swap_steps)

        for p in usdc_payouts:
            allocations[p.item_id] = {'token': 'USDC', 'amount': p.amount}
        shares = allocate_usyc_shares(usyc_payouts, min_shares)
        for p in usyc_payouts:
            allocations[p.item_id] = {'token': 'USYC', 'amount': shares[p.item_id]}

        steps.extend(self._payout_steps(
            employer, 'USDC',
            [(p.item_id, p.recipient, p.amount) for p in usdc_payouts], mode,
        ))
        steps.extend(self._payout_steps(
            employer, 'USYC',
            [(p.item_id, p.recipient, shares[p.item_id]) for p in usyc_payouts], mode,
        ))

        logger.info(
            "[Payroll] Planned %s steps (%s mode) for %s payouts from %s",
            len(steps), mode, len(payouts), employer,
        )
        return PayrollPlan(
            employer=employer,
            mode=mode,
            steps=steps,
            allocations=allocations,
            usdc_total=sum(p.amount for p in usdc_payouts),
            usyc_deposit_amount=usyc_deposit,
            usyc_expected_shares=expected_shares,
            usyc_min_shares=min_shares,
        )

    def build_unsigned(self, plan: PayrollPlan, sender: Optional[str] = None) -> List[dict]:
        """Unsigned transactions for every step, with sequential nonces."""
        sender = sender or plan.employer
        nonce = self.client.pending_nonce(sender)
        fees = self.client.fee_params()
        unsigned = []
        for offset, step in enumerate(plan.steps):
            unsigned.append(self.client.build_transaction(step, sender, nonce + offset, fees))
        return unsigned

    def prepare_usyc_swap(self, employer: str, amount: int) -> Tuple[PayrollPlan, List[dict]]:
        """Treasury conversion of `amount` USDC base units into USYC."""
        if amount <= 0:
            raise ValueError("Swap amount must be positive")
        employer = Web3.to_checksum_address(employer)
        steps, expected, min_shares = self._swap_steps(employer, amount)
        plan = PayrollPlan(
            employer=employer,
            mode=MODE_SEQUENTIAL,
            steps=steps,
            allocations={},
            usyc_deposit_amount=amount,
            usyc_expected_shares=expected,
            usyc_min_shares=min_shares,
        )
        return plan, self.build_unsigned(plan)
