"""
Payroll run lifecycle: create, prepare, submit, execute, refresh, cancel.

A run snapshots the chosen staff into PENDING items. Preparing plans the Arc
transactions and stores the unsigned set on the run for the business wallet to
sign. Submitting verifies and broadcasts what the wallet signed; refreshing
reads receipts and settles each item from the transaction that paid it.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from django.db import transaction as db_transaction
from django.utils import timezone

from blockchain.arc_client import ArcClient, ArcClientError, get_arc_client
from blockchain.balance_service import BalanceService
from blockchain.constants import from_base_units, to_base_units
from blockchain.payroll_transaction_builder import Payout, PayrollPlan, PayrollTransactionBuilder
from blockchain.transaction_executor import (
    RECEIPT_CONFIRMED,
    RECEIPT_FAILED,
    TransactionReverted,
    broadcast_signed,
    receipt_status,
    sign_and_send,
    verify_signed_transactions,
)

from .models import PayrollError, PayrollItem, PayrollRun, StaffMember
from .services import parse_staff_id

logger = logging.getLogger(__name__)

PREPARABLE_STATUSES = ('READY', 'PREPARED')
CANCELLABLE_STATUSES = ('READY', 'PREPARED')


def create_payroll_run(business, user, staff_ids: Iterable) -> PayrollRun:
    staff_ids = [s for s in (staff_ids or []) if str(s).strip()]
    if not staff_ids:
        raise PayrollError("Select at least one staff member to pay")
    staff_ids = list(dict.fromkeys(parse_staff_id(s) for s in staff_ids))

    staff_members = list(
        StaffMember.objects.filter(business=business, id__in=staff_ids, status='active')
    )
    if len(staff_members) != len(staff_ids):
        raise PayrollError("Only active staff of your business can be paid")

    with db_transaction.atomic():
        run = PayrollRun.objects.create(
            business=business,
            created_by_user=user,
            status='READY',
            total_amount=sum((s.salary for s in staff_members), Decimal('0')),
        )
        PayrollItem.objects.bulk_create([
            PayrollItem(
                run=run,
                staff=staff,
                recipient_address=staff.wallet_address,
                amount=staff.salary,
            )
            for staff in staff_members
        ])

    logger.info(
        "[Payroll] Run %s created for business %s: %s staff, %s USDC",
        run.run_id, business.id, len(staff_members), run.total_amount,
    )
    return run


def _payouts_for(run: PayrollRun) -> List[Payout]:
    payouts = []
    for item in run.items.select_related('staff').exclude(status='CANCELLED'):
        staff = item.staff
        if staff.is_deleted or staff.status != 'active':
            raise PayrollError(f"{staff.name or staff.wallet_address} is no longer active staff")
        payouts.append(Payout(
            item_id=item.item_id,
            recipient=item.recipient_address,
            amount=to_base_units(item.amount),
            prefer_usyc=staff.prefer_usyc,
        ))
    return payouts


def load_plan(run: PayrollRun) -> Optional[PayrollPlan]:
    data = (run.blockchain_data or {}).get('plan')
    return PayrollPlan.from_dict(data) if data else None


def prepare_payroll_run(run: PayrollRun, client: Optional[ArcClient] = None,
                        builder: Optional[PayrollTransactionBuilder] = None) -> PayrollRun:
    """Plan the run on chain and store the unsigned transactions."""
    if run.status not in PREPARABLE_STATUSES:
        raise PayrollError(f"Payroll run is {run.status.lower()} and cannot be prepared")

    builder = builder or PayrollTransactionBuilder(client=client or get_arc_client())
    employer = run.business.treasury_address
    try:
        plan = builder.plan(employer, _payouts_for(run))
    except ValueError as e:
        if isinstance(e, PayrollError):
            raise
        raise PayrollError(str(e)) from e
    unsigned = builder.build_unsigned(plan)

    with db_transaction.atomic():
        for item in run.items.exclude(status='CANCELLED'):
            allocation = plan.allocations[item.item_id]
            item.token_type = allocation['token']
            item.token_amount = from_base_units(allocation['amount'])
            item.status = 'PREPARED'
            item.transaction_hash = ''
            item.error_message = ''
            item.save(update_fields=[
                'token_type', 'token_amount', 'status', 'transaction_hash', 'error_message', 'updated_at',
            ])
        run.execution_mode = plan.mode
        run.status = 'PREPARED'
        run.blockchain_data = {
            'plan': plan.to_dict(),
            'unsigned_transactions': unsigned,
            'tx_hashes': [],
            'prepared_at': timezone.now().isoformat(),
        }
        run.save(update_fields=['execution_mode', 'status', 'blockchain_data', 'updated_at'])

    logger.info("[Payroll] Run %s prepared: %s transactions (%s)", run.run_id, len(unsigned), plan.mode)
    return run


def _record_hashes(run: PayrollRun, plan: PayrollPlan, hashes: List[str]):
    """Attach broadcast hashes to their steps and mark the paid items SUBMITTED."""
    now = timezone.now()
    item_hashes: Dict[str, str] = {}
    for index, tx_hash in enumerate(hashes):
        step = plan.steps[index]
        step.tx_hash = tx_hash
        if step.is_payout:
            for item_id in step.item_ids:
                item_hashes[item_id] = tx_hash

    with db_transaction.atomic():
        for item in run.items.filter(item_id__in=list(item_hashes)):
            item.transaction_hash = item_hashes[item.item_id]
            item.status = 'SUBMITTED'
            item.executed_at = now
            item.save(update_fields=['transaction_hash', 'status', 'executed_at', 'updated_at'])

        data = dict(run.blockchain_data or {})
        data['plan'] = plan.to_dict()
        data['tx_hashes'] = list(hashes)
        run.blockchain_data = data
        if hashes:
            run.status = 'PROCESSING'
            run.submitted_at = run.submitted_at or now
        run.save(update_fields=['blockchain_data', 'status', 'submitted_at', 'updated_at'])


def _fail_unsent_items(run: PayrollRun, reason: str):
    run.items.filter(status='PREPARED').update(
        status='FAILED', error_message=reason, updated_at=timezone.now(),
    )


def enqueue_confirmation(run: PayrollRun):
    try:
        from blockchain.tasks import confirm_payroll_run
        confirm_payroll_run.delay(run.run_id)
    except Exception as e:
        logger.warning("[Payroll] Failed to enqueue confirmation for run %s: %s", run.run_id, e)


def submit_payroll_run(run: PayrollRun, signed_transactions: List, client: Optional[ArcClient] = None) -> PayrollRun:
    """Verify and broadcast the wallet-signed transactions for a prepared run."""
    if run.status != 'PREPARED':
        raise PayrollError("Payroll run must be prepared before it can be submitted")
    plan = load_plan(run)
    if plan is None:
        raise PayrollError("Payroll run has no prepared transactions")

    try:
        raw = verify_signed_transactions(
            signed_transactions or [],
            len(plan.steps),
            run.business.treasury_address,
            unsigned=(run.blockchain_data or {}).get('unsigned_transactions') or [],
        )
    except ValueError as e:
        raise PayrollError(str(e)) from e

    client = client or get_arc_client()
    hashes: List[str] = []
    try:
        broadcast_signed(client, raw, on_sent=lambda index, tx_hash: hashes.append(tx_hash))
    except ArcClientError:
        logger.error("[Payroll] Broadcast for run %s stopped after %s of %s steps",
                     run.run_id, len(hashes), len(plan.steps))
        if hashes:
            _record_hashes(run, plan, hashes)
            _fail_unsent_items(run, "Not broadcast: an earlier transaction was rejected")
            enqueue_confirmation(run)
        raise
    _record_hashes(run, plan, hashes)
    BalanceService.invalidate(run.business.treasury_address)

    logger.info("[Payroll] Run %s submitted with %s transactions", run.run_id, len(hashes))
    enqueue_confirmation(run)
    return run


def execute_payroll_run(run: PayrollRun, account, client: Optional[ArcClient] = None,
                        builder: Optional[PayrollTransactionBuilder] = None) -> PayrollRun:
    """
    Server-side execution with a local signing key. Each step is awaited before
    the next is sent; a revert stops the run and leaves the rest unsent.
    """
    if account.address.lower() != (run.business.treasury_address or '').lower():
        raise PayrollError("Signing key does not match the business wallet")

    client = client or get_arc_client()
    run = prepare_payroll_run(run, client=client, builder=builder)
    plan = load_plan(run)
    unsigned = run.blockchain_data['unsigned_transactions']

    hashes: List[str] = []
    try:
        sign_and_send(client, unsigned, account, on_sent=lambda index, tx_hash: hashes.append(tx_hash))
    except TransactionReverted as e:
        _record_hashes(run, plan, hashes)
        _fail_unsent_items(run, f"Not sent: step {e.step_index} reverted ({e.tx_hash})")
        data = dict(run.blockchain_data)
        data['error'] = str(e)
        run.blockchain_data = data
        run.save(update_fields=['blockchain_data', 'updated_at'])
    except ArcClientError as e:
        _record_hashes(run, plan, hashes)
        _fail_unsent_items(run, f"Not sent: execution stopped ({e})")
        recompute_run_status(run)
        if hashes:
            enqueue_confirmation(run)
        raise
    else:
        _record_hashes(run, plan, hashes)

    BalanceService.invalidate(run.business.treasury_address)
    return refresh_payroll_run(run, client=client)


def recompute_run_status(run: PayrollRun, save: bool = True) -> str:
    statuses = list(run.items.values_list('status', flat=True))
    if not statuses:
        return run.status

    if all(s == 'CONFIRMED' for s in statuses):
        new_status = 'COMPLETED'
    elif all(s in ('FAILED', 'CANCELLED') for s in statuses):
        new_status = 'FAILED'
    elif any(s == 'CONFIRMED' for s in statuses):
        new_status = 'PARTIAL'
    else:
        new_status = run.status

    if new_status != run.status:
        logger.info("[Payroll] Run %s status %s -> %s", run.run_id, run.status, new_status)
        run.status = new_status
        if new_status == 'COMPLETED' and not run.completed_at:
            run.completed_at = timezone.now()
        if save:
            run.save(update_fields=['status', 'completed_at', 'updated_at'])
    return new_status


def refresh_payroll_run(run: PayrollRun, client: Optional[ArcClient] = None) -> PayrollRun:
    """Settle SUBMITTED items from their payout receipts."""
    client = client or get_arc_client()
    statuses: Dict[str, str] = {}
    now = timezone.now()

    for item in run.items.select_related('staff').filter(status='SUBMITTED'):
        tx_hash = item.transaction_hash
        if tx_hash not in statuses:
            statuses[tx_hash] = receipt_status(client, tx_hash)
        result = statuses[tx_hash]

        if result == RECEIPT_CONFIRMED:
            item.status = 'CONFIRMED'
            item.save(update_fields=['status', 'updated_at'])
            staff = item.staff
            staff.last_payment_at = item.executed_at or now
            staff.save(update_fields=['last_payment_at', 'updated_at'])
        elif result == RECEIPT_FAILED:
            item.status = 'FAILED'
            item.error_message = f"Transaction reverted: {tx_hash}"
            item.save(update_fields=['status', 'error_message', 'updated_at'])
            logger.warning("[Payroll] Item %s failed on chain (%s)", item.item_id, tx_hash)

    recompute_run_status(run)
    return run


def cancel_payroll_run(run: PayrollRun) -> PayrollRun:
    if run.status not in CANCELLABLE_STATUSES:
        raise PayrollError("Only payroll runs that have not been submitted can be cancelled")
    with db_transaction.atomic():
        run.items.update(status='CANCELLED', updated_at=timezone.now())
        run.status = 'CANCELLED'
        run.save(update_fields=['status', 'updated_at'])
    logger.info("[Payroll] Run %s cancelled", run.run_id)
    return run
