from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from celery.exceptions import Retry
from django.core.management import call_command
from django.test import TestCase, override_settings
from eth_account import Account
from web3 import Web3

from blockchain.arc_client import ArcClientError
from blockchain.tasks import confirm_payroll_run, scan_submitted_payroll_runs
from blockchain.tests import ALICE, BOB, FakeArcClient, _signed_raw, sign_prepared
from payroll import execution, services
from payroll.models import INVITE_CODE_ALPHABET, InviteCode, PayrollError, PayrollItem, PayrollRun, StaffMember
from payroll.schema import (
    ApproveStaff,
    BusinessStaffMemberType,
    CreatePayrollRun,
    PayrollItemType,
    Query,
    RegisterWithCode,
    SubmitPayrollRun,
    UpdateStaffSalary,
)
from users.models import Business, User


class MockContext:
    def __init__(self, user=None):
        self.user = user


class MockInfo:
    def __init__(self, user=None):
        self.context = MockContext(user)


def make_user(address):
    return User.objects.create_user(username=address.lower(), wallet_address=address)


class PayrollTestMixin:
    def setUp(self):
        self.owner_account = Account.create()
        self.owner = make_user(self.owner_account.address)
        self.business = Business.objects.create(name='Acme Studio', owner=self.owner)
        self.alice = make_user(ALICE)
        self.bob = make_user(BOB)

    def add_staff(self, user, name, salary='1000', status='active', prefer_usyc=False):
        return StaffMember.objects.create(
            business=self.business,
            user=user,
            name=name,
            wallet_address=user.wallet_address,
            salary=Decimal(salary),
            status=status,
            prefer_usyc=prefer_usyc,
        )


class InviteAndStaffServicesTest(PayrollTestMixin, TestCase):
    def test_create_invite_code_format(self):
        invite = services.create_invite_code(self.business)
        self.assertEqual(len(invite.code), 6)
        self.assertTrue(all(c in INVITE_CODE_ALPHABET for c in invite.code))
        self.assertFalse(invite.used)

    def test_register_with_code_creates_pending_staff(self):
        invite = services.create_invite_code(self.business)
        staff = services.register_with_code(self.alice, invite.code.lower(), '  Alice ')

        self.assertEqual(staff.status, 'pending')
        self.assertEqual(staff.name, 'Alice')
        self.assertEqual(staff.salary, Decimal('3000'))
        self.assertEqual(staff.wallet_address, ALICE)
        invite.refresh_from_db()
        self.assertTrue(invite.used)
        self.assertEqual(invite.used_by, ALICE)
        self.assertIsNotNone(invite.used_at)
        self.assertEqual(self.alice.role, 'staff')
        self.assertEqual(self.owner.role, 'business')

    def test_used_or_unknown_code_is_rejected(self):
        invite = services.create_invite_code(self.business)
        services.register_with_code(self.alice, invite.code)
        with self.assertRaisesMessage(PayrollError, "Invalid or expired invite code"):
            services.register_with_code(self.bob, invite.code)
        with self.assertRaisesMessage(PayrollError, "Invalid or expired invite code"):
            services.register_with_code(self.bob, 'ZZZZZZ')

    def test_short_code_rejected_before_lookup(self):
        with self.assertRaises(PayrollError):
            services.register_with_code(self.alice, 'ABC')

    def test_owner_cannot_join_own_business(self):
        invite = services.create_invite_code(self.business)
        with self.assertRaises(PayrollError):
            services.register_with_code(self.owner, invite.code)

    def test_one_membership_per_wallet(self):
        services.register_with_code(self.alice, services.create_invite_code(self.business).code)
        second = services.create_invite_code(self.business)
        with self.assertRaises(PayrollError):
            services.register_with_code(self.alice, second.code)
        self.assertFalse(InviteCode.objects.get(pk=second.pk).used)

    def test_leave_job_then_rejoin_with_new_code(self):
        services.register_with_code(self.alice, services.create_invite_code(self.business).code)
        services.leave_job(self.alice)
        self.assertIsNone(StaffMember.objects.filter(user=self.alice).first())
        self.assertEqual(StaffMember.all_objects.filter(user=self.alice).count(), 1)

        staff = services.register_with_code(self.alice, services.create_invite_code(self.business).code)
        self.assertEqual(staff.status, 'pending')

    def test_approve_and_delete_staff(self):
        staff = self.add_staff(self.alice, 'Alice', status='pending')
        services.approve_staff(self.business, staff.id)
        staff.refresh_from_db()
        self.assertEqual(staff.status, 'active')
        self.assertIsNotNone(staff.approved_at)

        services.delete_staff(self.business, staff.id)
        self.assertTrue(StaffMember.all_objects.get(pk=staff.pk).is_deleted)

    def test_other_business_staff_not_found(self):
        other_owner = make_user(Account.create().address)
        other = Business.objects.create(name='Other', owner=other_owner)
        staff = self.add_staff(self.alice, 'Alice')
        with self.assertRaisesMessage(PayrollError, "Staff member not found"):
            services.approve_staff(other, staff.id)

    def test_update_salary_validation(self):
        staff = self.add_staff(self.alice, 'Alice')
        services.update_staff_salary(self.business, staff.id, '2500.1234567')
        staff.refresh_from_db()
        self.assertEqual(staff.salary, Decimal('2500.123457'))
        for bad in ('0', '-5', 'abc', 'NaN'):
            with self.assertRaises(PayrollError):
                services.update_staff_salary(self.business, staff.id, bad)

    def test_update_payout_preference(self):
        self.add_staff(self.alice, 'Alice')
        staff = services.update_payout_preference(self.alice, True)
        self.assertTrue(staff.prefer_usyc)
        with self.assertRaises(PayrollError):
            services.update_payout_preference(self.bob, True)


@patch('blockchain.tasks.confirm_payroll_run.delay')
@override_settings(ARC_USE_BATCH_CONTRACT=True, USYC_SLIPPAGE_BPS=100)
class PayrollRunLifecycleTest(PayrollTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.alice_staff = self.add_staff(self.alice, 'Alice', salary='1000')
        self.bob_staff = self.add_staff(self.bob, 'Bob', salary='2000', prefer_usyc=True)

    def test_create_run_snapshots_active_staff(self, mock_delay):
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])
        self.assertEqual(run.status, 'READY')
        self.assertEqual(run.total_amount, Decimal('3000'))
        self.assertEqual(run.items.count(), 2)
        self.assertTrue(all(i.status == 'PENDING' for i in run.items.all()))

    def test_create_run_rejects_pending_or_missing_staff(self, mock_delay):
        pending = self.add_staff(make_user(Account.create().address), 'Pending', status='pending')
        with self.assertRaises(PayrollError):
            execution.create_payroll_run(self.business, self.owner, [])
        with self.assertRaises(PayrollError):
            execution.create_payroll_run(self.business, self.owner, [pending.id])

    def test_prepare_submit_and_confirm_batch_run(self, mock_delay):
        client = FakeArcClient(preview_ratio=(1, 1))
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])

        execution.prepare_payroll_run(run, client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PREPARED')
        self.assertEqual(run.execution_mode, 'batch')
        unsigned = run.blockchain_data['unsigned_transactions']
        self.assertEqual(len(unsigned), 6)

        bob_item = run.items.get(staff=self.bob_staff)
        self.assertEqual(bob_item.status, 'PREPARED')
        self.assertEqual(bob_item.token_type, 'USYC')
        self.assertEqual(bob_item.token_amount, Decimal('1980'))
        alice_item = run.items.get(staff=self.alice_staff)
        self.assertEqual(alice_item.token_type, 'USDC')
        self.assertEqual(alice_item.token_amount, Decimal('1000'))

        signed = sign_prepared(self.owner_account, unsigned)
        execution.submit_payroll_run(run, signed, client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PROCESSING')
        self.assertEqual(len(run.transaction_hashes), 6)
        mock_delay.assert_called_once_with(run.run_id)

        alice_item.refresh_from_db()
        bob_item.refresh_from_db()
        self.assertEqual(alice_item.status, 'SUBMITTED')
        self.assertEqual(alice_item.transaction_hash, run.transaction_hashes[3])
        self.assertEqual(bob_item.transaction_hash, run.transaction_hashes[5])

        client.receipts = {h: {'status': 1} for h in run.transaction_hashes}
        execution.refresh_payroll_run(run, client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'COMPLETED')
        self.assertIsNotNone(run.completed_at)
        self.alice_staff.refresh_from_db()
        self.assertIsNotNone(self.alice_staff.last_payment_at)

    def test_submit_rejects_foreign_signer_and_wrong_count(self, mock_delay):
        client = FakeArcClient(batch_deployed=False)
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id])
        execution.prepare_payroll_run(run, client=client)

        with self.assertRaises(PayrollError):
            execution.submit_payroll_run(run, [_signed_raw(Account.create())[0]], client=client)
        with self.assertRaises(PayrollError):
            execution.submit_payroll_run(run, [], client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PREPARED')
        self.assertEqual(client.sent, [])

    def test_partial_when_one_transfer_reverts(self, mock_delay):
        self.bob_staff.prefer_usyc = False
        self.bob_staff.save()
        client = FakeArcClient(batch_deployed=False)
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])
        execution.prepare_payroll_run(run, client=client)
        signed = sign_prepared(self.owner_account, run.blockchain_data['unsigned_transactions'])
        execution.submit_payroll_run(run, signed, client=client)
        run.refresh_from_db()

        first, second = run.transaction_hashes
        client.receipts = {first: {'status': 1}}
        execution.refresh_payroll_run(run, client=client)
        self.assertEqual(run.status, 'PARTIAL')

        client.receipts[second] = {'status': 0}
        execution.refresh_payroll_run(run, client=client)
        failed = run.items.get(transaction_hash=second)
        self.assertEqual(failed.status, 'FAILED')
        self.assertIn('reverted', failed.error_message)
        self.assertEqual(run.status, 'PARTIAL')

    def _prepared_sequential_run(self, client):
        self.bob_staff.prefer_usyc = False
        self.bob_staff.save()
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])
        execution.prepare_payroll_run(run, client=client)
        return run

    def test_submit_rejects_transactions_other_than_prepared(self, mock_delay):
        client = FakeArcClient(batch_deployed=False)
        run = self._prepared_sequential_run(client)

        unrelated = [_signed_raw(self.owner_account, n)[0] for n in (7, 8)]
        with self.assertRaisesMessage(PayrollError, "does not match the prepared transaction"):
            execution.submit_payroll_run(run, unrelated, client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PREPARED')
        self.assertEqual(set(run.items.values_list('status', flat=True)), {'PREPARED'})
        self.assertEqual(client.sent, [])

    def test_submit_broadcasts_in_nonce_order(self, mock_delay):
        client = FakeArcClient(batch_deployed=False)
        run = self._prepared_sequential_run(client)
        first, second = sign_prepared(self.owner_account, run.blockchain_data['unsigned_transactions'])

        execution.submit_payroll_run(run, [second, first], client=client)
        self.assertEqual([Web3.to_hex(raw) for raw in client.sent], [first, second])
        alice_item = run.items.get(staff=self.alice_staff)
        self.assertEqual(alice_item.transaction_hash, run.transaction_hashes[0])

    def test_reprepare_uses_fresh_nonces(self, mock_delay):
        client = FakeArcClient(batch_deployed=False, nonce=7)
        run = self._prepared_sequential_run(client)
        self.assertEqual([tx['nonce'] for tx in run.blockchain_data['unsigned_transactions']], [7, 8])

        client.nonce = 12
        execution.prepare_payroll_run(run, client=client)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PREPARED')
        self.assertEqual([tx['nonce'] for tx in run.blockchain_data['unsigned_transactions']], [12, 13])
        self.assertEqual(set(run.items.values_list('status', flat=True)), {'PREPARED'})

    def test_partial_broadcast_failure_fails_unsent_items(self, mock_delay):
        client = FakeArcClient(batch_deployed=False)
        run = self._prepared_sequential_run(client)
        signed = sign_prepared(self.owner_account, run.blockchain_data['unsigned_transactions'])
        first_hash = '0x' + 'aa' * 32
        client.send_raw_transaction = Mock(side_effect=[first_hash, ArcClientError('nonce too low')])

        with self.assertRaises(ArcClientError):
            execution.submit_payroll_run(run, signed, client=client)

        run.refresh_from_db()
        self.assertEqual(run.status, 'PROCESSING')
        self.assertEqual(run.transaction_hashes, [first_hash])
        alice_item = run.items.get(staff=self.alice_staff)
        bob_item = run.items.get(staff=self.bob_staff)
        self.assertEqual(alice_item.status, 'SUBMITTED')
        self.assertEqual(alice_item.transaction_hash, first_hash)
        self.assertEqual(bob_item.status, 'FAILED')
        self.assertIn('Not broadcast', bob_item.error_message)
        mock_delay.assert_called_once_with(run.run_id)

    def test_execute_with_local_key_fails_unsent_items_on_client_error(self, mock_delay):
        self.bob_staff.prefer_usyc = False
        self.bob_staff.save()
        client = FakeArcClient(batch_deployed=False)
        client.wait_for_receipt = Mock(side_effect=ArcClientError('Timed out waiting for receipt'))
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])

        with self.assertRaises(ArcClientError):
            execution.execute_payroll_run(run, self.owner_account, client=client)

        run.refresh_from_db()
        self.assertEqual(len(client.sent), 1)
        self.assertEqual(run.status, 'PROCESSING')
        self.assertEqual(run.items.get(staff=self.bob_staff).status, 'FAILED')
        mock_delay.assert_called_once_with(run.run_id)

        client.receipts = {h: {'status': 1} for h in run.transaction_hashes}
        execution.refresh_payroll_run(run, client=client)
        self.assertEqual(run.status, 'PARTIAL')
        self.assertEqual(sorted(run.items.values_list('status', flat=True)), ['CONFIRMED', 'FAILED'])

    def test_execute_failing_before_any_send_fails_run(self, mock_delay):
        client = FakeArcClient(batch_deployed=False)
        client.send_raw_transaction = Mock(side_effect=ArcClientError('Broadcast rejected'))
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id])

        with self.assertRaises(ArcClientError):
            execution.execute_payroll_run(run, self.owner_account, client=client)

        run.refresh_from_db()
        self.assertEqual(run.status, 'FAILED')
        self.assertEqual(list(run.items.values_list('status', flat=True)), ['FAILED'])
        mock_delay.assert_not_called()

    def test_execute_with_local_key_stops_at_revert(self, mock_delay):
        self.bob_staff.prefer_usyc = False
        self.bob_staff.save()
        client = FakeArcClient(batch_deployed=False)
        first_hash = '0x' + f'{1:064x}'
        client.receipts = {first_hash: {'status': 0}}
        signer = Mock()
        signer.address = self.owner_account.address
        signer.sign_transaction.side_effect = lambda tx: Mock(raw_transaction=b'\x02')

        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id, self.bob_staff.id])
        run = execution.execute_payroll_run(run, signer, client=client)

        self.assertEqual(len(client.sent), 1)
        self.assertEqual(run.status, 'FAILED')
        statuses = sorted(run.items.values_list('status', flat=True))
        self.assertEqual(statuses, ['FAILED', 'FAILED'])
        self.assertIn('error', run.blockchain_data)

    def test_execute_rejects_foreign_key(self, mock_delay):
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id])
        with self.assertRaises(PayrollError):
            execution.execute_payroll_run(run, Account.create(), client=FakeArcClient())

    def test_cancel_only_before_submit(self, mock_delay):
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id])
        execution.cancel_payroll_run(run)
        self.assertEqual(run.status, 'CANCELLED')
        self.assertEqual(set(run.items.values_list('status', flat=True)), {'CANCELLED'})
        with self.assertRaises(PayrollError):
            execution.cancel_payroll_run(run)
        with self.assertRaises(PayrollError):
            execution.prepare_payroll_run(run, client=FakeArcClient())

    def test_prepare_rejects_staff_removed_after_run_created(self, mock_delay):
        run = execution.create_payroll_run(self.business, self.owner, [self.alice_staff.id])
        self.alice_staff.soft_delete()
        with self.assertRaises(PayrollError):
            execution.prepare_payroll_run(run, client=FakeArcClient())


class RecomputeRunStatusTest(PayrollTestMixin, TestCase):
    def _run_with(self, *statuses):
        run = PayrollRun.objects.create(business=self.business, created_by_user=self.owner, status='PROCESSING')
        for status in statuses:
            user = make_user(Account.create().address)
            staff = self.add_staff(user, 'S')
            PayrollItem.objects.create(run=run, staff=staff, recipient_address=user.wallet_address,
                                       amount=Decimal('1'), status=status)
        return run

    def test_transitions(self):
        self.assertEqual(execution.recompute_run_status(self._run_with('CONFIRMED', 'CONFIRMED')), 'COMPLETED')
        self.assertEqual(execution.recompute_run_status(self._run_with('FAILED', 'CANCELLED')), 'FAILED')
        self.assertEqual(execution.recompute_run_status(self._run_with('CONFIRMED', 'FAILED')), 'PARTIAL')
        self.assertEqual(execution.recompute_run_status(self._run_with('SUBMITTED', 'SUBMITTED')), 'PROCESSING')

    def test_sync_payroll_runs_command_is_dry_run_by_default(self):
        run = self._run_with('CONFIRMED')
        out = StringIO()
        call_command('sync_payroll_runs', stdout=out)
        run.refresh_from_db()
        self.assertEqual(run.status, 'PROCESSING')
        self.assertIn('PROCESSING -> COMPLETED', out.getvalue())

        call_command('sync_payroll_runs', '--apply', stdout=StringIO())
        run.refresh_from_db()
        self.assertEqual(run.status, 'COMPLETED')


class PayrollTasksTest(PayrollTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        staff = self.add_staff(self.alice, 'Alice')
        self.run = PayrollRun.objects.create(business=self.business, created_by_user=self.owner, status='PROCESSING')
        self.item = PayrollItem.objects.create(
            run=self.run, staff=staff, recipient_address=ALICE, amount=Decimal('10'),
            status='SUBMITTED', transaction_hash='0x' + 'ab' * 32,
        )

    @patch('payroll.execution.get_arc_client')
    def test_confirm_settles_run(self, mock_client):
        mock_client.return_value = FakeArcClient(receipts={self.item.transaction_hash: {'status': 1}})
        self.assertEqual(confirm_payroll_run(self.run.run_id), 'COMPLETED')
        self.item.refresh_from_db()
        self.assertEqual(self.item.status, 'CONFIRMED')

    @patch('payroll.execution.get_arc_client')
    def test_confirm_retries_while_pending(self, mock_client):
        mock_client.return_value = FakeArcClient()
        with patch.object(confirm_payroll_run, 'retry', side_effect=Retry()) as mock_retry:
            with self.assertRaises(Retry):
                confirm_payroll_run(self.run.run_id)
        self.assertEqual(mock_retry.call_args.kwargs['countdown'], 15)
        self.assertEqual(mock_retry.call_args.kwargs['max_retries'], 20)

    def test_confirm_missing_run(self):
        self.assertEqual(confirm_payroll_run('NOPE'), 'missing')

    @patch('blockchain.tasks.confirm_payroll_run.delay')
    def test_scan_requeues_processing_runs(self, mock_delay):
        self.assertEqual(scan_submitted_payroll_runs(), 1)
        mock_delay.assert_called_once_with(self.run.run_id)

    @patch('blockchain.tasks.confirm_payroll_run.delay')
    def test_scan_requeues_partial_runs_with_unsettled_items(self, mock_delay):
        self.run.status = 'PARTIAL'
        self.run.save()
        self.assertEqual(scan_submitted_payroll_runs(), 1)
        mock_delay.assert_called_once_with(self.run.run_id)

        self.item.status = 'CONFIRMED'
        self.item.save()
        mock_delay.reset_mock()
        self.assertEqual(scan_submitted_payroll_runs(), 0)
        mock_delay.assert_not_called()


class PayrollSchemaTest(PayrollTestMixin, TestCase):
    def test_business_types_hide_private_fields(self):
        self.assertNotIn('prefer_usyc', BusinessStaffMemberType._meta.fields)
        self.assertNotIn('token_type', PayrollItemType._meta.fields)
        self.assertNotIn('token_amount', PayrollItemType._meta.fields)

    def test_register_with_code_mutation(self):
        invite = services.create_invite_code(self.business)
        result = RegisterWithCode.mutate(None, MockInfo(self.alice), code=invite.code, name='Alice')
        self.assertTrue(result.success)
        self.assertEqual(result.employment.business_name, 'Acme Studio')
        self.assertEqual(result.employment.status, 'pending')

        result = RegisterWithCode.mutate(None, MockInfo(self.bob), code=invite.code)
        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["Invalid or expired invite code"])

    def test_mutations_require_business(self):
        staff = self.add_staff(self.alice, 'Alice')
        result = UpdateStaffSalary.mutate(None, MockInfo(self.alice), staff_id=staff.id, salary='10')
        self.assertFalse(result.success)
        result = CreatePayrollRun.mutate(None, MockInfo(self.bob), staff_ids=[staff.id])
        self.assertFalse(result.success)
        result = SubmitPayrollRun.mutate(None, MockInfo(None), run_id='X', signed_transactions=[])
        self.assertFalse(result.success)

    def test_update_salary_mutation_returns_errors(self):
        staff = self.add_staff(self.alice, 'Alice')
        result = UpdateStaffSalary.mutate(None, MockInfo(self.owner), staff_id=staff.id, salary='-1')
        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["Salary must be greater than zero"])

    def test_my_employment_and_payments(self):
        staff = self.add_staff(self.alice, 'Alice', prefer_usyc=True)
        run = PayrollRun.objects.create(business=self.business, created_by_user=self.owner, status='COMPLETED')
        PayrollItem.objects.create(run=run, staff=staff, recipient_address=ALICE, amount=Decimal('5'),
                                   token_type='USYC', token_amount=Decimal('4.9'), status='CONFIRMED',
                                   transaction_hash='0x' + '12' * 32)

        employment = Query().resolve_my_employment(MockInfo(self.alice))
        self.assertTrue(employment.prefer_usyc)
        self.assertEqual(employment.salary, '1000.000000')

        payments = Query().resolve_my_payments(MockInfo(self.alice))
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0].token_type, 'USYC')
        self.assertTrue(payments[0].explorer_url.endswith('/tx/0x' + '12' * 32))

    def test_staff_members_scoped_to_business(self):
        self.add_staff(self.alice, 'Alice')
        self.assertEqual(len(Query().resolve_staff_members(MockInfo(self.owner))), 1)
        self.assertEqual(Query().resolve_staff_members(MockInfo(self.alice)), [])

    def test_malformed_staff_ids_return_errors(self):
        result = ApproveStaff.mutate(None, MockInfo(self.owner), staff_id='abc')
        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["Staff member not found"])

        staff = self.add_staff(self.alice, 'Alice')
        result = CreatePayrollRun.mutate(None, MockInfo(self.owner), staff_ids=[str(staff.id), 'abc'])
        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["Staff member not found"])
        self.assertFalse(PayrollRun.objects.exists())
