from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

from django.conf import settings
from django.core.cache import cache
from django.test import SimpleTestCase, TestCase, override_settings
from eth_account import Account
from web3 import Web3

from blockchain.arc_client import ArcClient
from blockchain.balance_service import BalanceService
from blockchain.constants import from_base_units, to_base_units
from blockchain.payroll_transaction_builder import (
    MODE_BATCH,
    MODE_SEQUENTIAL,
    Payout,
    PayrollPlan,
    PayrollStep,
    PayrollTransactionBuilder,
    allocate_usyc_shares,
)
from blockchain.schema import Query
from blockchain.transaction_executor import (
    RECEIPT_CONFIRMED,
    RECEIPT_FAILED,
    RECEIPT_PENDING,
    TransactionReverted,
    receipt_status,
    sign_and_send,
    transaction_hash,
    verify_signed_transactions,
)
from users.models import Business, User


def addr(n):
    return Web3.to_checksum_address('0x' + f'{n:x}'.rjust(40, '0'))


EMPLOYER = addr(0xE0)
ALICE = addr(0xA1)
BOB = addr(0xB2)
CAROL = addr(0xC3)


class FakeArcClient:
    """In-memory stand-in for ArcClient used by builder/executor tests."""

    chain_id = 5042002

    def __init__(self, batch_deployed=True, allowances=None, preview_ratio=(97, 100),
                 nonce=7, receipts=None, balances=None):
        self.batch_deployed = batch_deployed
        self.allowances = allowances or {}
        self.preview_ratio = preview_ratio
        self.nonce = nonce
        self.receipts = receipts if receipts is not None else {}
        self.balances = balances or {}
        self.sent = []
        self.balance_calls = 0

    def address(self, name):
        return Web3.to_checksum_address(settings.ARC_CONTRACTS[name])

    def has_code(self, address):
        return self.batch_deployed and address == self.address('BATCH_PAYROLL')

    def allowance(self, token, owner, spender):
        return self.allowances.get((token, spender), 0)

    def preview_deposit(self, amount):
        num, den = self.preview_ratio
        return amount * num // den

    def pending_nonce(self, address):
        return self.nonce

    def fee_params(self):
        return {'maxFeePerGas': 321, 'maxPriorityFeePerGas': 1}

    def build_transaction(self, step, sender, nonce, fees):
        return {
            'from': sender,
            'to': self.address(step.contract),
            'data': Web3.to_hex(text=f'{step.function}{step.args}'),
            'value': 0,
            'nonce': nonce,
            'chainId': self.chain_id,
            'gas': step.gas_fallback,
            'type': 2,
            **fees,
        }

    def token_balance(self, token, holder):
        self.balance_calls += 1
        return self.balances.get(token, 0)

    def send_raw_transaction(self, raw):
        tx_hash = '0x' + f'{len(self.sent) + 1:064x}'
        self.sent.append(raw)
        return tx_hash

    def wait_for_receipt(self, tx_hash):
        return self.receipts.get(tx_hash, {'status': 1})

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)


class UnitConversionTest(SimpleTestCase):
    def test_to_base_units_rounds_down(self):
        self.assertEqual(to_base_units(Decimal('1.2345679')), 1_234_567)
        self.assertEqual(to_base_units('3000'), 3_000_000_000)

    def test_from_base_units(self):
        self.assertEqual(from_base_units(1_500_000), Decimal('1.500000'))


class AllocateUsycSharesTest(SimpleTestCase):
    def test_pro_rata_with_remainder_to_last(self):
        payouts = [
            Payout('a', ALICE, 1_000_000, True),
            Payout('b', BOB, 1_000_000, True),
            Payout('c', CAROL, 1_000_000, True),
        ]
        shares = allocate_usyc_shares(payouts, 1_000_000)
        self.assertEqual(shares['a'], 333_333)
        self.assertEqual(shares['b'], 333_333)
        self.assertEqual(shares['c'], 333_334)
        self.assertEqual(sum(shares.values()), 1_000_000)

    def test_empty(self):
        self.assertEqual(allocate_usyc_shares([], 10), {})


@override_settings(ARC_USE_BATCH_CONTRACT=True, USYC_SLIPPAGE_BPS=100)
class PayrollTransactionBuilderTest(SimpleTestCase):
    def test_sequential_when_batch_contract_missing(self):
        client = FakeArcClient(batch_deployed=False)
        plan = PayrollTransactionBuilder(client=client).plan(EMPLOYER, [
            Payout('a', ALICE, 2_000_000),
            Payout('b', BOB, 3_000_000),
        ])
        self.assertEqual(plan.mode, MODE_SEQUENTIAL)
        self.assertEqual([s.function for s in plan.steps], ['transfer', 'transfer'])
        self.assertEqual(plan.steps[0].args, [ALICE, 2_000_000])
        self.assertEqual(plan.steps[1].item_ids, ['b'])
        self.assertEqual(plan.allocations['a'], {'token': 'USDC', 'amount': 2_000_000})
        self.assertEqual(plan.usdc_total, 5_000_000)

    def test_sequential_when_batching_disabled(self):
        builder = PayrollTransactionBuilder(client=FakeArcClient(), use_batch_contract=False)
        plan = builder.plan(EMPLOYER, [Payout('a', ALICE, 1_000_000)])
        self.assertEqual(plan.mode, MODE_SEQUENTIAL)

    def test_batch_plan_with_usyc_leg(self):
        client = FakeArcClient(preview_ratio=(29, 30))
        plan = PayrollTransactionBuilder(client=client).plan(EMPLOYER, [
            Payout('a', ALICE, 5_000_000),
            Payout('b', BOB, 1_000_000, prefer_usyc=True),
            Payout('c', CAROL, 2_000_000, prefer_usyc=True),
        ])

        self.assertEqual(plan.mode, MODE_BATCH)
        self.assertEqual(
            [(s.kind, s.contract, s.function) for s in plan.steps],
            [
                ('approve', 'USDC', 'approve'),
                ('swap', 'USYC_TELLER', 'deposit'),
                ('approve', 'USDC', 'approve'),
                ('batch_payout', 'BATCH_PAYROLL', 'executeBatchPayroll'),
                ('approve', 'USYC', 'approve'),
                ('batch_payout', 'BATCH_PAYROLL', 'executeBatchPayroll'),
            ],
        )
        # preview 2_900_000, minus 1% slippage
        self.assertEqual(plan.usyc_expected_shares, 2_900_000)
        self.assertEqual(plan.usyc_min_shares, 2_871_000)
        self.assertEqual(plan.steps[1].args, [3_000_000, 2_871_000])
        self.assertEqual(plan.allocations['b'], {'token': 'USYC', 'amount': 957_000})
        self.assertEqual(plan.allocations['c'], {'token': 'USYC', 'amount': 1_914_000})

        usdc_batch = plan.steps[3]
        self.assertEqual(usdc_batch.args[0], client.address('USDC'))
        self.assertEqual(usdc_batch.args[1], [[ALICE, 5_000_000]])
        self.assertEqual(usdc_batch.item_ids, ['a'])
        usyc_batch = plan.steps[5]
        self.assertEqual(usyc_batch.args[1], [[BOB, 957_000], [CAROL, 1_914_000]])
        self.assertEqual(plan.payout_step_for('c'), usyc_batch)

    def test_existing_allowances_skip_approvals(self):
        client = FakeArcClient(allowances={
            ('USDC', Web3.to_checksum_address(settings.ARC_CONTRACTS['BATCH_PAYROLL'])): 10**12,
        })
        plan = PayrollTransactionBuilder(client=client).plan(EMPLOYER, [Payout('a', ALICE, 1_000_000)])
        self.assertEqual([s.kind for s in plan.steps], ['batch_payout'])

    def test_rejects_empty_and_zero_payouts(self):
        builder = PayrollTransactionBuilder(client=FakeArcClient())
        with self.assertRaises(ValueError):
            builder.plan(EMPLOYER, [])
        with self.assertRaises(ValueError):
            builder.plan(EMPLOYER, [Payout('a', ALICE, 0)])
        with self.assertRaises(ValueError):
            builder.plan(EMPLOYER, [Payout('a', 'not-an-address', 10)])

    def test_build_unsigned_uses_sequential_nonces(self):
        client = FakeArcClient(batch_deployed=False, nonce=41)
        builder = PayrollTransactionBuilder(client=client)
        plan = builder.plan(EMPLOYER, [Payout('a', ALICE, 1), Payout('b', BOB, 2), Payout('c', CAROL, 3)])
        unsigned = builder.build_unsigned(plan)
        self.assertEqual([tx['nonce'] for tx in unsigned], [41, 42, 43])
        self.assertTrue(all(tx['maxFeePerGas'] == 321 for tx in unsigned))
        self.assertTrue(all(tx['from'] == EMPLOYER for tx in unsigned))

    def test_plan_round_trips_through_json_dict(self):
        builder = PayrollTransactionBuilder(client=FakeArcClient())
        plan = builder.plan(EMPLOYER, [Payout('a', ALICE, 1_000_000, True)])
        restored = PayrollPlan.from_dict(plan.to_dict())
        self.assertEqual(restored, plan)
        self.assertIsInstance(restored.steps[0], PayrollStep)

    def test_prepare_usyc_swap(self):
        client = FakeArcClient(preview_ratio=(1, 1))
        plan, unsigned = PayrollTransactionBuilder(client=client).prepare_usyc_swap(EMPLOYER, 10_000_000)
        self.assertEqual([s.function for s in plan.steps], ['approve', 'deposit'])
        self.assertEqual(plan.usyc_min_shares, 9_900_000)
        self.assertEqual(len(unsigned), 2)

    def test_zero_share_quote_is_rejected(self):
        client = FakeArcClient(preview_ratio=(0, 1))
        with self.assertRaises(ValueError):
            PayrollTransactionBuilder(client=client).prepare_usyc_swap(EMPLOYER, 1_000)


class ArcClientTest(SimpleTestCase):
    def _client(self):
        return ArcClient(rpc_url='http://fake-node', chain_id=5042002, w3=Mock())

    def test_fee_params_doubles_base_fee(self):
        client = self._client()
        client.w3.eth.get_block.return_value = {'baseFeePerGas': 100}
        client.w3.eth.max_priority_fee = 5
        self.assertEqual(client.fee_params(), {'maxFeePerGas': 205, 'maxPriorityFeePerGas': 5})

    def test_has_code(self):
        client = self._client()
        client.w3.eth.get_code.return_value = b''
        self.assertFalse(client.has_code(ALICE))
        client.w3.eth.get_code.return_value = b'\x60\x80'
        self.assertTrue(client.has_code(ALICE))

    def test_build_transaction_pads_estimate_and_falls_back(self):
        client = self._client()
        contract = Mock()
        client._contracts['USDC'] = contract
        fn = contract.functions.transfer.return_value
        fn.build_transaction.side_effect = lambda params: dict(params, to=client.address('USDC'), data='0xa9059cbb')
        step = PayrollStep(kind='transfer', contract='USDC', function='transfer',
                           args=[ALICE.lower(), 5], gas_fallback=90_000)
        fees = {'maxFeePerGas': 10, 'maxPriorityFeePerGas': 1}

        fn.estimate_gas.return_value = 50_000
        tx = client.build_transaction(step, EMPLOYER, 3, fees)
        self.assertEqual(tx['gas'], 60_000)
        self.assertEqual(tx['nonce'], 3)
        self.assertEqual(tx['chainId'], 5042002)
        self.assertEqual(tx['type'], 2)
        contract.functions.transfer.assert_called_with(ALICE, 5)

        fn.estimate_gas.side_effect = Exception('execution reverted')
        tx = client.build_transaction(step, EMPLOYER, 4, fees)
        self.assertEqual(tx['gas'], 90_000)


def _signed_raw(account, nonce=0):
    signed = account.sign_transaction({
        'to': ALICE,
        'value': 0,
        'gas': 21_000,
        'maxFeePerGas': 2_000_000_000,
        'maxPriorityFeePerGas': 1_000_000_000,
        'nonce': nonce,
        'chainId': 5042002,
        'data': '0x',
    })
    return Web3.to_hex(signed.raw_transaction), Web3.to_hex(signed.hash)


def sign_prepared(account, unsigned):
    """Sign prepared transactions the way the business wallet would."""
    return [Web3.to_hex(account.sign_transaction(tx).raw_transaction) for tx in unsigned]


class TransactionExecutorTest(SimpleTestCase):
    def setUp(self):
        self.account = Account.create()

    def test_verify_accepts_transactions_from_sender(self):
        raw0, _ = _signed_raw(self.account, 0)
        raw1, _ = _signed_raw(self.account, 1)
        verified = verify_signed_transactions([raw0, raw1], 2, self.account.address.lower())
        self.assertEqual(len(verified), 2)
        self.assertIsInstance(verified[0], bytes)

    def test_verify_rejects_other_signer(self):
        raw, _ = _signed_raw(Account.create())
        with self.assertRaises(ValueError):
            verify_signed_transactions([raw], 1, self.account.address)

    def test_verify_rejects_wrong_count(self):
        raw, _ = _signed_raw(self.account)
        with self.assertRaises(ValueError):
            verify_signed_transactions([raw], 2, self.account.address)

    def _prepared(self, count=2):
        usdc = Web3.to_checksum_address(settings.ARC_CONTRACTS['USDC'])
        return [{
            'from': self.account.address,
            'to': usdc,
            'data': Web3.to_hex(text=f'transfer{n}'),
            'value': 0,
            'nonce': 9 + n,
            'chainId': 5042002,
            'gas': 90_000,
            'maxFeePerGas': 321,
            'maxPriorityFeePerGas': 1,
            'type': 2,
        } for n in range(count)]

    def test_verify_returns_prepared_transactions_in_nonce_order(self):
        unsigned = self._prepared()
        first, second = sign_prepared(self.account, unsigned)
        verified = verify_signed_transactions([second, first], 2, self.account.address, unsigned=unsigned)
        self.assertEqual([Web3.to_hex(raw) for raw in verified], [first, second])

    def test_verify_rejects_transactions_that_differ_from_prepared(self):
        unsigned = self._prepared()
        unrelated = [_signed_raw(self.account, 9)[0], _signed_raw(self.account, 10)[0]]
        with self.assertRaisesMessage(ValueError, "does not match the prepared transaction"):
            verify_signed_transactions(unrelated, 2, self.account.address, unsigned=unsigned)

        tampered = [dict(tx) for tx in unsigned]
        tampered[1]['value'] = 1
        with self.assertRaisesMessage(ValueError, "(value)"):
            verify_signed_transactions(sign_prepared(self.account, tampered), 2, self.account.address,
                                       unsigned=unsigned)

        skipped = [dict(tx) for tx in unsigned]
        skipped[1]['nonce'] = 12
        with self.assertRaisesMessage(ValueError, "(nonce)"):
            verify_signed_transactions(sign_prepared(self.account, skipped), 2, self.account.address,
                                       unsigned=unsigned)

    def test_transaction_hash_matches_signed_hash(self):
        raw, expected = _signed_raw(self.account)
        self.assertEqual(transaction_hash(raw), expected)

    def test_sign_and_send_stops_at_revert(self):
        signer = Mock()
        signer.sign_transaction.side_effect = lambda tx: SimpleNamespace(raw_transaction=b'\x02' + bytes([tx['nonce']]))
        second_hash = '0x' + f'{2:064x}'
        client = FakeArcClient(receipts={second_hash: {'status': 0}})
        sent = []

        with self.assertRaises(TransactionReverted) as ctx:
            sign_and_send(client, [{'nonce': 0}, {'nonce': 1}, {'nonce': 2}], signer,
                          on_sent=lambda i, h: sent.append(h))

        self.assertEqual(ctx.exception.step_index, 1)
        self.assertEqual(ctx.exception.tx_hash, second_hash)
        self.assertEqual(len(client.sent), 2)
        self.assertEqual(len(sent), 2)

    def test_receipt_status(self):
        client = FakeArcClient(receipts={'0xaa': {'status': 1}, '0xbb': {'status': 0}})
        self.assertEqual(receipt_status(client, '0xaa'), RECEIPT_CONFIRMED)
        self.assertEqual(receipt_status(client, '0xbb'), RECEIPT_FAILED)
        self.assertEqual(receipt_status(client, '0xcc'), RECEIPT_PENDING)
        self.assertEqual(receipt_status(client, ''), RECEIPT_PENDING)


class BalanceServiceTest(SimpleTestCase):
    def setUp(self):
        cache.clear()

    def test_balances_are_cached(self):
        client = FakeArcClient(balances={'USDC': 12_500_000, 'USYC': 1_000_000})
        first = BalanceService.get_balances(EMPLOYER, client=client)
        second = BalanceService.get_balances(EMPLOYER, client=client)
        self.assertEqual(first, {'USDC': Decimal('12.5'), 'USYC': Decimal('1')})
        self.assertEqual(second, first)
        self.assertEqual(client.balance_calls, 2)

        BalanceService.get_balances(EMPLOYER, force_refresh=True, client=client)
        self.assertEqual(client.balance_calls, 4)

    def test_invalidate(self):
        client = FakeArcClient(balances={'USDC': 1})
        BalanceService.get_balance(EMPLOYER, 'USDC', client=client)
        BalanceService.invalidate(EMPLOYER)
        BalanceService.get_balance(EMPLOYER, 'USDC', client=client)
        self.assertEqual(client.balance_calls, 2)


class MockContext:
    def __init__(self, user):
        self.user = user


class MockInfo:
    def __init__(self, user):
        self.context = MockContext(user)


class TreasuryQueryTest(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username=EMPLOYER.lower(), wallet_address=EMPLOYER)
        self.business = Business.objects.create(name='Acme', owner=self.owner)

    @patch('blockchain.schema.PayrollTransactionBuilder')
    @patch('blockchain.schema.BalanceService.get_balances')
    def test_treasury_for_business_owner(self, mock_balances, mock_builder):
        mock_balances.return_value = {'USDC': Decimal('100.000000'), 'USYC': Decimal('0.000000')}
        mock_builder.return_value.batching_available.return_value = True

        result = Query().resolve_treasury(MockInfo(self.owner))

        self.assertEqual(result.address, EMPLOYER)
        self.assertEqual(result.usdc_balance, '100.000000')
        self.assertTrue(result.batch_payroll_available)
        self.assertEqual(result.faucet_url, settings.ARC_FAUCET_URL)
        self.assertEqual(result.errors, [])

    def test_treasury_requires_business(self):
        other = User.objects.create_user(username=ALICE.lower(), wallet_address=ALICE)
        self.assertIsNone(Query().resolve_treasury(MockInfo(other)))
