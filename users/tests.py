import importlib
import os
from unittest.mock import patch

from django.core.cache import cache
from django.test import SimpleTestCase, TestCase
from eth_account import Account
from eth_account.messages import encode_defunct
from graphql_jwt.exceptions import JSONWebTokenError
from graphql_jwt.utils import jwt_decode
from web3 import Web3

from users.jwt import issue_tokens, jwt_decode_handler
from users.models import Business, User
from users.schema import (
    Query,
    RefreshWalletToken,
    RequestLoginNonce,
    RevokeSessions,
    SetupBusiness,
    WalletLogin,
)
from users.wallet_auth import WalletAuthError, authenticate_wallet, issue_login_nonce


class MockContext:
    def __init__(self, user=None):
        self.user = user


class MockInfo:
    def __init__(self, user=None):
        self.context = MockContext(user)


def sign(account, message):
    return Web3.to_hex(account.sign_message(encode_defunct(text=message)).signature)


class WalletAuthTest(TestCase):
    def setUp(self):
        cache.clear()
        self.account = Account.create()

    def test_nonce_message_mentions_wallet_and_chain(self):
        message = issue_login_nonce(self.account.address.lower())
        self.assertIn(f"Wallet: {self.account.address}", message)
        self.assertIn("Chain ID: 5042002", message)
        self.assertIn("Nonce: ", message)

    def test_invalid_address_rejected(self):
        with self.assertRaises(WalletAuthError):
            issue_login_nonce('0x1234')

    def test_login_creates_user_once(self):
        message = issue_login_nonce(self.account.address)
        user, created = authenticate_wallet(self.account.address, sign(self.account, message))
        self.assertTrue(created)
        self.assertEqual(user.wallet_address, self.account.address)
        self.assertEqual(user.username, self.account.address.lower())
        self.assertIsNotNone(user.last_wallet_login_at)

        message = issue_login_nonce(self.account.address)
        again, created = authenticate_wallet(self.account.address.lower(), sign(self.account, message))
        self.assertFalse(created)
        self.assertEqual(again.pk, user.pk)

    def test_nonce_is_single_use(self):
        message = issue_login_nonce(self.account.address)
        signature = sign(self.account, message)
        authenticate_wallet(self.account.address, signature)
        with self.assertRaises(WalletAuthError):
            authenticate_wallet(self.account.address, signature)

    def test_missing_nonce(self):
        with self.assertRaises(WalletAuthError):
            authenticate_wallet(self.account.address, '0x' + '00' * 65)

    def test_signature_from_other_wallet_rejected(self):
        message = issue_login_nonce(self.account.address)
        with self.assertRaises(WalletAuthError):
            authenticate_wallet(self.account.address, sign(Account.create(), message))
        self.assertFalse(User.objects.filter(wallet_address=self.account.address).exists())


class WalletLoginMutationTest(TestCase):
    def setUp(self):
        cache.clear()
        self.account = Account.create()

    def test_login_returns_tokens(self):
        nonce = RequestLoginNonce.mutate(None, MockInfo(), wallet_address=self.account.address)
        self.assertTrue(nonce.success)

        result = WalletLogin.mutate(
            None, MockInfo(),
            wallet_address=self.account.address,
            signature=sign(self.account, nonce.message),
        )
        self.assertTrue(result.success)
        self.assertTrue(result.created)
        self.assertIsNone(result.role)

        payload = jwt_decode(result.token)
        self.assertEqual(payload['wallet_address'], self.account.address)
        self.assertEqual(payload['type'], 'access')
        self.assertEqual(jwt_decode(result.refresh_token)['type'], 'refresh')

    def test_bad_signature_returns_errors(self):
        RequestLoginNonce.mutate(None, MockInfo(), wallet_address=self.account.address)
        result = WalletLogin.mutate(None, MockInfo(), wallet_address=self.account.address, signature='0xdeadbeef')
        self.assertFalse(result.success)
        self.assertEqual(result.errors, ["Invalid signature"])


class TokenTest(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='0xabc', wallet_address='0xAbC0000000000000000000000000000000000001')

    def test_refresh_requires_refresh_token(self):
        access, refresh = issue_tokens(self.user)
        self.assertFalse(RefreshWalletToken.mutate(None, MockInfo(), refresh_token=access).success)
        result = RefreshWalletToken.mutate(None, MockInfo(), refresh_token=refresh)
        self.assertTrue(result.success)
        self.assertTrue(result.token)

    def test_revoke_sessions_invalidates_tokens(self):
        access, refresh = issue_tokens(self.user)
        self.assertEqual(jwt_decode_handler(access)['user_id'], self.user.id)

        self.assertTrue(RevokeSessions.mutate(None, MockInfo(self.user)).success)

        with self.assertRaises(JSONWebTokenError):
            jwt_decode_handler(access)
        self.assertFalse(RefreshWalletToken.mutate(None, MockInfo(), refresh_token=refresh).success)

    def test_decode_handler_rejects_refresh_tokens(self):
        _, refresh = issue_tokens(self.user)
        with self.assertRaises(JSONWebTokenError):
            jwt_decode_handler(refresh)


class SetupBusinessTest(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username='0xowner', wallet_address='0x00000000000000000000000000000000000000AA')

    def test_one_business_per_wallet(self):
        result = SetupBusiness.mutate(None, MockInfo(self.user), name='  Acme  ')
        self.assertTrue(result.success)
        self.assertEqual(result.business.name, 'Acme')
        self.assertEqual(self.user.role, 'business')

        result = SetupBusiness.mutate(None, MockInfo(self.user), name='Second')
        self.assertFalse(result.success)
        self.assertIn("One wallet can only have one business.", result.errors[0])
        self.assertEqual(Business.objects.filter(owner=self.user).count(), 1)

    def test_blank_name_and_anonymous(self):
        self.assertEqual(
            SetupBusiness.mutate(None, MockInfo(self.user), name='   ').errors,
            ["Please enter a business name"],
        )
        self.assertFalse(SetupBusiness.mutate(None, MockInfo(None), name='Acme').success)

    def test_deleted_business_is_restored(self):
        business = Business.objects.create(owner=self.user, name='Old')
        business.soft_delete()
        result = SetupBusiness.mutate(None, MockInfo(self.user), name='New')
        self.assertTrue(result.success)
        self.assertEqual(result.business.pk, business.pk)
        self.assertFalse(Business.objects.get(pk=business.pk).is_deleted)

    def test_my_business_query(self):
        Business.objects.create(owner=self.user, name='Acme')
        self.assertEqual(Query().resolve_my_business(MockInfo(self.user)).name, 'Acme')
        self.assertEqual(Query().resolve_me(MockInfo(self.user)), self.user)

    @patch('users.wallet_auth.secrets.token_hex', return_value='feedface')
    def test_nonce_value_in_message(self, _mock_hex):
        self.assertTrue(issue_login_nonce(self.user.wallet_address).endswith("Nonce: feedface"))


class CacheSettingsTest(SimpleTestCase):
    def test_nonce_cache_is_shared_redis_by_default(self):
        with patch.dict(os.environ, {'REDIS_URL': 'redis://cache.internal:6379/2'}):
            os.environ.pop('CACHE_BACKEND', None)
            base_settings = importlib.reload(importlib.import_module('config.settings'))
        default = base_settings.CACHES['default']
        self.assertEqual(default['BACKEND'], 'django_redis.cache.RedisCache')
        self.assertEqual(default['LOCATION'], 'redis://cache.internal:6379/2')

    def test_locmem_cache_can_be_selected(self):
        with patch.dict(os.environ, {'CACHE_BACKEND': 'locmem'}):
            base_settings = importlib.reload(importlib.import_module('config.settings'))
        self.assertEqual(base_settings.CACHES['default']['BACKEND'],
                         'django.core.cache.backends.locmem.LocMemCache')
