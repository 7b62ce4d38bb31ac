import logging

import graphene
from django.db import IntegrityError, transaction
from graphene_django import DjangoObjectType
from graphql_jwt.exceptions import PermissionDenied

from .context import get_authenticated_user, get_business_for_user
from .jwt import issue_tokens, verify_auth_token_version
from .models import Business, User
from .wallet_auth import WalletAuthError, authenticate_wallet, issue_login_nonce

logger = logging.getLogger(__name__)


class UserType(DjangoObjectType):
    role = graphene.String()

    class Meta:
        model = User
        fields = ('id', 'wallet_address', 'date_joined', 'last_wallet_login_at')

    def resolve_role(self, info):
        return self.role


class BusinessType(DjangoObjectType):
    treasury_address = graphene.String()
    active_staff_count = graphene.Int()
    pending_staff_count = graphene.Int()

    class Meta:
        model = Business
        fields = ('id', 'name', 'created_at', 'updated_at')

    def resolve_treasury_address(self, info):
        return self.treasury_address

    def resolve_active_staff_count(self, info):
        return self.staff_members.filter(status='active').count()

    def resolve_pending_staff_count(self, info):
        return self.staff_members.filter(status='pending').count()


class RequestLoginNonce(graphene.Mutation):
    class Arguments:
        wallet_address = graphene.String(required=True)

    message = graphene.String(description="Message the wallet must sign (personal_sign)")
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, wallet_address):
        try:
            message = issue_login_nonce(wallet_address)
        except WalletAuthError as e:
            return RequestLoginNonce(message=None, success=False, errors=[str(e)])
        return RequestLoginNonce(message=message, success=True, errors=None)


class WalletLogin(graphene.Mutation):
    """Exchange a signed login message for JWT tokens."""

    class Arguments:
        wallet_address = graphene.String(required=True)
        signature = graphene.String(required=True)

    token = graphene.String()
    refresh_token = graphene.String()
    user = graphene.Field(UserType)
    role = graphene.String()
    created = graphene.Boolean()
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, wallet_address, signature):
        try:
            user, created = authenticate_wallet(wallet_address, signature)
        except WalletAuthError as e:
            return WalletLogin(success=False, errors=[str(e)])

        token, refresh_token = issue_tokens(user)
        logger.info("Wallet login user=%s created=%s", user.id, created)
        return WalletLogin(
            token=token,
            refresh_token=refresh_token,
            user=user,
            role=user.role,
            created=created,
            success=True,
            errors=None,
        )


class RefreshWalletToken(graphene.Mutation):
    class Arguments:
        refresh_token = graphene.String(required=True)

    token = graphene.String()
    refresh_token = graphene.String()
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, refresh_token):
        try:
            payload, user = verify_auth_token_version(refresh_token)
        except PermissionDenied as e:
            return RefreshWalletToken(success=False, errors=[str(e)])
        except Exception as e:
            logger.warning("Refresh token rejected: %s", e)
            return RefreshWalletToken(success=False, errors=["Invalid refresh token"])

        if payload.get('type') != 'refresh':
            return RefreshWalletToken(success=False, errors=["Invalid refresh token"])

        token, new_refresh = issue_tokens(user)
        return RefreshWalletToken(token=token, refresh_token=new_refresh, success=True, errors=None)


class RevokeSessions(graphene.Mutation):
    """Invalidate every token issued to the caller."""

    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info):
        user = get_authenticated_user(info)
        if not user:
            return RevokeSessions(success=False, errors=["Authentication required"])
        user.increment_auth_token_version()
        return RevokeSessions(success=True, errors=None)


class SetupBusiness(graphene.Mutation):
    class Arguments:
        name = graphene.String(required=True)

    business = graphene.Field(BusinessType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, name):
        user = get_authenticated_user(info)
        if not user:
            return SetupBusiness(business=None, success=False, errors=["Authentication required"])

        name = (name or '').strip()
        if not name:
            return SetupBusiness(business=None, success=False, errors=["Please enter a business name"])

        if Business.objects.filter(owner=user).exists():
            return SetupBusiness(
                business=None,
                success=False,
                errors=["You already have a business registered. One wallet can only have one business."],
            )

        try:
            with transaction.atomic():
                # A previously deleted business is brought back under the new name
                business = Business.all_objects.filter(owner=user).first()
                if business:
                    business.name = name
                    business.deleted_at = None
                    business.save(update_fields=['name', 'deleted_at', 'updated_at'])
                else:
                    business = Business.objects.create(owner=user, name=name)
        except IntegrityError:
            return SetupBusiness(
                business=None,
                success=False,
                errors=["You already have a business registered. One wallet can only have one business."],
            )

        logger.info("Business %s set up by %s", business.id, user.wallet_address)
        return SetupBusiness(business=business, success=True, errors=None)


class UpdateBusinessName(graphene.Mutation):
    class Arguments:
        name = graphene.String(required=True)

    business = graphene.Field(BusinessType)
    success = graphene.Boolean()
    errors = graphene.List(graphene.String)

    @classmethod
    def mutate(cls, root, info, name):
        business = get_business_for_user(get_authenticated_user(info))
        if not business:
            return UpdateBusinessName(business=None, success=False, errors=["Business context required"])
        name = (name or '').strip()
        if not name:
            return UpdateBusinessName(business=None, success=False, errors=["Please enter a business name"])
        business.name = name
        business.save(update_fields=['name', 'updated_at'])
        return UpdateBusinessName(business=business, success=True, errors=None)


class Query(graphene.ObjectType):
    me = graphene.Field(UserType)
    my_business = graphene.Field(BusinessType)

    def resolve_me(self, info):
        return get_authenticated_user(info)

    def resolve_my_business(self, info):
        return get_business_for_user(get_authenticated_user(info))


class Mutation(graphene.ObjectType):
    request_login_nonce = RequestLoginNonce.Field()
    wallet_login = WalletLogin.Field()
    refresh_wallet_token = RefreshWalletToken.Field()
    revoke_sessions = RevokeSessions.Field()
    setup_business = SetupBusiness.Field()
    update_business_name = UpdateBusinessName.Field()
