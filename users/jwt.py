from datetime import datetime, timedelta, timezone
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from graphql_jwt.exceptions import JSONWebTokenError, PermissionDenied
from graphql_jwt.utils import jwt_decode, jwt_encode

logger = logging.getLogger(__name__)


def jwt_payload_handler(user, context=None):
    """Access token payload: identity, wallet and auth_token_version"""
    now = datetime.now(timezone.utc)
    expiration = settings.GRAPHQL_JWT.get('JWT_EXPIRATION_DELTA', timedelta(hours=1))
    payload = {
        'user_id': user.id,
        'username': user.get_username(),
        'wallet_address': user.wallet_address,
        'origIat': int(now.timestamp()),
        'auth_token_version': user.auth_token_version,
        'exp': int((now + expiration).timestamp()),
        'type': 'access',
    }
    logger.debug("Generated JWT payload for user %s", user.id)
    return payload


def refresh_token_payload_handler(user):
    """Generate a refresh token payload with a longer expiration"""
    now = datetime.now(timezone.utc)
    expiration = settings.GRAPHQL_JWT.get('JWT_REFRESH_EXPIRATION_DELTA', timedelta(days=7))
    return {
        'user_id': user.id,
        'username': user.get_username(),
        'wallet_address': user.wallet_address,
        'origIat': int(now.timestamp()),
        'auth_token_version': user.auth_token_version,
        'exp': int((now + expiration).timestamp()),
        'type': 'refresh',
    }


def issue_tokens(user):
    """Return (access_token, refresh_token) for `user`"""
    return (
        jwt_encode(jwt_payload_handler(user)),
        jwt_encode(refresh_token_payload_handler(user)),
    )


def verify_auth_token_version(token):
    """Verify that the token's auth_token_version matches the user's current version"""
    payload = jwt_decode(token)

    user_id = payload.get('user_id')
    token_version = payload.get('auth_token_version')
    if not user_id or not token_version:
        raise PermissionDenied('Invalid token payload')

    User = get_user_model()
    try:
        user = User.objects.get(id=user_id)
    except User.DoesNotExist:
        raise PermissionDenied('User not found')

    if user.auth_token_version != token_version:
        logger.warning("Token version mismatch: token=%s user=%s", token_version, user.auth_token_version)
        raise PermissionDenied('Token version mismatch')

    return payload, user


def jwt_decode_handler(token, context=None):
    """Decode an access token and reject it once the user's sessions were revoked"""
    payload = jwt_decode(token, context)
    if payload.get('type', 'access') != 'access':
        raise JSONWebTokenError('Refresh tokens cannot be used for authentication')

    User = get_user_model()
    current_version = (
        User.objects.filter(id=payload.get('user_id'))
        .values_list('auth_token_version', flat=True)
        .first()
    )
    if current_version is None or current_version != payload.get('auth_token_version'):
        raise JSONWebTokenError('Token has been revoked')
    return payload
