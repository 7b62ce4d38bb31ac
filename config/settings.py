"""
Django settings for the Arc payroll backend.

Values come from the environment (optionally a local .env file) through
python-decouple so the same module serves local, CI and hosted deployments.
"""
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from decouple import Csv, config
from dotenv import load_dotenv

from .logging import LOGGING  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / '.env')

SECRET_KEY = config('SECRET_KEY', default='django-insecure-arc-payroll-dev-key')
DEBUG = config('DEBUG', default=False, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'graphene_django',
    'users',
    'payroll',
    'blockchain',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'
ASGI_APPLICATION = 'config.asgi.application'

# Hosted PostgreSQL in deployed environments, SQLite for local work and tests
if config('DB_ENGINE', default='sqlite') == 'postgres':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': config('DB_NAME', default='postgres'),
            'USER': config('DB_USER', default='postgres'),
            'PASSWORD': config('DB_PASSWORD', default=''),
            'HOST': config('DB_HOST', default='localhost'),
            'PORT': config('DB_PORT', default='5432'),
            'CONN_MAX_AGE': config('DB_CONN_MAX_AGE', default=60, cast=int),
            'OPTIONS': {'sslmode': config('DB_SSLMODE', default='prefer')},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

AUTH_USER_MODEL = 'users.User'

AUTHENTICATION_BACKENDS = [
    'graphql_jwt.backends.JSONWebTokenBackend',
    'django.contrib.auth.backends.ModelBackend',
]

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Login nonces and balances are shared by every web worker through Redis
REDIS_URL = config('REDIS_URL', default='redis://localhost:6379/1')
if config('CACHE_BACKEND', default='redis') == 'locmem':
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'arc-payroll',
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': REDIS_URL,
            'OPTIONS': {
                'CLIENT_CLASS': 'django_redis.client.DefaultClient',
                'SOCKET_CONNECT_TIMEOUT': 5,
                'SOCKET_TIMEOUT': 5,
            },
            'KEY_PREFIX': 'arc-payroll',
        }
    }

# GraphQL
GRAPHENE = {
    'SCHEMA': 'config.schema.schema',
    'MIDDLEWARE': [
        'graphql_jwt.middleware.JSONWebTokenMiddleware',
    ],
}

GRAPHQL_JWT = {
    'JWT_VERIFY_EXPIRATION': True,
    'JWT_EXPIRATION_DELTA': timedelta(hours=1),
    'JWT_REFRESH_EXPIRATION_DELTA': timedelta(days=7),
    'JWT_AUTH_HEADER_PREFIX': 'JWT',
    'JWT_PAYLOAD_HANDLER': 'users.jwt.jwt_payload_handler',
    'JWT_DECODE_HANDLER': 'users.jwt.jwt_decode_handler',
}

WALLET_LOGIN_NONCE_TTL = config('WALLET_LOGIN_NONCE_TTL', default=300, cast=int)
WALLET_LOGIN_APP_NAME = config('WALLET_LOGIN_APP_NAME', default='Arc Payroll')

# Arc network
ARC_NETWORK = config('ARC_NETWORK', default='testnet')
ARC_CHAIN_ID = config('ARC_CHAIN_ID', default=5042002, cast=int)
ARC_RPC_URL = config('ARC_RPC_URL', default='https://rpc.testnet.arc.network')
ARC_EXPLORER_URL = config('ARC_EXPLORER_URL', default='https://testnet.arcscan.app')
ARC_FAUCET_URL = config('ARC_FAUCET_URL', default='https://faucet.circle.com')
ARC_RPC_TIMEOUT = config('ARC_RPC_TIMEOUT', default=30, cast=int)
ARC_RECEIPT_TIMEOUT = config('ARC_RECEIPT_TIMEOUT', default=180, cast=int)
ARC_TOKEN_DECIMALS = config('ARC_TOKEN_DECIMALS', default=6, cast=int)
ARC_USE_BATCH_CONTRACT = config('ARC_USE_BATCH_CONTRACT', default=True, cast=bool)
USYC_SLIPPAGE_BPS = config('USYC_SLIPPAGE_BPS', default=100, cast=int)

ARC_CONTRACTS = {
    'USDC': config('ARC_USDC_ADDRESS', default='0x3600000000000000000000000000000000000000'),
    'USYC': config('ARC_USYC_ADDRESS', default='0xe9185F0c5F296Ed1797AaE4238D26CCaBEadb86C'),
    'USYC_TELLER': config('ARC_USYC_TELLER_ADDRESS', default='0x9fdF14c5B14173D74C08Af27AebFf39240dC105A'),
    'USYC_ENTITLEMENTS': config('ARC_USYC_ENTITLEMENTS_ADDRESS', default='0xcc205224862c7641930c87679e98999d23c26113'),
    'MULTICALL3': config('ARC_MULTICALL3_ADDRESS', default='0xcA11bde05977b3631167028862bE2a173976CA11'),
    'PERMIT2': config('ARC_PERMIT2_ADDRESS', default='0x000000000022D473030F116dDEE9F6B43aC78BA3'),
    'BATCH_PAYROLL': config('ARC_BATCH_PAYROLL_ADDRESS', default='0xB68fb9aeDAA39eE39Fa4EC15ce9BbD757DF50d32'),
}

# Payroll
PAYROLL_DEFAULT_SALARY = Decimal(config('PAYROLL_DEFAULT_SALARY', default='3000'))
PAYROLL_CONFIRMATION_RETRY_SECONDS = config('PAYROLL_CONFIRMATION_RETRY_SECONDS', default=15, cast=int)
PAYROLL_CONFIRMATION_MAX_RETRIES = config('PAYROLL_CONFIRMATION_MAX_RETRIES', default=20, cast=int)

# Celery
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default='redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = config('CELERY_TASK_ALWAYS_EAGER', default=False, cast=bool)
