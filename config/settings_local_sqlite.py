from .settings import *  # noqa
import os

# Override database to use a throwaway SQLite file for clean rebuilds
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.path.join(BASE_DIR, 'db.local.sqlite3'),
    }
}

# Make local checks easy
DEBUG = True
ALLOWED_HOSTS = ['*']
CELERY_TASK_ALWAYS_EAGER = True

# Single-process cache for local runs and the test suite
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'arc-payroll-local',
    }
}
