import logging

from django.conf import settings
from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_view(request):
    """Liveness probe: database reachability plus the configured chain."""
    db_ok = True
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except Exception as e:
        logger.error("Health check database error: %s", e)
        db_ok = False

    return JsonResponse(
        {
            'status': 'ok' if db_ok else 'degraded',
            'database': db_ok,
            'network': settings.ARC_NETWORK,
            'chain_id': settings.ARC_CHAIN_ID,
        },
        status=200 if db_ok else 503,
    )
