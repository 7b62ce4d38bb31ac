import logging
from functools import wraps

from celery import shared_task
from celery.exceptions import MaxRetriesExceededError
from django.conf import settings
from django.db import connection

from .arc_client import ArcClientError

logger = logging.getLogger(__name__)


def ensure_db_connection_closed(func):
    """Decorator to ensure database connections are properly closed after task execution"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        finally:
            # Never close a connection inside an open transaction (eager mode)
            if not connection.in_atomic_block:
                connection.close()
    return wrapper


@shared_task(bind=True, max_retries=None)
@ensure_db_connection_closed
def confirm_payroll_run(self, run_id):
    """
    Settle a submitted payroll run from its transaction receipts.

    Retries every PAYROLL_CONFIRMATION_RETRY_SECONDS while any item is still
    SUBMITTED, up to PAYROLL_CONFIRMATION_MAX_RETRIES times.
    """
    from payroll.execution import refresh_payroll_run
    from payroll.models import PayrollRun

    run = PayrollRun.objects.select_related('business__owner').filter(run_id=run_id).first()
    if not run:
        logger.warning("[Payroll] confirm_payroll_run: run %s not found", run_id)
        return 'missing'

    countdown = settings.PAYROLL_CONFIRMATION_RETRY_SECONDS
    max_retries = settings.PAYROLL_CONFIRMATION_MAX_RETRIES
    try:
        refresh_payroll_run(run)
    except ArcClientError as e:
        logger.warning("[Payroll] Receipt check for run %s failed: %s", run_id, e)
        pending = True
    else:
        pending = run.items.filter(status='SUBMITTED').exists()

    if pending:
        try:
            raise self.retry(countdown=countdown, max_retries=max_retries)
        except MaxRetriesExceededError:
            logger.error("[Payroll] Run %s still unconfirmed after %s checks", run_id, max_retries)
            return run.status
    logger.info("[Payroll] Run %s settled as %s", run_id, run.status)
    return run.status


@shared_task
@ensure_db_connection_closed
def scan_submitted_payroll_runs():
    """Re-queue confirmation for runs that still have unsettled items"""
    from payroll.models import PayrollRun

    run_ids = list(
        PayrollRun.objects.filter(status__in=['PROCESSING', 'PARTIAL'], items__status='SUBMITTED')
        .values_list('run_id', flat=True)
        .distinct()
    )
    for run_id in run_ids:
        confirm_payroll_run.delay(run_id)
    if run_ids:
        logger.info("[Payroll] Re-queued confirmation for %s runs", len(run_ids))
    return len(run_ids)
