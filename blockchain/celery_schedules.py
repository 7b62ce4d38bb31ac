"""
Celery beat schedules for blockchain tasks
Imported by config.celery
"""

BLOCKCHAIN_CELERY_BEAT_SCHEDULE = {
    # Catch payroll runs whose confirmation chain was lost (worker restart, broker flush)
    'scan-submitted-payroll-runs': {
        'task': 'blockchain.tasks.scan_submitted_payroll_runs',
        'schedule': 60.0,  # Every minute
    },
}
