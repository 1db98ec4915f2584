"""
Periodic task registry. Driven from outside by cron:

  */5 * * * *  python manage.py run_scheduled_tasks --task escrow
  0 * * * *    python manage.py run_scheduled_tasks --task bookings
  0 9 * * *    python manage.py run_scheduled_tasks --task reminders
  0 3 * * *    python manage.py run_scheduled_tasks --task ratings
  0 4 * * 0    python manage.py run_scheduled_tasks --task notifications

or over HTTP: POST /cron/<task>/ with 'Authorization: Bearer <CRON_SECRET>'.

Every job is idempotent and isolates per-record failures, so overlapping or
repeated runs are safe.
"""
import logging

from django.utils import timezone

from apps.bookings.engine import cancel_stale_pending_bookings, send_booking_reminders
from apps.core.exceptions import InvalidRequestError
from apps.notifications.dispatch import cleanup_old_notifications
from apps.payments.escrow import process_releases
from apps.policies.engine import apply_no_show_sweep
from apps.reviews.engine import update_service_ratings
from apps.waitlist.engine import expire_sweep

logger = logging.getLogger(__name__)

TASKS = {
    'escrow': [
        ('process_releases', process_releases),
        ('expire_sweep', expire_sweep),
    ],
    'bookings': [
        ('cancel_stale_pending_bookings', cancel_stale_pending_bookings),
        ('apply_no_show_sweep', apply_no_show_sweep),
    ],
    'notifications': [
        ('cleanup_old_notifications', cleanup_old_notifications),
    ],
    'reminders': [
        ('send_booking_reminders', send_booking_reminders),
    ],
    'ratings': [
        ('update_service_ratings', lambda now=None: update_service_ratings()),
    ],
}
TASK_NAMES = list(TASKS) + ['all']


def run_task(name, now=None) -> dict:
    """
    Run one named task (or 'all'). Returns {job_name: result}.
    A job that blows up is logged and reported as {'error': ...}; the other
    jobs still run.
    """
    if name not in TASK_NAMES:
        raise InvalidRequestError(f"Unknown task '{name}'. Choose one of: {', '.join(TASK_NAMES)}.")

    now = now or timezone.now()
    jobs = [job for task in TASKS.values() for job in task] if name == 'all' else TASKS[name]
    results = {}
    for job_name, job in jobs:
        try:
            results[job_name] = job(now=now)
        except Exception as exc:
            logger.exception('Scheduled job %s failed: %s', job_name, exc)
            results[job_name] = {'error': str(exc)}
    logger.info('Scheduled task %s finished (%d job(s))', name, len(jobs))
    return results
