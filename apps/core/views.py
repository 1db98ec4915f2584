"""
HTTP trigger for the periodic driver (for hosts that only offer URL-based cron).
"""
import hmac
import logging

from django.conf import settings

from apps.core.api import api_endpoint
from apps.core.exceptions import PermissionDeniedError
from apps.core.scheduler import run_task

logger = logging.getLogger(__name__)


def _check_cron_secret(request):
    secret = settings.CRON_SECRET
    header = request.headers.get('Authorization', '')
    if not secret or not hmac.compare_digest(header, f'Bearer {secret}'):
        logger.warning('Cron request rejected from %s', request.META.get('REMOTE_ADDR'))
        raise PermissionDeniedError('Invalid cron credentials.')


@api_endpoint('POST')
def cron(request, task):
    _check_cron_secret(request)
    return {'task': task, 'results': run_task(task)}
