"""
Storage helpers: caller-supplied deadlines and storage-error translation.
"""
import logging
from contextlib import contextmanager

from django.db import connection, transaction, InterfaceError, OperationalError

from apps.core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


@contextmanager
def statement_deadline(milliseconds=None):
    """
    Run the block in one transaction whose statements abort after `milliseconds`.

    On PostgreSQL this is a transaction-local statement_timeout, so a timed-out
    conditional write is rolled back as a whole. Other backends just get the
    transaction.
    """
    if not milliseconds:
        yield
        return

    with transaction.atomic():
        if connection.vendor == 'postgresql':
            with connection.cursor() as cursor:
                cursor.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    [str(int(milliseconds))],
                )
        yield


@contextmanager
def storage_errors():
    """Re-raise driver-level failures as the retryable StorageUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.exception('Storage failure: %s', exc)
        raise StorageUnavailableError(
            'The booking store is temporarily unavailable. Please retry.'
        ) from exc
