"""
JSON endpoint plumbing shared by every app's views.

Caller identity is explicit: the authenticating collaborator (gateway,
session layer) forwards the user id in the X-Actor-Id header. Engine
errors become JSON bodies {error, message, retryable}.
"""
import json
import logging
import uuid
from datetime import datetime
from functools import wraps

from django.core.serializers.json import DjangoJSONEncoder
from django.http import HttpResponse, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from django.views.decorators.csrf import csrf_exempt

from apps.core.db import statement_deadline, storage_errors
from apps.core.exceptions import (
    EngineError,
    NotFoundError,
    ConflictError,
    InvalidStateError,
    PolicyViolationError,
    InsufficientBalanceError,
    PermissionDeniedError,
    InvalidRequestError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

ACTOR_HEADER = 'X-Actor-Id'
DEADLINE_HEADER = 'X-Request-Deadline-Ms'

# Most specific first: SlotConflictError is a ConflictError, InvalidTransitionError an InvalidStateError.
STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (PolicyViolationError, 422),
    (InsufficientBalanceError, 422),
    (PermissionDeniedError, 403),
    (InvalidRequestError, 400),
    (StorageUnavailableError, 503),
]


def error_response(exc: EngineError) -> JsonResponse:
    status = next((code for cls, code in STATUS_BY_ERROR if isinstance(exc, cls)), 400)
    body = {'error': exc.code, 'message': str(exc), 'retryable': exc.retryable}
    verdict = getattr(exc, 'verdict', None)
    if verdict is not None:
        body['verdict'] = verdict
    return JsonResponse(body, status=status, encoder=DjangoJSONEncoder)


def api_endpoint(*methods):
    """
    Decorate a view returning a dict (or (dict, status)) into a JSON endpoint.
    Enforces the allowed methods, applies the caller's deadline and maps errors.
    """
    def decorator(view_func):
        @csrf_exempt
        @wraps(view_func)
        def wrapper(request, *args, **kwargs):
            if request.method not in methods:
                return JsonResponse({'error': 'method_not_allowed'}, status=405)
            try:
                with storage_errors():
                    with statement_deadline(_deadline_ms(request)):
                        result = view_func(request, *args, **kwargs)
            except EngineError as exc:
                if not isinstance(exc, StorageUnavailableError):
                    logger.info('%s %s rejected: %s', request.method, request.path, exc)
                return error_response(exc)

            if isinstance(result, HttpResponse):
                return result
            status = 200
            if isinstance(result, tuple):
                result, status = result
            return JsonResponse(result, status=status, encoder=DjangoJSONEncoder, safe=False)
        return wrapper
    return decorator


def _deadline_ms(request):
    raw = request.headers.get(DEADLINE_HEADER)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidRequestError(f'{DEADLINE_HEADER} must be an integer number of milliseconds.')
    if value <= 0:
        raise InvalidRequestError(f'{DEADLINE_HEADER} must be positive.')
    return value


# ── Request parsing ───────────────────────────────────────────────────────────

def json_body(request) -> dict:
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except json.JSONDecodeError:
        raise InvalidRequestError('Request body is not valid JSON.')
    if not isinstance(data, dict):
        raise InvalidRequestError('Request body must be a JSON object.')
    return data


def actor_id(request) -> str:
    """Caller identity forwarded by the authentication collaborator."""
    raw = request.headers.get(ACTOR_HEADER, '').strip()
    if not raw:
        raise PermissionDeniedError(f'Missing {ACTOR_HEADER} header.')
    return raw


def require(data: dict, key: str):
    value = data.get(key)
    if value in (None, ''):
        raise InvalidRequestError(f"'{key}' is required.")
    return value


def as_uuid(value, field='id') -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidRequestError(f"'{field}' must be a UUID.")


def as_date(value, field='date'):
    parsed = parse_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise InvalidRequestError(f"'{field}' must be a YYYY-MM-DD date.")
    return parsed


def as_datetime(value, field='datetime') -> datetime:
    parsed = parse_datetime(value) if isinstance(value, str) else None
    if parsed is None:
        raise InvalidRequestError(f"'{field}' must be an ISO-8601 datetime.")
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed
