"""
Error taxonomy shared by every engine module.
Raised in the engine functions and mapped to HTTP responses in apps.core.api.
"""


class EngineError(Exception):
    """Base exception for all booking engine errors."""
    code = 'engine_error'
    retryable = False


class NotFoundError(EngineError):
    """Raised when a referenced record does not exist."""
    code = 'not_found'


class ConflictError(EngineError):
    """Raised when a resource already exists (duplicate slot range, waitlist entry, ...)."""
    code = 'conflict'


class SlotConflictError(ConflictError):
    """Raised when another caller already holds the requested time slot."""
    code = 'slot_conflict'


class InvalidStateError(EngineError):
    """Raised when a record is not in a state that allows the operation."""
    code = 'invalid_state'


class InvalidTransitionError(InvalidStateError):
    """Raised on an illegal booking state-machine move."""
    code = 'invalid_transition'


class PolicyViolationError(EngineError):
    """Raised when a cancellation or reschedule is disallowed by policy."""
    code = 'policy_violation'

    def __init__(self, message, verdict=None):
        super().__init__(message)
        self.verdict = verdict


class InsufficientBalanceError(EngineError):
    """Raised when a withdrawal exceeds the account balance."""
    code = 'insufficient_balance'


class PermissionDeniedError(EngineError):
    """Raised when the calling identity may not act on the record."""
    code = 'permission_denied'


class InvalidRequestError(EngineError):
    """Raised on input validation failures, before any write happens."""
    code = 'invalid_request'


class StorageUnavailableError(EngineError):
    """Raised when the database is unreachable or a statement deadline expired."""
    code = 'storage_unavailable'
    retryable = True
