from __future__ import annotations


class SupplyError(Exception):
    """Base class for domain errors surfaced to callers.

    Every subclass carries a stable ``code`` so clients can branch on the
    kind of failure rather than on the message text.
    """

    status_code = 400
    code = 'ERROR'

    def __init__(self, message: str, **extra) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {'error': self.message, 'code': self.code, **self.extra}


class ValidationError(SupplyError, ValueError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class Forbidden(SupplyError, PermissionError):
    status_code = 403
    code = 'FORBIDDEN'


class NotFound(SupplyError, LookupError):
    status_code = 404
    code = 'NOT_FOUND'


class InvalidTransition(SupplyError):
    status_code = 409
    code = 'INVALID_TRANSITION'


class BlockedByDiscrepancy(SupplyError):
    status_code = 409
    code = 'BLOCKED_BY_DISCREPANCY'

    def __init__(self, unresolved_count: int, discrepancies: list[dict]) -> None:
        super().__init__(
            'Cannot receive order with unresolved discrepancies',
            unresolved_count=unresolved_count,
            discrepancies=discrepancies,
        )
        self.unresolved_count = unresolved_count
        self.discrepancies = discrepancies


class EditWindowExpired(SupplyError):
    status_code = 403
    code = 'EDIT_WINDOW_EXPIRED'


class AlreadyResolved(SupplyError):
    status_code = 409
    code = 'ALREADY_RESOLVED'


class StoreUnavailable(SupplyError):
    # Infrastructure failure, safe to retry.
    status_code = 503
    code = 'TRANSIENT'
