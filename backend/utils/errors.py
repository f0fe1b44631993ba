"""Error taxonomy for stock ledger operations.

Every ledger failure is a :class:`LedgerError` carrying a machine readable
``code`` (what the UI switches on) and the HTTP status the API answers with.
"""

from __future__ import annotations

from sqlalchemy.exc import DataError, DBAPIError, DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class LedgerError(Exception):
    status_code = 400
    default_code = "ledger_error"

    def __init__(self, code: str | None = None, detail: str | None = None):
        self.code = code or self.default_code
        self.detail = detail or self.code
        super().__init__(self.detail)


class ValidationError(LedgerError):
    """Malformed or missing input. Nothing was written."""

    status_code = 400
    default_code = "invalid_input"


class NotFoundError(LedgerError):
    status_code = 404
    default_code = "not_found"


class InsufficientStockError(LedgerError):
    status_code = 400
    default_code = "insufficient_stock"


class OverReturnError(LedgerError):
    """Return quantity exceeds what is currently issued on the line."""

    status_code = 400
    default_code = "too_much_return"


class ConflictError(LedgerError):
    status_code = 409
    default_code = "conflict"


class TransientError(LedgerError):
    """Persistence layer failure; the call is safe to retry."""

    status_code = 503
    default_code = "db_unavailable"


def translate_db_error(exc: Exception, *, conflict_code: str = "conflict") -> LedgerError | None:
    """Map a SQLAlchemy exception onto the ledger taxonomy, or None if it is not a DB error."""

    if isinstance(exc, IntegrityError):
        return ConflictError(conflict_code, str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, DataError):
        # value does not fit its column, e.g. a quantity sum past the INTEGER range
        return ValidationError("out_of_range", str(exc.orig) if exc.orig is not None else str(exc))
    if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return TransientError(detail=str(exc))
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientError(detail=str(exc))
    return None
