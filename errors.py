from __future__ import annotations

from typing import Iterable

from pydantic import ValidationError as SchemaValidationError

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class LedgerError(ValueError):
    pass


class ValidationError(LedgerError):
    pass


class ConflictError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


class AmbiguousStateError(LedgerError):
    """Raised when a write would silently collapse several rows into one.

    The caller has to repeat the call with explicit confirmation.
    """

    def __init__(self, message: str, item_ids: Iterable[int] = ()) -> None:
        super().__init__(message)
        self.item_ids = sorted(item_ids)


class ReconciliationError(LedgerError):
    """A record write and its balance compensation could not both be applied.

    The unit of work has been rolled back; no partial state was kept.
    """


def user_message(exc: BaseException) -> str:
    if isinstance(exc, LedgerError):
        return str(exc)
    if isinstance(exc, SchemaValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            msg = first.get("msg", "Invalid value")
            return f"{field}: {msg}" if field else msg
        return "Invalid input"
    return GENERIC_ERROR_MESSAGE
