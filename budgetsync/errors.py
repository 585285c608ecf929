from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class StoreError:
    kind: ErrorKind
    message: str = ""
    code: Optional[str] = None
    status: Optional[int] = None

    @property
    def is_conflict(self) -> bool:
        return self.kind is ErrorKind.CONFLICT


class TransformError(ValueError):
    """A remote row is too malformed to map onto a local record."""

    def __init__(self, kind: str, row: Any, reason: str):
        super().__init__(f"cannot transform {kind} row: {reason}")
        self.kind = kind
        self.row = row


# Postgres / PostgREST codes
_CONFLICT_CODES = {"23505"}
_NOT_FOUND_CODES = {"PGRST116"}
_PERMISSION_CODES = {"42501", "PGRST301"}


def classify_error(code: Optional[str] = None, status: Optional[int] = None) -> ErrorKind:
    """Map a store error code / HTTP status onto an ErrorKind.

    Only explicit codes are trusted. Anything that does not match is
    UNKNOWN so callers surface it instead of treating it as a benign
    duplicate.
    """
    code = str(code) if code is not None else None
    if code in _CONFLICT_CODES or status == 409:
        return ErrorKind.CONFLICT
    if code in _NOT_FOUND_CODES or status == 404:
        return ErrorKind.NOT_FOUND
    if code in _PERMISSION_CODES or status in (401, 403):
        return ErrorKind.PERMISSION_DENIED
    if status is not None and 500 <= status < 600:
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def store_error(code=None, status=None, message: str = "") -> StoreError:
    return StoreError(kind=classify_error(code, status), message=message, code=code, status=status)


class StoreUnavailableError(RuntimeError):
    """Every collection in a reload failed, so the store is unreachable."""

    def __init__(self, budget_id: str, errors: dict):
        super().__init__(f"could not load any data for budget {budget_id}")
        self.budget_id = budget_id
        self.errors = errors
