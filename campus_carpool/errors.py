"""Error types shared by the storage gateway, the seat ledger and the ride store."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    """User-facing failure categories."""

    UNAUTHENTICATED = "unauthenticated"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TRANSPORT_FAILURE = "transport_failure"
    NOT_FOUND = "not_found"


class CarpoolError(RuntimeError):
    """Base class for every domain error raised by the carpool core."""

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE
    reason: Optional[str] = None


class Unauthenticated(CarpoolError):
    kind = ErrorKind.UNAUTHENTICATED


class ValidationFailed(CarpoolError):
    """Raised for malformed input; carries one message per offending field."""

    kind = ErrorKind.VALIDATION

    def __init__(self, field_errors: Mapping[str, str]) -> None:
        self.field_errors = dict(field_errors)
        super().__init__("; ".join(self.field_errors.values()) or "Invalid input.")


class Conflict(CarpoolError):
    kind = ErrorKind.CONFLICT
    reason = "conflict"


class AlreadyJoined(Conflict):
    reason = "already_joined"


class NotJoined(Conflict):
    reason = "not_joined"


class RideFull(Conflict):
    reason = "ride_full"


class NotAllowed(Conflict):
    reason = "not_allowed"


class TransportFailure(CarpoolError):
    """Storage unreachable, timed out or otherwise failing. Safe to retry."""

    kind = ErrorKind.TRANSPORT_FAILURE


class NotFound(CarpoolError):
    kind = ErrorKind.NOT_FOUND


class CompensationFailed(CarpoolError):
    """A best-effort undo step failed. Logged only, never shown to the user."""

    def __init__(self, message: str, *, ride_id: str, user_id: str) -> None:
        super().__init__(message)
        self.ride_id = ride_id
        self.user_id = user_id


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a mutating ride operation, suitable for direct display."""

    ok: bool
    message: str
    kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    field_errors: dict[str, str] = field(default_factory=dict)
    ride: Any = None

    @classmethod
    def success(cls, message: str, ride: Any = None) -> "ActionResult":
        return cls(ok=True, message=message, ride=ride)

    @classmethod
    def failure(cls, error: CarpoolError) -> "ActionResult":
        field_errors = getattr(error, "field_errors", {})
        return cls(
            ok=False,
            message=str(error),
            kind=error.kind,
            reason=error.reason,
            field_errors=dict(field_errors),
        )
