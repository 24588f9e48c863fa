"""Domain records and input validation for the campus carpool board."""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote

from .errors import ValidationFailed

MIN_SEATS = 1
MAX_SEATS = 10
WHATSAPP_MIN_DIGITS = 10
WHATSAPP_MAX_DIGITS = 15
WHATSAPP_BASE_URL = "https://wa.me"

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"

_NON_DIGITS = re.compile(r"\D")
# Characters encodeURIComponent leaves untouched.
_URI_SAFE = "!'()*-._~"


@dataclass(frozen=True)
class Ride:
    """Snapshot of a ride row as stored remotely."""

    id: str
    source: str
    destination: str
    date: str
    start_time: str
    end_time: str
    total_seats: int
    seats_available: int
    creator_id: str
    creator_name: str
    creator_email: str
    creator_whatsapp: str
    created_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Ride":
        return cls(
            id=str(row["id"]),
            source=row["source"],
            destination=row["destination"],
            date=row["date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            total_seats=int(row["total_seats"]),
            seats_available=int(row["seats_available"]),
            creator_id=str(row["creator_id"]),
            creator_name=row["creator_name"],
            creator_email=row["creator_email"],
            creator_whatsapp=row["creator_whatsapp"] or "",
            created_at=row["created_at"],
        )

    @property
    def is_full(self) -> bool:
        return self.seats_available <= 0

    @property
    def time_window(self) -> str:
        return f"{self.start_time} - {self.end_time}"

    @property
    def seats_label(self) -> str:
        return "1 seat" if self.seats_available == 1 else f"{self.seats_available} seats"


@dataclass(frozen=True)
class Participant:
    ride_id: str
    user_id: str
    joined_at: str


@dataclass(frozen=True)
class UserProfile:
    """Profile row bound to an identity from the auth provider."""

    id: str
    email: str
    name: str
    whatsapp: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserProfile":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            whatsapp=row["whatsapp"] or None,
            photo_url=row["photo_url"] or None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def needs_whatsapp(self) -> bool:
        return not self.whatsapp


@dataclass(frozen=True)
class ProviderIdentity:
    """What the external identity provider tells us about a signed-in person."""

    user_id: str
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class SearchFilters:
    source: Optional[str] = None
    destination: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

    def matches(self, ride: Ride) -> bool:
        if ride.seats_available == 0:
            return False
        if self.source and self.source.lower() not in ride.source.lower():
            return False
        if self.destination and self.destination.lower() not in ride.destination.lower():
            return False
        if self.date and ride.date != (canonical_date(self.date) or self.date):
            return False
        if self.start_time and ride.start_time < (canonical_time(self.start_time) or self.start_time):
            return False
        if self.end_time and ride.end_time > (canonical_time(self.end_time) or self.end_time):
            return False
        return True


@dataclass(frozen=True)
class RideDraft:
    """Form values for a new ride."""

    source: str
    destination: str
    date: str
    start_time: str
    end_time: str
    seats: Any

    def validated(self) -> "RideDraft":
        """Return a trimmed copy, raising ``ValidationFailed`` on bad input."""

        errors = validate_ride_fields(
            source=self.source,
            destination=self.destination,
            date=self.date,
            start_time=self.start_time,
            end_time=self.end_time,
            seats=self.seats,
            seats_field="seats",
        )
        if errors:
            raise ValidationFailed(errors)
        return RideDraft(
            source=self.source.strip(),
            destination=self.destination.strip(),
            date=canonical_date(self.date),
            start_time=canonical_time(self.start_time),
            end_time=canonical_time(self.end_time),
            seats=int(self.seats),
        )


@dataclass(frozen=True)
class RidePatch:
    """Owner edits to an existing ride. ``None`` leaves a field untouched."""

    source: Optional[str] = None
    destination: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    total_seats: Optional[int] = None

    def changes(self) -> dict[str, Any]:
        return {
            item.name: getattr(self, item.name)
            for item in fields(self)
            if getattr(self, item.name) is not None
        }

    def validated_against(self, ride: Ride) -> dict[str, Any]:
        """Validate the patch merged onto *ride* and return the column changes."""

        changes = self.changes()
        merged = {
            "source": ride.source,
            "destination": ride.destination,
            "date": ride.date,
            "start_time": ride.start_time,
            "end_time": ride.end_time,
            "total_seats": ride.total_seats,
        }
        merged.update(changes)
        errors = validate_ride_fields(
            source=merged["source"],
            destination=merged["destination"],
            date=merged["date"],
            start_time=merged["start_time"],
            end_time=merged["end_time"],
            seats=merged["total_seats"],
            seats_field="total_seats",
        )
        if errors:
            raise ValidationFailed(errors)
        for key in ("source", "destination"):
            if key in changes:
                changes[key] = changes[key].strip()
        if "date" in changes:
            changes["date"] = canonical_date(changes["date"])
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = canonical_time(changes[key])
        if "total_seats" in changes:
            changes["total_seats"] = int(changes["total_seats"])
        return changes


def _parse(value: Optional[str], pattern: str) -> Optional[datetime]:
    try:
        return datetime.strptime((value or "").strip(), pattern)
    except (AttributeError, TypeError, ValueError):
        return None


def canonical_date(value: Optional[str]) -> Optional[str]:
    """Return ``YYYY-MM-DD`` for any date strptime accepts, e.g. ``2025-1-10``."""

    parsed = _parse(value, DATE_FORMAT)
    return parsed.strftime(DATE_FORMAT) if parsed else None


def canonical_time(value: Optional[str]) -> Optional[str]:
    """Return zero-padded ``HH:MM``, so stored times order chronologically as text."""

    parsed = _parse(value, TIME_FORMAT)
    return parsed.strftime(TIME_FORMAT) if parsed else None


def validate_ride_fields(
    *,
    source: str,
    destination: str,
    date: str,
    start_time: str,
    end_time: str,
    seats: Any,
    seats_field: str,
) -> dict[str, str]:
    """Collect one message per invalid field; an empty dict means valid."""

    errors: dict[str, str] = {}
    if not (source or "").strip():
        errors["source"] = "Source is required"
    if not (destination or "").strip():
        errors["destination"] = "Destination is required"

    if not date:
        errors["date"] = "Date is required"
    elif _parse(date, DATE_FORMAT) is None:
        errors["date"] = "Date must look like YYYY-MM-DD"

    start = _parse(start_time, TIME_FORMAT)
    end = _parse(end_time, TIME_FORMAT)
    if not start_time:
        errors["start_time"] = "Start time is required"
    elif start is None:
        errors["start_time"] = "Start time must look like HH:MM"
    if not end_time:
        errors["end_time"] = "End time is required"
    elif end is None:
        errors["end_time"] = "End time must look like HH:MM"

    if start is not None and end is not None and start.time() >= end.time():
        errors["end_time"] = "End time must be after start time"

    if seats is None or seats == "":
        errors[seats_field] = "Seat count is required"
    else:
        try:
            seat_count = int(seats)
        except (TypeError, ValueError):
            errors[seats_field] = f"At least {MIN_SEATS} seat required"
        else:
            if seat_count < MIN_SEATS:
                errors[seats_field] = f"At least {MIN_SEATS} seat required"
            elif seat_count > MAX_SEATS:
                errors[seats_field] = f"Maximum {MAX_SEATS} seats"
    return errors


def normalize_whatsapp(value: str) -> str:
    """Strip everything but digits and enforce the 10-15 digit length."""

    digits = _NON_DIGITS.sub("", value or "")
    if not WHATSAPP_MIN_DIGITS <= len(digits) <= WHATSAPP_MAX_DIGITS:
        raise ValidationFailed(
            {
                "whatsapp": (
                    f"Please enter a valid WhatsApp number "
                    f"({WHATSAPP_MIN_DIGITS}-{WHATSAPP_MAX_DIGITS} digits)"
                )
            }
        )
    return digits


def email_domain(email: str) -> str:
    _, _, domain = (email or "").rpartition("@")
    return domain.strip().lower()


def is_allowed_email(email: str, allowed_domains: Iterable[str]) -> bool:
    """Accept an address whose domain is, or is a subdomain of, an allowed domain."""

    if "@" not in (email or ""):
        return False
    domain = email_domain(email)
    if not domain:
        return False
    for allowed in allowed_domains:
        allowed = allowed.strip().lower()
        if allowed and (domain == allowed or domain.endswith("." + allowed)):
            return True
    return False


def format_ride_date(value: str) -> str:
    """Render ``2025-01-10`` as ``Fri, Jan 10``; unparsable values pass through."""

    try:
        parsed = datetime.strptime(value, DATE_FORMAT)
    except (TypeError, ValueError):
        return value
    return f"{parsed:%a}, {parsed:%b} {parsed.day}"


def ride_join_message(ride: Ride) -> str:
    return (
        f"Hi! I joined your ride from {ride.source} to {ride.destination} "
        f"on {format_ride_date(ride.date)}."
    )


def build_whatsapp_link(number: str, message: str) -> str:
    """Return a ``wa.me`` deep link with *message* URL-encoded as the text."""

    digits = _NON_DIGITS.sub("", number or "")
    if not digits:
        raise ValidationFailed({"whatsapp": "The driver has not added a WhatsApp number."})
    return f"{WHATSAPP_BASE_URL}/{digits}?text={quote(message, safe=_URI_SAFE)}"
