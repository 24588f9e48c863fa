"""Join/leave seat transitions against the shared store.

Two ledgers honour the same contract. ``join`` and ``leave`` either commit both
the participant row and the seat count and return the committed
``seats_available``, or raise a :class:`~campus_carpool.errors.CarpoolError`
after leaving the store as it was.

* :class:`TransactionalSeatLedger` delegates to the store's atomic procedures.
* :class:`CompensatingSeatLedger` orders the writes participant-first and
  undoes the participant write when the seat update fails. The undo is
  best-effort: if it fails too, the orphan is logged and the most recent
  failures are kept in ``compensation_failures`` for later reconciliation.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Protocol

from .database import DatabaseManager
from .errors import CarpoolError, CompensationFailed

logger = logging.getLogger(__name__)

TRANSACTIONAL = "transactional"
COMPENSATING = "compensating"
SEAT_PROTOCOLS = (TRANSACTIONAL, COMPENSATING)
MAX_RECORDED_COMPENSATION_FAILURES = 100


class SeatLedger(Protocol):
    def join(self, ride_id: str, user_id: str) -> int:
        ...

    def leave(self, ride_id: str, user_id: str) -> int:
        ...


class TransactionalSeatLedger:
    """Single-transaction join/leave; no compensation step is ever needed."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager

    def join(self, ride_id: str, user_id: str) -> int:
        return self.db_manager.join_ride_atomic(ride_id, user_id)

    def leave(self, ride_id: str, user_id: str) -> int:
        return self.db_manager.leave_ride_atomic(ride_id, user_id)


class CompensatingSeatLedger:
    """Client-orchestrated join/leave for stores without multi-row procedures."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager
        # Newest failures only; the log keeps the full history.
        self.compensation_failures: deque[CompensationFailed] = deque(
            maxlen=MAX_RECORDED_COMPENSATION_FAILURES
        )

    def join(self, ride_id: str, user_id: str) -> int:
        self.db_manager.insert_participant(ride_id, user_id)
        try:
            return self.db_manager.decrement_seats(ride_id)
        except CarpoolError as exc:
            logger.warning("Seat reservation failed for ride %s: %s", ride_id, exc)
            self._compensate(
                "remove the participant row after a failed seat reservation",
                self.db_manager.delete_participant,
                ride_id,
                user_id,
            )
            raise

    def leave(self, ride_id: str, user_id: str) -> int:
        self.db_manager.delete_participant(ride_id, user_id)
        try:
            return self.db_manager.increment_seats(ride_id)
        except CarpoolError as exc:
            logger.warning("Seat release failed for ride %s: %s", ride_id, exc)
            self._compensate(
                "restore the participant row after a failed seat release",
                self.db_manager.insert_participant,
                ride_id,
                user_id,
            )
            raise

    def _compensate(
        self, description: str, undo: Callable[[str, str], object], ride_id: str, user_id: str
    ) -> None:
        try:
            undo(ride_id, user_id)
        except CarpoolError as exc:
            failure = CompensationFailed(
                f"Could not {description} (ride {ride_id}, user {user_id}): {exc}",
                ride_id=ride_id,
                user_id=user_id,
            )
            self.compensation_failures.append(failure)
            logger.error("%s", failure)


def build_seat_ledger(db_manager: DatabaseManager, protocol: str = TRANSACTIONAL) -> SeatLedger:
    if protocol == TRANSACTIONAL:
        return TransactionalSeatLedger(db_manager)
    if protocol == COMPENSATING:
        return CompensatingSeatLedger(db_manager)
    raise ValueError(f"Unknown seat protocol {protocol!r}; expected one of {SEAT_PROTOCOLS}")
