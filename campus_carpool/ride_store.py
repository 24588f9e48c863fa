"""In-memory mirror of the ride board for the signed-in user.

The store owns two facts: the ride snapshot (newest first) and the set of ride
ids the current user has joined. Both are replaced wholesale by loads and are
only adjusted locally after a write has committed. Widgets read them and call
back into the store's operations; nothing else mutates them.
"""

from __future__ import annotations

import dataclasses
import logging
from itertools import count
from typing import Any, Iterable, List, Optional

from PyQt6.QtCore import QObject, QThreadPool, pyqtSignal

from .auth import AuthService, SessionEvent
from .database import DatabaseManager
from .errors import (
    ActionResult,
    AlreadyJoined,
    CarpoolError,
    NotAllowed,
    NotFound,
    NotJoined,
    RideFull,
    TransportFailure,
)
from .models import Ride, RideDraft, RidePatch, SearchFilters, UserProfile
from .seat_accounting import SeatLedger, TransactionalSeatLedger
from .workers import Worker

logger = logging.getLogger(__name__)


class RideStore(QObject):
    """Ride snapshot, membership set and the operations that change them."""

    rides_changed = pyqtSignal(list)
    membership_changed = pyqtSignal(object)
    error_changed = pyqtSignal(str)
    loading_changed = pyqtSignal(bool)

    def __init__(
        self,
        db_manager: DatabaseManager,
        auth_service: AuthService,
        seat_ledger: Optional[SeatLedger] = None,
        *,
        thread_pool: Optional[QThreadPool] = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.db_manager = db_manager
        self.auth_service = auth_service
        self.seat_ledger = seat_ledger or TransactionalSeatLedger(db_manager)
        self.thread_pool = thread_pool
        self._rides: tuple[Ride, ...] = ()
        self._joined: frozenset[str] = frozenset()
        self._error: Optional[str] = None
        self._is_loading = False
        self._tickets = count(1)
        self._applied_ticket = 0
        self._loads_in_flight = 0
        self._user_id = self._current_user_id()
        self.auth_service.session_changed.connect(self._on_session_changed)

    # Snapshot ------------------------------------------------------------
    @property
    def rides(self) -> List[Ride]:
        return list(self._rides)

    @property
    def joined_ride_ids(self) -> frozenset[str]:
        return self._joined

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    def _current_user(self) -> Optional[UserProfile]:
        return self.auth_service.current_user

    def _current_user_id(self) -> Optional[str]:
        user = self._current_user()
        return user.id if user is not None else None

    def _set_error(self, message: Optional[str]) -> None:
        if message == self._error:
            return
        self._error = message
        self.error_changed.emit(message or "")

    def _set_loading(self, loading: bool) -> None:
        if loading == self._is_loading:
            return
        self._is_loading = loading
        self.loading_changed.emit(loading)

    def _set_rides(self, rides: Iterable[Ride]) -> None:
        self._rides = tuple(rides)
        self.rides_changed.emit(list(self._rides))

    def _set_joined(self, ride_ids: Iterable[str]) -> None:
        self._joined = frozenset(ride_ids)
        self.membership_changed.emit(self._joined)

    def _replace_ride(self, ride_id: str, **changes: Any) -> None:
        self._set_rides(
            dataclasses.replace(ride, **changes) if ride.id == ride_id else ride
            for ride in self._rides
        )

    # Loading -------------------------------------------------------------
    def _issue_ticket(self) -> int:
        return next(self._tickets)

    def _apply_rides(self, ticket: int, rides: List[Ride]) -> bool:
        """Install a load result unless a newer load has already been applied."""

        if ticket < self._applied_ticket:
            logger.debug("Dropping stale ride load #%s (newest applied #%s)", ticket, self._applied_ticket)
            return False
        self._applied_ticket = ticket
        self._set_rides(rides)
        self._set_error(None)
        return True

    def _apply_load_failure(self, ticket: int, message: str) -> bool:
        """Record a load error unless a newer load or a reset has superseded it."""

        if ticket <= self._applied_ticket:
            logger.debug("Ignoring failure of superseded ride load #%s: %s", ticket, message)
            return False
        logger.error("Error loading rides: %s", message)
        self._set_error(message)
        return True

    def _finish_load(self) -> None:
        self._loads_in_flight = max(self._loads_in_flight - 1, 0)
        self._set_loading(self._loads_in_flight > 0)

    def load_rides(self) -> bool:
        """Fetch every ride; on failure keep the current snapshot and record the error."""

        ticket = self._issue_ticket()
        self._loads_in_flight += 1
        self._set_loading(True)
        try:
            rows = self.db_manager.fetch_rides()
        except TransportFailure as exc:
            self._apply_load_failure(ticket, str(exc))
            return False
        finally:
            self._finish_load()
        return self._apply_rides(ticket, [Ride.from_row(row) for row in rows])

    def load_rides_async(self) -> None:
        """Fetch rides on the thread pool; the result is applied on this thread."""

        pool = self.thread_pool or QThreadPool.globalInstance()
        ticket = self._issue_ticket()
        self._loads_in_flight += 1
        self._set_loading(True)
        worker = Worker(self._fetch_ride_snapshot, ticket)
        worker.signals.finished.connect(self._on_async_rides_loaded)
        worker.signals.error.connect(self._on_async_load_crashed)
        pool.start(worker)

    def _fetch_ride_snapshot(self, ticket: int) -> tuple[int, Optional[List[Ride]], Optional[str]]:
        try:
            rows = self.db_manager.fetch_rides()
        except CarpoolError as exc:
            return ticket, None, str(exc)
        return ticket, [Ride.from_row(row) for row in rows], None

    def _on_async_rides_loaded(self, result: tuple[int, Optional[List[Ride]], Optional[str]]) -> None:
        ticket, rides, message = result
        self._finish_load()
        if rides is None:
            self._apply_load_failure(ticket, message or "Could not load rides.")
        else:
            self._apply_rides(ticket, rides)

    def _on_async_load_crashed(self, message: str) -> None:
        # Storage errors come back through _on_async_rides_loaded with their ticket;
        # this only sees unexpected exceptions, which cannot be matched to a load.
        logger.error("Background ride load crashed: %s", message)
        self._finish_load()

    def load_joined_rides(self) -> bool:
        user = self._current_user()
        if user is None:
            self._set_joined(())
            return True
        try:
            ride_ids = self.db_manager.fetch_joined_ride_ids(user.id)
        except TransportFailure as exc:
            logger.error("Error loading joined rides: %s", exc)
            self._set_error(str(exc))
            return False
        self._set_joined(ride_ids)
        return True

    def reload(self) -> bool:
        rides_ok = self.load_rides()
        joined_ok = self.load_joined_rides()
        return rides_ok and joined_ok

    def reset(self) -> None:
        """Forget everything; used when the signed-in user changes."""

        self._applied_ticket = self._issue_ticket()
        self._set_rides(())
        self._set_joined(())
        self._set_error(None)

    def _on_session_changed(self, event: str, user: Optional[UserProfile]) -> None:
        user_id = user.id if user is not None else None
        if user_id != self._user_id:
            logger.info("Session changed (%s); reloading ride board", event)
            self._user_id = user_id
            self.reset()
            self.reload()
        elif event == SessionEvent.TOKEN_REFRESHED.value:
            self.load_joined_rides()

    # Queries -------------------------------------------------------------
    def search_rides(self, filters: SearchFilters) -> List[Ride]:
        return [ride for ride in self._rides if filters.matches(ride)]

    def get_ride_by_id(self, ride_id: str) -> Optional[Ride]:
        return next((ride for ride in self._rides if ride.id == ride_id), None)

    def get_my_rides(self) -> List[Ride]:
        user_id = self._current_user_id()
        if user_id is None:
            return []
        return [ride for ride in self._rides if ride.creator_id == user_id]

    def get_joined_rides(self) -> List[Ride]:
        return [ride for ride in self._rides if ride.id in self._joined]

    def has_joined_ride(self, ride_id: str) -> bool:
        return ride_id in self._joined

    def is_my_ride(self, ride_id: str) -> bool:
        user_id = self._current_user_id()
        ride = self.get_ride_by_id(ride_id)
        return user_id is not None and ride is not None and ride.creator_id == user_id

    # Seat transitions ----------------------------------------------------
    def join_ride(self, ride_id: str) -> ActionResult:
        try:
            user = self.auth_service.require_user("join a ride")
            ride = self._require_ride(ride_id)
            if ride.creator_id == user.id:
                raise NotAllowed("You cannot join your own ride.")
            if ride_id in self._joined:
                raise AlreadyJoined("You have already joined this ride.")
            if ride.seats_available <= 0:
                raise RideFull("This ride is already full.")
            seats = self.seat_ledger.join(ride_id, user.id)
        except CarpoolError as exc:
            logger.info("Join of ride %s failed: %s", ride_id, exc)
            return ActionResult.failure(exc)

        self._set_joined(self._joined | {ride_id})
        self._replace_ride(ride_id, seats_available=seats)
        return ActionResult.success(
            "Joined ride. You can now contact the driver via WhatsApp.",
            ride=self.get_ride_by_id(ride_id),
        )

    def leave_ride(self, ride_id: str) -> ActionResult:
        try:
            user = self.auth_service.require_user("leave a ride")
            if ride_id not in self._joined:
                raise NotJoined("You have not joined this ride.")
            self._require_ride(ride_id)
            seats = self.seat_ledger.leave(ride_id, user.id)
        except CarpoolError as exc:
            logger.info("Leave of ride %s failed: %s", ride_id, exc)
            return ActionResult.failure(exc)

        self._set_joined(self._joined - {ride_id})
        self._replace_ride(ride_id, seats_available=seats)
        return ActionResult.success("You have left this ride.", ride=self.get_ride_by_id(ride_id))

    # Ownership -----------------------------------------------------------
    def create_ride(self, draft: RideDraft) -> ActionResult:
        try:
            user = self.auth_service.require_user("create a ride")
            clean = draft.validated()
            row = self.db_manager.insert_ride(
                source=clean.source,
                destination=clean.destination,
                date=clean.date,
                start_time=clean.start_time,
                end_time=clean.end_time,
                total_seats=clean.seats,
                creator_id=user.id,
                creator_name=user.name,
                creator_email=user.email,
                creator_whatsapp=user.whatsapp,
            )
        except CarpoolError as exc:
            logger.info("Ride creation failed: %s", exc)
            return ActionResult.failure(exc)

        ride = Ride.from_row(row)
        self._set_rides((ride, *self._rides))
        return ActionResult.success("Your ride has been posted successfully.", ride=ride)

    def update_ride(self, ride_id: str, patch: RidePatch) -> ActionResult:
        try:
            user = self.auth_service.require_user("edit a ride")
            ride = self._require_ride(ride_id)
            if ride.creator_id != user.id:
                raise NotAllowed("You can only edit your own ride.")
            changes = patch.validated_against(ride)
            row = self.db_manager.update_ride(ride_id, user.id, changes)
        except CarpoolError as exc:
            logger.info("Update of ride %s failed: %s", ride_id, exc)
            return ActionResult.failure(exc)

        updated = Ride.from_row(row)
        self._set_rides(updated if item.id == ride_id else item for item in self._rides)
        return ActionResult.success("Changes saved successfully.", ride=updated)

    def delete_ride(self, ride_id: str) -> ActionResult:
        try:
            user = self.auth_service.require_user("delete a ride")
            ride = self._require_ride(ride_id)
            if ride.creator_id != user.id:
                raise NotAllowed("You can only delete your own ride.")
            self.db_manager.delete_ride(ride_id, user.id)
        except CarpoolError as exc:
            logger.info("Deletion of ride %s failed: %s", ride_id, exc)
            return ActionResult.failure(exc)

        self._set_rides(item for item in self._rides if item.id != ride_id)
        if ride_id in self._joined:
            self._set_joined(self._joined - {ride_id})
        return ActionResult.success("Your ride was removed.")

    def _require_ride(self, ride_id: str) -> Ride:
        ride = self.get_ride_by_id(ride_id)
        if ride is None:
            raise NotFound("Ride not found.")
        return ride
