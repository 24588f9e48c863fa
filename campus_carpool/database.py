"""SQLite storage gateway for rides, participants and user profiles.

Each public method is one request against the shared store: it opens its own
connection, runs under the configured request timeout, and translates
``sqlite3`` failures into :mod:`campus_carpool.errors` types. Writes publish a
change event on the attached :class:`~campus_carpool.realtime.ChangeFeed` once
committed.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional

from .errors import (
    AlreadyJoined,
    Conflict,
    NotAllowed,
    NotFound,
    NotJoined,
    RideFull,
    TransportFailure,
)
from .realtime import ChangeFeed

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 15.0

RIDES_TABLE = "rides"
PARTICIPANTS_TABLE = "ride_participants"
PROFILES_TABLE = "user_profiles"

_RIDE_COLUMNS = (
    "id, source, destination, date, start_time, end_time, total_seats, seats_available, "
    "creator_id, creator_name, creator_email, creator_whatsapp, created_at"
)
_EDITABLE_RIDE_COLUMNS = ("source", "destination", "date", "start_time", "end_time")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class DatabaseManager:
    """Manage all SQLite operations for the carpool board."""

    def __init__(
        self,
        db_path: Path,
        change_feed: Optional[ChangeFeed] = None,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.db_path = db_path
        self.change_feed = change_feed
        self.timeout_seconds = timeout_seconds
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        deadline = time.monotonic() + self.timeout_seconds
        # A non-zero return aborts the running statement with "interrupted".
        conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
        return conn

    @contextmanager
    def _request(self, action: str, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection for one request and commit or roll back around it.

        ``sqlite3.IntegrityError`` is passed through for the caller to interpret;
        every other ``sqlite3.Error`` becomes a :class:`TransportFailure`.
        """

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            logger.error("Could not open ride database to %s: %s", action, exc)
            raise TransportFailure(f"Could not reach the ride database ({exc}).") from exc
        try:
            if immediate:
                conn.isolation_level = None
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            else:
                with conn:
                    yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            logger.error("Ride database request failed while trying to %s: %s", action, exc)
            raise TransportFailure(f"Failed to {action}: {exc}") from exc
        finally:
            conn.close()

    def _notify(self, table: str, event_type: str, record: dict[str, Any]) -> None:
        if self.change_feed is not None:
            self.change_feed.publish(table, event_type, record)

    def _ensure_schema(self) -> None:
        schema = """
        CREATE TABLE IF NOT EXISTS user_profiles (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            whatsapp TEXT,
            photo_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS rides (
            id TEXT PRIMARY KEY,
            source TEXT NOT NULL,
            destination TEXT NOT NULL,
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            total_seats INTEGER NOT NULL CHECK (total_seats BETWEEN 1 AND 10),
            seats_available INTEGER NOT NULL,
            creator_id TEXT NOT NULL,
            creator_name TEXT NOT NULL,
            creator_email TEXT NOT NULL,
            creator_whatsapp TEXT,
            created_at TEXT NOT NULL,
            CHECK (seats_available BETWEEN 0 AND total_seats),
            CHECK (start_time < end_time)
        );

        CREATE TABLE IF NOT EXISTS ride_participants (
            ride_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            joined_at TEXT NOT NULL,
            PRIMARY KEY (ride_id, user_id),
            FOREIGN KEY(ride_id) REFERENCES rides(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_ride_participants_user
            ON ride_participants (user_id);
        """
        with self._request("prepare the schema") as conn:
            conn.executescript(schema)

            # Databases created before profile pictures were stored lack the column.
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(user_profiles)")}
            if "photo_url" not in columns:
                conn.execute("ALTER TABLE user_profiles ADD COLUMN photo_url TEXT")

    # Profiles ------------------------------------------------------------
    def fetch_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        with self._request("load the user profile") as conn:
            row = conn.execute("SELECT * FROM user_profiles WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row is not None else None

    def insert_profile(
        self, user_id: str, email: str, name: str, photo_url: Optional[str] = None
    ) -> dict[str, Any]:
        now = _utc_timestamp()
        record = {
            "id": user_id,
            "email": email,
            "name": name,
            "whatsapp": None,
            "photo_url": photo_url,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with self._request("create the user profile") as conn:
                conn.execute(
                    """
                    INSERT INTO user_profiles (id, email, name, whatsapp, photo_url, created_at, updated_at)
                    VALUES (:id, :email, :name, :whatsapp, :photo_url, :created_at, :updated_at)
                    """,
                    record,
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"A profile for {email} already exists.") from exc
        self._notify(PROFILES_TABLE, "INSERT", record)
        return record

    def update_profile_whatsapp(self, user_id: str, whatsapp: str) -> dict[str, Any]:
        with self._request("save the WhatsApp number") as conn:
            cursor = conn.execute(
                "UPDATE user_profiles SET whatsapp = ?, updated_at = ? WHERE id = ?",
                (whatsapp, _utc_timestamp(), user_id),
            )
            if cursor.rowcount == 0:
                raise NotFound("User profile not found.")
            row = conn.execute("SELECT * FROM user_profiles WHERE id = ?", (user_id,)).fetchone()
        record = dict(row)
        self._notify(PROFILES_TABLE, "UPDATE", record)
        return record

    # Rides ---------------------------------------------------------------
    def fetch_rides(self) -> List[dict[str, Any]]:
        with self._request("load rides") as conn:
            rows = conn.execute(
                f"SELECT {_RIDE_COLUMNS} FROM rides ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [dict(row) for row in rows]

    def fetch_ride(self, ride_id: str) -> Optional[dict[str, Any]]:
        with self._request("load the ride") as conn:
            row = conn.execute(
                f"SELECT {_RIDE_COLUMNS} FROM rides WHERE id = ?", (ride_id,)
            ).fetchone()
        return dict(row) if row is not None else None

    def fetch_known_locations(self, limit: int = 20) -> List[str]:
        """Distinct sources and destinations, most recently posted first."""

        with self._request("load recent locations") as conn:
            rows = conn.execute(
                """
                SELECT location FROM (
                    SELECT source AS location, created_at FROM rides
                    UNION ALL
                    SELECT destination AS location, created_at FROM rides
                )
                ORDER BY created_at DESC
                """
            ).fetchall()
        seen: set[str] = set()
        locations: List[str] = []
        for row in rows:
            location = row["location"]
            key = location.lower()
            if key in seen:
                continue
            seen.add(key)
            locations.append(location)
            if len(locations) >= limit:
                break
        return locations

    def insert_ride(
        self,
        *,
        source: str,
        destination: str,
        date: str,
        start_time: str,
        end_time: str,
        total_seats: int,
        creator_id: str,
        creator_name: str,
        creator_email: str,
        creator_whatsapp: Optional[str],
    ) -> dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "source": source,
            "destination": destination,
            "date": date,
            "start_time": start_time,
            "end_time": end_time,
            "total_seats": total_seats,
            "seats_available": total_seats,
            "creator_id": creator_id,
            "creator_name": creator_name,
            "creator_email": creator_email,
            "creator_whatsapp": creator_whatsapp or None,
            "created_at": _utc_timestamp(),
        }
        try:
            with self._request("create the ride") as conn:
                conn.execute(
                    f"""
                    INSERT INTO rides ({_RIDE_COLUMNS})
                    VALUES (:id, :source, :destination, :date, :start_time, :end_time,
                            :total_seats, :seats_available, :creator_id, :creator_name,
                            :creator_email, :creator_whatsapp, :created_at)
                    """,
                    record,
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"The ride was rejected by the database: {exc}") from exc
        self._notify(RIDES_TABLE, "INSERT", record)
        return record

    def update_ride(self, ride_id: str, creator_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply owner edits; a capacity change re-derives ``seats_available``.

        The new available count is ``total_seats - participants`` so the two seat
        columns never drift apart. A capacity below the current rider count is
        rejected.
        """

        columns = {key: value for key, value in changes.items() if key in _EDITABLE_RIDE_COLUMNS}
        new_total = changes.get("total_seats")
        try:
            with self._request("update the ride", immediate=True) as conn:
                row = conn.execute(
                    "SELECT creator_id FROM rides WHERE id = ?", (ride_id,)
                ).fetchone()
                if row is None:
                    raise NotFound("Ride not found.")
                if row["creator_id"] != creator_id:
                    raise NotAllowed("You can only edit your own ride.")
                if new_total is not None:
                    riders = conn.execute(
                        "SELECT COUNT(*) FROM ride_participants WHERE ride_id = ?", (ride_id,)
                    ).fetchone()[0]
                    if new_total < riders:
                        raise Conflict(
                            f"{riders} riders have already joined; capacity cannot drop "
                            f"below that."
                        )
                    columns["total_seats"] = new_total
                    columns["seats_available"] = new_total - riders
                if columns:
                    assignments = ", ".join(f"{column} = :{column}" for column in columns)
                    conn.execute(
                        f"UPDATE rides SET {assignments} WHERE id = :ride_id AND creator_id = :creator_id",
                        {**columns, "ride_id": ride_id, "creator_id": creator_id},
                    )
                updated = conn.execute(
                    f"SELECT {_RIDE_COLUMNS} FROM rides WHERE id = ?", (ride_id,)
                ).fetchone()
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"The ride update was rejected by the database: {exc}") from exc
        record = dict(updated)
        self._notify(RIDES_TABLE, "UPDATE", record)
        return record

    def delete_ride(self, ride_id: str, creator_id: str) -> None:
        with self._request("delete the ride", immediate=True) as conn:
            row = conn.execute("SELECT creator_id FROM rides WHERE id = ?", (ride_id,)).fetchone()
            if row is None:
                raise NotFound("Ride not found.")
            if row["creator_id"] != creator_id:
                raise NotAllowed("You can only delete your own ride.")
            riders = conn.execute(
                "SELECT user_id FROM ride_participants WHERE ride_id = ?", (ride_id,)
            ).fetchall()
            conn.execute("DELETE FROM rides WHERE id = ? AND creator_id = ?", (ride_id, creator_id))
        self._notify(RIDES_TABLE, "DELETE", {"id": ride_id})
        for rider in riders:
            self._notify(PARTICIPANTS_TABLE, "DELETE", {"ride_id": ride_id, "user_id": rider["user_id"]})

    # Participants --------------------------------------------------------
    def fetch_joined_ride_ids(self, user_id: str) -> List[str]:
        with self._request("load joined rides") as conn:
            rows = conn.execute(
                "SELECT ride_id FROM ride_participants WHERE user_id = ? ORDER BY joined_at",
                (user_id,),
            ).fetchall()
        return [row["ride_id"] for row in rows]

    def fetch_participants(self, ride_id: str) -> List[dict[str, Any]]:
        with self._request("load ride participants") as conn:
            rows = conn.execute(
                "SELECT ride_id, user_id, joined_at FROM ride_participants WHERE ride_id = ? "
                "ORDER BY joined_at",
                (ride_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def insert_participant(self, ride_id: str, user_id: str) -> dict[str, Any]:
        record = {"ride_id": ride_id, "user_id": user_id, "joined_at": _utc_timestamp()}
        try:
            with self._request("join the ride") as conn:
                conn.execute(
                    "INSERT INTO ride_participants (ride_id, user_id, joined_at) "
                    "VALUES (:ride_id, :user_id, :joined_at)",
                    record,
                )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc).upper():
                raise NotFound("Ride not found.") from exc
            raise AlreadyJoined("You have already joined this ride.") from exc
        self._notify(PARTICIPANTS_TABLE, "INSERT", record)
        return record

    def delete_participant(self, ride_id: str, user_id: str) -> None:
        with self._request("leave the ride") as conn:
            cursor = conn.execute(
                "DELETE FROM ride_participants WHERE ride_id = ? AND user_id = ?",
                (ride_id, user_id),
            )
            if cursor.rowcount == 0:
                raise NotJoined("You have not joined this ride.")
        self._notify(PARTICIPANTS_TABLE, "DELETE", {"ride_id": ride_id, "user_id": user_id})

    def decrement_seats(self, ride_id: str) -> int:
        """Take one seat only while one is free; return the committed count."""

        with self._request("reserve a seat") as conn:
            cursor = conn.execute(
                "UPDATE rides SET seats_available = seats_available - 1 "
                "WHERE id = ? AND seats_available > 0",
                (ride_id,),
            )
            row = conn.execute(
                "SELECT seats_available FROM rides WHERE id = ?", (ride_id,)
            ).fetchone()
            if row is None:
                raise NotFound("Ride not found.")
            if cursor.rowcount == 0:
                raise RideFull("This ride is already full.")
        seats = int(row["seats_available"])
        self._notify(RIDES_TABLE, "UPDATE", {"id": ride_id, "seats_available": seats})
        return seats

    def increment_seats(self, ride_id: str) -> int:
        """Release one seat without exceeding capacity; return the committed count."""

        with self._request("release a seat") as conn:
            cursor = conn.execute(
                "UPDATE rides SET seats_available = seats_available + 1 "
                "WHERE id = ? AND seats_available < total_seats",
                (ride_id,),
            )
            row = conn.execute(
                "SELECT seats_available FROM rides WHERE id = ?", (ride_id,)
            ).fetchone()
            if row is None:
                raise NotFound("Ride not found.")
            if cursor.rowcount == 0:
                raise Conflict("Every seat on this ride is already free.")
        seats = int(row["seats_available"])
        self._notify(RIDES_TABLE, "UPDATE", {"id": ride_id, "seats_available": seats})
        return seats

    # Atomic procedures ---------------------------------------------------
    def join_ride_atomic(self, ride_id: str, user_id: str) -> int:
        """Check availability and record the rider plus the seat in one transaction."""

        joined_at = _utc_timestamp()
        with self._request("join the ride", immediate=True) as conn:
            ride = conn.execute(
                "SELECT creator_id, seats_available FROM rides WHERE id = ?", (ride_id,)
            ).fetchone()
            if ride is None:
                raise NotFound("Ride not found.")
            if ride["creator_id"] == user_id:
                raise NotAllowed("You cannot join your own ride.")
            existing = conn.execute(
                "SELECT 1 FROM ride_participants WHERE ride_id = ? AND user_id = ?",
                (ride_id, user_id),
            ).fetchone()
            if existing is not None:
                raise AlreadyJoined("You have already joined this ride.")
            if ride["seats_available"] <= 0:
                raise RideFull("This ride is already full.")
            conn.execute(
                "INSERT INTO ride_participants (ride_id, user_id, joined_at) VALUES (?, ?, ?)",
                (ride_id, user_id, joined_at),
            )
            conn.execute(
                "UPDATE rides SET seats_available = seats_available - 1 WHERE id = ?",
                (ride_id,),
            )
            seats = int(ride["seats_available"]) - 1
        self._notify(
            PARTICIPANTS_TABLE, "INSERT", {"ride_id": ride_id, "user_id": user_id, "joined_at": joined_at}
        )
        self._notify(RIDES_TABLE, "UPDATE", {"id": ride_id, "seats_available": seats})
        return seats

    def leave_ride_atomic(self, ride_id: str, user_id: str) -> int:
        """Remove the rider and release the seat in one transaction."""

        with self._request("leave the ride", immediate=True) as conn:
            ride = conn.execute(
                "SELECT seats_available, total_seats FROM rides WHERE id = ?", (ride_id,)
            ).fetchone()
            if ride is None:
                raise NotFound("Ride not found.")
            cursor = conn.execute(
                "DELETE FROM ride_participants WHERE ride_id = ? AND user_id = ?",
                (ride_id, user_id),
            )
            if cursor.rowcount == 0:
                raise NotJoined("You have not joined this ride.")
            seats = min(int(ride["seats_available"]) + 1, int(ride["total_seats"]))
            conn.execute("UPDATE rides SET seats_available = ? WHERE id = ?", (seats, ride_id))
        self._notify(PARTICIPANTS_TABLE, "DELETE", {"ride_id": ride_id, "user_id": user_id})
        self._notify(RIDES_TABLE, "UPDATE", {"id": ride_id, "seats_available": seats})
        return seats
