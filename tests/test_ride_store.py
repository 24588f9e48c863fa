from pathlib import Path

import pytest
from PyQt6.QtCore import QThreadPool
from PyQt6.QtWidgets import QApplication

from campus_carpool.auth import AuthService
from campus_carpool.database import DatabaseManager
from campus_carpool.errors import ErrorKind, TransportFailure
from campus_carpool.models import ProviderIdentity, RideDraft, RidePatch, SearchFilters
from campus_carpool.ride_store import RideStore
from campus_carpool.seat_accounting import COMPENSATING, TRANSACTIONAL, build_seat_ledger

DOMAINS = ["vitstudent.ac.in"]


@pytest.fixture(scope="module")
def qapp():
    app = QApplication.instance()
    if app is None:
        app = QApplication([])
    yield app


@pytest.fixture()
def db(tmp_path: Path, qapp) -> DatabaseManager:  # noqa: ARG001
    return DatabaseManager(tmp_path / "carpool.db")


def open_session(db: DatabaseManager, name: str, protocol: str = TRANSACTIONAL) -> RideStore:
    """One signed-in client: its own auth service and store over the shared database."""

    auth = AuthService(db, DOMAINS)
    store = RideStore(db, auth, build_seat_ledger(db, protocol))
    auth.sign_in(ProviderIdentity(user_id=f"id-{name}", email=f"{name}@vitstudent.ac.in", full_name=name))
    return store


def draft(seats=2, **overrides) -> RideDraft:
    values = {
        "source": "Mumbai",
        "destination": "Pune",
        "date": "2025-01-10",
        "start_time": "09:00",
        "end_time": "10:00",
        "seats": seats,
    }
    values.update(overrides)
    return RideDraft(**values)


def test_created_ride_is_fully_available(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")

    result = driver.create_ride(draft(seats=3))

    assert result.ok
    assert result.message == "Your ride has been posted successfully."
    ride = driver.get_ride_by_id(result.ride.id)
    assert ride.total_seats == ride.seats_available == 3
    assert db.fetch_participants(ride.id) == []
    assert driver.get_my_rides() == [ride]
    assert driver.is_my_ride(ride.id)


@pytest.mark.parametrize("protocol", [TRANSACTIONAL, COMPENSATING])
def test_join_until_full_then_leave(db: DatabaseManager, protocol: str) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=2)).ride.id
    riders = {name: open_session(db, name, protocol) for name in ("bala", "chitra", "dev")}

    joined = riders["bala"].join_ride(ride_id)
    assert joined.ok
    assert joined.message == "Joined ride. You can now contact the driver via WhatsApp."
    assert riders["bala"].get_ride_by_id(ride_id).seats_available == 1
    assert riders["bala"].has_joined_ride(ride_id)

    riders["chitra"].reload()
    assert riders["chitra"].join_ride(ride_id).ok
    assert riders["chitra"].get_ride_by_id(ride_id).seats_available == 0

    riders["dev"].reload()
    full = riders["dev"].join_ride(ride_id)
    assert not full.ok
    assert (full.kind, full.reason) == (ErrorKind.CONFLICT, "ride_full")
    assert db.fetch_ride(ride_id)["seats_available"] == 0
    assert not riders["dev"].has_joined_ride(ride_id)

    left = riders["bala"].leave_ride(ride_id)
    assert left.ok
    assert left.message == "You have left this ride."
    assert not riders["bala"].has_joined_ride(ride_id)
    assert db.fetch_ride(ride_id)["seats_available"] == 1


def test_stale_snapshot_still_cannot_overbook(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=1)).ride.id
    bala = open_session(db, "bala")
    chitra = open_session(db, "chitra")

    assert bala.join_ride(ride_id).ok
    # chitra still believes one seat is free
    assert chitra.get_ride_by_id(ride_id).seats_available == 1
    result = chitra.join_ride(ride_id)

    assert result.reason == "ride_full"
    assert db.fetch_ride(ride_id)["seats_available"] == 0
    assert [row["user_id"] for row in db.fetch_participants(ride_id)] == ["id-bala"]


def test_creator_cannot_join_own_ride(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft()).ride.id

    result = driver.join_ride(ride_id)

    assert (result.kind, result.reason) == (ErrorKind.CONFLICT, "not_allowed")
    assert driver.get_ride_by_id(ride_id).seats_available == 2


def test_double_join_and_stray_leave_change_nothing(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=3)).ride.id
    rider = open_session(db, "bala")
    rider.join_ride(ride_id)

    again = rider.join_ride(ride_id)
    assert again.reason == "already_joined"
    assert rider.get_ride_by_id(ride_id).seats_available == 2

    other = open_session(db, "chitra")
    stray = other.leave_ride(ride_id)
    assert (stray.kind, stray.reason) == (ErrorKind.CONFLICT, "not_joined")
    assert db.fetch_ride(ride_id)["seats_available"] == 2


def test_seats_stay_within_bounds_over_many_transitions(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=2)).ride.id
    riders = [open_session(db, name) for name in ("bala", "chitra", "dev")]

    for round_number in range(3):
        for rider in riders:
            rider.reload()
            rider.join_ride(ride_id)
            seats = db.fetch_ride(ride_id)["seats_available"]
            assert 0 <= seats <= 2
        for rider in riders[round_number % 2 :]:
            rider.leave_ride(ride_id)
            seats = db.fetch_ride(ride_id)["seats_available"]
            assert 0 <= seats <= 2

    participants = len(db.fetch_participants(ride_id))
    assert db.fetch_ride(ride_id)["seats_available"] == 2 - participants


def test_unauthenticated_user_cannot_mutate(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft()).ride.id
    store = RideStore(db, AuthService(db, DOMAINS))
    store.reload()

    assert store.join_ride(ride_id).kind == ErrorKind.UNAUTHENTICATED
    assert store.create_ride(draft()).kind == ErrorKind.UNAUTHENTICATED
    assert store.joined_ride_ids == frozenset()
    assert store.get_my_rides() == []


def test_invalid_draft_never_reaches_the_database(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")

    result = driver.create_ride(draft(seats=11, end_time="08:00"))

    assert not result.ok
    assert result.kind == ErrorKind.VALIDATION
    assert set(result.field_errors) == {"seats", "end_time"}
    assert db.fetch_rides() == []


def test_owner_edits_keep_seat_counts_linked(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=3)).ride.id
    rider = open_session(db, "bala")
    rider.join_ride(ride_id)
    driver.reload()

    result = driver.update_ride(ride_id, RidePatch(total_seats=4, destination="Lonavala"))
    assert result.ok
    assert result.message == "Changes saved successfully."
    ride = driver.get_ride_by_id(ride_id)
    assert (ride.total_seats, ride.seats_available, ride.destination) == (4, 3, "Lonavala")

    assert rider.update_ride(ride_id, RidePatch(source="Elsewhere")).reason == "not_allowed"

    rider2 = open_session(db, "chitra")
    rider2.join_ride(ride_id)
    shrink = driver.update_ride(ride_id, RidePatch(total_seats=1))
    assert shrink.kind == ErrorKind.CONFLICT
    assert db.fetch_ride(ride_id)["total_seats"] == 4


def test_deleting_a_ride_purges_it_everywhere(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft(seats=3)).ride.id
    riders = [open_session(db, name) for name in ("bala", "chitra")]
    for rider in riders:
        assert rider.join_ride(ride_id).ok

    assert riders[0].delete_ride(ride_id).reason == "not_allowed"
    result = driver.delete_ride(ride_id)
    assert result.ok
    assert result.message == "Your ride was removed."
    assert driver.get_ride_by_id(ride_id) is None

    for rider in riders:
        rider.reload()
        assert rider.get_ride_by_id(ride_id) is None
        assert not rider.has_joined_ride(ride_id)
        assert rider.get_joined_rides() == []


def test_search_reads_the_snapshot(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    driver.create_ride(draft(destination="Pune Station"))
    full_id = driver.create_ride(draft(seats=1, destination="Pune Airport")).ride.id
    driver.create_ride(draft(source="Thane", destination="Nashik", start_time="14:00", end_time="15:00"))
    rider = open_session(db, "bala")
    rider.join_ride(full_id)

    matches = rider.search_rides(SearchFilters(destination="pune"))
    assert [ride.destination for ride in matches] == ["Pune Station"]

    afternoon = rider.search_rides(SearchFilters(start_time="13:00"))
    assert [ride.source for ride in afternoon] == ["Thane"]
    assert len(rider.rides) == 3


def test_reload_twice_yields_identical_snapshots(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    driver.create_ride(draft())
    driver.create_ride(draft(destination="Nashik"))

    driver.reload()
    first = (driver.rides, driver.joined_ride_ids)
    driver.reload()

    assert (driver.rides, driver.joined_ride_ids) == first


def test_failed_load_keeps_previous_snapshot(db: DatabaseManager, monkeypatch: pytest.MonkeyPatch) -> None:
    driver = open_session(db, "asha")
    driver.create_ride(draft())
    driver.reload()
    before = driver.rides
    errors = []
    driver.error_changed.connect(errors.append)

    def unreachable():
        raise TransportFailure("Failed to load rides: database is locked")

    monkeypatch.setattr(db, "fetch_rides", unreachable)

    assert driver.load_rides() is False
    assert driver.rides == before
    assert driver.error == "Failed to load rides: database is locked"
    assert not driver.is_loading

    monkeypatch.undo()
    assert driver.load_rides()
    assert driver.error is None
    assert errors == ["Failed to load rides: database is locked", ""]


def test_older_load_result_is_dropped(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    stale_ticket = driver._issue_ticket()
    driver.create_ride(draft())
    assert driver.load_rides()

    assert driver._apply_rides(stale_ticket, []) is False
    assert len(driver.rides) == 1


def test_failure_of_a_superseded_load_is_ignored(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    driver.create_ride(draft())
    stale_ticket = driver._issue_ticket()
    assert driver.load_rides()

    driver._loads_in_flight += 1
    driver._on_async_rides_loaded((stale_ticket, None, "Failed to load rides: database is locked"))

    assert driver.error is None
    assert len(driver.rides) == 1
    assert not driver.is_loading


def test_background_failure_after_user_switch_is_ignored(
    db: DatabaseManager, qapp, monkeypatch: pytest.MonkeyPatch
) -> None:
    pool = QThreadPool()
    store = RideStore(db, AuthService(db, DOMAINS), thread_pool=pool)

    def unreachable():
        raise TransportFailure("Failed to load rides: database is locked")

    monkeypatch.setattr(db, "fetch_rides", unreachable)
    store.load_rides_async()
    store.reset()
    pool.waitForDone(5000)
    qapp.processEvents()

    assert store.error is None
    assert not store.is_loading

    store.load_rides_async()
    pool.waitForDone(5000)
    qapp.processEvents()
    assert store.error == "Failed to load rides: database is locked"


def test_loading_flag_waits_for_the_newest_load(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    first = driver._issue_ticket()
    second = driver._issue_ticket()
    driver._loads_in_flight = 2
    driver._set_loading(True)

    driver._on_async_rides_loaded((second, [], None))
    assert driver.is_loading
    driver._on_async_rides_loaded((first, None, "timed out"))

    assert not driver.is_loading
    assert driver.error is None


def test_background_load_applies_on_the_ui_thread(db: DatabaseManager, qapp) -> None:
    pool = QThreadPool()
    auth = AuthService(db, DOMAINS)
    store = RideStore(db, auth, thread_pool=pool)
    open_session(db, "asha").create_ride(draft())

    store.load_rides_async()
    assert store.is_loading
    pool.waitForDone(5000)
    qapp.processEvents()

    assert not store.is_loading
    assert [ride.destination for ride in store.rides] == ["Pune"]


def test_user_change_resets_then_reloads(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")
    ride_id = driver.create_ride(draft()).ride.id
    rider = open_session(db, "bala")
    rider.join_ride(ride_id)
    membership_updates = []
    rider.membership_changed.connect(membership_updates.append)

    rider.auth_service.sign_out()

    assert rider.joined_ride_ids == frozenset()
    assert [ride.id for ride in rider.rides] == [ride_id]
    assert frozenset() in membership_updates

    rider.auth_service.sign_in(ProviderIdentity(user_id="id-bala", email="bala@vitstudent.ac.in"))
    assert rider.has_joined_ride(ride_id)
    assert rider.get_joined_rides()[0].id == ride_id


def test_inverted_window_is_rejected_and_unpadded_one_is_stored(db: DatabaseManager) -> None:
    driver = open_session(db, "asha")

    inverted = driver.create_ride(draft(start_time="10:00", end_time="9:00"))
    assert inverted.field_errors == {"end_time": "End time must be after start time"}
    assert db.fetch_rides() == []

    result = driver.create_ride(draft(date="2025-1-10", start_time="9:00", end_time="10:00"))
    assert result.ok
    assert result.ride.time_window == "09:00 - 10:00"

    rider = open_session(db, "bala")
    assert [ride.id for ride in rider.search_rides(SearchFilters(date="2025-01-10"))] == [result.ride.id]
