from pathlib import Path

import pytest
from PyQt6.QtWidgets import QApplication

from campus_carpool.auth import AuthService, SessionEvent
from campus_carpool.database import DatabaseManager
from campus_carpool.errors import Unauthenticated, ValidationFailed
from campus_carpool.models import ProviderIdentity


@pytest.fixture(scope="module")
def qapp():
    app = QApplication.instance()
    if app is None:
        app = QApplication([])
    yield app


@pytest.fixture()
def auth(tmp_path: Path, qapp) -> AuthService:  # noqa: ARG001
    return AuthService(DatabaseManager(tmp_path / "carpool.db"), ["vitstudent.ac.in"])


def record_events(auth: AuthService) -> list:
    events: list = []
    auth.session_changed.connect(lambda event, user: events.append((event, user)))
    return events


def test_first_sign_in_creates_profile(auth: AuthService) -> None:
    events = record_events(auth)

    user = auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in"))

    assert user.name == "asha"
    assert user.needs_whatsapp
    assert auth.is_authenticated
    assert auth.db_manager.fetch_profile("u1")["email"] == "asha@vitstudent.ac.in"
    assert events == [(SessionEvent.SIGNED_IN.value, user)]


def test_existing_profile_is_reused(auth: AuthService) -> None:
    auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in", full_name="Asha R"))
    auth.set_whatsapp("+91 98765 43210")
    auth.sign_out()

    user = auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in", full_name="Other"))

    assert user.name == "Asha R"
    assert user.whatsapp == "919876543210"
    assert not auth.needs_whatsapp


def test_non_college_address_is_signed_out(auth: AuthService) -> None:
    auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in"))
    events = record_events(auth)

    with pytest.raises(Unauthenticated, match="college email"):
        auth.sign_in(ProviderIdentity(user_id="u2", email="asha@gmail.com"))

    assert auth.current_user is None
    assert events == [(SessionEvent.SIGNED_OUT.value, None)]
    assert auth.db_manager.fetch_profile("u2") is None


def test_require_user_and_sign_out_without_session(auth: AuthService) -> None:
    events = record_events(auth)

    with pytest.raises(Unauthenticated):
        auth.require_user("join a ride")
    auth.sign_out()

    assert events == []


def test_whatsapp_number_is_validated(auth: AuthService) -> None:
    auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in"))

    with pytest.raises(ValidationFailed):
        auth.set_whatsapp("123")
    assert auth.needs_whatsapp


def test_restore_and_refresh_session(auth: AuthService) -> None:
    auth.sign_in(ProviderIdentity(user_id="u1", email="asha@vitstudent.ac.in"))
    auth.sign_out()

    assert auth.restore_session("missing") is None
    restored = auth.restore_session("u1")
    assert restored is not None and restored.id == "u1"

    events = record_events(auth)
    auth.refresh_session()
    assert events[0][0] == SessionEvent.TOKEN_REFRESHED.value


def test_restore_rejects_profiles_outside_the_allow_list(tmp_path: Path, qapp) -> None:  # noqa: ARG001
    db = DatabaseManager(tmp_path / "carpool.db")
    db.insert_profile("u1", "asha@oldcollege.edu", "Asha")
    auth = AuthService(db, ["vitstudent.ac.in"])

    assert auth.restore_session("u1") is None
    assert not auth.is_authenticated
