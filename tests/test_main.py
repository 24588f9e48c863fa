import json
from pathlib import Path

import pytest
from PyQt6.QtWidgets import QApplication

from campus_carpool import carpool_app
from campus_carpool import main as main_module
from campus_carpool.main import main
from campus_carpool.maps import GoogleMapsError
from campus_carpool.seat_accounting import CompensatingSeatLedger
from campus_carpool.utils.onboarding import OnboardingAborted, identity_for_email


@pytest.fixture(scope="module")
def qapp():
    app = QApplication.instance()
    if app is None:
        app = QApplication([])
    yield app


@pytest.fixture()
def isolated_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, qapp):  # noqa: ARG001
    for name in (
        "CARPOOL_DATABASE_PATH",
        "CARPOOL_ALLOWED_DOMAINS",
        "CARPOOL_SEAT_PROTOCOL",
        "CARPOOL_LOG_LEVEL",
        "GOOGLE_MAPS_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(carpool_app, "load_dotenv", lambda *args, **kwargs: True)
    monkeypatch.setattr(carpool_app, "SETTINGS_FILE", tmp_path / "settings.json")
    monkeypatch.setenv("CARPOOL_DATABASE_PATH", str(tmp_path / "data" / "carpool.db"))
    monkeypatch.setattr(carpool_app.QApplication, "exec", staticmethod(lambda: 0))
    return tmp_path


def test_main_exits_cleanly_when_onboarding_is_cancelled(
    monkeypatch: pytest.MonkeyPatch, isolated_app: Path
) -> None:
    def cancel(**kwargs):
        raise OnboardingAborted()

    monkeypatch.setattr(carpool_app, "maybe_run_onboarding", cancel)

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 0
    assert (isolated_app / "data" / "carpool.db").exists()


def test_main_opens_the_board_for_a_signed_in_user(
    monkeypatch: pytest.MonkeyPatch, isolated_app: Path
) -> None:
    (isolated_app / "settings.json").write_text(
        json.dumps({"seat_protocol": "compensating", "realtime": {"enabled": True}}),
        encoding="utf-8",
    )
    shown = []

    def sign_in(*, settings_manager, auth_service):
        user = auth_service.sign_in(identity_for_email("asha@vitstudent.ac.in", "Asha"))
        settings_manager.update({"session": {"user_id": user.id}})
        return user

    monkeypatch.setattr(carpool_app, "maybe_run_onboarding", sign_in)
    monkeypatch.setattr(carpool_app.CarpoolWindow, "show", lambda self: shown.append(self))

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 0
    window = shown[0]
    assert isinstance(window.store.seat_ledger, CompensatingSeatLedger)
    assert window.coordinator is not None and window.coordinator.is_active
    assert window.user_label.text() == "Signed in as Asha (asha@vitstudent.ac.in)"
    window.coordinator.stop()


def test_main_reports_maps_configuration_errors(monkeypatch: pytest.MonkeyPatch, qapp) -> None:  # noqa: ARG001
    captured = {}

    def broken_bootstrap():
        raise GoogleMapsError("Unable to initialise Google Maps client: bad key")

    def fake_critical(parent, title, text):
        captured["title"] = title
        captured["text"] = text

    monkeypatch.setattr(main_module, "bootstrap_app", broken_bootstrap)
    monkeypatch.setattr(main_module.QMessageBox, "critical", fake_critical)

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 1
    assert captured["title"] == "Google Maps Configuration"
    assert "bad key" in captured["text"]


def test_environment_overrides_stored_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CARPOOL_ALLOWED_DOMAINS", "vitstudent.ac.in, vit.ac.in")
    monkeypatch.setenv("CARPOOL_SEAT_PROTOCOL", "compensating")
    monkeypatch.setenv("CARPOOL_LOG_LEVEL", "debug")
    monkeypatch.setenv("CARPOOL_DATABASE_PATH", str(tmp_path / "shared.db"))
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "env-key")
    settings = carpool_app.SettingsManager(tmp_path / "settings.json").data

    config = carpool_app.load_app_config(settings)

    assert config.allowed_domains == ["vitstudent.ac.in", "vit.ac.in"]
    assert config.seat_protocol == "compensating"
    assert config.log_level == "DEBUG"
    assert config.database_path == tmp_path / "shared.db"
    assert config.maps_api_key == "env-key"
    assert config.request_timeout_seconds == pytest.approx(15.0)
    assert config.subscribe_timeout_ms == 10_000


def test_unknown_seat_protocol_is_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CARPOOL_SEAT_PROTOCOL", "optimistic")
    settings = carpool_app.SettingsManager(tmp_path / "settings.json").data

    with pytest.raises(ValueError, match="optimistic"):
        carpool_app.load_app_config(settings)


def test_settings_manager_merges_and_persists(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"realtime": {"enabled": False}}), encoding="utf-8")

    manager = carpool_app.SettingsManager(path)
    assert manager.data["realtime"] == {"enabled": False, "subscribe_timeout_ms": 10_000}

    manager.update({"window_size": {"width": 900}})
    reloaded = carpool_app.SettingsManager(path)
    assert reloaded.data["window_size"] == {"width": 900, "height": 720}
    assert reloaded.data["allowed_email_domains"] == ["vitstudent.ac.in"]

    path.write_text("{not json", encoding="utf-8")
    assert carpool_app.SettingsManager(path).data["seat_protocol"] == "transactional"


def test_main_reports_an_unusable_database(
    monkeypatch: pytest.MonkeyPatch, isolated_app: Path
) -> None:
    captured = {}

    def fake_critical(parent, title, text):
        captured["title"] = title
        captured["text"] = text

    # A directory cannot be opened as an SQLite database.
    monkeypatch.setenv("CARPOOL_DATABASE_PATH", str(isolated_app))
    monkeypatch.setattr(main_module.QMessageBox, "critical", fake_critical)
    monkeypatch.setattr(
        carpool_app, "maybe_run_onboarding", lambda **kwargs: pytest.fail("onboarding must not run")
    )

    with pytest.raises(SystemExit) as exc:
        main()

    assert exc.value.code == 3
    assert captured["title"] == "Ride Database"
    assert "could not start" in captured["text"]


def test_environment_maps_key_beats_stored_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = carpool_app.SettingsManager(tmp_path / "settings.json").data
    settings["google_maps_api_key"] = "stored-key"

    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    assert carpool_app.load_app_config(settings).maps_api_key == "stored-key"

    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "env-key")
    assert carpool_app.load_app_config(settings).maps_api_key == "env-key"
