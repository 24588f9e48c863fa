"""PyQt6 desktop client for the campus carpool board.

Students sign in with a college address, post rides with a seat count, join
rides posted by others, and coordinate with the driver over WhatsApp. The
board stays current through live change notifications from the shared store.

Configuration
-------------
Settings live in ``settings.json`` inside the per-user data directory. A
``.env`` file next to the working directory may override them::

    CARPOOL_DATABASE_PATH=/path/to/carpool.db
    CARPOOL_ALLOWED_DOMAINS=vitstudent.ac.in
    CARPOOL_SEAT_PROTOCOL=transactional
    CARPOOL_LOG_LEVEL=INFO
    GOOGLE_MAPS_API_KEY=your-secret-key

The Maps key is optional; without it location suggestions come from places
already used by posted rides.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

from dotenv import load_dotenv
from PyQt6.QtCore import QDate, QStringListModel, QThreadPool, QTime, QTimer, Qt, QUrl, pyqtSignal
from PyQt6.QtGui import QColor, QDesktopServices, QFont
from PyQt6.QtWidgets import (
    QAbstractItemView,
    QApplication,
    QCompleter,
    QDateEdit,
    QDialog,
    QDialogButtonBox,
    QFormLayout,
    QFrame,
    QHBoxLayout,
    QHeaderView,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QSizePolicy,
    QSpinBox,
    QTabWidget,
    QTableWidget,
    QTableWidgetItem,
    QTimeEdit,
    QVBoxLayout,
    QWidget,
)

from .auth import AuthService
from .database import DEFAULT_REQUEST_TIMEOUT_SECONDS, DatabaseManager
from .errors import ActionResult, TransportFailure, ValidationFailed
from .live_sync import DEFAULT_SUBSCRIBE_TIMEOUT_MS, LiveSyncCoordinator
from .maps import GoogleMapsHandler
from .models import (
    MAX_SEATS,
    MIN_SEATS,
    Ride,
    RideDraft,
    RidePatch,
    SearchFilters,
    build_whatsapp_link,
    format_ride_date,
    ride_join_message,
)
from .realtime import ChangeFeed, SubscriptionStatus
from .ride_store import RideStore
from .seat_accounting import SEAT_PROTOCOLS, TRANSACTIONAL, build_seat_ledger
from .utils.onboarding import OnboardingAborted, maybe_run_onboarding
from .workers import Worker

logger = logging.getLogger(__name__)

APP_BUNDLE_ROOT = Path(__file__).resolve().parent
STYLE_FILE = APP_BUNDLE_ROOT / "resources" / "style.qss"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _resolve_data_directory() -> Path:
    if sys.platform == "win32":
        base = Path(os.getenv("APPDATA", Path.home() / "AppData/Roaming"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library/Application Support"
    else:
        base = Path(os.getenv("XDG_DATA_HOME", Path.home() / ".local/share"))
    return base / "CampusCarpool"


APP_DATA_DIR = _resolve_data_directory()
DATABASE_FILE = APP_DATA_DIR / "carpool.db"
SETTINGS_FILE = APP_DATA_DIR / "settings.json"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class SettingsManager:
    """Load and persist lightweight JSON application settings."""

    DEFAULTS: dict[str, Any] = {
        "allowed_email_domains": ["vitstudent.ac.in"],
        "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
        "seat_protocol": TRANSACTIONAL,
        "realtime": {"enabled": True, "subscribe_timeout_ms": DEFAULT_SUBSCRIBE_TIMEOUT_MS},
        "log_level": "INFO",
        "window_size": {"width": 1100, "height": 720},
        "google_maps_api_key": "",
        "session": {"user_id": None},
        "onboarding": {"completed": False, "completed_at": None},
    }

    def __init__(self, path: Path) -> None:
        self.path = path
        self.data = json.loads(json.dumps(self.DEFAULTS))  # deep copy
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self.save()
            return
        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            self.save()
            return
        if isinstance(loaded, dict):
            self.data = _deep_merge(self.data, loaded)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.data, indent=2), encoding="utf-8")

    def update(self, updates: dict[str, Any]) -> None:
        self.data = _deep_merge(self.data, updates)
        self.save()


@dataclass(frozen=True)
class AppConfig:
    """Effective runtime configuration after environment overrides."""

    database_path: Path
    allowed_domains: List[str]
    seat_protocol: str
    request_timeout_seconds: float
    realtime_enabled: bool
    subscribe_timeout_ms: int
    log_level: str
    maps_api_key: str


def load_app_config(settings: dict[str, Any]) -> AppConfig:
    """Combine stored settings with ``CARPOOL_*`` environment variables."""

    env_domains = os.getenv("CARPOOL_ALLOWED_DOMAINS", "").strip()
    domains = (
        [domain.strip() for domain in env_domains.split(",") if domain.strip()]
        if env_domains
        else list(settings.get("allowed_email_domains", []))
    )
    protocol = os.getenv("CARPOOL_SEAT_PROTOCOL", "").strip() or str(
        settings.get("seat_protocol", TRANSACTIONAL)
    )
    if protocol not in SEAT_PROTOCOLS:
        raise ValueError(
            f"Unsupported seat protocol {protocol!r}; choose one of {', '.join(SEAT_PROTOCOLS)}."
        )
    realtime = settings.get("realtime", {})
    database_path = os.getenv("CARPOOL_DATABASE_PATH", "").strip()
    return AppConfig(
        database_path=Path(database_path) if database_path else DATABASE_FILE,
        allowed_domains=domains,
        seat_protocol=protocol,
        request_timeout_seconds=float(
            settings.get("request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS)
        ),
        realtime_enabled=bool(realtime.get("enabled", True)),
        subscribe_timeout_ms=int(realtime.get("subscribe_timeout_ms", DEFAULT_SUBSCRIBE_TIMEOUT_MS)),
        log_level=(os.getenv("CARPOOL_LOG_LEVEL", "").strip() or str(settings.get("log_level", "INFO"))).upper(),
        maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY", "").strip()
        or str(settings.get("google_maps_api_key", "")).strip(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def open_whatsapp(ride: Ride) -> bool:
    """Open the driver's WhatsApp chat with a prefilled join message."""

    link = build_whatsapp_link(ride.creator_whatsapp, ride_join_message(ride))
    return QDesktopServices.openUrl(QUrl(link))


class InlineFeedbackBanner(QFrame):
    """Compact inline alert shown above each ride list."""

    _ICONS: dict[str, str] = {
        "info": "ℹ",
        "success": "✔",
        "warning": "⚠",
        "error": "⛔",
    }

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.setObjectName("InlineFeedbackBanner")
        self.setProperty("severity", "info")
        self.setVisible(False)
        self.setSizePolicy(QSizePolicy.Policy.Expanding, QSizePolicy.Policy.Fixed)

        self._messages: list[str] = []
        self._severity = "info"

        layout = QHBoxLayout(self)
        layout.setContentsMargins(16, 10, 14, 10)
        layout.setSpacing(12)

        self._icon_label = QLabel(self._ICONS["info"], self)
        layout.addWidget(self._icon_label, 0, Qt.AlignmentFlag.AlignTop)

        self._message_label = QLabel("", self)
        self._message_label.setObjectName("InlineFeedbackMessage")
        self._message_label.setWordWrap(True)
        layout.addWidget(self._message_label, 1)

        close_button = QPushButton("×", self)
        close_button.setFlat(True)
        close_button.setFocusPolicy(Qt.FocusPolicy.NoFocus)
        close_button.clicked.connect(self.clear)
        layout.addWidget(close_button, 0, Qt.AlignmentFlag.AlignTop)

    def show_messages(self, messages: Sequence[str], *, severity: str = "info") -> None:
        cleaned = [line.strip() for line in messages if line and line.strip()]
        if not cleaned:
            self.clear()
            return
        self._messages = cleaned
        self._severity = severity
        self.setProperty("severity", severity)
        self._icon_label.setText(self._ICONS.get(severity, self._ICONS["info"]))
        self._message_label.setText("\n".join(cleaned))
        self._refresh_style()
        self.setVisible(True)

    def show_message(self, message: str, *, severity: str = "info") -> None:
        self.show_messages([message], severity=severity)

    def show_result(self, result: ActionResult) -> None:
        if result.ok:
            self.show_message(result.message, severity="success")
        elif result.field_errors:
            self.show_messages(list(result.field_errors.values()), severity="warning")
        else:
            self.show_message(result.message, severity="error")

    def clear(self) -> None:
        self._messages = []
        self._message_label.clear()
        self._severity = "info"
        self.setProperty("severity", "info")
        self._refresh_style()
        self.setVisible(False)

    @property
    def messages(self) -> list[str]:
        return list(self._messages)

    @property
    def severity(self) -> str:
        return self._severity

    def _refresh_style(self) -> None:
        style = self.style()
        style.unpolish(self)
        style.polish(self)
        self.update()


class AddressLineEdit(QLineEdit):
    """Line edit that offers location suggestions from a background lookup."""

    def __init__(
        self,
        maps_handler: Optional[GoogleMapsHandler],
        thread_pool: QThreadPool,
        parent: QWidget | None = None,
    ) -> None:
        super().__init__(parent)
        self.maps_handler = maps_handler
        self.thread_pool = thread_pool
        self.setPlaceholderText("Type a location...")
        self._last_query = ""

        self._timer = QTimer(self)
        self._timer.setInterval(450)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._fetch_suggestions)
        self.textChanged.connect(self._on_text_changed)

        self._model = QStringListModel(self)
        completer = QCompleter(self)
        completer.setModel(self._model)
        completer.setCaseSensitivity(Qt.CaseSensitivity.CaseInsensitive)
        completer.setFilterMode(Qt.MatchFlag.MatchContains)
        self.setCompleter(completer)

    def _on_text_changed(self, text: str) -> None:
        if self.maps_handler is None or len(text.strip()) < GoogleMapsHandler.MIN_QUERY_LENGTH:
            self._model.setStringList([])
            return
        self._timer.start()

    def _fetch_suggestions(self) -> None:
        query = self.text().strip()
        if not query or query == self._last_query or self.maps_handler is None:
            return
        self._last_query = query
        worker = Worker(self.maps_handler.suggest, query)
        worker.signals.finished.connect(self._update_suggestions)
        worker.signals.error.connect(lambda message: logger.warning("Suggestions failed: %s", message))
        self.thread_pool.start(worker)

    def _update_suggestions(self, suggestions: list[str]) -> None:
        self._model.setStringList(suggestions)


class RideFormDialog(QDialog):
    """Create or edit a ride; shows per-field validation messages inline."""

    def __init__(
        self,
        *,
        maps_handler: Optional[GoogleMapsHandler],
        thread_pool: QThreadPool,
        ride: Optional[Ride] = None,
        parent: QWidget | None = None,
    ) -> None:
        super().__init__(parent)
        self.setModal(True)
        self.setWindowTitle("Edit Ride" if ride else "Create a Ride")
        self.ride = ride

        self.source_input = AddressLineEdit(maps_handler, thread_pool, self)
        self.source_input.setPlaceholderText("Select pickup location")
        self.destination_input = AddressLineEdit(maps_handler, thread_pool, self)
        self.destination_input.setPlaceholderText("Select drop-off location")
        self.date_input = QDateEdit(QDate.currentDate(), self)
        self.date_input.setCalendarPopup(True)
        self.date_input.setDisplayFormat("yyyy-MM-dd")
        self.start_input = QTimeEdit(QTime(9, 0), self)
        self.start_input.setDisplayFormat("HH:mm")
        self.end_input = QTimeEdit(QTime(10, 0), self)
        self.end_input.setDisplayFormat("HH:mm")
        self.seats_input = QSpinBox(self)
        self.seats_input.setRange(MIN_SEATS, MAX_SEATS)
        self.seats_input.setValue(MIN_SEATS)

        self._inputs: dict[str, QWidget] = {
            "source": self.source_input,
            "destination": self.destination_input,
            "date": self.date_input,
            "start_time": self.start_input,
            "end_time": self.end_input,
            "total_seats" if ride else "seats": self.seats_input,
        }

        if ride is not None:
            self.source_input.setText(ride.source)
            self.destination_input.setText(ride.destination)
            self.date_input.setDate(QDate.fromString(ride.date, "yyyy-MM-dd"))
            self.start_input.setTime(QTime.fromString(ride.start_time, "HH:mm"))
            self.end_input.setTime(QTime.fromString(ride.end_time, "HH:mm"))
            self.seats_input.setValue(ride.total_seats)

        form = QFormLayout()
        form.addRow("Source", self.source_input)
        form.addRow("Destination", self.destination_input)
        form.addRow("Date", self.date_input)
        form.addRow("Start time", self.start_input)
        form.addRow("End time", self.end_input)
        form.addRow("Total seats" if ride else "Seats available", self.seats_input)

        self.feedback_banner = InlineFeedbackBanner(self)
        buttons = QDialogButtonBox(
            QDialogButtonBox.StandardButton.Save | QDialogButtonBox.StandardButton.Cancel
        )
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(20, 20, 20, 20)
        layout.setSpacing(14)
        layout.addWidget(self.feedback_banner)
        layout.addLayout(form)
        layout.addWidget(buttons)

    def values(self) -> dict[str, Any]:
        return {
            "source": self.source_input.text(),
            "destination": self.destination_input.text(),
            "date": self.date_input.date().toString("yyyy-MM-dd"),
            "start_time": self.start_input.time().toString("HH:mm"),
            "end_time": self.end_input.time().toString("HH:mm"),
            "seats": self.seats_input.value(),
        }

    def draft(self) -> RideDraft:
        return RideDraft(**self.values())

    def patch(self) -> RidePatch:
        values = self.values()
        seats = values.pop("seats")
        return RidePatch(total_seats=seats, **values)

    def accept(self) -> None:  # type: ignore[override]
        try:
            if self.ride is None:
                self.draft().validated()
            else:
                self.patch().validated_against(self.ride)
        except ValidationFailed as exc:
            self.show_field_errors(exc.field_errors)
            return
        self.show_field_errors({})
        super().accept()

    def show_field_errors(self, field_errors: dict[str, str]) -> None:
        for name, widget in self._inputs.items():
            widget.setProperty("validationState", "error" if name in field_errors else "")
            widget.setToolTip(field_errors.get(name, ""))
        if field_errors:
            self.feedback_banner.show_messages(list(field_errors.values()), severity="warning")
        else:
            self.feedback_banner.clear()


class RideTable(QTableWidget):
    """Read-only table of rides keyed by ride id."""

    HEADERS = ["From", "To", "Date", "Time", "Seats", "Driver"]

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(0, len(self.HEADERS), parent)
        self.setHorizontalHeaderLabels(self.HEADERS)
        self.verticalHeader().setVisible(False)
        self.setSelectionBehavior(QAbstractItemView.SelectionBehavior.SelectRows)
        self.setSelectionMode(QAbstractItemView.SelectionMode.SingleSelection)
        self.setEditTriggers(QAbstractItemView.EditTrigger.NoEditTriggers)
        header = self.horizontalHeader()
        header.setSectionResizeMode(QHeaderView.ResizeMode.Interactive)
        header.setSectionResizeMode(0, QHeaderView.ResizeMode.Stretch)
        header.setSectionResizeMode(1, QHeaderView.ResizeMode.Stretch)

    def set_rides(self, rides: Sequence[Ride], joined_ids: frozenset[str] = frozenset()) -> None:
        selected = self.selected_ride_id()
        self.setRowCount(len(rides))
        for row_index, ride in enumerate(rides):
            cells = [
                ride.source,
                ride.destination,
                format_ride_date(ride.date),
                ride.time_window,
                f"{ride.seats_available}/{ride.total_seats}",
                ride.creator_name,
            ]
            for column, text in enumerate(cells):
                item = QTableWidgetItem(text)
                item.setData(Qt.ItemDataRole.UserRole, ride.id)
                if ride.id in joined_ids:
                    item.setForeground(QColor("#35c4c7"))
                elif ride.is_full:
                    item.setForeground(QColor("#7d8798"))
                self.setItem(row_index, column, item)
            if ride.id == selected:
                self.selectRow(row_index)
        self.resizeRowsToContents()

    def selected_ride_id(self) -> Optional[str]:
        items = self.selectedItems()
        if not items:
            return None
        return items[0].data(Qt.ItemDataRole.UserRole)


class _RideListTab(QWidget):
    """Shared layout for the three ride lists: banner, toolbar, table."""

    activity_event = pyqtSignal(str, str, str)

    def __init__(self, store: RideStore, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.store = store
        self.feedback_banner = InlineFeedbackBanner(self)
        self.table = RideTable(self)
        self.table.itemSelectionChanged.connect(self._update_buttons)
        self.toolbar = QHBoxLayout()
        self.toolbar.setSpacing(10)

        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(14)
        layout.addWidget(self.feedback_banner)
        layout.addLayout(self.toolbar)
        layout.addWidget(self.table, 1)

    def visible_rides(self) -> List[Ride]:
        return self.store.rides

    def refresh(self) -> None:
        self.table.set_rides(self.visible_rides(), self.store.joined_ride_ids)
        self._update_buttons()

    def selected_ride(self) -> Optional[Ride]:
        ride_id = self.table.selected_ride_id()
        return self.store.get_ride_by_id(ride_id) if ride_id else None

    def _update_buttons(self) -> None:
        pass

    def _report(self, title: str, result: ActionResult) -> None:
        self.feedback_banner.show_result(result)
        self.activity_event.emit("success" if result.ok else "error", title, result.message)

    def _contact_driver(self) -> None:
        ride = self.selected_ride()
        if ride is None:
            return
        if not ride.creator_whatsapp:
            self.feedback_banner.show_message(
                "The driver has not added a WhatsApp number.", severity="warning"
            )
            return
        open_whatsapp(ride)


class FindRidesTab(_RideListTab):
    """Search open rides and join or leave them."""

    def __init__(self, store: RideStore, parent: QWidget | None = None) -> None:
        super().__init__(store, parent)
        self._filters = SearchFilters()

        self.source_filter = QLineEdit()
        self.source_filter.setPlaceholderText("From")
        self.destination_filter = QLineEdit()
        self.destination_filter.setPlaceholderText("To")
        self.date_filter = QLineEdit()
        self.date_filter.setPlaceholderText("YYYY-MM-DD")
        self.start_filter = QLineEdit()
        self.start_filter.setPlaceholderText("After HH:MM")
        self.end_filter = QLineEdit()
        self.end_filter.setPlaceholderText("Before HH:MM")
        self.search_button = QPushButton("Search")
        self.clear_button = QPushButton("Clear")
        self.join_button = QPushButton("Join")
        self.whatsapp_button = QPushButton("WhatsApp driver")

        for widget in (
            self.source_filter,
            self.destination_filter,
            self.date_filter,
            self.start_filter,
            self.end_filter,
            self.search_button,
            self.clear_button,
        ):
            self.toolbar.addWidget(widget)
        self.toolbar.addStretch(1)
        self.toolbar.addWidget(self.join_button)
        self.toolbar.addWidget(self.whatsapp_button)

        self.search_button.clicked.connect(self.apply_filters)
        self.clear_button.clicked.connect(self.clear_filters)
        self.join_button.clicked.connect(self._on_join_leave)
        self.whatsapp_button.clicked.connect(self._contact_driver)
        self._update_buttons()

    def apply_filters(self) -> None:
        self._filters = SearchFilters(
            source=self.source_filter.text().strip() or None,
            destination=self.destination_filter.text().strip() or None,
            date=self.date_filter.text().strip() or None,
            start_time=self.start_filter.text().strip() or None,
            end_time=self.end_filter.text().strip() or None,
        )
        self.refresh()

    def clear_filters(self) -> None:
        for widget in (
            self.source_filter,
            self.destination_filter,
            self.date_filter,
            self.start_filter,
            self.end_filter,
        ):
            widget.clear()
        self.apply_filters()

    def visible_rides(self) -> List[Ride]:
        rides = self.store.search_rides(self._filters)
        # Rides the user is in stay listed even once they fill up.
        listed = {ride.id for ride in rides}
        joined_full = [
            ride for ride in self.store.get_joined_rides() if ride.id not in listed and ride.is_full
        ]
        return [ride for ride in self.store.rides if ride.id in listed or ride in joined_full]

    def _update_buttons(self) -> None:
        ride = self.selected_ride()
        joined = ride is not None and self.store.has_joined_ride(ride.id)
        mine = ride is not None and self.store.is_my_ride(ride.id)
        self.join_button.setText("Leave" if joined else "Join")
        self.join_button.setEnabled(ride is not None and not mine and (joined or not ride.is_full))
        self.whatsapp_button.setEnabled(joined and bool(ride and ride.creator_whatsapp))

    def _on_join_leave(self) -> None:
        ride = self.selected_ride()
        if ride is None:
            self.feedback_banner.show_message("Select a ride first.", severity="warning")
            return
        if self.store.has_joined_ride(ride.id):
            self._report("Left ride", self.store.leave_ride(ride.id))
        else:
            self._report("Joined ride", self.store.join_ride(ride.id))
        self.refresh()


class MyRidesTab(_RideListTab):
    """Rides posted by the signed-in user."""

    def __init__(
        self,
        store: RideStore,
        maps_handler: Optional[GoogleMapsHandler],
        thread_pool: QThreadPool,
        parent: QWidget | None = None,
        dialog_cls=RideFormDialog,
    ) -> None:
        super().__init__(store, parent)
        self.maps_handler = maps_handler
        self.thread_pool = thread_pool
        self._dialog_cls = dialog_cls

        self.create_button = QPushButton("New ride")
        self.edit_button = QPushButton("Edit")
        self.delete_button = QPushButton("Delete")
        self.toolbar.addWidget(self.create_button)
        self.toolbar.addStretch(1)
        self.toolbar.addWidget(self.edit_button)
        self.toolbar.addWidget(self.delete_button)

        self.create_button.clicked.connect(self._on_create)
        self.edit_button.clicked.connect(self._on_edit)
        self.delete_button.clicked.connect(self._on_delete)
        self._update_buttons()

    def visible_rides(self) -> List[Ride]:
        return self.store.get_my_rides()

    def _update_buttons(self) -> None:
        has_selection = self.selected_ride() is not None
        self.edit_button.setEnabled(has_selection)
        self.delete_button.setEnabled(has_selection)

    def _on_create(self) -> None:
        dialog = self._dialog_cls(maps_handler=self.maps_handler, thread_pool=self.thread_pool, parent=self)
        if dialog.exec() != QDialog.DialogCode.Accepted:
            return
        self._report("Ride created", self.store.create_ride(dialog.draft()))
        self.refresh()

    def _on_edit(self) -> None:
        ride = self.selected_ride()
        if ride is None:
            return
        dialog = self._dialog_cls(
            maps_handler=self.maps_handler, thread_pool=self.thread_pool, ride=ride, parent=self
        )
        if dialog.exec() != QDialog.DialogCode.Accepted:
            return
        self._report("Ride updated", self.store.update_ride(ride.id, dialog.patch()))
        self.refresh()

    def _on_delete(self) -> None:
        ride = self.selected_ride()
        if ride is None:
            return
        answer = QMessageBox.question(
            self, "Delete ride", "Delete this ride? This cannot be undone."
        )
        if answer != QMessageBox.StandardButton.Yes:
            return
        self._report("Ride deleted", self.store.delete_ride(ride.id))
        self.refresh()


class JoinedRidesTab(_RideListTab):
    """Rides the signed-in user has joined."""

    def __init__(self, store: RideStore, parent: QWidget | None = None) -> None:
        super().__init__(store, parent)
        self.leave_button = QPushButton("Leave")
        self.whatsapp_button = QPushButton("WhatsApp driver")
        self.toolbar.addStretch(1)
        self.toolbar.addWidget(self.leave_button)
        self.toolbar.addWidget(self.whatsapp_button)
        self.leave_button.clicked.connect(self._on_leave)
        self.whatsapp_button.clicked.connect(self._contact_driver)
        self._update_buttons()

    def visible_rides(self) -> List[Ride]:
        return self.store.get_joined_rides()

    def _update_buttons(self) -> None:
        ride = self.selected_ride()
        self.leave_button.setEnabled(ride is not None)
        self.whatsapp_button.setEnabled(bool(ride and ride.creator_whatsapp))

    def _on_leave(self) -> None:
        ride = self.selected_ride()
        if ride is None:
            return
        self._report("Left ride", self.store.leave_ride(ride.id))
        self.refresh()


class CarpoolWindow(QMainWindow):
    """Main window hosting the ride lists and the live-sync indicator."""

    _STATUS_TEXT = {
        SubscriptionStatus.CONNECTING.value: "Connecting to live updates…",
        SubscriptionStatus.SUBSCRIBED.value: "Live updates on",
        SubscriptionStatus.CHANNEL_ERROR.value: "Live updates unavailable - reload manually",
        SubscriptionStatus.TIMED_OUT.value: "Live updates timed out - reload manually",
        SubscriptionStatus.CLOSED.value: "Live updates off",
    }

    def __init__(
        self,
        store: RideStore,
        auth_service: AuthService,
        settings_manager: SettingsManager,
        *,
        coordinator: Optional[LiveSyncCoordinator] = None,
        maps_handler: Optional[GoogleMapsHandler] = None,
        thread_pool: Optional[QThreadPool] = None,
    ) -> None:
        super().__init__()
        self.store = store
        self.auth_service = auth_service
        self.settings_manager = settings_manager
        self.coordinator = coordinator
        self.thread_pool = thread_pool or QThreadPool()

        self.setWindowTitle("Campus Carpool")
        window_size = self.settings_manager.data.get("window_size", {})
        self.resize(int(window_size.get("width", 1100)), int(window_size.get("height", 720)))

        self.user_label = QLabel("")
        self.user_label.setProperty("role", "sectionLabel")
        self.realtime_label = QLabel(self._STATUS_TEXT[SubscriptionStatus.CLOSED.value])
        self.realtime_label.setProperty("role", "hint")
        self.reload_button = QPushButton("Reload")
        self.sign_out_button = QPushButton("Sign out")
        self.error_banner = InlineFeedbackBanner(self)

        header = QHBoxLayout()
        header.setSpacing(12)
        header.addWidget(self.user_label)
        header.addStretch(1)
        header.addWidget(self.realtime_label)
        header.addWidget(self.reload_button)
        header.addWidget(self.sign_out_button)

        self.find_tab = FindRidesTab(store)
        self.my_rides_tab = MyRidesTab(store, maps_handler, self.thread_pool)
        self.joined_tab = JoinedRidesTab(store)
        self.tabs = QTabWidget()
        self.tabs.addTab(self.find_tab, "Find rides")
        self.tabs.addTab(self.my_rides_tab, "My rides")
        self.tabs.addTab(self.joined_tab, "Joined rides")

        body = QWidget(self)
        layout = QVBoxLayout(body)
        layout.setContentsMargins(20, 16, 20, 16)
        layout.setSpacing(14)
        layout.addLayout(header)
        layout.addWidget(self.error_banner)
        layout.addWidget(self.tabs, 1)
        self.setCentralWidget(body)

        self.reload_button.clicked.connect(self._on_reload_clicked)
        self.sign_out_button.clicked.connect(self._on_sign_out)
        self.store.rides_changed.connect(self._refresh_tabs)
        self.store.membership_changed.connect(self._refresh_tabs)
        self.store.error_changed.connect(self._on_store_error)
        self.auth_service.session_changed.connect(self._on_session_changed)
        for tab in (self.find_tab, self.my_rides_tab, self.joined_tab):
            tab.activity_event.connect(self._log_activity)
        if self.coordinator is not None:
            self.coordinator.status_changed.connect(self._on_realtime_status)

        self._update_user_label()
        self._refresh_tabs()

    def _refresh_tabs(self, *_args: Any) -> None:
        for tab in (self.find_tab, self.my_rides_tab, self.joined_tab):
            tab.refresh()

    def _update_user_label(self) -> None:
        user = self.auth_service.current_user
        self.user_label.setText(f"Signed in as {user.name} ({user.email})" if user else "Signed out")

    def _on_session_changed(self, _event: str, _user: object) -> None:
        self._update_user_label()

    def _on_store_error(self, message: str) -> None:
        if message:
            self.error_banner.show_message(
                f"{message} Showing the last loaded rides.", severity="error"
            )
        else:
            self.error_banner.clear()

    def _on_realtime_status(self, status: str) -> None:
        self.realtime_label.setText(self._STATUS_TEXT.get(status, status))

    def _on_reload_clicked(self) -> None:
        self.store.load_joined_rides()
        self.store.load_rides_async()

    def _on_sign_out(self) -> None:
        self.auth_service.sign_out()
        self.settings_manager.update({"session": {"user_id": None}})
        self.close()

    def _log_activity(self, severity: str, title: str, message: str) -> None:
        log = logger.info if severity in {"info", "success"} else logger.warning
        log("%s: %s", title, message)

    def closeEvent(self, event) -> None:  # type: ignore[override]
        if self.coordinator is not None:
            self.coordinator.stop()
        self.settings_manager.update(
            {"window_size": {"width": self.width(), "height": self.height()}}
        )
        super().closeEvent(event)


def load_stylesheet() -> str:
    if STYLE_FILE.exists():
        return STYLE_FILE.read_text(encoding="utf-8")
    return ""


def bootstrap_app() -> int:
    """Configure the QApplication and start the GUI loop.

    Returns the exit code produced by ``QApplication.exec``, or ``0`` when the
    user cancels onboarding.
    """

    load_dotenv()
    settings_manager = SettingsManager(SETTINGS_FILE)
    config = load_app_config(settings_manager.data)
    configure_logging(config.log_level)

    app = QApplication.instance() or QApplication(sys.argv)
    app.setFont(QFont("Segoe UI", 10))
    stylesheet = load_stylesheet()
    if stylesheet:
        app.setStyleSheet(stylesheet)

    change_feed = ChangeFeed()
    try:
        config.database_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise TransportFailure(f"Cannot create {config.database_path.parent}: {exc}") from exc
    db_manager = DatabaseManager(
        config.database_path, change_feed, timeout_seconds=config.request_timeout_seconds
    )
    auth_service = AuthService(db_manager, config.allowed_domains)
    thread_pool = QThreadPool()
    store = RideStore(
        db_manager,
        auth_service,
        build_seat_ledger(db_manager, config.seat_protocol),
        thread_pool=thread_pool,
    )

    try:
        maybe_run_onboarding(settings_manager=settings_manager, auth_service=auth_service)
    except OnboardingAborted:
        logger.info("Onboarding cancelled; exiting.")
        return 0

    coordinator = None
    if config.realtime_enabled:
        coordinator = LiveSyncCoordinator(
            store, change_feed, subscribe_timeout_ms=config.subscribe_timeout_ms
        )
    maps_handler = GoogleMapsHandler(config.maps_api_key, db_manager)
    window = CarpoolWindow(
        store,
        auth_service,
        settings_manager,
        coordinator=coordinator,
        maps_handler=maps_handler,
        thread_pool=thread_pool,
    )
    if coordinator is not None:
        coordinator.start()
    store.reload()
    window.show()
    return app.exec()


if __name__ == "__main__":
    sys.exit(bootstrap_app())
