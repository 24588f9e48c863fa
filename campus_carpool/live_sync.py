"""Keep a :class:`RideStore` in step with changes made by other sessions."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from .database import PARTICIPANTS_TABLE, RIDES_TABLE
from .realtime import ChangeEvent, ChangeFeed, RealtimeChannel, SubscriptionStatus
from .ride_store import RideStore

logger = logging.getLogger(__name__)

CHANNEL_NAME = "rides-changes"
DEFAULT_SUBSCRIBE_TIMEOUT_MS = 10_000


class LiveSyncCoordinator(QObject):
    """Reload the whole store whenever a watched table changes.

    Each event triggers a full ``reload()``, which makes the coordinator
    indifferent to event order and duplicate delivery. A channel error or a
    subscription timeout is reported through ``status_changed`` and left as is;
    the UI offers a manual reload instead.
    """

    status_changed = pyqtSignal(str)

    def __init__(
        self,
        store: RideStore,
        change_feed: ChangeFeed,
        *,
        tables: Sequence[str] = (RIDES_TABLE, PARTICIPANTS_TABLE),
        subscribe_timeout_ms: int = DEFAULT_SUBSCRIBE_TIMEOUT_MS,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.change_feed = change_feed
        self.tables = tuple(tables)
        self.reload_count = 0
        self._channel: Optional[RealtimeChannel] = None
        self._status: Optional[SubscriptionStatus] = None

        self._subscribe_timer = QTimer(self)
        self._subscribe_timer.setSingleShot(True)
        self._subscribe_timer.setInterval(subscribe_timeout_ms)
        self._subscribe_timer.timeout.connect(self._on_subscribe_timeout)

    @property
    def status(self) -> Optional[SubscriptionStatus]:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._channel is not None

    @property
    def is_degraded(self) -> bool:
        return self._status in (SubscriptionStatus.CHANNEL_ERROR, SubscriptionStatus.TIMED_OUT)

    def start(self) -> None:
        if self._channel is not None:
            return
        channel = self.change_feed.channel(CHANNEL_NAME)
        for table in self.tables:
            channel.on(table, self._on_change)
        self._channel = channel
        self._subscribe_timer.start()
        channel.subscribe(self._on_status)

    def stop(self) -> None:
        self._subscribe_timer.stop()
        channel, self._channel = self._channel, None
        if channel is not None:
            self.change_feed.remove_channel(channel)
            self._on_status(SubscriptionStatus.CLOSED, None)

    def _on_status(self, status: SubscriptionStatus, error: Optional[str]) -> None:
        if status != SubscriptionStatus.CONNECTING:
            self._subscribe_timer.stop()
        if status == self._status:
            return
        self._status = status
        if status == SubscriptionStatus.CHANNEL_ERROR:
            logger.warning("Realtime channel error: %s", error or "unknown error")
        elif status == SubscriptionStatus.TIMED_OUT:
            logger.warning("Realtime subscription timed out.")
        else:
            logger.info("Realtime rides status: %s", status.value)
        self.status_changed.emit(status.value)

    def _on_subscribe_timeout(self) -> None:
        if self._channel is not None:
            self._channel.mark_timed_out()

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("Realtime %s event on %s received", event.event_type, event.table)
        self.reload_count += 1
        self.store.reload()
