"""Table change notifications delivered asynchronously over the Qt event loop.

The storage gateway publishes a :class:`ChangeEvent` after every committed write.
Deliveries and subscription acknowledgements travel through queued signal
connections, so a subscriber never observes an event in the middle of the
operation that caused it. Publishing is safe from worker threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from PyQt6.QtCore import QObject, Qt, pyqtSignal

logger = logging.getLogger(__name__)

ANY_EVENT = "*"


class SubscriptionStatus(str, Enum):
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str  # INSERT | UPDATE | DELETE
    record: dict[str, Any] = field(default_factory=dict)
    committed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="microseconds")
    )


StatusCallback = Callable[[SubscriptionStatus, Optional[str]], None]
EventCallback = Callable[[ChangeEvent], None]


class RealtimeChannel:
    """A named subscription to one or more tables on a :class:`ChangeFeed`."""

    def __init__(self, feed: "ChangeFeed", name: str) -> None:
        self.name = name
        self._feed = feed
        self._handlers: list[tuple[str, str, EventCallback]] = []
        self._status_callback: Optional[StatusCallback] = None
        self.status: Optional[SubscriptionStatus] = None

    def on(self, table: str, callback: EventCallback, *, event: str = ANY_EVENT) -> "RealtimeChannel":
        self._handlers.append((table, event.upper(), callback))
        return self

    def subscribe(self, status_callback: Optional[StatusCallback] = None) -> "RealtimeChannel":
        self._status_callback = status_callback
        self._set_status(SubscriptionStatus.CONNECTING)
        self._feed._join(self)
        return self

    def mark_timed_out(self) -> None:
        """Stop listening after the subscriber gave up waiting for the acknowledgement."""

        if self.status == SubscriptionStatus.CONNECTING:
            self._set_status(SubscriptionStatus.TIMED_OUT)

    @property
    def tables(self) -> set[str]:
        return {table for table, _event, _callback in self._handlers}

    def _set_status(self, status: SubscriptionStatus, error: Optional[str] = None) -> None:
        if self.status == status:
            return
        self.status = status
        if self._status_callback is not None:
            self._status_callback(status, error)

    def _deliver(self, event: ChangeEvent) -> None:
        if self.status != SubscriptionStatus.SUBSCRIBED:
            return
        for table, event_filter, callback in list(self._handlers):
            if table != event.table:
                continue
            if event_filter not in (ANY_EVENT, event.event_type):
                continue
            callback(event)


class ChangeFeed(QObject):
    """In-process publish/subscribe hub keyed on table names."""

    _published = pyqtSignal(object)
    _join_requested = pyqtSignal(object)

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._channels: list[RealtimeChannel] = []
        self._online = True
        self._published.connect(self._dispatch, Qt.ConnectionType.QueuedConnection)
        self._join_requested.connect(self._acknowledge, Qt.ConnectionType.QueuedConnection)

    @property
    def online(self) -> bool:
        return self._online

    @property
    def channels(self) -> list[RealtimeChannel]:
        return list(self._channels)

    def channel(self, name: str) -> RealtimeChannel:
        return RealtimeChannel(self, name)

    def remove_channel(self, channel: RealtimeChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        channel._set_status(SubscriptionStatus.CLOSED)

    def publish(self, table: str, event_type: str, record: dict[str, Any] | None = None) -> None:
        self._published.emit(ChangeEvent(table=table, event_type=event_type, record=dict(record or {})))

    def set_online(self, online: bool) -> None:
        """Simulate connectivity; going offline errors every live channel."""

        if online == self._online:
            return
        self._online = online
        if online:
            return
        for channel in list(self._channels):
            self._channels.remove(channel)
            channel._set_status(SubscriptionStatus.CHANNEL_ERROR, "change feed connection lost")

    def _join(self, channel: RealtimeChannel) -> None:
        self._join_requested.emit(channel)

    def _acknowledge(self, channel: RealtimeChannel) -> None:
        if channel.status != SubscriptionStatus.CONNECTING:
            return
        if not self._online:
            channel._set_status(SubscriptionStatus.CHANNEL_ERROR, "change feed is offline")
            return
        if channel not in self._channels:
            self._channels.append(channel)
        channel._set_status(SubscriptionStatus.SUBSCRIBED)

    def _dispatch(self, event: ChangeEvent) -> None:
        logger.debug("Change on %s: %s", event.table, event.event_type)
        for channel in list(self._channels):
            channel._deliver(event)
