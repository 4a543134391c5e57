"""In-process typed event channel from the pipeline to the operator.

The supervisor and service publish events; the dashboard, the CLI and
tests subscribe. Subscribers may filter by event type. A subscriber
raising an exception is logged and does not prevent delivery to the
others.

Example:
    channel = EventChannel()
    unsubscribe = channel.subscribe(show_retry_dialog, TerminalFailure)
    ...
    channel.publish(TerminalFailure(facing="back", attempts=3, error="..."))
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from camstream.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "EventChannel",
    "ReconnectScheduled",
    "ServiceStarted",
    "ServiceStopped",
    "StreamConnected",
    "StreamEvent",
    "StreamFailed",
    "TerminalFailure",
    "TransferCompleted",
    "TransferFailed",
]

DEFAULT_HISTORY_SIZE = 200


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, kw_only=True)
class StreamEvent:
    """Base event. ``facing`` is None for service-wide events."""

    facing: str | None = None
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["kind"] = self.kind
        return data


@dataclass(frozen=True, kw_only=True)
class ServiceStarted(StreamEvent):
    host: str
    mode: str
    manual_start: bool


@dataclass(frozen=True, kw_only=True)
class ServiceStopped(StreamEvent):
    reason: str
    restart_scheduled: bool = False


@dataclass(frozen=True, kw_only=True)
class StreamConnected(StreamEvent):
    host: str
    port: int


@dataclass(frozen=True, kw_only=True)
class StreamFailed(StreamEvent):
    """A device stream stopped because of an error."""

    error_type: str
    error: str
    fatal: bool


@dataclass(frozen=True, kw_only=True)
class ReconnectScheduled(StreamEvent):
    attempt: int
    max_attempts: int
    delay_s: float


@dataclass(frozen=True, kw_only=True)
class TerminalFailure(StreamEvent):
    """Retry attempts are exhausted. Published once per episode."""

    attempts: int
    error: str


@dataclass(frozen=True, kw_only=True)
class TransferCompleted(StreamEvent):
    name: str
    size_bytes: int


@dataclass(frozen=True, kw_only=True)
class TransferFailed(StreamEvent):
    name: str
    error: str


E = TypeVar("E", bound=StreamEvent)
Subscriber = Callable[[Any], None]


class EventChannel:
    """Thread-safe publish/subscribe with a bounded history."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE) -> None:
        self._subscribers: list[tuple[type[StreamEvent], Subscriber]] = []
        self._history: deque[StreamEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Callable[[E], None],
        event_type: type[E] = StreamEvent,  # type: ignore[assignment]
    ) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` and its subclasses.

        Returns:
            A function that removes the subscription.
        """
        entry = (event_type, callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: StreamEvent) -> None:
        """Record ``event`` and deliver it on the calling thread."""
        with self._lock:
            self._history.append(event)
            targets = [cb for t, cb in self._subscribers if isinstance(event, t)]

        logger.debug("Event published", event=event.kind, facing=event.facing)
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed", event=event.kind)

    def recent(
        self, limit: int | None = None, event_type: type[StreamEvent] = StreamEvent
    ) -> list[StreamEvent]:
        """Return the latest events, oldest first."""
        with self._lock:
            events = [e for e in self._history if isinstance(e, event_type)]
        return events[-limit:] if limit else events

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
