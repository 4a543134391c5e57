"""Per-device registry owned by the stream service.

Maps each facing to its DeviceStream, callback queue, current capture
session and connection. Queries from other threads (dashboard, CLI)
go through the registry lock and get plain-dict snapshots.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from camstream.devices.session import CaptureSession
    from camstream.devices.stream import DeviceStream
    from camstream.devices.worker import CallbackQueue
    from camstream.drivers.cameras import Facing
    from camstream.transport import Connection

__all__ = ["StreamEntry", "StreamRegistry"]


@dataclass
class StreamEntry:
    """Everything the service holds for one physical device.

    Attributes:
        stream: Identity and session state.
        callbacks: The device's callback queue.
        session: Current capture session, if any.
        connection: Streaming connection (continuous mode only).
        active: Counted in the service's active stream count.
    """

    stream: DeviceStream
    callbacks: CallbackQueue
    session: CaptureSession | None = None
    connection: Connection | None = None
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        conn = self.connection
        return {
            **self.stream.to_dict(),
            "active": self.active,
            "connection": (
                {
                    "host": conn.host,
                    "port": conn.port,
                    "open": conn.is_open,
                    "connected_at": (
                        conn.connected_at.isoformat() if conn.connected_at else None
                    ),
                    "frames_sent": conn.frames_sent,
                }
                if conn is not None
                else None
            ),
        }


class StreamRegistry:
    """Thread-safe facing -> StreamEntry map with the active stream count."""

    def __init__(self) -> None:
        self._entries: dict[Facing, StreamEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def add(self, entry: StreamEntry) -> None:
        """Register ``entry``.

        Raises:
            ValueError: The facing is already registered.
        """
        facing = entry.stream.facing
        with self._lock:
            if facing in self._entries:
                raise ValueError(f"{facing.value} stream already registered")
            self._entries[facing] = entry

    def get(self, facing: Facing) -> StreamEntry | None:
        with self._lock:
            return self._entries.get(facing)

    def facings(self) -> list[Facing]:
        """Registered facings in registration order."""
        with self._lock:
            return list(self._entries)

    def entries(self) -> list[StreamEntry]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> list[StreamEntry]:
        """Remove and return every entry."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            return entries

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if e.active)

    def activate(self, facing: Facing) -> int:
        """Mark ``facing`` active; return the new active count."""
        with self._lock:
            self._entries[facing].active = True
            return sum(1 for e in self._entries.values() if e.active)

    def deactivate(self, facing: Facing) -> int | None:
        """Mark ``facing`` inactive.

        Returns:
            The remaining active count, or None if it was not active (so
            callers racing on the same stream act only once).
        """
        with self._lock:
            entry = self._entries.get(facing)
            if entry is None or not entry.active:
                return None
            entry.active = False
            return sum(1 for e in self._entries.values() if e.active)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Plain-dict view keyed by facing value."""
        with self._lock:
            entries = list(self._entries.values())
        return {e.stream.facing.value: e.to_dict() for e in entries}
