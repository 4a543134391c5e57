"""Per-device stream identity, session states and the injectable clock.

A DeviceStream exists for every enabled physical device from service
start to service stop. It records what the capture session is doing and
when the last frame left the throttle; the session, the supervisor and
the dashboard all read it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from camstream.drivers.cameras import Facing, Size

__all__ = [
    "Clock",
    "DeviceStream",
    "SessionState",
    "SystemClock",
]


# --- Protocols (Injectable Dependencies) ---


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Time functions, injectable for deterministic tests.

    Example:
        class FakeClock:
            def __init__(self):
                self.now = 0.0

            def monotonic(self) -> float:
                return self.now

            def sleep(self, seconds: float) -> None:
                self.now += seconds
    """

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin; never goes backwards."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


# --- State ---


class SessionState(Enum):
    """Capture session lifecycle.

    CLOSED -> OPENING -> CONFIGURING -> STREAMING | RECORDING -> CLOSING
    -> CLOSED. A failed burst or recording ends in FAILED instead of
    CLOSED.
    """

    CLOSED = "closed"
    OPENING = "opening"
    CONFIGURING = "configuring"
    STREAMING = "streaming"
    RECORDING = "recording"
    CLOSING = "closing"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (SessionState.STREAMING, SessionState.RECORDING)


@dataclass
class DeviceStream:
    """Identity and live state of one physical device.

    Attributes:
        facing: FRONT or BACK.
        camera_id: Driver identifier of the device.
        target_size: Requested output resolution.
        state: Current capture session state.
        last_frame_sent_at: Monotonic time the throttle last forwarded a
            frame, or None before the first one.
        output_size: Resolution the device actually delivers, once
            configured.
    """

    facing: Facing
    camera_id: int
    target_size: Size
    state: SessionState = SessionState.CLOSED
    last_frame_sent_at: float | None = None
    output_size: Size | None = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def transition(self, new_state: SessionState) -> SessionState:
        """Set ``state`` and return the previous one."""
        with self._lock:
            previous = self.state
            self.state = new_state
            return previous

    def to_dict(self) -> dict[str, Any]:
        return {
            "facing": self.facing.value,
            "camera_id": self.camera_id,
            "state": self.state.value,
            "target_size": str(self.target_size),
            "output_size": str(self.output_size) if self.output_size else None,
            "last_frame_sent_at": self.last_frame_sent_at,
        }
