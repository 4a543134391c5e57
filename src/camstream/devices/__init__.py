"""Device layer - capture sessions, lifecycle guard and supervision."""

from camstream.devices.events import (
    EventChannel,
    ReconnectScheduled,
    ServiceStarted,
    ServiceStopped,
    StreamConnected,
    StreamEvent,
    StreamFailed,
    TerminalFailure,
    TransferCompleted,
    TransferFailed,
)
from camstream.devices.frames import (
    DEFAULT_ROTATIONS,
    PHOTO_ROTATIONS,
    Frame,
    FrameThrottle,
    FrameTransform,
)
from camstream.devices.lifecycle import DeviceLifecycleGuard
from camstream.devices.registry import StreamEntry, StreamRegistry
from camstream.devices.scheduler import (
    BurstPhotoController,
    BusyGuard,
    ClipController,
    FileTransfer,
    PeriodicScheduler,
)
from camstream.devices.session import CaptureMode, CaptureSession, SessionHooks
from camstream.devices.stream import Clock, DeviceStream, SessionState, SystemClock
from camstream.devices.supervisor import (
    ConnectionFactory,
    ConnectionSupervisor,
    RetryPolicy,
    RetryState,
)
from camstream.devices.worker import CallbackQueue

__all__ = [
    # Events
    "EventChannel",
    "StreamEvent",
    "ServiceStarted",
    "ServiceStopped",
    "StreamConnected",
    "StreamFailed",
    "ReconnectScheduled",
    "TerminalFailure",
    "TransferCompleted",
    "TransferFailed",
    # Frames
    "DEFAULT_ROTATIONS",
    "PHOTO_ROTATIONS",
    "Frame",
    "FrameThrottle",
    "FrameTransform",
    # Lifecycle and sessions
    "CallbackQueue",
    "CaptureMode",
    "CaptureSession",
    "DeviceLifecycleGuard",
    "SessionHooks",
    # Stream state
    "Clock",
    "SystemClock",
    "DeviceStream",
    "SessionState",
    "StreamEntry",
    "StreamRegistry",
    # Supervision
    "ConnectionFactory",
    "ConnectionSupervisor",
    "RetryPolicy",
    "RetryState",
    # Burst scheduling
    "BurstPhotoController",
    "BusyGuard",
    "ClipController",
    "FileTransfer",
    "PeriodicScheduler",
]
