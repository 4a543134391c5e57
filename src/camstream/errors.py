"""Exception hierarchy for camstream.

Errors are split by how the pipeline reacts to them:

- FatalStreamError: abort the affected stream (or the whole service),
  surface it to the operator, never retry.
- TransientStreamError: tear down the affected connection or session and
  hand the decision to the connection supervisor's bounded retry.
- LifecycleTimeoutError: the device lifecycle permit could not be taken
  in time. Fatal for that open/close; the guarded operation never runs.

Best-effort failures (a throttled frame, an undecodable frame, a failed
delete of an already-sent file) are logged where they happen and never
raised.
"""

from __future__ import annotations

from enum import IntEnum


class CameraErrorCode(IntEnum):
    """Device error codes reported by camera drivers."""

    IN_USE = 1
    MAX_IN_USE = 2
    DISABLED = 3
    DEVICE = 4
    SERVICE = 5


_CAMERA_ERROR_NAMES: dict[int, str] = {
    CameraErrorCode.IN_USE: "in_use",
    CameraErrorCode.MAX_IN_USE: "max_in_use",
    CameraErrorCode.DISABLED: "disabled",
    CameraErrorCode.DEVICE: "device",
    CameraErrorCode.SERVICE: "service",
}


def camera_error_name(code: int) -> str:
    """Map a driver error code to a readable name for logs and events.

    Example:
        >>> camera_error_name(CameraErrorCode.IN_USE)
        'in_use'
        >>> camera_error_name(42)
        'unknown(42)'
    """
    return _CAMERA_ERROR_NAMES.get(code, f"unknown({code})")


class StreamError(Exception):
    """Base exception for camstream operations."""

    #: Whether the supervisor may retry after this error.
    retryable: bool = False


# --- Fatal ---


class FatalStreamError(StreamError):
    """Error that stops the affected stream without retry."""

    pass


class DevicePermissionError(FatalStreamError):
    """The process lacks permission to open the capture device."""

    pass


class DeviceNotFoundError(FatalStreamError):
    """No capture device matches the requested facing or index."""

    pass


class DeviceCharacteristicsError(FatalStreamError):
    """The device did not report usable output sizes or orientation."""

    pass


class SessionConfigurationError(FatalStreamError):
    """The device rejected the requested output configuration."""

    pass


class FrameHandlerError(FatalStreamError):
    """A frame consumer raised an unexpected exception."""

    pass


class InvalidTargetError(FatalStreamError):
    """The collector host address is missing or not a valid IP address."""

    pass


class RetryExhaustedError(FatalStreamError):
    """Connection attempts reached the configured maximum."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class LifecycleTimeoutError(FatalStreamError):
    """The device lifecycle permit was not acquired before the timeout."""

    pass


class LifecycleReentryError(LifecycleTimeoutError):
    """The thread holding the lifecycle permit tried to take it again."""

    pass


class CameraAccessError(FatalStreamError):
    """The device reported an error code while opening or capturing.

    Attributes:
        code: Raw driver error code.
        reason: Readable name for the code (``in_use``, ``disabled``, ...).
    """

    def __init__(
        self, code: int | CameraErrorCode, message: str | None = None
    ) -> None:
        self.code = int(code)
        self.reason = camera_error_name(self.code)
        super().__init__(message or f"Camera error: {self.reason}")


# --- Transient ---


class TransientStreamError(StreamError):
    """Error after which the connection or session may be retried."""

    retryable = True


class ConnectTimeoutError(TransientStreamError):
    """The collector did not accept the connection before the timeout."""

    pass


class TransportError(TransientStreamError):
    """A socket write or read failed; the connection is unusable."""

    pass


class DeviceDisconnectedError(TransientStreamError):
    """The device went away while a session was established."""

    pass


__all__ = [
    "CameraAccessError",
    "CameraErrorCode",
    "camera_error_name",
    "ConnectTimeoutError",
    "DeviceCharacteristicsError",
    "DeviceDisconnectedError",
    "DeviceNotFoundError",
    "DevicePermissionError",
    "FatalStreamError",
    "FrameHandlerError",
    "InvalidTargetError",
    "LifecycleReentryError",
    "LifecycleTimeoutError",
    "RetryExhaustedError",
    "SessionConfigurationError",
    "StreamError",
    "TransientStreamError",
    "TransportError",
]
