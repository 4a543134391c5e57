"""Device lifecycle guard: one permit for every open and close.

Opening or closing any capture device takes the single shared permit
first, with a timeout. Failing to get it in time is fatal for that
operation: the device is neither opened nor released half-way.

The permit is not re-entrant. A thread that already holds it and asks
again gets LifecycleReentryError immediately instead of deadlocking until
the timeout.

Example:
    guard = DeviceLifecycleGuard(timeout=2.5)
    with guard.hold("open", facing=Facing.BACK):
        instance = driver.open(camera_id)
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from camstream.drivers.cameras import Facing
from camstream.errors import LifecycleReentryError, LifecycleTimeoutError
from camstream.observability import get_logger

logger = get_logger(__name__)

__all__ = ["DeviceLifecycleGuard"]


class DeviceLifecycleGuard:
    """Single-permit gate serializing device open/close across all devices."""

    def __init__(self, timeout: float = 2.5) -> None:
        """Create the guard.

        Args:
            timeout: Seconds to wait for the permit before failing.
        """
        self.timeout = timeout
        self._permit = threading.Semaphore(1)
        self._owner: int | None = None
        self._operation: str | None = None

    @property
    def held(self) -> bool:
        return self._owner is not None

    def acquire(self, operation: str, facing: Facing | None = None) -> None:
        """Take the permit or raise.

        Args:
            operation: What the permit is for ("open", "close"); logged and
                reported in errors.
            facing: Device the operation targets, for logs.

        Raises:
            LifecycleReentryError: The calling thread already holds it.
            LifecycleTimeoutError: Not acquired within ``timeout``.
        """
        me = threading.get_ident()
        if self._owner == me:
            raise LifecycleReentryError(
                f"Lifecycle permit already held by this thread for "
                f"{self._operation!r}, requested for {operation!r}"
            )
        if not self._permit.acquire(timeout=self.timeout):
            logger.error(
                "Timed out waiting for device lifecycle permit",
                operation=operation,
                facing=facing.value if facing else None,
                held_for=self._operation,
                timeout_s=self.timeout,
            )
            raise LifecycleTimeoutError(
                f"Time out waiting to lock camera {operation} "
                f"(held for {self._operation!r})"
            )
        self._owner = me
        self._operation = operation

    def release(self) -> None:
        """Return the permit.

        Raises:
            RuntimeError: Called by a thread that does not hold it.
        """
        if self._owner != threading.get_ident():
            raise RuntimeError("Lifecycle permit released by a non-owner thread")
        self._owner = None
        self._operation = None
        self._permit.release()

    @contextmanager
    def hold(self, operation: str, facing: Facing | None = None) -> Iterator[None]:
        """Hold the permit for the duration of the block."""
        self.acquire(operation, facing)
        try:
            yield
        finally:
            self.release()
