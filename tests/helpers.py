"""Test helper functions for camstream.

Example:
    from tests.helpers import assert_implements_protocol
    from camstream.drivers.cameras import CameraDriver

    def test_twin_implements_protocol():
        assert_implements_protocol(DigitalTwinCameraDriver(), CameraDriver)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that an instance satisfies a @runtime_checkable Protocol.

    Args:
        instance: Object to check.
        protocol: Protocol class decorated with @runtime_checkable.

    Raises:
        AssertionError: Listing the protocol members the instance lacks.
    """
    if isinstance(instance, protocol):
        return
    object_attrs = set(dir(object))
    members = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_")
    }
    missing = sorted(m for m in members if not hasattr(instance, m))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) or 'unknown'}"
    )


def assert_all_implement_protocol(
    instances: list[Any], protocol: type[Protocol]
) -> None:
    """Assert that every instance in a list implements ``protocol``."""
    for i, instance in enumerate(instances):
        try:
            assert_implements_protocol(instance, protocol)
        except AssertionError as e:
            raise AssertionError(f"Instance at index {i}: {e}") from e


def wait_until(
    predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01
) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` passes.

    Returns:
        The final value of the predicate.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventRecorder:
    """Thread-safe list of published events for channel subscriptions."""

    def __init__(self) -> None:
        self.events: list[Any] = []
        self._lock = threading.Lock()

    def __call__(self, event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: type) -> list[Any]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
