"""Send statistics for device streams.

Collects per-facing metrics for the capture-to-socket pipeline:
- frame send success/failure counts and error categories
- send duration statistics (min, max, avg, p95) over a rolling window
- bytes sent and throughput
- throttled (dropped) and pass-through (undecodable) frame counters
- reconnect attempts

Thread-safe: callback queues, connect threads and the dashboard all touch
the same collector.

Example:
    stats = StreamStats()

    stats.record_send("back", duration_ms=3.2, success=True, size_bytes=48213)
    stats.record_drop("back")
    stats.record_send("back", duration_ms=0.0, success=False,
                      error_type="TransportError")

    summary = stats.get_summary("back")
    print(f"Success rate: {summary.success_rate:.1%}")
    print(f"p95 send: {summary.p95_duration_ms:.1f}ms")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# =============================================================================
# Constants
# =============================================================================

#: Default number of send records kept in the rolling window. At the
#: ~9.5 fps throttle cap this is a little under two minutes per device.
DEFAULT_STATS_WINDOW_SIZE: int = 1000

#: Progress granularity for ThroughputMeter.
MEBIBYTE: int = 1024 * 1024


def _utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class StatsSummary:
    """Summary statistics for one device stream.

    Attributes:
        facing: Stream identity ("front" or "back").
        total_sends: Frames or files handed to the transport.
        successful_sends: Sends that completed and flushed.
        failed_sends: Sends that raised a transport error.
        success_rate: successful_sends / total_sends (0.0 when idle).
        min_duration_ms: Fastest successful send in the window.
        max_duration_ms: Slowest successful send in the window.
        avg_duration_ms: Mean successful send duration in the window.
        p95_duration_ms: 95th percentile send duration in the window.
        bytes_sent: Payload bytes of successful sends (all time).
        throughput_bps: bytes_sent divided by uptime.
        dropped_frames: Frames discarded by the throttle.
        passthrough_frames: Frames forwarded untransformed after a decode
            failure.
        reconnects: Connection attempts after the first.
        error_counts: Failures by error type.
        last_send_time: Time of the last send attempt.
        uptime_seconds: Seconds since the collector was created or reset.
    """

    facing: str
    total_sends: int = 0
    successful_sends: int = 0
    failed_sends: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    bytes_sent: int = 0
    throughput_bps: float = 0.0
    dropped_frames: int = 0
    passthrough_frames: int = 0
    reconnects: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_send_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable view for the dashboard API."""
        return {
            "facing": self.facing,
            "total_sends": self.total_sends,
            "successful_sends": self.successful_sends,
            "failed_sends": self.failed_sends,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "bytes_sent": self.bytes_sent,
            "throughput_bps": self.throughput_bps,
            "dropped_frames": self.dropped_frames,
            "passthrough_frames": self.passthrough_frames,
            "reconnects": self.reconnects,
            "error_counts": self.error_counts.copy(),
            "last_send_time": (
                self.last_send_time.isoformat() if self.last_send_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass(slots=True)
class SendRecord:
    """Single send attempt."""

    timestamp: float  # monotonic
    duration_ms: float
    success: bool
    size_bytes: int = 0
    error_type: str | None = None


# =============================================================================
# Collectors
# =============================================================================


class StreamStatsCollector:
    """Statistics for a single device stream.

    Cumulative counters feed the success rate and throughput; the rolling
    window of SendRecord feeds the duration percentiles.
    """

    def __init__(
        self,
        facing: str,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create an empty collector.

        Args:
            facing: Stream identity used to label the summary.
            window_size: Send records retained for duration statistics.
            monotonic: Time source, injectable for deterministic tests.
        """
        self.facing = facing
        self._monotonic = monotonic
        self._records: deque[SendRecord] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._error_counts: dict[str, int] = {}
        self._total_sends = 0
        self._successful_sends = 0
        self._bytes_sent = 0
        self._dropped = 0
        self._passthrough = 0
        self._reconnects = 0
        self._start_time = self._monotonic()
        self._last_send_time: datetime | None = None

    def record_send(
        self,
        duration_ms: float,
        success: bool,
        size_bytes: int = 0,
        error_type: str | None = None,
    ) -> None:
        """Record one send attempt.

        Args:
            duration_ms: Time spent in the transport write and flush.
            success: True when the payload was fully written and flushed.
            size_bytes: Payload size; counted toward bytes_sent on success.
            error_type: Exception class name for failures.
        """
        record = SendRecord(
            timestamp=self._monotonic(),
            duration_ms=duration_ms,
            success=success,
            size_bytes=size_bytes,
            error_type=error_type,
        )

        with self._lock:
            self._records.append(record)
            self._total_sends += 1
            if success:
                self._successful_sends += 1
                self._bytes_sent += size_bytes
            elif error_type:
                self._error_counts[error_type] = (
                    self._error_counts.get(error_type, 0) + 1
                )
            self._last_send_time = _utc_now()

    def record_drop(self) -> None:
        with self._lock:
            self._dropped += 1

    def record_passthrough(self) -> None:
        with self._lock:
            self._passthrough += 1

    def record_reconnect(self) -> None:
        with self._lock:
            self._reconnects += 1

    def get_summary(self) -> StatsSummary:
        """Compute a snapshot summary.

        Duration statistics use successful sends from the rolling window
        only; counters are cumulative since creation or reset.

        Returns:
            StatsSummary for this stream.
        """
        with self._lock:
            durations = sorted(r.duration_ms for r in self._records if r.success)
            total = self._total_sends
            successful = self._successful_sends
            uptime = self._monotonic() - self._start_time

            summary = StatsSummary(
                facing=self.facing,
                total_sends=total,
                successful_sends=successful,
                failed_sends=total - successful,
                success_rate=successful / total if total else 0.0,
                bytes_sent=self._bytes_sent,
                throughput_bps=self._bytes_sent / uptime if uptime > 0 else 0.0,
                dropped_frames=self._dropped,
                passthrough_frames=self._passthrough,
                reconnects=self._reconnects,
                error_counts=self._error_counts.copy(),
                last_send_time=self._last_send_time,
                uptime_seconds=uptime,
            )

        if durations:
            summary.min_duration_ms = durations[0]
            summary.max_duration_ms = durations[-1]
            summary.avg_duration_ms = sum(durations) / len(durations)
            summary.p95_duration_ms = _percentile(durations, 95)
        return summary

    def reset(self) -> None:
        """Clear all records and counters, restarting uptime."""
        with self._lock:
            self._records.clear()
            self._reset_counters()


class StreamStats:
    """Per-facing collection of StreamStatsCollector.

    Collectors are created lazily the first time a facing is recorded.
    One instance is shared by every component of a running service.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_STATS_WINDOW_SIZE,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_size = window_size
        self._monotonic = monotonic
        self._collectors: dict[str, StreamStatsCollector] = {}
        self._lock = threading.Lock()

    def _get_collector(self, facing: str) -> StreamStatsCollector:
        with self._lock:
            collector = self._collectors.get(facing)
            if collector is None:
                collector = StreamStatsCollector(
                    facing, self._window_size, self._monotonic
                )
                self._collectors[facing] = collector
            return collector

    def record_send(
        self,
        facing: str,
        duration_ms: float,
        success: bool,
        size_bytes: int = 0,
        error_type: str | None = None,
    ) -> None:
        """Record a send attempt for ``facing``."""
        self._get_collector(facing).record_send(
            duration_ms, success, size_bytes=size_bytes, error_type=error_type
        )

    def record_drop(self, facing: str) -> None:
        """Count a frame discarded by the throttle."""
        self._get_collector(facing).record_drop()

    def record_passthrough(self, facing: str) -> None:
        """Count a frame forwarded without transform."""
        self._get_collector(facing).record_passthrough()

    def record_reconnect(self, facing: str) -> None:
        """Count a connection retry."""
        self._get_collector(facing).record_reconnect()

    def get_summary(self, facing: str) -> StatsSummary:
        """Return the summary for one facing (empty if never recorded)."""
        return self._get_collector(facing).get_summary()

    def get_all_summaries(self) -> dict[str, StatsSummary]:
        with self._lock:
            collectors = list(self._collectors.values())
        return {c.facing: c.get_summary() for c in collectors}

    def reset(self, facing: str | None = None) -> None:
        """Reset one facing, or every facing when ``facing`` is None."""
        if facing is not None:
            self._get_collector(facing).reset()
            return
        with self._lock:
            collectors = list(self._collectors.values())
        for collector in collectors:
            collector.reset()

    def to_dict(self) -> dict[str, Any]:
        """Export every stream's summary plus a UTC timestamp."""
        return {
            "streams": {
                facing: summary.to_dict()
                for facing, summary in self.get_all_summaries().items()
            },
            "timestamp": _utc_now().isoformat(),
        }


# =============================================================================
# Throughput
# =============================================================================


class ThroughputMeter:
    """Byte counter with progress milestones and average rate.

    Used by transfers on both ends of the wire to log progress every
    ``step_bytes`` and report average speed at the end.

    Example:
        meter = ThroughputMeter()
        for chunk in chunks:
            if meter.add(len(chunk)):
                logger.info("Progress", mib=meter.total_bytes // MEBIBYTE)
        logger.info("Done", speed_bps=meter.rate_bps())
    """

    def __init__(
        self,
        step_bytes: int = MEBIBYTE,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.step_bytes = step_bytes
        self.total_bytes = 0
        self._monotonic = monotonic
        self._started = monotonic()
        self._next_milestone = step_bytes

    def add(self, count: int) -> bool:
        """Add ``count`` bytes; return True when a milestone was crossed."""
        self.total_bytes += count
        if self.total_bytes < self._next_milestone:
            return False
        while self._next_milestone <= self.total_bytes:
            self._next_milestone += self.step_bytes
        return True

    def elapsed(self) -> float:
        return self._monotonic() - self._started

    def rate_bps(self) -> float:
        """Average bytes per second since creation (0.0 if no time passed)."""
        elapsed = self.elapsed()
        return self.total_bytes / elapsed if elapsed > 0 else 0.0


def _percentile(sorted_data: list[float], p: float) -> float:
    """Percentile of pre-sorted data using linear interpolation.

    Matches numpy's default 'linear' method.

    Args:
        sorted_data: Values sorted ascending. Empty input returns 0.0.
        p: Percentile in [0, 100].

    Returns:
        The interpolated percentile.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50)
        3.0
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    floor_idx = int(k)
    ceil_idx = min(floor_idx + 1, len(sorted_data) - 1)

    if floor_idx == ceil_idx:
        return sorted_data[floor_idx]

    fraction = k - floor_idx
    return sorted_data[floor_idx] * (1 - fraction) + sorted_data[ceil_idx] * fraction
