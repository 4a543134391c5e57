"""Tests for the observability module (logging and statistics)."""

import io
import json
import logging
import threading

import pytest

from camstream.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    _format_value,
    _log_context,
    configure_logging,
    get_logger,
    reset_logging,
)
from camstream.observability.stats import (
    MEBIBYTE,
    StatsSummary,
    StreamStats,
    StreamStatsCollector,
    ThroughputMeter,
    _percentile,
)


class _Ticker:
    """Manual monotonic time source."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


# =============================================================================
# Structured Logging Tests
# =============================================================================


class TestStructuredLogger:
    """Tests for keyword arguments becoming structured data."""

    def test_kwargs_become_structured_data(self, log_stream):
        """Verifies keyword arguments land as top-level JSON keys.

        Arrangement:
        1. log_stream fixture configures JSON output at DEBUG.
        2. Logger obtained through get_logger.

        Action:
        Logs one INFO record with facing and size_bytes kwargs.

        Assertion Strategy:
        Parses the emitted line and confirms:
        - message, level and logger name are present.
        - facing and size_bytes are top-level keys with their values.

        Testing Principle:
        Structured values must stay out of the message text so received
        file names and peer addresses cannot forge log lines.
        """
        logger = get_logger("camstream.test")
        logger.info("Frame sent", facing="back", size_bytes=48213)

        record = json.loads(log_stream.getvalue().strip().splitlines()[-1])
        assert record["message"] == "Frame sent"
        assert record["level"] == "INFO"
        assert record["logger"] == "camstream.test"
        assert record["facing"] == "back"
        assert record["size_bytes"] == 48213

    def test_get_logger_returns_structured_logger(self, log_stream):
        assert isinstance(get_logger("camstream.anything"), StructuredLogger)

    def test_exception_is_serialized(self, log_stream):
        logger = get_logger("camstream.test")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("Send failed", port=12345)

        record = json.loads(log_stream.getvalue().strip().splitlines()[-1])
        assert record["port"] == 12345
        assert "RuntimeError: boom" in record["exception"]

    def test_level_filters_debug(self):
        """Records below the configured level are not emitted."""
        buffer = io.StringIO()
        configure_logging(level="WARNING", stream=buffer, force=True)
        try:
            logger = get_logger("camstream.test")
            logger.info("hidden")
            logger.warning("shown", attempt=2)
        finally:
            reset_logging()

        output = buffer.getvalue()
        assert "hidden" not in output
        assert "shown | attempt=2" in output


class TestLogContext:
    """Tests for LogContext scoping."""

    def test_context_fields_added_and_removed(self, log_stream):
        logger = get_logger("camstream.test")
        with LogContext(facing="front", port=12346):
            logger.info("inside")
        logger.info("outside")

        lines = [json.loads(line) for line in log_stream.getvalue().splitlines()]
        inside, outside = [r for r in lines if r["logger"] == "camstream.test"]
        assert inside["facing"] == "front"
        assert inside["port"] == 12346
        assert "facing" not in outside

    def test_nested_context_overrides(self):
        with LogContext(facing="front", attempt=1):
            with LogContext(attempt=2):
                assert _log_context.get() == {"facing": "front", "attempt": 2}
            assert _log_context.get() == {"facing": "front", "attempt": 1}
        assert _log_context.get() == {}

    def test_explicit_kwargs_override_context(self, log_stream):
        logger = get_logger("camstream.test")
        with LogContext(facing="front"):
            logger.info("override", facing="back")
        record = json.loads(log_stream.getvalue().strip().splitlines()[-1])
        assert record["facing"] == "back"


class TestFormatters:
    """Tests for text and JSON formatters."""

    def _record(self, **structured) -> logging.LogRecord:
        record = logging.LogRecord(
            "camstream.test", logging.INFO, "x.py", 1, "Clip sent", (), None
        )
        record.structured_data = structured
        return record

    def test_text_formatter_appends_pairs(self):
        formatter = StructuredFormatter(fmt="%(message)s")
        line = formatter.format(self._record(name="VID_19-10-30.mp4", size=10))
        assert line == "Clip sent | name=VID_19-10-30.mp4 size=10"

    def test_text_formatter_without_structured(self):
        formatter = StructuredFormatter(fmt="%(message)s", include_structured=False)
        assert formatter.format(self._record(size=10)) == "Clip sent"

    def test_text_formatter_foreign_record(self):
        formatter = StructuredFormatter(fmt="%(message)s")
        record = logging.LogRecord("uvicorn", logging.INFO, "x.py", 1, "hi", (), None)
        assert formatter.format(record) == "hi"

    def test_json_formatter_falls_back_to_str(self):
        record = self._record(path=object())
        data = json.loads(JSONFormatter().format(record))
        assert data["path"].startswith("<object object")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, "null"),
            ("connection reset", '"connection reset"'),
            ("plain", "plain"),
            (b"\xff\xd8\xff", "<3 bytes>"),
            ({"a": 1}, '{"a": 1}'),
            ([1, 2], "[1, 2]"),
            (2.5, "2.5"),
        ],
    )
    def test_format_value(self, value, expected):
        assert _format_value(value) == expected


class TestConfiguration:
    """Tests for configure_logging / reset_logging."""

    def test_configure_is_idempotent_without_force(self):
        first = io.StringIO()
        second = io.StringIO()
        configure_logging(stream=first, force=True)
        try:
            configure_logging(stream=second)
            get_logger("camstream.test").warning("once")
        finally:
            reset_logging()
        assert "once" in first.getvalue()
        assert second.getvalue() == ""

    def test_root_logger_does_not_propagate(self):
        configure_logging(stream=io.StringIO(), force=True)
        try:
            root = logging.getLogger("camstream")
            assert root.propagate is False
            assert len(root.handlers) == 1
        finally:
            reset_logging()

    def test_reset_removes_handlers(self):
        configure_logging(stream=io.StringIO(), force=True)
        reset_logging()
        assert logging.getLogger("camstream").handlers == []


# =============================================================================
# Statistics Tests
# =============================================================================


class TestPercentile:
    """Tests for the linear-interpolation percentile."""

    def test_median(self):
        assert _percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50) == 3.0

    def test_interpolated(self):
        assert _percentile([100.0, 150.0, 200.0], 95) == pytest.approx(195.0)

    def test_empty(self):
        assert _percentile([], 95) == 0.0

    def test_out_of_range(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            _percentile([1.0], 101)


class TestStreamStatsCollector:
    """Tests for per-stream counters."""

    def test_success_and_failure_counts(self):
        """Verifies counters, byte totals and error categories.

        Arrangement:
        1. Collector with a manual time source.
        2. Two successful sends and one TransportError failure.

        Action:
        Advances time by 2 seconds and reads the summary.

        Assertion Strategy:
        - total/successful/failed and success_rate match.
        - bytes_sent counts successful payloads only.
        - throughput is bytes over elapsed time.
        - error_counts groups by error type.

        Testing Principle:
        Dashboard numbers are derived, never stored, so they stay
        consistent with the raw counters.
        """
        clock = _Ticker()
        collector = StreamStatsCollector("back", monotonic=clock)
        collector.record_send(2.0, True, size_bytes=1000)
        collector.record_send(4.0, True, size_bytes=3000)
        collector.record_send(0.0, False, size_bytes=500, error_type="TransportError")
        clock.now = 2.0

        summary = collector.get_summary()
        assert summary.total_sends == 3
        assert summary.successful_sends == 2
        assert summary.failed_sends == 1
        assert summary.success_rate == pytest.approx(2 / 3)
        assert summary.bytes_sent == 4000
        assert summary.throughput_bps == pytest.approx(2000.0)
        assert summary.error_counts == {"TransportError": 1}
        assert summary.min_duration_ms == 2.0
        assert summary.max_duration_ms == 4.0
        assert summary.avg_duration_ms == 3.0

    def test_drop_passthrough_reconnect_counters(self):
        collector = StreamStatsCollector("front")
        collector.record_drop()
        collector.record_drop()
        collector.record_passthrough()
        collector.record_reconnect()
        summary = collector.get_summary()
        assert summary.dropped_frames == 2
        assert summary.passthrough_frames == 1
        assert summary.reconnects == 1

    def test_window_limits_duration_stats_only(self):
        collector = StreamStatsCollector("back", window_size=2)
        for duration in (100.0, 1.0, 2.0):
            collector.record_send(duration, True, size_bytes=1)
        summary = collector.get_summary()
        assert summary.total_sends == 3
        assert summary.max_duration_ms == 2.0

    def test_reset(self):
        collector = StreamStatsCollector("back")
        collector.record_send(1.0, True, size_bytes=10)
        collector.reset()
        assert collector.get_summary().total_sends == 0


class TestStreamStats:
    """Tests for the per-facing registry."""

    def test_collectors_created_lazily(self):
        stats = StreamStats()
        assert stats.get_all_summaries() == {}
        stats.record_drop("back")
        assert set(stats.get_all_summaries()) == {"back"}

    def test_to_dict_is_json_serializable(self):
        stats = StreamStats()
        stats.record_send("back", 1.5, True, size_bytes=100)
        stats.record_send("front", 0.0, False, error_type="TransportError")
        data = json.loads(json.dumps(stats.to_dict()))
        assert data["streams"]["back"]["bytes_sent"] == 100
        assert data["streams"]["front"]["error_counts"] == {"TransportError": 1}
        assert "timestamp" in data

    def test_reset_single_facing(self):
        stats = StreamStats()
        stats.record_drop("back")
        stats.record_drop("front")
        stats.reset("back")
        assert stats.get_summary("back").dropped_frames == 0
        assert stats.get_summary("front").dropped_frames == 1

    def test_concurrent_recording(self):
        stats = StreamStats()

        def record() -> None:
            for _ in range(500):
                stats.record_send("back", 1.0, True, size_bytes=1)

        threads = [threading.Thread(target=record) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert stats.get_summary("back").successful_sends == 2000

    def test_summary_defaults(self):
        summary = StatsSummary(facing="back")
        assert summary.to_dict()["last_send_time"] is None


class TestThroughputMeter:
    """Tests for transfer progress milestones."""

    def test_milestones(self):
        meter = ThroughputMeter(step_bytes=100)
        assert meter.add(50) is False
        assert meter.add(60) is True
        assert meter.add(50) is False
        assert meter.add(350) is True
        assert meter.total_bytes == 510

    def test_rate(self):
        clock = _Ticker()
        meter = ThroughputMeter(monotonic=clock)
        meter.add(2 * MEBIBYTE)
        assert meter.rate_bps() == 0.0
        clock.now = 4.0
        assert meter.rate_bps() == pytest.approx(MEBIBYTE / 2)
