"""Observability for camstream: structured logging and send statistics.

Example:
    from camstream.observability import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(facing="back"):
        logger.info("Frame sent", size_bytes=48213)

Statistics Example:
    from camstream.observability import StreamStats

    stats = StreamStats()
    stats.record_send("front", duration_ms=2.5, success=True, size_bytes=1024)
    print(stats.get_summary("front").success_rate)
"""

from camstream.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from camstream.observability.stats import (
    MEBIBYTE,
    StatsSummary,
    StreamStats,
    ThroughputMeter,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "MEBIBYTE",
    "StatsSummary",
    "StreamStats",
    "ThroughputMeter",
]
