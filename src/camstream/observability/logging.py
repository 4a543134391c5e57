"""Structured logging for camstream.

Thin layer over the standard logging module:
- keyword arguments on log calls become structured key-value data
- LogContext scopes extra fields (facing, port, transfer name) over a block
- human-readable or NDJSON output

Untrusted values (peer addresses, received file names) should always be
passed as keyword arguments rather than formatted into the message:

    # SAFE - value ends up in structured data
    logger.info("Receiving file", name=received_name)

    # UNSAFE - a crafted name could inject fake log lines
    logger.info(f"Receiving file {received_name}")

Example:
    logger = get_logger(__name__)
    logger.info("Collector listening", port=12345)

    with LogContext(facing="back"):
        logger.info("Frame sent", size_bytes=48213)

    configure_logging(level="DEBUG", json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, cast

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "camstream_log_context", default={}
)

#: Name of the package root logger; every module logger hangs below it.
ROOT_LOGGER_NAME = "camstream"


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger that accepts arbitrary keyword arguments as structured data.

    The standard level methods (debug, info, warning, error, exception,
    critical) forward unknown keyword arguments to ``_log``, which folds
    them into ``record.structured_data`` together with the active
    LogContext values.

    Usage:
        logger = get_logger("camstream.transport.connection")
        logger.warning("Connect failed", host="10.0.0.2", port=12345)
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None = None,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Emit a record whose structured data merges context and kwargs.

        Merge order is LogContext values first, explicit kwargs second, so
        a call site can override an ambient field for a single record.

        Args:
            level: Numeric log level.
            msg: Message, may contain %-style placeholders.
            args: Arguments for %-formatting.
            exc_info: Exception info passed through to logging.
            extra: Extra LogRecord attributes. ``structured_data`` is set
                (and overwritten) here.
            stack_info: Include the current stack in the record.
            stacklevel: Caller frames to skip. One extra frame is added for
                this override so records point at the real call site.
            **kwargs: Structured fields, e.g. ``facing="front"``,
                ``size_bytes=1024``.
        """
        structured_data = {**_log_context.get(), **kwargs}

        if extra is None:
            extra = {}
        extra["structured_data"] = structured_data

        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter.

    Format: ``timestamp - name - level - message | key=value key=value``
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the formatter.

        Args:
            fmt: LogRecord format string. Defaults to
                ``%(asctime)s - %(name)s - %(levelname)s - %(message)s``.
            datefmt: strftime format for ``%(asctime)s``.
            include_structured: Append `` | key=value`` pairs when the record
                carries structured data.
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the base message and append structured fields.

        Args:
            record: Record to format. A missing ``structured_data``
                attribute (records from foreign loggers) is treated as empty.

        Returns:
            The formatted line, e.g.
            ``... - INFO - Frame sent | facing=back size_bytes=48213``.
        """
        base = super().format(record)

        if not self.include_structured:
            return base

        structured = getattr(record, "structured_data", {})
        if not structured:
            return base

        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line (NDJSON).

    Keys: timestamp (UTC ISO 8601), level, logger, message, optional
    exception, plus every structured field at top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize a record to a single JSON line.

        Non-serializable values fall back to ``str()``.
        """
        log_dict: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_dict.update(getattr(record, "structured_data", {}))

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, default=str)


def _format_value(value: Any) -> str:
    """Render a structured value for the key=value text format.

    Rules: None becomes ``null``, strings containing spaces are quoted,
    dicts and lists are JSON encoded, bytes are summarised by length,
    everything else goes through ``str()``.

    Example:
        >>> _format_value(None)
        'null'
        >>> _format_value("connection reset")
        '"connection reset"'
        >>> _format_value(b"\\xff\\xd8")
        '<2 bytes>'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if " " in value:
            return f'"{value}"'
        return value
    if isinstance(value, bytes | bytearray):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


class LogContext:
    """Context manager adding fields to every record logged inside it.

    Backed by a ContextVar, so values are isolated per thread and per
    asyncio task. Contexts nest; inner values override outer ones.

    Usage:
        with LogContext(facing="front", port=12346):
            logger.info("Connecting")          # facing, port
            with LogContext(attempt=2):
                logger.info("Retrying")        # facing, port, attempt
    """

    def __init__(self, **kwargs: Any) -> None:
        self._kwargs = kwargs
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        current = _log_context.get()
        self._token = _log_context.set({**current, **self._kwargs})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    def __repr__(self) -> str:
        return f"LogContext({self._kwargs!r})"


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the camstream logger hierarchy.

    Installs StructuredLogger as the logger class and attaches one stream
    handler to the ``camstream`` root logger, which does not propagate to
    the process root logger. Idempotent: later calls are ignored unless
    ``force=True``.

    Args:
        level: Minimum level, as int or name ("DEBUG", "info", ...).
        json_format: Emit NDJSON instead of key=value text.
        stream: Destination stream. Defaults to ``sys.stderr``.
        include_structured: Append structured fields in text mode.
        force: Drop the existing handler and reconfigure.

    Example:
        >>> import io
        >>> buffer = io.StringIO()
        >>> configure_logging(level="DEBUG", stream=buffer, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """Apply configuration. Caller holds ``_config_lock``."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    if isinstance(level, str):
        level = level.upper()

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Remove handlers from the package root. Caller holds ``_config_lock``."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    _configured = False


def reset_logging() -> None:
    """Return logging to the unconfigured state.

    Intended for tests that need to reconfigure with a different stream
    or format. The next ``configure_logging()`` or ``get_logger()`` call
    reinstalls a handler.
    """
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger, configuring defaults on first use.

    Args:
        name: Logger name, normally ``__name__``.

    Returns:
        Logger accepting structured keyword arguments.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Stream started", facing="back", port=12345)
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    # setLoggerClass() above guarantees the concrete type
    return cast(StructuredLogger, logging.getLogger(name))
