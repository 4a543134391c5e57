"""CLI entry point for camstream.

Provides the ``camstream`` console script with subcommands:

- ``stream`` - Continuous streaming from both devices
- ``burst photo`` / ``burst clip`` - Periodic stills or clips
- ``collect`` - Run the receiving collector

Usage::

    # Stream simulated cameras to a collector, with the dashboard
    camstream stream --host 192.168.1.20 --dashboard-port 8080

    # Real cameras, one still per second
    camstream burst photo --host 192.168.1.20 --mode hardware

    # Receive everything on the default ports
    camstream collect --receive-dir received_videos

Exit codes: 0 on a normal stop, 1 when retries were exhausted or the
service failed, 2 for invalid arguments or configuration.
"""

from __future__ import annotations

import argparse
import threading
from collections.abc import Sequence
from pathlib import Path

from camstream.devices import ServiceStopped, TerminalFailure
from camstream.drivers.cameras import Facing
from camstream.drivers.config import (
    DEFAULT_BACK_PORT,
    DEFAULT_FRONT_PORT,
    DriverMode,
    configure,
    get_config,
)
from camstream.errors import FatalStreamError, InvalidTargetError
from camstream.observability import configure_logging, get_logger
from camstream.service import (
    ServiceMode,
    StreamService,
    start_dashboard,
    stop_dashboard,
)
from camstream.transport.collector import (
    DEFAULT_RECEIVE_DIR,
    Collector,
    Listener,
    ReceiveKind,
)

logger = get_logger(__name__)

PROG = "camstream"


def _listener(value: str) -> Listener:
    """Parse ``PORT[:KIND[:LABEL]]`` for ``collect --listen``.

    Example:
        >>> _listener("12345:frames:back")
        Listener(port=12345, kind=<ReceiveKind.FRAMES: 'frames'>, label='back')
    """
    parts = value.split(":")
    try:
        port = int(parts[0])
        kind = ReceiveKind(parts[1]) if len(parts) > 1 else ReceiveKind.AUTO
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid listener {value!r}: {e}") from e
    label = parts[2] if len(parts) > 2 else None
    return Listener(port, kind, label)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-json", action="store_true", help="Emit logs as JSON lines"
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until Ctrl-C)",
    )


def _add_sender(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", help="Collector IP address")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in DriverMode],
        default=DriverMode.DIGITAL_TWIN.value,
        help="'hardware' for OpenCV cameras, 'digital_twin' for simulation",
    )
    parser.add_argument(
        "--facing",
        action="append",
        choices=[f.value for f in Facing],
        help="Device to use; repeat for both (default: back and front)",
    )
    parser.add_argument(
        "--back-index", type=int, help="OpenCV device index of the back camera"
    )
    parser.add_argument(
        "--front-index", type=int, help="OpenCV device index of the front camera"
    )
    parser.add_argument("--back-port", type=int, help="Back stream / photo port")
    parser.add_argument("--front-port", type=int, help="Front stream / clip port")
    parser.add_argument("--max-attempts", type=int, help="Connect attempts")
    parser.add_argument("--backoff", type=float, help="Seconds between attempts")
    parser.add_argument("--cache-dir", type=Path, help="Photo/clip cache")
    parser.add_argument(
        "--no-restart",
        dest="restart_on_failure",
        action="store_false",
        help="Do not restart after every stream failed",
    )
    parser.add_argument("--dashboard-host", default=None, help="Dashboard bind host")
    parser.add_argument(
        "--dashboard-port", type=int, default=None, help="Dashboard port"
    )
    parser.add_argument(
        "--dashboard-log-level",
        choices=["critical", "error", "warning", "info", "debug"],
        default="warning",
        help="Uvicorn log level (default: warning)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Capture frames or clips from two cameras and send them "
        "to a remote collector",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    stream = subparsers.add_parser("stream", help="Continuous frame streaming")
    _add_sender(stream)
    stream.add_argument(
        "--frame-interval", type=float, help="Minimum seconds between frames"
    )
    stream.add_argument("--quality", type=int, help="JPEG quality 1-100")
    _add_common(stream)

    burst = subparsers.add_parser("burst", help="Periodic photos or clips")
    burst.add_argument("kind", choices=["photo", "clip"])
    _add_sender(burst)
    burst.add_argument(
        "--period", type=float, help="Photo period or clip duration in seconds"
    )
    _add_common(burst)

    collect = subparsers.add_parser("collect", help="Run the receiving collector")
    collect.add_argument("--bind", default="0.0.0.0", help="Listen address")
    collect.add_argument(
        "--listen",
        action="append",
        type=_listener,
        help="PORT[:KIND[:LABEL]], KIND one of frames/photo/clip/auto; "
        f"repeatable (default: {DEFAULT_BACK_PORT}:auto {DEFAULT_FRONT_PORT}:auto)",
    )
    collect.add_argument(
        "--receive-dir",
        type=Path,
        default=DEFAULT_RECEIVE_DIR,
        help=f"Where received files go (default: {DEFAULT_RECEIVE_DIR})",
    )
    _add_common(collect)
    return parser


def _configure_sender(args: argparse.Namespace) -> None:
    indices = dict(get_config().device_indices)
    if args.back_index is not None:
        indices[Facing.BACK] = args.back_index
    if args.front_index is not None:
        indices[Facing.FRONT] = args.front_index
    overrides = {
        "mode": DriverMode(args.mode),
        "host": args.host,
        "back_port": args.back_port,
        "front_port": args.front_port,
        "photo_port": args.back_port,
        "clip_port": args.front_port,
        "max_attempts": args.max_attempts,
        "backoff_s": args.backoff,
        "cache_dir": args.cache_dir,
        "device_indices": indices,
        "restart_on_failure": args.restart_on_failure,
        "enabled_facings": (
            tuple(Facing(f) for f in dict.fromkeys(args.facing))
            if args.facing
            else None
        ),
    }
    if args.command == "stream":
        overrides["frame_interval_s"] = args.frame_interval
        overrides["jpeg_quality"] = args.quality
    elif args.kind == "photo":
        overrides["photo_period_s"] = args.period
    else:
        overrides["clip_duration_s"] = args.period
    configure(get_config().with_overrides(**overrides))


def run_sender(args: argparse.Namespace) -> int:
    """Run ``stream`` or ``burst`` until Ctrl-C, ``--duration`` or failure."""
    try:
        _configure_sender(args)
    except ValueError as e:
        logger.error("Invalid configuration", error=str(e))
        return 2

    mode = ServiceMode.STREAM if args.command == "stream" else ServiceMode(args.kind)
    service = StreamService(get_config(), mode=mode)
    finished = threading.Event()
    exhausted = threading.Event()

    def on_stopped(event: ServiceStopped) -> None:
        if not event.restart_scheduled:
            finished.set()

    service.events.subscribe(on_stopped, ServiceStopped)
    service.events.subscribe(lambda event: exhausted.set(), TerminalFailure)

    try:
        service.start()
    except InvalidTargetError as e:
        logger.error("Invalid collector address", error=str(e))
        return 2
    except FatalStreamError as e:
        logger.error("Service failed to start", error=str(e))
        return 1

    if args.dashboard_host and args.dashboard_port:
        start_dashboard(
            service, args.dashboard_host, args.dashboard_port, args.dashboard_log_level
        )
    try:
        finished.wait(args.duration)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        service.stop()
        stop_dashboard()
    return 1 if exhausted.is_set() else 0


def run_collect(args: argparse.Namespace) -> int:
    """Run the collector until Ctrl-C or ``--duration``."""
    listeners = args.listen or [
        Listener(DEFAULT_BACK_PORT, ReceiveKind.AUTO),
        Listener(DEFAULT_FRONT_PORT, ReceiveKind.AUTO),
    ]
    collector = Collector(listeners, bind=args.bind, receive_dir=args.receive_dir)
    try:
        collector.start()
    except OSError as e:
        logger.error("Collector failed to start", error=str(e))
        return 1
    try:
        threading.Event().wait(args.duration)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        collector.stop()
    logger.info(
        "Collector stopped",
        files=len(collector.received),
        frames=collector.frames_received,
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_format=args.log_json, force=True)
    if args.command == "collect":
        return run_collect(args)
    return run_sender(args)


if __name__ == "__main__":
    raise SystemExit(main())
