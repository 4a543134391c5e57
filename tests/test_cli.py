"""Tests for camstream.cli - argument parsing and command dispatch.

Test Categories:
    - ``_listener``: ``PORT[:KIND[:LABEL]]`` parsing
    - ``build_parser``: subcommands and defaults
    - ``_configure_sender``: flags applied to the global StreamConfig
    - ``main``: exit codes for collect and for invalid sender input
"""

from __future__ import annotations

import argparse
from collections.abc import Iterator
from pathlib import Path

import pytest

from camstream.cli import _configure_sender, _listener, build_parser, main
from camstream.drivers.cameras import Facing
from camstream.drivers.config import DriverMode, get_config
from camstream.observability import reset_logging
from camstream.transport.collector import Listener, ReceiveKind


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """main() reconfigures logging; undo it after each test."""
    yield
    reset_logging()


# =========================================================================
# _listener
# =========================================================================


class TestListenerArgument:
    """Tests for --listen values."""

    def test_port_only(self) -> None:
        assert _listener("12345") == Listener(12345, ReceiveKind.AUTO)

    def test_port_and_kind(self) -> None:
        assert _listener("12346:clip") == Listener(12346, ReceiveKind.CLIP)

    def test_with_label(self) -> None:
        listener = _listener("12345:frames:back")
        assert listener.kind is ReceiveKind.FRAMES
        assert listener.name == "back"

    @pytest.mark.parametrize("value", ["abc", "12345:video", ""])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            _listener(value)


# =========================================================================
# build_parser
# =========================================================================


class TestBuildParser:
    """Tests for the argparse layout."""

    def test_stream_defaults(self) -> None:
        args = build_parser().parse_args(["stream", "--host", "10.0.0.2"])
        assert args.command == "stream"
        assert args.host == "10.0.0.2"
        assert args.mode == "digital_twin"
        assert args.restart_on_failure is True
        assert args.duration is None
        assert args.log_level == "INFO"

    def test_burst_kind(self) -> None:
        args = build_parser().parse_args(
            ["burst", "clip", "--period", "10", "--no-restart"]
        )
        assert args.kind == "clip"
        assert args.period == 10.0
        assert args.restart_on_failure is False

    def test_collect_listeners(self) -> None:
        args = build_parser().parse_args(
            ["collect", "--listen", "1:frames:back", "--listen", "2"]
        )
        assert [listener.port for listener in args.listen] == [1, 2]
        assert args.bind == "0.0.0.0"

    def test_log_level_case_insensitive(self) -> None:
        args = build_parser().parse_args(["collect", "--log-level", "debug"])
        assert args.log_level == "DEBUG"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


# =========================================================================
# _configure_sender
# =========================================================================


class TestConfigureSender:
    """Tests for flags overriding the global configuration."""

    def test_stream_overrides(self, tmp_path: Path) -> None:
        args = build_parser().parse_args(
            [
                "stream",
                "--host",
                "10.0.0.2",
                "--facing",
                "front",
                "--facing",
                "front",
                "--back-port",
                "5000",
                "--frame-interval",
                "0.2",
                "--quality",
                "90",
                "--cache-dir",
                str(tmp_path),
                "--no-restart",
            ]
        )
        _configure_sender(args)
        config = get_config()
        assert config.host == "10.0.0.2"
        assert config.enabled_facings == (Facing.FRONT,)
        assert config.back_port == 5000
        assert config.photo_port == 5000
        assert config.front_port == 12346
        assert config.frame_interval_s == 0.2
        assert config.jpeg_quality == 90
        assert config.cache_dir == tmp_path
        assert config.restart_on_failure is False
        assert config.mode is DriverMode.DIGITAL_TWIN

    def test_unset_flags_keep_defaults(self) -> None:
        _configure_sender(build_parser().parse_args(["burst", "photo"]))
        config = get_config()
        assert config.photo_period_s == 1.0
        assert config.enabled_facings == (Facing.BACK, Facing.FRONT)
        assert config.max_attempts == 3

    def test_device_indices(self) -> None:
        args = build_parser().parse_args(
            ["stream", "--mode", "hardware", "--front-index", "3"]
        )
        _configure_sender(args)
        config = get_config()
        assert config.mode is DriverMode.HARDWARE
        assert config.device_indices == {Facing.BACK: 0, Facing.FRONT: 3}

    def test_burst_period(self) -> None:
        _configure_sender(
            build_parser().parse_args(["burst", "clip", "--period", "5"])
        )
        assert get_config().clip_duration_s == 5.0


# =========================================================================
# main
# =========================================================================


class TestMain:
    """Tests for exit codes of the main entry point."""

    def test_invalid_host_exits_2(self) -> None:
        assert main(["stream", "--host", "bad", "--log-level", "ERROR"]) == 2

    def test_missing_host_exits_2(self) -> None:
        assert main(["burst", "photo", "--log-level", "ERROR"]) == 2

    def test_invalid_quality_exits_2(self) -> None:
        argv = ["stream", "--host", "10.0.0.2", "--quality", "0", "--log-level", "ERROR"]
        assert main(argv) == 2

    def test_collect_runs_for_duration(self, tmp_path: Path) -> None:
        argv = [
            "collect",
            "--bind",
            "127.0.0.1",
            "--listen",
            "0:auto",
            "--receive-dir",
            str(tmp_path),
            "--duration",
            "0.1",
            "--log-level",
            "ERROR",
        ]
        assert main(argv) == 0

    def test_collect_port_in_use_exits_1(self, tmp_path: Path) -> None:
        import socket

        with socket.socket() as taken:
            taken.bind(("127.0.0.1", 0))
            taken.listen()
            port = taken.getsockname()[1]
            argv = [
                "collect",
                "--bind",
                "127.0.0.1",
                "--listen",
                str(port),
                "--receive-dir",
                str(tmp_path),
                "--duration",
                "0.1",
                "--log-level",
                "ERROR",
            ]
            assert main(argv) == 1
