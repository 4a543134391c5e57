"""Outbound TCP connection to the collector.

One Connection owns one socket. In streaming mode it belongs to a single
device stream for its whole life; in burst mode it carries exactly one
file transfer. Any I/O failure closes it for good: a failed connection
is never reused, the supervisor makes a new one.
"""

from __future__ import annotations

import ipaddress
import os
import socket
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from camstream.errors import ConnectTimeoutError, InvalidTargetError, TransportError
from camstream.observability import MEBIBYTE, ThroughputMeter, get_logger
from camstream.transport.framing import (
    TransferVariant,
    encode_clip_header,
    encode_frame_header,
    encode_photo_header,
)

if TYPE_CHECKING:
    from camstream.observability import StreamStats

logger = get_logger(__name__)

__all__ = [
    "Connection",
    "DEFAULT_CHUNK_SIZE",
    "SocketFactory",
    "validate_host",
]

DEFAULT_CHUNK_SIZE = 8192

SocketFactory = Callable[[tuple[str, int], float], socket.socket]


def validate_host(host: str | None) -> str:
    """Return ``host`` normalized if it is a literal IPv4/IPv6 address.

    Raises:
        InvalidTargetError: Empty, or not an IP address.

    Example:
        >>> validate_host(" 192.168.1.20 ")
        '192.168.1.20'
    """
    if not host or not host.strip():
        raise InvalidTargetError("Host address is empty")
    try:
        return str(ipaddress.ip_address(host.strip()))
    except ValueError as e:
        raise InvalidTargetError(f"Invalid host address: {host!r}") from e


def _default_socket_factory(address: tuple[str, int], timeout: float) -> socket.socket:
    return socket.create_connection(address, timeout=timeout)


class Connection:
    """One socket to ``host:port`` with fail-fast sends.

    Example:
        conn = Connection("192.168.1.20", 12345, label="back")
        conn.connect()
        try:
            conn.send_frame(jpeg_bytes)
        finally:
            conn.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = 10.0,
        io_timeout: float = 10.0,
        keepalive: bool = True,
        label: str | None = None,
        stats: StreamStats | None = None,
        socket_factory: SocketFactory | None = None,
    ) -> None:
        """Create an unconnected connection.

        Args:
            host: Collector IP address.
            port: Collector port.
            connect_timeout: Seconds allowed for the TCP handshake.
            io_timeout: Per-operation socket timeout once connected.
            keepalive: Enable SO_KEEPALIVE after connecting.
            label: Stream name for logs and stats (usually the facing).
            stats: Send statistics sink.
            socket_factory: ``(address, timeout) -> socket``; defaults to
                socket.create_connection.
        """
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout
        self.keepalive = keepalive
        self.label = label or f"{host}:{port}"
        self._stats = stats
        self._socket_factory = socket_factory or _default_socket_factory

        self._sock: socket.socket | None = None
        self._writer: BinaryIO | None = None
        self._lock = threading.Lock()
        self._closed = False
        self.connected_at: datetime | None = None
        self.frames_sent = 0
        self.bytes_sent = 0

    def __repr__(self) -> str:
        state = "open" if self.is_open else ("closed" if self._closed else "new")
        return f"Connection({self.host}:{self.port}, {state})"

    @property
    def is_open(self) -> bool:
        return self._sock is not None and not self._closed

    @property
    def address(self) -> tuple[str, int]:
        return (self.host, self.port)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        """Open the socket.

        Raises:
            ConnectTimeoutError: No handshake within ``connect_timeout``.
            TransportError: Refused, unreachable, or already closed.
        """
        if self._closed:
            raise TransportError(f"Connection to {self.host}:{self.port} was closed")
        if self._sock is not None:
            return
        try:
            sock = self._socket_factory(self.address, self.connect_timeout)
        except TimeoutError as e:
            raise ConnectTimeoutError(
                f"Connect to {self.host}:{self.port} timed out "
                f"after {self.connect_timeout}s"
            ) from e
        except OSError as e:
            raise TransportError(
                f"Connect to {self.host}:{self.port} failed: {e}"
            ) from e

        try:
            if self.keepalive:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            sock.settimeout(self.io_timeout)
        except OSError as e:
            sock.close()
            raise TransportError(f"Socket setup failed: {e}") from e

        self._sock = sock
        self._writer = sock.makefile("wb")
        self.connected_at = datetime.now(UTC)
        logger.info(
            "Connected", stream=self.label, host=self.host, port=self.port
        )

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            writer, sock = self._writer, self._sock
            self._writer = None
            self._sock = None

        if writer is not None:
            try:
                writer.close()
            except OSError as e:
                # Unflushed bytes on a dead socket
                logger.debug("Writer close failed", stream=self.label, error=str(e))
        if sock is not None:
            sock.close()
            logger.info(
                "Connection closed",
                stream=self.label,
                frames=self.frames_sent,
                bytes=self.bytes_sent,
            )

    def __enter__(self) -> Connection:
        self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------------

    def send_frame(self, payload: bytes) -> None:
        """Send one length-prefixed frame.

        Writes the 4-byte prefix, then the payload, then flushes. A zero
        length payload sends only the prefix.

        Raises:
            TransportError: Not connected, or any write/flush failure. The
                connection is closed before raising.
        """
        writer = self._require_writer()
        started = time.perf_counter()
        try:
            writer.write(encode_frame_header(len(payload)))
            writer.write(payload)
            writer.flush()
        except OSError as e:
            self._record(started, False, error_type=type(e).__name__)
            self.close()
            raise TransportError(
                f"Frame send to {self.host}:{self.port} failed: {e}"
            ) from e

        self.frames_sent += 1
        self.bytes_sent += len(payload)
        self._record(started, True, size_bytes=len(payload))

    def send_file(
        self,
        path: str | os.PathLike[str],
        variant: TransferVariant,
        *,
        name: str | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> int:
        """Transfer a local file, then close the connection.

        Variant PHOTO writes the name and the bytes and half-closes the
        socket so the receiver sees EOF. Variant CLIP writes the name,
        the size and exactly that many bytes.

        Args:
            path: File to send.
            variant: Wire encoding.
            name: Name announced to the receiver (default: the file name).
            chunk_size: Read/write chunk size.

        Returns:
            Number of payload bytes sent.

        Raises:
            TransportError: Any I/O failure, including the file changing
                size while being read.
        """
        path = Path(path)
        name = name or path.name
        writer = self._require_writer()
        started = time.perf_counter()
        meter = ThroughputMeter()
        try:
            with path.open("rb") as source:
                size = os.fstat(source.fileno()).st_size
                if variant is TransferVariant.CLIP:
                    writer.write(encode_clip_header(name, size))
                else:
                    writer.write(encode_photo_header(name))
                while chunk := source.read(chunk_size):
                    writer.write(chunk)
                    if meter.add(len(chunk)):
                        logger.debug(
                            "Transfer progress",
                            name=name,
                            mib=meter.total_bytes // MEBIBYTE,
                        )
                writer.flush()
            if variant is TransferVariant.CLIP and meter.total_bytes != size:
                raise TransportError(
                    f"{name} changed during transfer: "
                    f"declared {size} bytes, read {meter.total_bytes}"
                )
            if variant is TransferVariant.PHOTO and self._sock is not None:
                self._sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            self._record(started, False, error_type=type(e).__name__)
            self.close()
            raise TransportError(f"Transfer of {name} failed: {e}") from e
        except TransportError:
            self._record(started, False, error_type="TransportError")
            self.close()
            raise

        self.bytes_sent += meter.total_bytes
        self._record(started, True, size_bytes=meter.total_bytes)
        logger.info(
            "File sent",
            name=name,
            variant=variant.value,
            size_bytes=meter.total_bytes,
            duration_s=round(meter.elapsed(), 3),
            speed_bps=round(meter.rate_bps()),
        )
        self.close()
        return meter.total_bytes

    def _require_writer(self) -> BinaryIO:
        writer = self._writer
        if writer is None or self._closed:
            raise TransportError(f"Not connected to {self.host}:{self.port}")
        return writer

    def _record(
        self,
        started: float,
        success: bool,
        size_bytes: int = 0,
        error_type: str | None = None,
    ) -> None:
        if self._stats is None:
            return
        self._stats.record_send(
            self.label,
            (time.perf_counter() - started) * 1000,
            success,
            size_bytes=size_bytes,
            error_type=error_type,
        )
