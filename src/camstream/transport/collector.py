"""Receiving side: a threaded TCP collector for frames, photos and clips.

Each listening port is configured with a kind:

    frames  length-prefixed frame stream, one JPEG file per frame
    photo   variant A: name, then bytes until the sender closes
    clip    variant B: name, 64-bit size, exactly that many bytes
    auto    variant B when the name has a video extension and a
            plausible size follows, variant A otherwise

Files land in the receive directory under ``YYYYmmdd_HHMMSS_<name>``.
Variant B payloads are written to ``<file>.part`` and renamed only when
the declared size was read in full.

Example:
    collector = Collector(
        [Listener(12345, ReceiveKind.AUTO), Listener(12346, ReceiveKind.AUTO)],
        receive_dir=Path("received_videos"),
    )
    collector.start()
    ...
    collector.stop()
"""

from __future__ import annotations

import socketserver
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO

from camstream.observability import (
    MEBIBYTE,
    LogContext,
    ThroughputMeter,
    get_logger,
)
from camstream.transport.framing import (
    FILE_SIZE,
    FramingError,
    IncompleteReadError,
    TransferVariant,
    read_exact,
    read_file_size,
    read_frame,
    read_utf,
)

logger = get_logger(__name__)

__all__ = [
    "Collector",
    "DEFAULT_RECEIVE_DIR",
    "FileReceiver",
    "Listener",
    "ReceiveKind",
    "ReceivedFile",
    "VIDEO_EXTENSIONS",
    "received_name",
]

DEFAULT_RECEIVE_DIR = Path("received_videos")
VIDEO_EXTENSIONS = (".mp4", ".avi", ".mkv", ".mov")
MAX_PLAUSIBLE_SIZE = 16 * 1024**3
BUFFER_SIZE = 8192
PART_SUFFIX = ".part"


class ReceiveKind(Enum):
    """What a listening port expects."""

    FRAMES = "frames"
    PHOTO = "photo"
    CLIP = "clip"
    AUTO = "auto"


@dataclass(frozen=True, slots=True)
class Listener:
    """One listening port.

    Attributes:
        port: TCP port (0 picks a free one).
        kind: Protocol spoken on the port.
        label: Name used for frame files and logs (default: the port).
    """

    port: int
    kind: ReceiveKind = ReceiveKind.AUTO
    label: str | None = None

    @property
    def name(self) -> str:
        return self.label or str(self.port)


@dataclass(frozen=True, slots=True)
class ReceivedFile:
    """A file fully received and saved."""

    path: Path
    name: str
    size_bytes: int
    variant: TransferVariant
    duration_s: float


def received_name(name: str, when: datetime) -> str:
    """Timestamp-prefixed local name for a received file.

    Only the last path component of ``name`` is kept.

    Example:
        >>> received_name("../VID_05-14-30.mp4", datetime(2024, 3, 5, 14, 30, 2))
        '20240305_143002_VID_05-14-30.mp4'
    """
    base = Path(name.replace("\\", "/")).name or "unnamed"
    return f"{when:%Y%m%d_%H%M%S}_{base}"


def _is_plausible_clip(name: str, size_header: bytes) -> bool:
    if Path(name).suffix.lower() not in VIDEO_EXTENSIONS:
        return False
    if len(size_header) != FILE_SIZE.size:
        return False
    (size,) = FILE_SIZE.unpack(size_header)
    return 0 <= size <= MAX_PLAUSIBLE_SIZE


class FileReceiver:
    """Protocol logic of the collector, independent of sockets.

    Works on any binary stream with ``read(n)``, so tests can feed it
    BytesIO.
    """

    def __init__(
        self,
        receive_dir: Path = DEFAULT_RECEIVE_DIR,
        *,
        now: Callable[[], datetime] = datetime.now,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self.receive_dir = Path(receive_dir)
        self._now = now
        self._buffer_size = buffer_size

    def _target(self, name: str) -> Path:
        self.receive_dir.mkdir(parents=True, exist_ok=True)
        return self.receive_dir / received_name(name, self._now())

    # -------------------------------------------------------------------------
    # Frame streams
    # -------------------------------------------------------------------------

    def receive_frames(self, stream: BinaryIO, label: str) -> int:
        """Save every frame until the sender closes.

        Returns:
            Number of frames saved. A frame cut off by EOF is not saved.
        """
        meter = ThroughputMeter()
        count = 0
        self.receive_dir.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                payload = read_frame(stream)
            except IncompleteReadError as e:
                logger.warning(
                    "Stream ended inside a frame",
                    stream=label,
                    expected=e.expected,
                    received=len(e.partial),
                )
                break
            if payload is None:
                break
            path = self.receive_dir / f"{label}_{self._now():%Y%m%d_%H%M%S_%f}.jpg"
            path.write_bytes(payload)
            count += 1
            if meter.add(len(payload)):
                logger.info(
                    "Receiving frames",
                    stream=label,
                    frames=count,
                    mib=meter.total_bytes // MEBIBYTE,
                )
        logger.info(
            "Frame stream closed",
            stream=label,
            frames=count,
            size_bytes=meter.total_bytes,
            duration_s=round(meter.elapsed(), 3),
            speed_bps=round(meter.rate_bps()),
        )
        return count

    # -------------------------------------------------------------------------
    # File transfers
    # -------------------------------------------------------------------------

    def receive_file(
        self, stream: BinaryIO, kind: ReceiveKind = ReceiveKind.AUTO
    ) -> ReceivedFile:
        """Receive one photo or clip.

        Raises:
            IncompleteReadError: EOF inside the header, or a variant B
                payload shorter than declared (nothing is kept).
            FramingError: Malformed name or negative size.
            ValueError: ``kind`` is FRAMES.
        """
        if kind is ReceiveKind.FRAMES:
            raise ValueError("receive_file() does not handle frame streams")

        name = read_utf(stream)
        if kind is ReceiveKind.CLIP:
            return self._receive_sized(stream, name, read_file_size(stream))
        if kind is ReceiveKind.PHOTO:
            return self._receive_until_eof(stream, name, b"")

        if Path(name).suffix.lower() in VIDEO_EXTENSIONS:
            header = stream.read(FILE_SIZE.size) or b""
            if len(header) < FILE_SIZE.size:
                header += stream.read(FILE_SIZE.size - len(header)) or b""
            if _is_plausible_clip(name, header):
                (size,) = FILE_SIZE.unpack(header)
                return self._receive_sized(stream, name, size)
            return self._receive_until_eof(stream, name, header)
        return self._receive_until_eof(stream, name, b"")

    def _receive_until_eof(
        self, stream: BinaryIO, name: str, prefix: bytes
    ) -> ReceivedFile:
        path = self._target(name)
        meter = ThroughputMeter()
        with path.open("wb") as out:
            if prefix:
                out.write(prefix)
                meter.add(len(prefix))
            while chunk := stream.read(self._buffer_size):
                out.write(chunk)
                self._progress(meter, len(chunk), name)
        return self._finished(path, name, meter, TransferVariant.PHOTO)

    def _receive_sized(self, stream: BinaryIO, name: str, size: int) -> ReceivedFile:
        path = self._target(name)
        part = path.with_name(path.name + PART_SUFFIX)
        meter = ThroughputMeter()
        logger.info("Receiving clip", name=name, size_bytes=size)
        try:
            with part.open("wb") as out:
                remaining = size
                while remaining > 0:
                    chunk = read_exact(stream, min(self._buffer_size, remaining))
                    out.write(chunk)
                    remaining -= len(chunk)
                    self._progress(meter, len(chunk), name)
        except IncompleteReadError as e:
            part.unlink(missing_ok=True)
            logger.warning(
                "Clip transfer incomplete, discarded",
                name=name,
                declared=size,
                received=meter.total_bytes + len(e.partial),
            )
            raise
        part.replace(path)
        return self._finished(path, name, meter, TransferVariant.CLIP)

    @staticmethod
    def _progress(meter: ThroughputMeter, count: int, name: str) -> None:
        if meter.add(count):
            logger.info(
                "Receiving", name=name, mib=meter.total_bytes // MEBIBYTE
            )

    @staticmethod
    def _finished(
        path: Path, name: str, meter: ThroughputMeter, variant: TransferVariant
    ) -> ReceivedFile:
        duration = meter.elapsed()
        logger.info(
            "File received",
            name=name,
            saved_as=path.name,
            variant=variant.value,
            size_bytes=meter.total_bytes,
            duration_s=round(duration, 3),
            speed_bps=round(meter.rate_bps()),
        )
        return ReceivedFile(
            path=path,
            name=name,
            size_bytes=meter.total_bytes,
            variant=variant,
            duration_s=duration,
        )


# =============================================================================
# TCP server
# =============================================================================


class _CollectorHandler(socketserver.StreamRequestHandler):
    """Handles one inbound connection on its own thread."""

    server: _CollectorServer

    def handle(self) -> None:
        listener = self.server.listener
        peer = f"{self.client_address[0]}:{self.client_address[1]}"
        with LogContext(listener=listener.name, peer=peer):
            logger.info("Connection accepted", kind=listener.kind.value)
            try:
                if listener.kind is ReceiveKind.FRAMES:
                    self.server.owner.record_frames(
                        self.server.receiver.receive_frames(self.rfile, listener.name)
                    )
                else:
                    self.server.owner.record_file(
                        self.server.receiver.receive_file(self.rfile, listener.kind)
                    )
            except (IncompleteReadError, FramingError) as e:
                logger.warning("Transfer aborted", error=str(e))
            except OSError as e:
                logger.error("Receive failed", error=str(e))


class _CollectorServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(
        self,
        address: tuple[str, int],
        listener: Listener,
        receiver: FileReceiver,
        owner: Collector,
    ) -> None:
        self.listener = listener
        self.receiver = receiver
        self.owner = owner
        super().__init__(address, _CollectorHandler)


class Collector:
    """One threaded TCP server per Listener.

    Thread Safety:
        ``received`` and the counters are guarded; handlers for different
        connections run concurrently.
    """

    def __init__(
        self,
        listeners: Sequence[Listener],
        *,
        bind: str = "0.0.0.0",
        receive_dir: Path = DEFAULT_RECEIVE_DIR,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        if not listeners:
            raise ValueError("at least one listener is required")
        self.bind = bind
        self.listeners = list(listeners)
        self.receiver = FileReceiver(receive_dir, now=now)
        self.received: list[ReceivedFile] = []
        self.frames_received = 0
        self._servers: list[_CollectorServer] = []
        self._threads: list[threading.Thread] = []
        self._changed = threading.Condition()

    @property
    def ports(self) -> list[int]:
        """Bound ports, in listener order (after ``start()``)."""
        return [server.server_address[1] for server in self._servers]

    def start(self) -> None:
        """Bind every listener and serve each on a daemon thread.

        Raises:
            OSError: A port could not be bound (already started servers
                are shut down first).
        """
        if self._servers:
            return
        try:
            for listener in self.listeners:
                server = _CollectorServer(
                    (self.bind, listener.port), listener, self.receiver, self
                )
                self._servers.append(server)
        except OSError:
            # not serving yet: shutdown() would block forever
            for server in self._servers:
                server.server_close()
            self._servers.clear()
            raise
        for server in self._servers:
            thread = threading.Thread(
                target=server.serve_forever,
                name=f"collector-{server.listener.name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
            logger.info(
                "Collector listening",
                bind=self.bind,
                port=server.server_address[1],
                kind=server.listener.kind.value,
                receive_dir=str(self.receiver.receive_dir),
            )

    def stop(self) -> None:
        for server in self._servers:
            server.shutdown()
            server.server_close()
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._servers.clear()
        self._threads.clear()

    def record_file(self, received: ReceivedFile) -> None:
        with self._changed:
            self.received.append(received)
            self._changed.notify_all()

    def record_frames(self, count: int) -> None:
        with self._changed:
            self.frames_received += count
            self._changed.notify_all()

    def wait_for_files(self, count: int, timeout: float | None = None) -> bool:
        """Block until at least ``count`` files were received."""
        with self._changed:
            return self._changed.wait_for(lambda: len(self.received) >= count, timeout)

    def wait_for_frames(self, count: int, timeout: float | None = None) -> bool:
        """Block until at least ``count`` frames were saved (counted at close)."""
        with self._changed:
            return self._changed.wait_for(
                lambda: self.frames_received >= count, timeout
            )

    def __enter__(self) -> Collector:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
