"""Local storage for burst photos and video clips awaiting transfer.

Files live in a cache directory only until they are sent. Names carry
the capture time so the collector can order them:

    photos: ``dd-HH-MM-SS-<facing>.jpg``
    clips:  ``VID_dd-HH-MM.mp4`` (``VID_dd-HH-MM_1.mp4`` ... on collision)

A file is deleted right after a confirmed transfer. Files whose transfer
failed stay until ``cleanup()`` at service stop.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from camstream.errors import SessionConfigurationError
from camstream.observability import get_logger

if TYPE_CHECKING:
    from camstream.drivers.cameras import Facing
    from camstream.utils.image import ImageCodec

logger = get_logger(__name__)

__all__ = [
    "CLIP_FOURCC",
    "ClipStore",
    "ClipWriter",
    "VideoClipFile",
    "VideoWriterFactory",
]

CLIP_FOURCC = "mp4v"
CLIP_SUFFIX = ".mp4"
PHOTO_SUFFIX = ".jpg"

#: ``(path, fourcc, fps, (width, height)) -> writer`` with the
#: cv2.VideoWriter interface (isOpened, write, release).
VideoWriterFactory = Callable[[str, int, float, tuple[int, int]], Any]


@dataclass(frozen=True, slots=True)
class VideoClipFile:
    """A finished clip on disk.

    Attributes:
        path: Location in the cache directory.
        size_bytes: File size when recording finished.
        started_at: Wall-clock start of the recording window.
        duration_s: Recorded length (frames / fps).
        frame_count: Frames written.
    """

    path: Path
    size_bytes: int
    started_at: datetime
    duration_s: float
    frame_count: int


class ClipWriter:
    """Writes JPEG frames of one recording into a video container.

    The underlying writer is created on the first frame, sized to that
    frame. Undecodable frames are skipped.
    """

    def __init__(
        self,
        path: Path,
        fps: int,
        codec: ImageCodec,
        writer_factory: VideoWriterFactory,
        fourcc: int,
        started_at: datetime,
    ) -> None:
        self.path = path
        self.fps = fps
        self.started_at = started_at
        self.frame_count = 0
        self.skipped = 0
        self._codec = codec
        self._writer_factory = writer_factory
        self._fourcc = fourcc
        self._writer: Any = None
        self._frame_size: tuple[int, int] | None = None
        self._finished = False

    def write(self, payload: bytes) -> None:
        """Append one encoded frame.

        Raises:
            SessionConfigurationError: The container cannot be opened.
        """
        if self._finished:
            return
        img = self._codec.decode_jpeg(payload)
        if img is None:
            self.skipped += 1
            return
        if self._writer is None:
            height, width = img.shape[:2]
            self._frame_size = (width, height)
            writer = self._writer_factory(
                str(self.path), self._fourcc, float(self.fps), self._frame_size
            )
            if not writer.isOpened():
                raise SessionConfigurationError(
                    f"Cannot open video writer for {self.path.name}"
                )
            self._writer = writer
        elif (img.shape[1], img.shape[0]) != self._frame_size:
            img = self._codec.resize(img, *self._frame_size)
        self._writer.write(img)
        self.frame_count += 1

    def close(self) -> VideoClipFile | None:
        """Finish the container.

        Returns:
            The clip, or None when no frame was written.
        """
        if self._finished:
            return None
        self._finished = True
        if self._writer is None:
            return None
        self._writer.release()
        self._writer = None
        return VideoClipFile(
            path=self.path,
            size_bytes=self.path.stat().st_size,
            started_at=self.started_at,
            duration_s=self.frame_count / self.fps,
            frame_count=self.frame_count,
        )

    def discard(self) -> None:
        """Abandon the recording and remove the partial file."""
        self._finished = True
        if self._writer is not None:
            self._writer.release()
            self._writer = None
        self.path.unlink(missing_ok=True)


class ClipStore:
    """Names, creates and deletes cached photo and clip files.

    Example:
        store = ClipStore(Path("/tmp/camstream"))
        path = store.save_photo(jpeg, Facing.BACK)
        ...
        store.delete(path)
    """

    def __init__(
        self,
        root: Path,
        *,
        now: Callable[[], datetime] = datetime.now,
        codec: ImageCodec | None = None,
        writer_factory: VideoWriterFactory | None = None,
    ) -> None:
        """Create a store rooted at ``root`` (created on demand).

        Args:
            root: Cache directory.
            now: Wall-clock source for file names.
            codec: JPEG decoder for clip frames (default: CV2ImageCodec).
            writer_factory: Video container factory (default:
                cv2.VideoWriter).
        """
        self.root = Path(root)
        self._now = now
        self._codec = codec
        self._writer_factory = writer_factory
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    def photo_path(self, facing: Facing, when: datetime | None = None) -> Path:
        when = when or self._now()
        return self._unique(f"{when:%d-%H-%M-%S}-{facing.value}", PHOTO_SUFFIX)

    def clip_path(self, when: datetime | None = None) -> Path:
        when = when or self._now()
        return self._unique(f"VID_{when:%d-%H-%M}", CLIP_SUFFIX)

    def _unique(self, stem: str, suffix: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        candidate = self.root / f"{stem}{suffix}"
        n = 1
        while candidate.exists():
            candidate = self.root / f"{stem}_{n}{suffix}"
            n += 1
        return candidate

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def save_photo(self, payload: bytes, facing: Facing) -> Path:
        """Write a still to the cache and return its path."""
        with self._lock:
            path = self.photo_path(facing)
            path.write_bytes(payload)
        logger.debug("Photo saved", name=path.name, size_bytes=len(payload))
        return path

    def open_clip(self, facing: Facing, fps: int) -> ClipWriter:
        """Reserve a clip file name and return its writer."""
        codec = self._codec
        if codec is None:
            from camstream.utils.image import CV2ImageCodec

            codec = self._codec = CV2ImageCodec()

        import cv2

        factory = self._writer_factory or cv2.VideoWriter
        fourcc = cv2.VideoWriter_fourcc(*CLIP_FOURCC)
        with self._lock:
            started_at = self._now()
            path = self.clip_path(started_at)
            path.touch()
        logger.debug("Clip reserved", name=path.name, facing=facing.value, fps=fps)
        return ClipWriter(path, fps, codec, factory, fourcc, started_at)

    def delete(self, path: Path) -> bool:
        """Remove a sent file. Failure is logged, never raised."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not delete sent file", name=path.name, error=str(e))
            return False
        logger.debug("Sent file deleted", name=path.name)
        return True

    def pending(self) -> list[Path]:
        """Cached photos and clips not yet deleted, oldest first."""
        if not self.root.is_dir():
            return []
        files = [
            p
            for p in self.root.iterdir()
            if p.is_file() and p.suffix in (PHOTO_SUFFIX, CLIP_SUFFIX)
        ]
        return sorted(files, key=lambda p: p.stat().st_mtime)

    def cleanup(self) -> int:
        """Delete every pending file; return how many were removed."""
        removed = sum(1 for path in self.pending() if self.delete(path))
        if removed:
            logger.info("Purged unsent files", count=removed, root=str(self.root))
        return removed
