"""Data layer - cached burst photos and video clips."""

from camstream.data.clips import (
    CLIP_FOURCC,
    ClipStore,
    ClipWriter,
    VideoClipFile,
    VideoWriterFactory,
)

__all__ = [
    "CLIP_FOURCC",
    "ClipStore",
    "ClipWriter",
    "VideoClipFile",
    "VideoWriterFactory",
]
