"""Tests for the photo/clip cache and the clip writer."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from camstream.data import ClipStore, ClipWriter, VideoClipFile
from camstream.drivers.cameras import Facing, Size
from camstream.errors import SessionConfigurationError

NOW = datetime(2024, 3, 5, 14, 30, 2)


class FakeVideoWriter:
    """cv2.VideoWriter stand-in that writes one byte per frame."""

    instances: list[FakeVideoWriter] = []

    def __init__(self, path, fourcc, fps, size, opened=True):
        self.path = Path(path)
        self.fourcc = fourcc
        self.fps = fps
        self.size = size
        self.opened = opened
        self.shapes: list[tuple[int, ...]] = []
        self.released = False
        FakeVideoWriter.instances.append(self)

    def isOpened(self):  # noqa: N802 - cv2 naming
        return self.opened

    def write(self, img):
        self.shapes.append(img.shape)

    def release(self):
        self.released = True
        self.path.write_bytes(b"v" * len(self.shapes))


@pytest.fixture(autouse=True)
def _clear_instances():
    FakeVideoWriter.instances.clear()


@pytest.fixture
def store(tmp_path, codec) -> ClipStore:
    return ClipStore(
        tmp_path / "cache",
        now=lambda: NOW,
        codec=codec,
        writer_factory=FakeVideoWriter,
    )


def _jpeg(twin_driver, size: Size) -> bytes:
    instance = twin_driver.open(0)
    try:
        instance.configure(size)
        return instance.capture()
    finally:
        instance.close()


# =============================================================================
# Naming and files
# =============================================================================


class TestClipStoreNaming:
    """Tests for cache file names."""

    def test_photo_name(self, store):
        assert store.photo_path(Facing.BACK).name == "05-14-30-02-back.jpg"

    def test_clip_name(self, store):
        assert store.clip_path().name == "VID_05-14-30.mp4"

    def test_collisions_get_suffix(self, store):
        first = store.save_photo(b"1", Facing.FRONT)
        second = store.save_photo(b"2", Facing.FRONT)
        third = store.save_photo(b"3", Facing.FRONT)
        assert first.name == "05-14-30-02-front.jpg"
        assert second.name == "05-14-30-02-front_1.jpg"
        assert third.name == "05-14-30-02-front_2.jpg"
        assert third.read_bytes() == b"3"

    def test_root_created_on_demand(self, store):
        assert not store.root.exists()
        store.save_photo(b"x", Facing.BACK)
        assert store.root.is_dir()


class TestClipStoreFiles:
    """Tests for delete / pending / cleanup."""

    def test_delete(self, store):
        path = store.save_photo(b"x", Facing.BACK)
        assert store.delete(path) is True
        assert not path.exists()
        assert store.delete(path) is False

    def test_pending_and_cleanup(self, store):
        store.save_photo(b"x", Facing.BACK)
        store.save_photo(b"y", Facing.FRONT)
        (store.root / "notes.txt").write_text("not cached media")

        assert len(store.pending()) == 2
        assert store.cleanup() == 2
        assert store.pending() == []
        assert (store.root / "notes.txt").exists()

    def test_pending_without_root(self, tmp_path):
        assert ClipStore(tmp_path / "missing").pending() == []


# =============================================================================
# ClipWriter
# =============================================================================


class TestClipWriter:
    """Tests for recording JPEG frames into a clip."""

    def test_records_frames(self, store, twin_driver):
        """Verifies frames reach the container and the clip is described.

        Arrangement:
        1. Store with a fake video writer and the real JPEG codec.
        2. Three 640x480 twin frames.

        Action:
        open_clip at 30 fps, write the frames, close.

        Assertion Strategy:
        - The container was created once with the first frame's size.
        - close() reports 3 frames, 0.1 s, and the file size on disk.
        """
        writer = store.open_clip(Facing.BACK, fps=30)
        assert writer.path.exists()
        jpeg = _jpeg(twin_driver, Size(640, 480))
        for _ in range(3):
            writer.write(jpeg)

        clip = writer.close()
        assert isinstance(clip, VideoClipFile)
        assert clip.frame_count == 3
        assert clip.duration_s == pytest.approx(0.1)
        assert clip.size_bytes == 3
        assert clip.started_at == NOW
        assert clip.path.name == "VID_05-14-30.mp4"

        (video,) = FakeVideoWriter.instances
        assert video.size == (640, 480)
        assert video.fps == 30.0
        assert video.released

    def test_mismatched_frames_resized(self, store, twin_driver):
        writer = store.open_clip(Facing.BACK, fps=30)
        writer.write(_jpeg(twin_driver, Size(640, 480)))
        writer.write(_jpeg(twin_driver, Size(320, 240)))
        writer.close()
        (video,) = FakeVideoWriter.instances
        assert video.shapes == [(480, 640, 3), (480, 640, 3)]

    def test_undecodable_frames_skipped(self, store, twin_driver):
        writer = store.open_clip(Facing.FRONT, fps=30)
        writer.write(b"garbage")
        writer.write(_jpeg(twin_driver, Size(320, 240)))
        assert writer.skipped == 1
        assert writer.frame_count == 1

    def test_close_without_frames(self, store):
        writer = store.open_clip(Facing.BACK, fps=30)
        assert writer.close() is None
        assert writer.close() is None

    def test_writer_not_opened(self, tmp_path, codec, twin_driver):
        def closed_writer(path, fourcc, fps, size):
            return FakeVideoWriter(path, fourcc, fps, size, opened=False)

        writer = ClipWriter(
            tmp_path / "x.mp4", 30, codec, closed_writer, 0, started_at=NOW
        )
        with pytest.raises(SessionConfigurationError):
            writer.write(_jpeg(twin_driver, Size(320, 240)))

    def test_discard_removes_file(self, store, twin_driver):
        writer = store.open_clip(Facing.BACK, fps=30)
        writer.write(_jpeg(twin_driver, Size(320, 240)))
        writer.discard()
        assert not writer.path.exists()
        assert FakeVideoWriter.instances[0].released
        writer.write(_jpeg(twin_driver, Size(320, 240)))
        assert writer.frame_count == 1

    def test_second_clip_in_same_minute(self, store):
        first = store.open_clip(Facing.BACK, fps=30)
        second = store.open_clip(Facing.BACK, fps=30)
        assert first.path.name == "VID_05-14-30.mp4"
        assert second.path.name == "VID_05-14-30_1.mp4"
