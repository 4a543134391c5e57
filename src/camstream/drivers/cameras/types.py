"""Shared camera types: facing, output sizes, device descriptors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

__all__ = [
    "CameraDescriptor",
    "Facing",
    "Size",
    "select_output_size",
]


class Facing(Enum):
    """Which way a capture device points."""

    FRONT = "front"
    BACK = "back"

    @classmethod
    def parse(cls, value: str | Facing) -> Facing:
        """Accept a Facing or its (case-insensitive) name or value."""
        if isinstance(value, Facing):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(
                f"Unknown facing {value!r}, expected 'front' or 'back'"
            ) from None


@dataclass(frozen=True, slots=True)
class Size:
    """Output resolution in pixels."""

    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True, slots=True)
class CameraDescriptor:
    """What a driver reports about one device before it is opened.

    Attributes:
        camera_id: Driver-level identifier passed to ``open()``.
        facing: FRONT or BACK.
        name: Human-readable model or device path.
        supported_sizes: Output sizes the device can be configured to.
    """

    camera_id: int
    facing: Facing
    name: str = ""
    supported_sizes: tuple[Size, ...] = field(default_factory=tuple)


def select_output_size(supported: tuple[Size, ...] | list[Size], target: Size) -> Size:
    """Pick the supported size closest to ``target``.

    Closest pixel area wins; ties are broken by the closest width. When the
    device reports no sizes the target itself is returned and the driver is
    left to clamp it.

    Example:
        >>> sizes = [Size(1920, 1080), Size(640, 480), Size(320, 240)]
        >>> select_output_size(sizes, Size(640, 480))
        Size(width=640, height=480)
        >>> select_output_size([Size(800, 600), Size(720, 480)], Size(640, 480))
        Size(width=720, height=480)
    """
    if not supported:
        return target
    return min(
        supported,
        key=lambda s: (abs(s.area - target.area), abs(s.width - target.width)),
    )
