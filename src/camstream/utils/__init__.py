"""Utility modules for camstream."""

from camstream.utils.image import (
    FLIP_HORIZONTAL,
    FLIP_VERTICAL,
    CV2ImageCodec,
    ImageCodec,
)

__all__ = ["CV2ImageCodec", "FLIP_HORIZONTAL", "FLIP_VERTICAL", "ImageCodec"]
