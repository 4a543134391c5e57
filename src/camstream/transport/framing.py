"""Wire framing for frame streams and file transfers.

Streaming frame protocol (continuous mode), repeated until close::

    [u32 big-endian length L][L bytes payload]

File transfer protocol (burst mode)::

    Variant A (photo):  [UTF name][raw bytes until the sender closes]
    Variant B (clip):   [UTF name][i64 big-endian size N][N raw bytes]

``UTF name`` is a modified UTF-8 string prefixed with its encoded byte
length as u16 big-endian (the DataOutputStream.writeUTF format). Modified
UTF-8 encodes NUL as ``C0 80`` and characters outside the BMP as two
3-byte surrogates.

Readers take any binary stream with ``read(n)`` (socket makefile,
BytesIO, open file).
"""

from __future__ import annotations

import struct
from enum import Enum
from typing import BinaryIO

__all__ = [
    "FILE_SIZE",
    "FramingError",
    "IncompleteReadError",
    "LENGTH_PREFIX",
    "MAX_FRAME_LENGTH",
    "MAX_UTF_LENGTH",
    "TransferVariant",
    "decode_modified_utf8",
    "encode_clip_header",
    "encode_frame",
    "encode_frame_header",
    "encode_modified_utf8",
    "encode_photo_header",
    "encode_utf",
    "read_exact",
    "read_file_size",
    "read_frame",
    "read_utf",
]

LENGTH_PREFIX = struct.Struct(">I")
FILE_SIZE = struct.Struct(">q")
UTF_LENGTH = struct.Struct(">H")

MAX_FRAME_LENGTH = 0xFFFFFFFF
MAX_UTF_LENGTH = 0xFFFF


class TransferVariant(Enum):
    """File transfer encodings."""

    PHOTO = "photo"  # variant A: name, bytes until close
    CLIP = "clip"  # variant B: name, size, exactly size bytes


class FramingError(ValueError):
    """Malformed or unencodable wire data."""

    pass


class IncompleteReadError(EOFError):
    """The stream ended inside a field.

    Attributes:
        expected: Bytes the field needed.
        partial: Bytes actually read before EOF.
    """

    def __init__(self, expected: int, partial: bytes) -> None:
        super().__init__(f"Expected {expected} bytes, got {len(partial)} before EOF")
        self.expected = expected
        self.partial = partial


# =============================================================================
# Modified UTF-8
# =============================================================================


def encode_modified_utf8(text: str) -> bytes:
    """Encode ``text`` as modified UTF-8 (no length prefix).

    Example:
        >>> encode_modified_utf8("a\\x00b")
        b'a\\xc0\\x80b'
        >>> encode_modified_utf8("\\U0001F600")
        b'\\xed\\xa0\\xbd\\xed\\xb8\\x80'
    """
    out = bytearray()
    for ch in text:
        code = ord(ch)
        if 0x01 <= code <= 0x7F:
            out.append(code)
        elif code <= 0x7FF:
            # includes NUL, which becomes C0 80
            out += bytes((0xC0 | (code >> 6), 0x80 | (code & 0x3F)))
        elif code <= 0xFFFF:
            out += _three_byte(code)
        else:
            code -= 0x10000
            out += _three_byte(0xD800 | (code >> 10))
            out += _three_byte(0xDC00 | (code & 0x3FF))
    return bytes(out)


def _three_byte(code: int) -> bytes:
    return bytes(
        (0xE0 | (code >> 12), 0x80 | ((code >> 6) & 0x3F), 0x80 | (code & 0x3F))
    )


def decode_modified_utf8(data: bytes) -> str:
    """Decode modified UTF-8, joining surrogate pairs.

    Raises:
        FramingError: Malformed byte sequence.
    """
    units: list[int] = []
    i, n = 0, len(data)
    while i < n:
        b = data[i]
        if b < 0x80:
            units.append(b)
            i += 1
        elif b & 0xE0 == 0xC0 and i + 1 < n and data[i + 1] & 0xC0 == 0x80:
            units.append(((b & 0x1F) << 6) | (data[i + 1] & 0x3F))
            i += 2
        elif (
            b & 0xF0 == 0xE0
            and i + 2 < n
            and data[i + 1] & 0xC0 == 0x80
            and data[i + 2] & 0xC0 == 0x80
        ):
            units.append(
                ((b & 0x0F) << 12) | ((data[i + 1] & 0x3F) << 6) | (data[i + 2] & 0x3F)
            )
            i += 3
        else:
            raise FramingError(f"Malformed modified UTF-8 at byte {i}")

    chars: list[str] = []
    j = 0
    while j < len(units):
        unit = units[j]
        if 0xD800 <= unit <= 0xDBFF and j + 1 < len(units):
            low = units[j + 1]
            if 0xDC00 <= low <= 0xDFFF:
                chars.append(chr(0x10000 + ((unit - 0xD800) << 10) + (low - 0xDC00)))
                j += 2
                continue
        chars.append(chr(unit))
        j += 1
    return "".join(chars)


# =============================================================================
# Encoders
# =============================================================================


def encode_frame_header(length: int) -> bytes:
    """4-byte big-endian length prefix.

    Raises:
        FramingError: Length does not fit in u32.
    """
    if not 0 <= length <= MAX_FRAME_LENGTH:
        raise FramingError(f"Frame length {length} does not fit in 32 bits")
    return LENGTH_PREFIX.pack(length)


def encode_frame(payload: bytes) -> bytes:
    """Length prefix followed by the payload."""
    return encode_frame_header(len(payload)) + payload


def encode_utf(text: str) -> bytes:
    """Length-prefixed modified UTF-8 (writeUTF format).

    Raises:
        FramingError: Encoded string longer than 65535 bytes.
    """
    body = encode_modified_utf8(text)
    if len(body) > MAX_UTF_LENGTH:
        raise FramingError(f"Encoded name is {len(body)} bytes, limit is 65535")
    return UTF_LENGTH.pack(len(body)) + body


def encode_photo_header(name: str) -> bytes:
    """Variant A header: the file name only."""
    return encode_utf(name)


def encode_clip_header(name: str, size: int) -> bytes:
    """Variant B header: file name and signed 64-bit size.

    Raises:
        FramingError: Negative size.
    """
    if size < 0:
        raise FramingError(f"File size must not be negative, got {size}")
    return encode_utf(name) + FILE_SIZE.pack(size)


# =============================================================================
# Readers
# =============================================================================


def read_exact(stream: BinaryIO, count: int) -> bytes:
    """Read exactly ``count`` bytes.

    Raises:
        IncompleteReadError: EOF before ``count`` bytes.
    """
    chunks: list[bytes] = []
    remaining = count
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            raise IncompleteReadError(count, b"".join(chunks))
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(stream: BinaryIO) -> bytes | None:
    """Read one length-prefixed frame.

    Returns:
        The payload, or None on a clean EOF at a frame boundary.

    Raises:
        IncompleteReadError: EOF inside a length prefix or payload.
    """
    first = stream.read(LENGTH_PREFIX.size)
    if not first:
        return None
    if len(first) < LENGTH_PREFIX.size:
        first += read_exact(stream, LENGTH_PREFIX.size - len(first))
    (length,) = LENGTH_PREFIX.unpack(first)
    return read_exact(stream, length)


def read_utf(stream: BinaryIO) -> str:
    """Read a writeUTF string."""
    (length,) = UTF_LENGTH.unpack(read_exact(stream, UTF_LENGTH.size))
    return decode_modified_utf8(read_exact(stream, length))


def read_file_size(stream: BinaryIO) -> int:
    """Read a variant B size field.

    Raises:
        FramingError: Negative size.
    """
    (size,) = FILE_SIZE.unpack(read_exact(stream, FILE_SIZE.size))
    if size < 0:
        raise FramingError(f"Negative file size {size}")
    return size
