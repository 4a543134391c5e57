"""Wire protocols, outbound connections and the receiving collector."""

from camstream.transport.connection import (
    DEFAULT_CHUNK_SIZE,
    Connection,
    SocketFactory,
    validate_host,
)
from camstream.transport.framing import (
    FramingError,
    IncompleteReadError,
    TransferVariant,
    decode_modified_utf8,
    encode_clip_header,
    encode_frame,
    encode_frame_header,
    encode_modified_utf8,
    encode_photo_header,
    encode_utf,
    read_exact,
    read_file_size,
    read_frame,
    read_utf,
)

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "Connection",
    "FramingError",
    "IncompleteReadError",
    "SocketFactory",
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
    "validate_host",
]
