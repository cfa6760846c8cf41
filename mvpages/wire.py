"""Length-prefixed MessagePack framing used by the batch endpoints."""

from __future__ import annotations

import struct
from collections.abc import Iterable, Iterator
from typing import Any

import msgpack

_LENGTH = struct.Struct(">I")

FINAL_FRAME = _LENGTH.pack(0)
"""A zero-length frame that marks the end of a batch write request."""


class WireError(ValueError):
    """Raised when a framed message stream cannot be decoded."""


def _default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def encode_frame(message: Any) -> bytes:
    """Serialize ``message`` with MessagePack behind a 4-byte big-endian length."""
    payload = msgpack.packb(message, use_bin_type=True, default=_default)
    return _LENGTH.pack(len(payload)) + payload


def encode_frames(messages: Iterable[Any]) -> bytes:
    """Concatenate the frames of several messages."""
    return b"".join(encode_frame(message) for message in messages)


def iter_frames(data: bytes | bytearray | memoryview) -> Iterator[Any]:
    """Decode each length-prefixed MessagePack message in ``data``."""
    view = memoryview(data)
    offset = 0
    while offset < len(view):
        if len(view) - offset < _LENGTH.size:
            raise WireError("truncated frame length")
        (length,) = _LENGTH.unpack_from(view, offset)
        offset += _LENGTH.size
        if len(view) - offset < length:
            raise WireError("truncated frame body")
        payload = bytes(view[offset : offset + length])
        offset += length
        try:
            yield msgpack.unpackb(payload, raw=False)
        except (ValueError, msgpack.ExtraData, msgpack.FormatError, msgpack.StackError) as exc:
            raise WireError(f"invalid frame: {exc}") from exc