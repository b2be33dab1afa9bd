"""Backend-neutral interfaces for shard sinks."""
from __future__ import annotations

from typing import Protocol

from .config import WriteMode

OPEN_BRACKET = b"["
CLOSING_BYTES = b"]\n"
SEPARATOR = b","

# Bytes that may directly precede the closing bracket of an array that
# still accepts a new element without a separator.
_NO_SEPARATOR_BEFORE = (b"[", b",")


def closing_offset(tail: bytes, size: int) -> int:
    """Return the offset of the closing bracket of a shard of ``size`` bytes ending in ``tail``.

    Raises ValueError if the shard does not end like an array this writer closed.
    """
    if tail.endswith(CLOSING_BYTES):
        offset = size - len(CLOSING_BYTES)
    elif tail.endswith(b"]"):
        offset = size - 1
    else:
        raise ValueError("existing shard does not end with a closing bracket")
    if offset <= 0:
        raise ValueError("existing shard has no opening bracket")
    return offset


def separator_needed(probe_byte: bytes) -> bool:
    """Decide, from the byte just before ``]\\n``, whether the next item needs a comma.

    Assumes the existing shard was closed with ``]\\n`` by this writer; a
    file edited by hand so that it ends differently can fool this check.
    """
    return probe_byte not in _NO_SEPARATOR_BEFORE


class ShardHandle(Protocol):
    """Mutable handle for writing exactly one shard."""

    key: str
    needs_separator: bool

    def write(self, data: bytes) -> None:
        """Append ``data``; return only once the medium has accepted it."""

    def close(self, trailing: bytes = CLOSING_BYTES) -> None:
        """Write ``trailing`` and release the handle; remote handles wait for the upload."""

    def abort(self) -> None:
        """Release the handle without writing the closing bytes."""


class ShardSink(Protocol):
    """Storage backend the writer opens shards on."""

    def exists(self, key: str) -> bool:
        """Return True if a shard with this key is already stored."""

    def open(self, key: str, mode: WriteMode) -> ShardHandle:
        """Open ``key`` for writing according to ``mode``."""

    def location(self, key: str) -> str:
        """Human readable location of ``key`` for logs and ``ArrayWriter.shard_keys``."""


__all__ = [
    "CLOSING_BYTES",
    "OPEN_BRACKET",
    "SEPARATOR",
    "ShardHandle",
    "ShardSink",
    "closing_offset",
    "separator_needed",
]
