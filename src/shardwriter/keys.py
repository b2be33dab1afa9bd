"""Shard key naming and collision probing."""
from __future__ import annotations

from typing import Callable, Tuple

from .config import PLACEHOLDER, WriteMode, WriterConfig

KeyProbe = Callable[[str], bool]


class ShardKeyGenerator:
    """Formats successive shard keys from a key pattern.

    ``events_$$`` with extension ``json`` yields ``events_0000.json``,
    ``events_0001.json``, ... The index is zero-padded to ``pad_digits``
    but never truncated, so index 12345 renders as ``events_12345.json``.
    """

    def __init__(
        self,
        key_pattern: str,
        file_extension: str = "json",
        pad_digits: int = 4,
        mode: WriteMode = WriteMode.CREATE,
    ) -> None:
        self.key_pattern = key_pattern
        self.file_extension = file_extension
        self.pad_digits = pad_digits
        self.mode = WriteMode(mode)

    @classmethod
    def from_config(cls, config: WriterConfig) -> "ShardKeyGenerator":
        return cls(
            key_pattern=config.key_pattern,
            file_extension=config.file_extension,
            pad_digits=config.pad_digits,
            mode=config.mode,
        )

    @staticmethod
    def format_key(index: int, key_pattern: str, file_extension: str, pad_digits: int = 4) -> str:
        if index < 0:
            raise ValueError(f"shard index must be >= 0, got {index}")
        stem = key_pattern.replace(PLACEHOLDER, str(index).zfill(pad_digits), 1)
        return f"{stem}.{file_extension}"

    def next(self, shard_index: int) -> str:
        """Return the key for ``shard_index``."""
        return self.format_key(shard_index, self.key_pattern, self.file_extension, self.pad_digits)

    def find_free_key(self, probe: KeyProbe, shard_index: int = 0) -> Tuple[int, str]:
        """Return ``(index, key)`` of the first key at or after ``shard_index`` not taken.

        In append and overwrite mode existing keys are reused on purpose, so
        the first candidate is returned without probing.
        """
        key = self.next(shard_index)
        if self.mode in (WriteMode.APPEND, WriteMode.OVERWRITE):
            return shard_index, key
        while probe(key):
            shard_index += 1
            key = self.next(shard_index)
        return shard_index, key


__all__ = ["KeyProbe", "ShardKeyGenerator"]
