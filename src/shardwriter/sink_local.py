"""Filesystem-backed ShardSink implementation."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO

from .config import WriteMode
from .errors import SinkIOError
from .sink import (
    CLOSING_BYTES,
    OPEN_BRACKET,
    ShardHandle,
    ShardSink,
    closing_offset,
    separator_needed,
)

logger = logging.getLogger(__name__)


def _resume_offset(path: Path, fp: BinaryIO, size: int) -> tuple[int, bytes]:
    """Return the offset of the closing bracket and the byte before it."""
    fp.seek(max(size - 3, 0))
    tail = fp.read()
    try:
        offset = closing_offset(tail, size)
    except ValueError as exc:
        raise SinkIOError(
            f"Refusing to append: {exc}", context={"path": str(path), "tail": tail}
        ) from exc
    fp.seek(offset - 1)
    return offset, fp.read(1)


class LocalFileShardHandle(ShardHandle):
    """Writes one shard to a local file."""

    def __init__(self, path: Path, key: str, fp: BinaryIO, needs_separator: bool) -> None:
        self.path = path
        self.key = key
        self.needs_separator = needs_separator
        self._fp = fp

    def _ensure_open(self) -> BinaryIO:
        if self._fp is None:
            raise SinkIOError("Shard already closed; cannot write.", context={"path": str(self.path)})
        return self._fp

    def write(self, data: bytes) -> None:
        fp = self._ensure_open()
        try:
            fp.write(data)
            fp.flush()
        except OSError as exc:
            raise SinkIOError(f"Write failed: {exc}", context={"path": str(self.path)}) from exc

    def close(self, trailing: bytes = CLOSING_BYTES) -> None:
        fp = self._ensure_open()
        try:
            fp.write(trailing)
            fp.flush()
            os.fsync(fp.fileno())
        except OSError as exc:
            self._fp = None
            try:
                fp.close()
            except OSError as close_exc:
                logger.debug("Closing %s after a failed write also failed: %s", self.path, close_exc)
            raise SinkIOError(f"Close failed: {exc}", context={"path": str(self.path)}) from exc
        self._release()

    def abort(self) -> None:
        if self._fp is not None:
            self._release()

    def _release(self) -> None:
        fp, self._fp = self._fp, None
        try:
            fp.close()
        except OSError as exc:
            raise SinkIOError(f"Close failed: {exc}", context={"path": str(self.path)}) from exc


class LocalFileShardSink(ShardSink):
    """Shard sink that writes ``<folder>/<key>`` files."""

    def __init__(self, folder: Path | str, mkdir_recursive: bool = False, debug: bool = False) -> None:
        self.folder = Path(folder)
        self.mkdir_recursive = mkdir_recursive
        self.debug = debug
        self._folder_ready = False

    def location(self, key: str) -> str:
        return str(self.folder / key)

    def exists(self, key: str) -> bool:
        return (self.folder / key).exists()

    def ensure_folder(self) -> None:
        if self._folder_ready:
            return
        if not self.folder.is_dir():
            try:
                self.folder.mkdir(parents=self.mkdir_recursive, exist_ok=True)
            except OSError as exc:
                raise SinkIOError(
                    f"Cannot create output folder: {exc}",
                    context={"folder": str(self.folder), "mkdir_recursive": self.mkdir_recursive},
                ) from exc
        self._folder_ready = True

    def open(self, key: str, mode: WriteMode) -> LocalFileShardHandle:
        self.ensure_folder()
        path = self.folder / key
        if mode is WriteMode.APPEND and path.exists():
            return self._open_append(path, key)
        fp = None
        try:
            fp = path.open("wb")
            fp.write(OPEN_BRACKET)
            fp.flush()
        except OSError as exc:
            if fp is not None:
                fp.close()
            raise SinkIOError(f"Open failed: {exc}", context={"path": str(path)}) from exc
        if self.debug:
            logger.debug("Opened %s in write mode", path)
        return LocalFileShardHandle(path, key, fp, needs_separator=False)

    def _open_append(self, path: Path, key: str) -> LocalFileShardHandle:
        try:
            fp = path.open("r+b")
        except OSError as exc:
            raise SinkIOError(f"Open failed: {exc}", context={"path": str(path)}) from exc
        try:
            size = os.fstat(fp.fileno()).st_size
            if size == 0:
                fp.write(OPEN_BRACKET)
                fp.flush()
                return LocalFileShardHandle(path, key, fp, needs_separator=False)
            offset, probe = _resume_offset(path, fp, size)
            fp.seek(offset)
            fp.truncate()
        except OSError as exc:
            fp.close()
            raise SinkIOError(f"Open failed: {exc}", context={"path": str(path)}) from exc
        except SinkIOError:
            fp.close()
            raise
        needs_separator = separator_needed(probe)
        if self.debug:
            logger.debug(
                "Opened %s in append mode size=%s probe=%r needs_separator=%s",
                path,
                size,
                probe,
                needs_separator,
            )
        return LocalFileShardHandle(path, key, fp, needs_separator=needs_separator)


__all__ = [
    "LocalFileShardHandle",
    "LocalFileShardSink",
]
