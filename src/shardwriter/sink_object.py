"""S3-compatible ShardSink implementation."""
from __future__ import annotations

import logging
import posixpath
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from boto3.exceptions import S3UploadFailedError
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

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

ProgressCallback = Callable[[str, int], None]

DEFAULT_HIGH_WATER_MARK = 8 * 1024 * 1024
_NOT_FOUND_CODES = ("404", "NotFound", "NoSuchKey")
_UPLOAD_ERRORS = (ClientError, BotoCoreError, S3UploadFailedError, OSError)


class PassThroughBuffer:
    """Blocking byte pipe from the writer to a managed upload.

    ``write`` blocks while more than ``high_water_mark`` bytes are waiting to
    be read. ``read`` keeps draining while it waits for ``size`` bytes, so a
    reader asking for more than the high-water mark cannot starve the writer.
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._high_water_mark = high_water_mark
        self._eof = False
        self._aborted = False

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def write(self, data: bytes) -> int:
        with self._cond:
            while len(self._buffer) >= self._high_water_mark and not self._aborted:
                self._cond.wait()
            if self._aborted:
                raise OSError("upload stream aborted")
            if self._eof:
                raise ValueError("write to a finished upload stream")
            self._buffer.extend(data)
            self._cond.notify_all()
        return len(data)

    def read(self, size: int = -1) -> bytes:
        out = bytearray()
        with self._cond:
            while True:
                if self._aborted:
                    raise OSError("upload stream aborted")
                wanted = len(self._buffer) if size < 0 else min(size - len(out), len(self._buffer))
                if wanted:
                    out += self._buffer[:wanted]
                    del self._buffer[:wanted]
                    self._cond.notify_all()
                if 0 <= size <= len(out) or (self._eof and not self._buffer):
                    return bytes(out)
                self._cond.wait()

    def finish(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def abort(self) -> None:
        with self._cond:
            self._aborted = True
            self._cond.notify_all()


class ObjectStorageShardHandle(ShardHandle):
    """Streams one shard into a managed (multipart) upload."""

    def __init__(
        self,
        client: BaseClient,
        bucket: str,
        object_key: str,
        key: str,
        needs_separator: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        verbose: bool = False,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.object_key = object_key
        self.key = key
        self.needs_separator = needs_separator
        self.bytes_transferred = 0
        self._on_progress = on_progress
        self._verbose = verbose
        self._progress_lock = threading.Lock()
        self._stream = PassThroughBuffer(high_water_mark)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shardwriter-upload")
        self._upload: Future = self._executor.submit(self._run_upload)
        self._released = False

    def _context(self) -> dict:
        return {"bucket": self.bucket, "key": self.object_key}

    def _run_upload(self) -> None:
        try:
            self.client.upload_fileobj(
                Fileobj=self._stream,
                Bucket=self.bucket,
                Key=self.object_key,
                Callback=self._record_progress,
            )
        except BaseException:
            # Unblock a writer waiting on the high-water mark.
            self._stream.abort()
            raise

    def _record_progress(self, amount: int) -> None:
        with self._progress_lock:
            self.bytes_transferred += amount
            total = self.bytes_transferred
        if self._verbose:
            logger.info("Upload progress %s/%s: %s bytes", self.bucket, self.object_key, total)
        if self._on_progress is not None:
            self._on_progress(self.object_key, total)

    def _ensure_open(self) -> None:
        if self._released:
            raise SinkIOError("Shard already closed; cannot write.", context=self._context())
        if self._upload.done() and self._upload.exception() is not None:
            exc = self._upload.exception()
            raise SinkIOError(f"Upload failed: {exc}", context=self._context()) from exc

    def write(self, data: bytes) -> None:
        self._ensure_open()
        try:
            self._stream.write(data)
        except OSError as exc:
            cause = self._upload.exception() if self._upload.done() else None
            raise SinkIOError(
                f"Upload failed: {cause or exc}", context=self._context()
            ) from (cause or exc)

    def close(self, trailing: bytes = CLOSING_BYTES) -> None:
        self.write(trailing)
        self._stream.finish()
        self._released = True
        try:
            self._upload.result()
        except _UPLOAD_ERRORS as exc:
            raise SinkIOError(f"Upload failed: {exc}", context=self._context()) from exc
        finally:
            self._executor.shutdown(wait=False)

    def abort(self) -> None:
        if self._released:
            return
        self._released = True
        self._stream.abort()
        exc = self._upload.exception()
        if exc is not None:
            logger.debug("Aborted upload %s/%s: %s", self.bucket, self.object_key, exc)
        self._executor.shutdown(wait=False)


class ObjectStorageShardSink(ShardSink):
    """Shard sink that uploads ``<bucket>/<folder>/<key>`` objects."""

    def __init__(
        self,
        client: BaseClient,
        bucket: str,
        folder: str = "",
        on_progress: Optional[ProgressCallback] = None,
        verbose: bool = False,
        debug: bool = False,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.folder = folder.strip("/")
        self.on_progress = on_progress
        self.verbose = verbose
        self.debug = debug
        self.high_water_mark = high_water_mark

    def object_key(self, key: str) -> str:
        return posixpath.join(self.folder, key) if self.folder else key

    def location(self, key: str) -> str:
        return self.object_key(key)

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.object_key(key))
            return True
        except ClientError as exc:
            if exc.response["Error"].get("Code") in _NOT_FOUND_CODES:
                return False
            raise SinkIOError(
                f"Existence check failed: {exc}",
                context={"bucket": self.bucket, "key": self.object_key(key)},
            ) from exc
        except BotoCoreError as exc:
            raise SinkIOError(
                f"Existence check failed: {exc}",
                context={"bucket": self.bucket, "key": self.object_key(key)},
            ) from exc

    def open(self, key: str, mode: WriteMode) -> ObjectStorageShardHandle:
        prefix = OPEN_BRACKET
        needs_separator = False
        if mode is WriteMode.APPEND:
            existing = self._read_existing(key)
            if existing:
                try:
                    offset = closing_offset(existing[-3:], len(existing))
                except ValueError as exc:
                    raise SinkIOError(
                        f"Refusing to append: {exc}",
                        context={"bucket": self.bucket, "key": self.object_key(key)},
                    ) from exc
                prefix = existing[:offset]
                needs_separator = separator_needed(existing[offset - 1 : offset])
                if self.debug:
                    logger.debug(
                        "Re-streaming %s bytes of %s needs_separator=%s",
                        offset,
                        self.object_key(key),
                        needs_separator,
                    )
        handle = ObjectStorageShardHandle(
            self.client,
            self.bucket,
            self.object_key(key),
            key,
            needs_separator=needs_separator,
            on_progress=self.on_progress,
            verbose=self.verbose,
            high_water_mark=self.high_water_mark,
        )
        try:
            handle.write(prefix)
        except SinkIOError:
            handle.abort()
            raise
        return handle

    def _read_existing(self, key: str) -> bytes:
        """Return the stored body of ``key``, or ``b""`` if there is none."""
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=self.object_key(key))
            return obj["Body"].read()
        except ClientError as exc:
            if exc.response["Error"].get("Code") in _NOT_FOUND_CODES:
                return b""
            raise SinkIOError(
                f"Reading existing shard failed: {exc}",
                context={"bucket": self.bucket, "key": self.object_key(key)},
            ) from exc
        except BotoCoreError as exc:
            raise SinkIOError(
                f"Reading existing shard failed: {exc}",
                context={"bucket": self.bucket, "key": self.object_key(key)},
            ) from exc


__all__ = [
    "ObjectStorageShardHandle",
    "ObjectStorageShardSink",
    "PassThroughBuffer",
]
