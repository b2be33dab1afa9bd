"""Push-based writer that spreads records over JSON-array shard files."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Callable, Iterable, List, Mapping, Optional, Union

from .config import WriterConfig, validate_config
from .errors import (
    ItemValidationError,
    RecoverableItemError,
    RotationError,
    SerializationError,
    ShardWriterError,
    SinkIOError,
)
from .keys import ShardKeyGenerator
from .sink import CLOSING_BYTES, SEPARATOR, ShardHandle, ShardSink
from .sink_factory import create_shard_sink
from .sink_object import ProgressCallback

logger = logging.getLogger(__name__)


class WriterState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    WRITING = "writing"
    ROTATING = "rotating"
    CLOSED = "closed"


@dataclass
class ShardState:
    """Mutable bookkeeping for the active shard; owned by one ArrayWriter."""

    shard_index: int = 0
    current_key: Optional[str] = None
    items_in_shard: int = 0
    needs_separator: bool = False
    files: List[str] = field(default_factory=list)
    completed_shards: int = 0
    total_written: int = 0


@dataclass(frozen=True)
class WriteSummary:
    written: int
    rejected: tuple[RecoverableItemError, ...] = ()


class ArrayWriter:
    """Writes a stream of records as ``[item,item,...]\\n`` shards.

    Each shard holds at most ``max_items_per_shard`` items; when it is full
    the writer closes it and opens the next key from the key pattern. All
    sink calls run in the default executor and are awaited one at a time,
    so items land in submission order and a caller that awaits every
    ``write`` gets backpressure from the storage medium.

    Usage::

        async with ArrayWriter(config) as writer:
            for record in records:
                await writer.write(record)

    Per-item problems raise ``ItemValidationError`` / ``SerializationError``
    and leave the writer usable. Sink failures raise ``SinkIOError`` (or
    ``RotationError``), release the active shard and close the writer for
    good; later writes are no-ops.
    """

    def __init__(
        self,
        config: Union[WriterConfig, Mapping[str, Any]],
        sink: Optional[ShardSink] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = validate_config(config)
        self.sink = sink or create_shard_sink(self.config, on_progress=on_progress)
        self.keys = ShardKeyGenerator.from_config(self.config)
        self.shard = ShardState()
        self.state = WriterState.IDLE
        self.error: Optional[ShardWriterError] = None
        self._handle: Optional[ShardHandle] = None
        self._lock = asyncio.Lock()
        self._submitted = 0
        self._cancel_pending = False

    async def __aenter__(self) -> "ArrayWriter":
        if not self.config.lazy_open:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self.state is WriterState.CLOSED

    @property
    def destroyed(self) -> bool:
        return self.error is not None

    def items_in_current_shard(self) -> int:
        return self.shard.items_in_shard

    def total_items_written(self) -> int:
        """Items written across all shards.

        Always equal to ``completed_shards * max_items_per_shard + items_in_shard``
        because shards only rotate when full.
        """
        return self.shard.total_written

    def shard_keys(self) -> List[str]:
        return list(self.shard.files)

    def current_target(self) -> Optional[dict]:
        if self.shard.current_key is None:
            return None
        location = self.sink.location(self.shard.current_key)
        if self.config.target.local:
            return {"file_path": location}
        return {"bucket": self.config.target.bucket, "key": location}

    async def open(self) -> None:
        """Open the first shard now instead of on the first write."""
        async with self._lock:
            self._cancel_pending = False
            if self.state is WriterState.IDLE:
                await self._guard(self._open_shard())
            self._resume_cancellation()

    async def write(self, item: Any) -> bool:
        """Write one item; return False if the writer is already closed.

        Cancelling the caller does not abandon the item: once its bytes are
        handed to the sink the write completes and is counted before the
        cancellation propagates.
        """
        async with self._lock:
            self._cancel_pending = False
            written = await self._write_item(item)
            self._resume_cancellation()
            return written

    async def _write_item(self, item: Any) -> bool:
        if self.state is WriterState.CLOSED:
            self._debug("Ignoring write after close")
            return False
        index = self._submitted
        self._submitted += 1
        if self.state is WriterState.IDLE:
            await self._guard(self._open_shard())

        self._validate(item, index)
        data = self._serialize(item, index)

        if self.shard.items_in_shard >= self.config.max_items_per_shard:
            await self._guard(self._rotate(), rotation=True)

        payload = SEPARATOR + data if self.shard.needs_separator else data
        self.state = WriterState.WRITING
        await self._guard(self._run(self._handle.write, payload))
        self.state = WriterState.OPEN
        self.shard.needs_separator = True
        self.shard.items_in_shard += 1
        self.shard.total_written += 1
        return True

    async def write_many(self, items: Union[Iterable[Any], AsyncIterable[Any]]) -> WriteSummary:
        """Write every item, collecting per-item rejections instead of raising them."""
        written = 0
        rejected: List[RecoverableItemError] = []

        async def _one(item: Any) -> None:
            nonlocal written
            try:
                if await self.write(item):
                    written += 1
            except RecoverableItemError as exc:
                rejected.append(exc)

        if hasattr(items, "__aiter__"):
            async for item in items:
                await _one(item)
        else:
            for item in items:
                await _one(item)
        return WriteSummary(written=written, rejected=tuple(rejected))

    async def close(self) -> None:
        """Finish the current shard and close the writer. Safe to call repeatedly."""
        async with self._lock:
            if self.state is WriterState.CLOSED:
                return
            self._cancel_pending = False
            if self._handle is not None:
                self._log("Closing shard %s", self.shard.files[-1])
                await self._guard(self._run(self._handle.close, CLOSING_BYTES))
                self._handle = None
            self.state = WriterState.CLOSED
            self._log(
                "Writer closed: %s item(s) in %s shard(s)",
                self.shard.total_written,
                len(self.shard.files),
            )
            self._resume_cancellation()

    # internals

    async def _run(self, func: Callable, *args: Any) -> Any:
        """Run a blocking sink call in the executor.

        A running executor call cannot be interrupted, so a cancelled caller
        still waits for it here and the writer records its effect. The
        cancellation is re-raised by ``_resume_cancellation`` once the locked
        step is complete.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, func, *args)
        while True:
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                if future.cancelled():
                    raise
                self._cancel_pending = True

    def _resume_cancellation(self) -> None:
        if self._cancel_pending:
            self._cancel_pending = False
            raise asyncio.CancelledError()

    async def _open_shard(self) -> None:
        index, key = await self._run(self.keys.find_free_key, self.sink.exists, self.shard.shard_index)
        self._log("Opening shard %s", self.sink.location(key))
        self._handle = await self._run(self.sink.open, key, self.config.mode)
        self.shard.shard_index = index
        self.shard.current_key = key
        self.shard.items_in_shard = 0
        self.shard.needs_separator = self._handle.needs_separator
        self.shard.files.append(self.sink.location(key))
        self.state = WriterState.OPEN
        self._debug("Shard %s needs_separator=%s", key, self.shard.needs_separator)

    async def _rotate(self) -> None:
        self.state = WriterState.ROTATING
        self._log("Shard %s is full, rotating", self.shard.files[-1])
        await self._run(self._handle.close, CLOSING_BYTES)
        self._handle = None
        self.shard.completed_shards += 1
        self.shard.shard_index += 1
        self.shard.items_in_shard = 0
        self.shard.needs_separator = False
        await self._open_shard()

    async def _guard(self, operation, rotation: bool = False) -> Any:
        """Await a sink operation; any failure destroys the writer."""
        try:
            return await operation
        except Exception as exc:
            if rotation and not isinstance(exc, RotationError):
                context = exc.context if isinstance(exc, ShardWriterError) else {}
                fatal: ShardWriterError = RotationError(f"Shard rotation failed: {exc}", context=context)
            elif isinstance(exc, SinkIOError):
                fatal = exc
            else:
                fatal = SinkIOError(f"Sink operation failed: {exc}")
            await self._destroy(fatal)
            if fatal is exc:
                raise
            raise fatal from exc

    async def _destroy(self, exc: ShardWriterError) -> None:
        self.error = exc
        logger.error("Shard writer failed, closing: %s", exc)
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await self._run(handle.abort)
            except Exception as abort_exc:
                logger.error("Releasing shard %s failed: %s", handle.key, abort_exc)
        self.state = WriterState.CLOSED

    def _validate(self, item: Any, index: int) -> None:
        validator = self.config.item_schema
        if validator is None:
            return
        try:
            value = item.decode("utf-8") if isinstance(item, (bytes, bytearray)) else item
        except UnicodeDecodeError as exc:
            raise ItemValidationError(f"Item is not valid UTF-8: {exc}", index=index, item=item) from exc
        try:
            reason = validator(value)
        except Exception as exc:
            logger.warning("Rejected item %s: validator raised %r", index, exc)
            raise ItemValidationError(
                f"Item schema raised {type(exc).__name__}: {exc}", index=index, item=item
            ) from exc
        if reason is not None:
            logger.warning("Rejected item %s: %s", index, reason)
            raise ItemValidationError(f"Item failed validation: {reason}", index=index, item=item)

    def _serialize(self, item: Any, index: int) -> bytes:
        if isinstance(item, (bytes, bytearray)):
            return bytes(item)
        if isinstance(item, str) and self.config.raw_strings:
            return item.encode("utf-8")
        try:
            return json.dumps(
                item, ensure_ascii=False, allow_nan=False, separators=(",", ":")
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            logger.warning("Cannot serialize item %s: %s", index, exc)
            raise SerializationError(f"Item is not JSON serializable: {exc}", index=index, item=item) from exc

    def _log(self, message: str, *args: Any) -> None:
        if self.config.verbose:
            logger.info(message, *args)

    def _debug(self, message: str, *args: Any) -> None:
        if self.config.debug:
            logger.debug(message, *args)


__all__ = [
    "ArrayWriter",
    "ShardState",
    "WriteSummary",
    "WriterState",
]
