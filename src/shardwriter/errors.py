"""Exception hierarchy for the shard writer."""
from __future__ import annotations


class ShardWriterError(Exception):
    """Base exception for all shardwriter errors."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class ConfigError(ShardWriterError, ValueError):
    """Raised at construction when the writer configuration is invalid."""


class RecoverableItemError(ShardWriterError):
    """A failure scoped to a single item; the writer stays usable."""

    def __init__(self, message: str, index: int, item: object = None, context: dict | None = None):
        super().__init__(message, context={"index": index, **(context or {})})
        self.index = index
        self.item = item


class ItemValidationError(RecoverableItemError):
    """Raised when an item is rejected by the configured item schema."""


class SerializationError(RecoverableItemError):
    """Raised when an item cannot be encoded as JSON."""


class SinkIOError(ShardWriterError):
    """Opening, writing to, or closing a sink failed. Always fatal."""


class RotationError(SinkIOError):
    """Closing the full shard or opening the next one failed."""


__all__ = [
    "ShardWriterError",
    "ConfigError",
    "RecoverableItemError",
    "ItemValidationError",
    "SerializationError",
    "SinkIOError",
    "RotationError",
]
