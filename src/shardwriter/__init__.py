"""Sharded streaming JSON-array writer."""
from importlib.metadata import version, PackageNotFoundError

from .config import ConfigLoader, TargetConfig, WriteMode, WriterConfig, validate_config
from .errors import (
    ConfigError,
    ItemValidationError,
    RecoverableItemError,
    RotationError,
    SerializationError,
    ShardWriterError,
    SinkIOError,
)
from .keys import ShardKeyGenerator
from .writer import ArrayWriter, WriterState, WriteSummary

try:
    __version__ = version("shardwriter")
except PackageNotFoundError:  # pragma: no cover - during local dev without install
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "ArrayWriter",
    "ConfigError",
    "ConfigLoader",
    "ItemValidationError",
    "RecoverableItemError",
    "RotationError",
    "SerializationError",
    "ShardKeyGenerator",
    "ShardWriterError",
    "SinkIOError",
    "TargetConfig",
    "WriteMode",
    "WriteSummary",
    "WriterConfig",
    "WriterState",
    "validate_config",
]
