"""Typed configuration for the shard writer."""
from __future__ import annotations

import importlib
import os
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, get_origin

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .env import load_env
from .errors import ConfigError

load_env()

PLACEHOLDER = "$$"
SUPPORTED_EXTENSIONS = ("json",)

ItemValidator = Callable[[Any], Optional[str]]


class WriteMode(str, Enum):
    CREATE = "create"
    APPEND = "append"
    OVERWRITE = "overwrite"


def _import_object(path: str) -> Any:
    module_name, _, attr = path.partition(":")
    if not attr:
        module_name, _, attr = path.rpartition(".")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError, ValueError) as exc:
        raise ConfigError(f"Cannot import item schema '{path}': {exc}") from exc


def _wrap_callable(func: Callable[[Any], Any]) -> ItemValidator:
    def validate(item: Any) -> Optional[str]:
        try:
            result = func(item)
        except ValueError as exc:
            return str(exc)
        if result is None or result is True:
            return None
        if result is False:
            return "item rejected by item schema"
        return str(result)

    return validate


def _wrap_type(schema: Any) -> ItemValidator:
    try:
        adapter = TypeAdapter(schema)
    except Exception as exc:
        raise ConfigError(f"Unusable item schema {schema!r}: {exc}") from exc

    def validate(item: Any) -> Optional[str]:
        try:
            adapter.validate_python(item)
        except ValidationError as exc:
            return "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'item'}: {err['msg']}"
                for err in exc.errors()
            )
        return None

    return validate


def build_item_validator(schema: Any) -> Optional[ItemValidator]:
    """Normalize a schema (pydantic model, type, callable or import path) to a validator."""
    if schema is None:
        return None
    if isinstance(schema, str):
        schema = _import_object(schema)
    if isinstance(schema, type) or get_origin(schema) is not None:
        return _wrap_type(schema)
    if callable(schema):
        return _wrap_callable(schema)
    raise ConfigError(f"Unsupported item schema: {schema!r}")


class TargetConfig(BaseModel):
    """Where shards go: a local folder, or a folder inside an object storage bucket."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    local: bool = True
    folder: str
    bucket: str | None = None
    endpoint_url: str | None = Field(None, alias="endpointUrl")
    region: str | None = None
    access_key: str | None = Field(None, alias="accessKey")
    secret_key: str | None = Field(None, alias="secretKey")

    @field_validator("folder")
    @classmethod
    def _folder_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("target.folder must not be empty")
        return value

    @model_validator(mode="after")
    def _bucket_required_for_remote(self) -> "TargetConfig":
        if not self.local and not self.bucket:
            raise ValueError("target.bucket is required if target.local is false")
        return self


class WriterConfig(BaseModel):
    """Validated, immutable writer configuration."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )

    target: TargetConfig
    file_extension: str = Field("json", alias="fileExtension")
    key_pattern: str = Field(..., alias="keyPattern")
    max_items_per_shard: int = Field(..., ge=1, alias="maxItemsPerShard")
    mode: WriteMode = WriteMode.CREATE
    lazy_open: bool = Field(True, alias="lazyOpen")
    mkdir_recursive: bool = Field(False, alias="mkdirRecursive")
    item_schema: Optional[ItemValidator] = Field(None, alias="itemSchema")
    pad_digits: int = Field(4, ge=1, alias="padDigits")
    raw_strings: bool = Field(False, alias="rawStrings")
    verbose: bool = False
    debug: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        legacy = data.pop("s3", None)
        target = dict(data.get("target") or {})
        if legacy:
            target.setdefault("folder", legacy.get("folder"))
            if legacy.get("bucket") is not None:
                target.setdefault("bucket", legacy["bucket"])
            if "keyPattern" in legacy:
                data.setdefault("keyPattern", legacy["keyPattern"])
            if "fileType" in legacy:
                data.setdefault("fileExtension", legacy["fileType"])
        if "local" in data:
            target.setdefault("local", data.pop("local"))
        if target:
            data["target"] = target
        renames = {
            "maxItems": "maxItemsPerShard",
            "fileType": "fileExtension",
            "lazy": "lazyOpen",
            "itemValidationSchema": "itemSchema",
        }
        for old, new in renames.items():
            if old in data:
                data.setdefault(new, data.pop(old))

        append = bool(data.pop("append", False))
        overwrite = bool(data.pop("overwrite", False))
        if append and overwrite:
            raise ValueError("append and overwrite cannot both be true")
        flagged = WriteMode.APPEND if append else WriteMode.OVERWRITE if overwrite else None
        if flagged is not None:
            mode = data.get("mode")
            if mode is not None and WriteMode(mode) not in (flagged, WriteMode.CREATE):
                raise ValueError("append and overwrite cannot both be true")
            data["mode"] = flagged
        return data

    @field_validator("file_extension")
    @classmethod
    def _normalize_extension(cls, value: str) -> str:
        value = value.strip().lower().lstrip(".")
        if value not in SUPPORTED_EXTENSIONS:
            raise ValueError(
                f"file_extension must be one of {', '.join(SUPPORTED_EXTENSIONS)}, got '{value}'"
            )
        return value

    @field_validator("item_schema", mode="before")
    @classmethod
    def _normalize_item_schema(cls, value: Any) -> Optional[ItemValidator]:
        return build_item_validator(value)

    @field_validator("key_pattern")
    @classmethod
    def _normalize_key_pattern(cls, value: str, info: ValidationInfo) -> str:
        pattern = value
        suffix = f".{info.data.get('file_extension', SUPPORTED_EXTENSIONS[0])}"
        while pattern.lower().endswith(suffix):
            pattern = pattern[: -len(suffix)]
        if pattern.count(PLACEHOLDER) != 1:
            raise ValueError(
                f"key_pattern must contain the '{PLACEHOLDER}' placeholder exactly once, "
                f"got '{value}'"
            )
        return pattern


def validate_config(raw: WriterConfig | Mapping[str, Any] | None = None, **overrides: Any) -> WriterConfig:
    """Validate and normalize raw writer options; raise ConfigError on any problem."""
    if isinstance(raw, WriterConfig) and not overrides:
        return raw
    if isinstance(raw, WriterConfig):
        payload: dict[str, Any] = raw.model_dump(by_alias=True)
    else:
        payload = dict(raw or {})
    payload.update(overrides)
    try:
        return WriterConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid writer configuration: {exc}") from exc


class ConfigLoader:
    """Loads a YAML writer configuration and validates it."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.config_path = Path(path or os.getenv("SHARDWRITER_CONFIG_PATH", "config/shardwriter.yaml"))
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        self.model = self._parse_yaml()

    def _parse_yaml(self) -> WriterConfig:
        raw: dict
        with self.config_path.open("r", encoding="utf-8") as fp:
            try:
                raw = yaml.safe_load(fp) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Malformed YAML in {self.config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Expected a mapping at the top of {self.config_path}")
        return validate_config(raw)


__all__ = [
    "ConfigLoader",
    "ItemValidator",
    "PLACEHOLDER",
    "TargetConfig",
    "WriteMode",
    "WriterConfig",
    "build_item_validator",
    "validate_config",
]
