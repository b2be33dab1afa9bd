"""Utility wrappers for loading .env files with helpful errors."""
from __future__ import annotations

import os


def load_env(*args, **kwargs):
    """Proxy to python-dotenv that surfaces actionable errors when missing."""
    try:
        from dotenv import load_dotenv as _load_dotenv
    except ModuleNotFoundError as exc:  # pragma: no cover - dependency missing
        raise RuntimeError(
            "python-dotenv is not installed. Install project dependencies with "
            "`pip install -e '.[dev]'` before running commands."
        ) from exc
    return _load_dotenv(*args, **kwargs)


def env_or(value: str | None, name: str) -> str | None:
    """Return ``value`` if set, otherwise the environment variable ``name``."""
    if value:
        return value
    return os.getenv(name) or None


__all__ = ["load_env", "env_or"]
