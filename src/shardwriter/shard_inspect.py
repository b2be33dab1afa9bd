"""Helpers for listing and checking shard files on the local filesystem."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from tabulate import tabulate

from .config import PLACEHOLDER


@dataclass
class ShardInfo:
    path: Path
    size: int
    item_count: Optional[int]
    valid: bool
    error: Optional[str] = None


def _key_regex(key_pattern: str, file_extension: str) -> re.Pattern:
    suffix = f".{file_extension.lstrip('.')}"
    if key_pattern.endswith(suffix):
        key_pattern = key_pattern[: -len(suffix)]
    head, _, tail = key_pattern.partition(PLACEHOLDER)
    return re.compile(f"^{re.escape(head)}(\\d+){re.escape(tail)}{re.escape(suffix)}$")


def inspect_shard(path: Path) -> ShardInfo:
    size = path.stat().st_size
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        return ShardInfo(path=path, size=size, item_count=None, valid=False, error=str(exc))
    if not isinstance(payload, list):
        return ShardInfo(path=path, size=size, item_count=None, valid=False, error="not a JSON array")
    return ShardInfo(path=path, size=size, item_count=len(payload), valid=True)


def collect_shards(
    folder: Path | str,
    key_pattern: Optional[str] = None,
    file_extension: str = "json",
) -> List[ShardInfo]:
    """Return shard files in ``folder`` ordered by shard index (or name without a pattern)."""
    root = Path(folder)
    if not root.is_dir():
        return []
    if key_pattern is None:
        paths = sorted(root.glob(f"*.{file_extension.lstrip('.')}"))
    else:
        regex = _key_regex(key_pattern, file_extension)
        matches = []
        for child in root.iterdir():
            match = regex.match(child.name)
            if match and child.is_file():
                matches.append((int(match.group(1)), child))
        paths = [path for _, path in sorted(matches)]
    return [inspect_shard(path) for path in paths if path.is_file()]


def format_shards(shards: Iterable[ShardInfo], output_format: str = "table") -> str:
    rows = list(shards)
    if not rows:
        return "No shard files found."
    if output_format == "json":
        payload = [
            {
                "path": str(row.path),
                "size": row.size,
                "item_count": row.item_count,
                "valid": row.valid,
                "error": row.error,
            }
            for row in rows
        ]
        return json.dumps(payload, indent=2)

    table_data = [
        [
            str(row.path),
            row.size,
            row.item_count if row.item_count is not None else "-",
            "yes" if row.valid else "no",
            row.error or "-",
        ]
        for row in rows
    ]
    headers = ["path", "size", "items", "valid", "error"]
    return tabulate(table_data, headers=headers, tablefmt="plain")


__all__ = ["ShardInfo", "collect_shards", "format_shards", "inspect_shard"]
