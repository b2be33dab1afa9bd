"""Command line interface for the shard writer."""
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

import typer

from .config import ConfigLoader, WriteMode, WriterConfig, validate_config
from .errors import ConfigError, ShardWriterError
from .shard_inspect import collect_shards, format_shards
from .writer import ArrayWriter, WriteSummary

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

app = typer.Typer(help="Sharded JSON-array writer")


def _iter_lines(source: str) -> Iterator[Tuple[int, str]]:
    if source == "-":
        for lineno, line in enumerate(sys.stdin, start=1):
            yield lineno, line
        return
    with Path(source).open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            yield lineno, line


def _build_config(
    config_path: Optional[Path],
    overrides: Dict[str, Any],
    target_overrides: Dict[str, Any],
) -> WriterConfig:
    raw: Dict[str, Any] = {}
    if config_path is not None:
        raw = ConfigLoader(config_path).model.model_dump(by_alias=True)
    raw.update(overrides)
    if target_overrides:
        raw["target"] = {**(raw.get("target") or {}), **target_overrides}
    return validate_config(raw)


async def _write_stream(
    config: WriterConfig, lines: Iterable[Tuple[int, str]]
) -> Tuple[ArrayWriter, WriteSummary, int]:
    skipped = 0

    def decoded() -> Iterator[Any]:
        nonlocal skipped
        for lineno, line in lines:
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except ValueError as exc:
                skipped += 1
                logger.warning("Skipping line %s: %s", lineno, exc)

    async with ArrayWriter(config) as writer:
        summary = await writer.write_many(decoded())
    return writer, summary, skipped


@app.command()
def write(
    input_path: str = typer.Argument("-", help="JSON Lines file, or - for stdin"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML writer configuration"),
    folder: Optional[str] = typer.Option(None, "--folder"),
    key_pattern: Optional[str] = typer.Option(None, "--key-pattern", help="e.g. events_$$"),
    max_items: Optional[int] = typer.Option(None, "--max-items"),
    mode: Optional[WriteMode] = typer.Option(None, "--mode"),
    bucket: Optional[str] = typer.Option(None, "--bucket", help="Upload to this bucket instead of disk"),
    mkdir: Optional[bool] = typer.Option(None, "--mkdir/--no-mkdir", help="Create the folder recursively"),
    verbose: bool = typer.Option(False, "--verbose"),
    debug: bool = typer.Option(False, "--debug"),
) -> None:
    """Split a JSON Lines stream into JSON-array shard files."""
    overrides: Dict[str, Any] = {}
    if key_pattern is not None:
        overrides["keyPattern"] = key_pattern
    if max_items is not None:
        overrides["maxItemsPerShard"] = max_items
    if mode is not None:
        overrides["mode"] = mode
    if mkdir is not None:
        overrides["mkdirRecursive"] = mkdir
    if verbose:
        overrides["verbose"] = True
    if debug:
        overrides["debug"] = True
        logging.getLogger("shardwriter").setLevel(logging.DEBUG)
    target_overrides: Dict[str, Any] = {}
    if folder is not None:
        target_overrides["folder"] = folder
    if bucket is not None:
        target_overrides["bucket"] = bucket
        target_overrides["local"] = False

    try:
        config = _build_config(config_path, overrides, target_overrides)
    except (ConfigError, FileNotFoundError) as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2)

    try:
        writer, summary, skipped = asyncio.run(_write_stream(config, _iter_lines(input_path)))
    except ShardWriterError as exc:
        typer.echo(f"Write failed: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Wrote {summary.written} item(s) to {len(writer.shard_keys())} shard(s)")
    for key in writer.shard_keys():
        typer.echo(f"  {key}")
    if summary.rejected or skipped:
        typer.echo(f"Rejected {len(summary.rejected)} item(s); skipped {skipped} undecodable line(s)")


@app.command()
def inspect(
    folder: Path = typer.Argument(..., help="Folder holding shard files"),
    key_pattern: Optional[str] = typer.Option(None, "--key-pattern"),
    output_format: str = typer.Option("table", "--format", help="table or json"),
) -> None:
    """List shard files with their item counts without modifying anything."""
    shards = collect_shards(folder, key_pattern=key_pattern)
    if not shards:
        typer.echo("No shard files found.")
        raise typer.Exit(code=0)
    typer.echo(format_shards(shards, output_format=output_format))
    if not all(shard.valid for shard in shards):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
