from __future__ import annotations

import json
import logging
from typing import Any, NoReturn

import typer
from rich import print
from rich.logging import RichHandler
from rich.markup import escape

from memkeep.config import read_config_file, write_config_file
from memkeep.db import DEFAULT_DB_PATH
from memkeep.errors import MemoryStoreError
from memkeep.store import MemoryStore


def store_from_path(db_path: str | None) -> MemoryStore:
    return MemoryStore(db_path or DEFAULT_DB_PATH)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


def exit_with_error(exc: MemoryStoreError) -> NoReturn:
    print(f"[red]{escape(str(exc))}[/red]")
    raise typer.Exit(code=1) from exc


def read_config_or_exit() -> dict[str, Any]:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def write_config_or_exit(data: dict[str, Any]) -> None:
    try:
        write_config_file(data)
    except OSError as exc:
        print(f"[red]Failed to write config: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def parse_metadata_or_exit(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        print(f"[red]--metadata must be JSON: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    if not isinstance(parsed, dict):
        print("[red]--metadata must be a JSON object[/red]")
        raise typer.Exit(code=1)
    return parsed


def print_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def format_limit(value: float) -> str:
    if value == float("inf"):
        return "unlimited"
    return f"{int(value):,}"
