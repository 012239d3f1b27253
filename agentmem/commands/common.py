from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from typing import Any

import typer
from rich import print
from rich.markup import escape

from ..db import EncryptionKeyError, MigrationError, StoreBusyError
from ..store import MemoryStore

# Three-tier exit status for every maintenance command.
EXIT_OK = 0
EXIT_PROBLEM = 1
EXIT_REFUSED = 2

StoreFactory = Callable[..., MemoryStore]


def refuse(message: str) -> typer.Exit:
    print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=EXIT_REFUSED)


def open_store_or_exit(
    store_from_path: StoreFactory,
    db_path: str | None,
    *,
    read_only: bool = False,
) -> MemoryStore:
    """Open the store, turning every reason it cannot be opened into exit code 2."""

    try:
        return store_from_path(db_path, read_only=read_only)
    except FileNotFoundError as exc:
        raise refuse(f"Store not found: {exc}") from exc
    except EncryptionKeyError as exc:
        raise refuse(f"Cannot open store: {exc}") from exc
    except MigrationError as exc:
        raise refuse(f"Schema migration failed: {exc}") from exc
    except StoreBusyError as exc:
        raise refuse(f"Store is busy: {exc}") from exc
    except (sqlite3.DatabaseError, RuntimeError) as exc:
        raise refuse(f"Cannot open store: {exc}") from exc


def emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


def compact_lines(text: str, limit: int) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return ""
    if len(lines) > limit:
        lines = lines[:limit] + [f"... (+{len(lines) - limit} more)"]
    return "; ".join(lines)
