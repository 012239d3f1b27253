from __future__ import annotations

from dataclasses import asdict

import typer
from rich import print
from rich.markup import escape

from ..db import StoreBusyError
from .common import (
    EXIT_OK,
    EXIT_PROBLEM,
    emit_json,
    format_bytes,
    open_store_or_exit,
    refuse,
)


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the store and apply migrations (no-op if already current)."""

    store = open_store_or_exit(store_from_path, db_path)
    try:
        print(f"Initialized store at {store.db_path}")
    finally:
        store.close()


def status_cmd(*, store_from_path, worker_handle, db_path: str | None, as_json: bool) -> None:
    store = open_store_or_exit(store_from_path, db_path, read_only=True)
    try:
        try:
            status = store.status()
        except StoreBusyError as exc:
            raise refuse(f"Store is busy: {exc}") from exc
    finally:
        store.close()
    worker = worker_handle(db_path).status()

    if as_json:
        payload = asdict(status)
        payload["worker"] = asdict(worker)
        emit_json(payload)
    else:
        print("[bold]Store[/bold]")
        print(f"- Path: {escape(status.path)}")
        print(f"- Size: {format_bytes(status.size_bytes)} (WAL {format_bytes(status.wal_bytes)})")
        print(f"- Schema: v{status.schema_version} of v{status.latest_version}")
        print(f"- Pending migrations: {status.pending_migrations}")
        triggers = ", ".join(status.missing_triggers) if status.missing_triggers else "none missing"
        print(f"- FTS triggers: {triggers}")
        print(f"- Integrity: {'ok' if status.integrity_ok else '[red]FAILED[/red]'}")
        for table, ok in status.fts_ok.items():
            print(f"- {table}: {'ok' if ok else '[red]out of sync[/red]'}")
        for table, count in status.counts.items():
            print(f"- {table}: {count}")
        state = "running" if worker.running else "stopped"
        pid = f" (pid {worker.pid})" if worker.pid else ""
        print(f"\n[bold]Worker[/bold]\n- {state}{pid}: {worker.detail}")
        if status.problems:
            print("\n[yellow]Problems[/yellow]")
            for problem in status.problems:
                print(f"- {escape(problem)}")
    raise typer.Exit(code=EXIT_PROBLEM if status.problems else EXIT_OK)


def maintain_cmd(
    *,
    store_from_path,
    db_path: str | None,
    prune: bool,
    rescrub: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Run FTS upkeep, integrity checks, pruning and a WAL checkpoint."""

    store = open_store_or_exit(store_from_path, db_path)
    try:
        try:
            report = store.maintain(prune=prune, rescrub=rescrub, dry_run=dry_run)
        except StoreBusyError as exc:
            raise refuse(f"Store is busy: {exc}") from exc
    finally:
        store.close()

    if as_json:
        emit_json(asdict(report))
    else:
        label = "Maintenance (dry run)" if dry_run else "Maintenance"
        print(f"[bold]{label}[/bold]")
        print(f"- FTS optimized: {'yes' if report.optimized else 'no'}")
        for table, ok in report.fts_ok.items():
            print(f"- {table}: {'ok' if ok else '[red]out of sync[/red]'}")
        if report.rebuilt:
            print(f"- Rebuilt: {', '.join(report.rebuilt)}")
        print(f"- Integrity: {'ok' if report.integrity_ok else '[red]FAILED[/red]'}")
        print(f"- Foreign key violations: {report.foreign_key_violations}")
        verb = "would prune" if dry_run else "pruned"
        print(f"- Observations {verb}: {report.pruned_observations}")
        if rescrub:
            verb = "would re-scrub" if dry_run else "re-scrubbed"
            print(f"- Observations {verb}: {report.rescrubbed}")
        print(f"- WAL checkpointed: {'yes' if report.checkpointed else 'no'}")
        if report.problems:
            print("\n[yellow]Problems[/yellow]")
            for problem in report.problems:
                print(f"- {escape(problem)}")
    raise typer.Exit(code=EXIT_PROBLEM if report.problems else EXIT_OK)
