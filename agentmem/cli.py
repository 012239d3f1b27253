from __future__ import annotations

import logging
import sys

import typer
from rich import print

from . import __version__
from .commands.common import refuse
from .commands.maintenance_cmds import init_db_cmd, maintain_cmd, status_cmd
from .commands.memory_cmds import context_cmd, query_cmd, summarize_cmd
from .commands.worker_cmds import (
    worker_run_cmd,
    worker_start_cmd,
    worker_status_cmd,
    worker_stop_cmd,
)
from .config import AgentMemConfig, load_config
from .hook import handle_hook_payload
from .logs import configure_logging
from .store import MemoryStore
from .worker import WorkerHandle

logger = logging.getLogger("agentmem.cli")

app = typer.Typer(help="agentmem: local memory for coding agents")
worker_app = typer.Typer(help="Background summarization worker")
app.add_typer(worker_app, name="worker")


def _config(*, strict: bool = True) -> AgentMemConfig:
    try:
        return load_config(strict=strict)
    except ValueError as exc:
        raise refuse(f"Invalid config: {exc}") from exc


def _store(db_path: str | None, *, read_only: bool = False) -> MemoryStore:
    config = _config()
    return MemoryStore(db_path or config.resolved_db_path(), read_only=read_only, config=config)


def _worker_handle(db_path: str | None) -> WorkerHandle:
    return WorkerHandle(db_path, config=_config())


@app.callback()
def _main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Also log to stderr"),
) -> None:
    # A broken config must not break the host agent's hook; everything else refuses.
    strict = ctx.invoked_subcommand != "hook"
    configure_logging(_config(strict=strict), stderr=True if verbose else None)


@app.command()
def hook(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Capture one hook payload from stdin; prints context on session start."""

    # Always exit 0: a failing hook must never disturb the host agent.
    try:
        config = load_config(strict=False)
        output = handle_hook_payload(sys.stdin.read(), config, db_path=db_path)
    except Exception as exc:
        logger.error("hook failed", exc_info=exc)
        return
    if output:
        typer.echo(output, nl=False)


@app.command("init-db")
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the store and apply pending migrations."""

    init_db_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def status(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Report store health and worker state without writing."""

    status_cmd(
        store_from_path=_store,
        worker_handle=_worker_handle,
        db_path=db_path,
        as_json=as_json,
    )


@app.command()
def maintain(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    prune: bool = typer.Option(True, help="Prune observations past the retention window"),
    rescrub: bool = typer.Option(False, help="Re-run secret redaction over stored observations"),
    dry_run: bool = typer.Option(False, help="Report what would change without writing"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Repair and optimize the FTS indexes, check integrity, checkpoint the WAL."""

    maintain_cmd(
        store_from_path=_store,
        db_path=db_path,
        prune=prune,
        rescrub=rescrub,
        dry_run=dry_run,
        as_json=as_json,
    )


@app.command()
def query(
    text: str = typer.Argument(..., help="Search terms"),
    limit: int = typer.Option(10, help="Maximum results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Full-text search over stored observations and summaries."""

    query_cmd(store_from_path=_store, db_path=db_path, query=text, limit=limit, as_json=as_json)


@app.command()
def context(
    session: str = typer.Option(None, help="Session key for the current-session signals"),
    file: list[str] = typer.Option(None, "--file", "-f", help="File currently in focus"),
    project: str = typer.Option(None, help="Project name (defaults to cwd basename)"),
    cwd: str = typer.Option(None, help="Working directory used to resolve relative files"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Print the context pack a session start would receive."""

    context_cmd(
        store_from_path=_store,
        config=_config(),
        db_path=db_path,
        session_key=session,
        files=list(file or []),
        project=project,
        cwd=cwd,
        as_json=as_json,
    )


@app.command()
def summarize(
    session: str = typer.Option(None, help="Session key to summarize"),
    pending: bool = typer.Option(False, help="Summarize every closed, unsummarized session"),
    force: bool = typer.Option(False, help="Regenerate an existing summary"),
    limit: int = typer.Option(10, help="Maximum sessions for --pending"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Summarize closed sessions with the configured summarizer."""

    summarize_cmd(
        store_from_path=_store,
        config=_config(),
        db_path=db_path,
        session_key=session,
        pending=pending,
        force=force,
        limit=limit,
    )


@app.command()
def version() -> None:
    """Print agentmem version."""

    print(__version__)


@worker_app.command("run")
def worker_run(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    once: bool = typer.Option(False, help="Run a single pass and exit"),
) -> None:
    """Run the worker in the foreground."""

    worker_run_cmd(config=_config(), db_path=db_path, once=once)


@worker_app.command("start")
def worker_start(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Start a detached worker unless one is already running."""

    worker_start_cmd(config=_config(), db_path=db_path, as_json=as_json)


@worker_app.command("stop")
def worker_stop(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Stop the detached worker."""

    worker_stop_cmd(config=_config(), db_path=db_path, as_json=as_json)


@worker_app.command("status")
def worker_status(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show whether the worker is running."""

    worker_status_cmd(config=_config(), db_path=db_path, as_json=as_json)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
