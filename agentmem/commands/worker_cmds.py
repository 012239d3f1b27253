from __future__ import annotations

import typer
from rich import print

from ..config import AgentMemConfig
from ..worker import WorkerHandle, WorkerStatus, run_worker
from .common import EXIT_OK, EXIT_PROBLEM, EXIT_REFUSED, emit_json


def _report(status: WorkerStatus, as_json: bool) -> None:
    if as_json:
        emit_json({"running": status.running, "pid": status.pid, "detail": status.detail})
        return
    state = "[green]running[/green]" if status.running else "[yellow]stopped[/yellow]"
    pid = f" (pid {status.pid})" if status.pid else ""
    print(f"Worker {state}{pid}: {status.detail}")


def worker_run_cmd(*, config: AgentMemConfig, db_path: str | None, once: bool) -> None:
    """Run the worker in the foreground until signalled."""

    if not run_worker(db_path, config, once=once):
        print("[yellow]Another worker holds the lock.[/yellow]")
        raise typer.Exit(code=EXIT_REFUSED)


def worker_start_cmd(*, config: AgentMemConfig, db_path: str | None, as_json: bool) -> None:
    status = WorkerHandle(db_path, config=config).ensure_running()
    _report(status, as_json)


def worker_stop_cmd(*, config: AgentMemConfig, db_path: str | None, as_json: bool) -> None:
    status = WorkerHandle(db_path, config=config).stop()
    _report(status, as_json)
    raise typer.Exit(code=EXIT_PROBLEM if status.detail == "timeout" else EXIT_OK)


def worker_status_cmd(*, config: AgentMemConfig, db_path: str | None, as_json: bool) -> None:
    _report(WorkerHandle(db_path, config=config).status(), as_json)
