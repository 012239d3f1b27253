from __future__ import annotations

from dataclasses import asdict

import typer
from rich import print
from rich.markup import escape

from ..capture import project_for
from ..config import AgentMemConfig
from ..retrieval import RetrievalContext, Retriever
from ..summarizer import Summarizer, SummarizeRefused, build_collaborator
from .common import (
    EXIT_OK,
    EXIT_PROBLEM,
    compact_lines,
    emit_json,
    open_store_or_exit,
    refuse,
)


def query_cmd(
    *,
    store_from_path,
    db_path: str | None,
    query: str,
    limit: int,
    as_json: bool,
) -> None:
    """Full-text search over observations and session summaries."""

    store = open_store_or_exit(store_from_path, db_path, read_only=True)
    try:
        hits = store.search(query, limit=limit)
    finally:
        store.close()
    if as_json:
        emit_json([asdict(hit) for hit in hits])
        return
    if not hits:
        print("No matches.")
        return
    for hit in hits:
        text = escape(compact_lines(hit.text, 3))
        print(f"[dim]#{hit.id}[/dim] ({hit.kind}) {text} [dim]{hit.score:.2f}[/dim]")


def context_cmd(
    *,
    store_from_path,
    config: AgentMemConfig,
    db_path: str | None,
    session_key: str | None,
    files: list[str],
    project: str | None,
    cwd: str | None,
    as_json: bool,
) -> None:
    """Print the context pack a session start would receive."""

    store = open_store_or_exit(store_from_path, db_path, read_only=True)
    try:
        pack = Retriever(store, config).retrieve(
            RetrievalContext(
                session_key=session_key,
                project=project_for(cwd, project),
                current_files=files,
                cwd=cwd,
            )
        )
    finally:
        store.close()
    if as_json:
        emit_json(pack.to_dict())
    elif pack.text:
        typer.echo(pack.text)
    else:
        print("No context.")
    if pack.partial:
        print("[yellow]Context is partial; see the log for details.[/yellow]")
    raise typer.Exit(code=EXIT_PROBLEM if pack.partial else EXIT_OK)


def summarize_cmd(
    *,
    store_from_path,
    config: AgentMemConfig,
    db_path: str | None,
    session_key: str | None,
    pending: bool,
    force: bool,
    limit: int,
) -> None:
    if not session_key and not pending:
        raise refuse("Pass --session KEY or --pending.")
    collaborator = build_collaborator(config)
    if collaborator is None:
        raise refuse("No summarizer configured (set summarizer_provider).")
    store = open_store_or_exit(store_from_path, db_path)
    try:
        summarizer = Summarizer(store, collaborator, config)
        if pending:
            counts = summarizer.summarize_pending(limit=limit)
            print(
                f"Summarized {counts['summarized']} session(s), "
                f"{counts['skipped']} skipped, {counts['failed']} failed"
            )
            raise typer.Exit(code=EXIT_PROBLEM if counts["failed"] else EXIT_OK)
        session = store.get_session_by_key(session_key or "")
        if session is None:
            raise refuse(f"Unknown session: {session_key}")
        try:
            record = summarizer.summarize_session(session.id, force=force)
        except SummarizeRefused as exc:
            raise refuse(str(exc)) from exc
    finally:
        store.close()
    if record is None:
        print("[yellow]No summary produced; the session stays pending.[/yellow]")
        raise typer.Exit(code=EXIT_PROBLEM)
    for name, value in record.as_dict().items():
        if value.strip():
            label = name.replace("_", " ").capitalize()
            print(f"[bold]{label}:[/bold] {escape(value)}")
