from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from agentmem import db


def _tables(conn: sqlite3.Connection) -> set[str]:
    return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def test_initialize_schema_sets_user_version(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.configure(conn)
        applied = db.initialize_schema(conn)
        version = db.schema_version(conn)
        tables = _tables(conn)
        journal = conn.execute("PRAGMA journal_mode").fetchone()[0]
    finally:
        conn.close()

    assert applied == db.SCHEMA_VERSION
    assert version == db.SCHEMA_VERSION
    assert {"sessions", "prompts", "observations", "session_summaries", "summary_files"} <= tables
    assert journal.lower() == "wal"


def test_initialize_schema_is_a_noop_at_current_version(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.initialize_schema(conn)
        assert db.initialize_schema(conn) == 0
        assert db.pending_migrations(conn) == 0
        assert db.missing_triggers(conn) == []
    finally:
        conn.close()


def test_failed_migration_leaves_prior_version(monkeypatch, tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.initialize_schema(conn)
        broken = db.MIGRATIONS + (("CREATE TABLE extra (id INTEGER)", "CREATE TABLE broken ("),)
        monkeypatch.setattr(db, "MIGRATIONS", broken)
        monkeypatch.setattr(db, "SCHEMA_VERSION", len(broken))

        with pytest.raises(db.MigrationError):
            db.initialize_schema(conn)

        assert db.schema_version(conn) == len(broken) - 1
        assert "extra" not in _tables(conn)
        assert not conn.in_transaction
    finally:
        conn.close()


def test_newer_schema_is_refused(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.initialize_schema(conn)
        conn.execute(f"PRAGMA user_version = {db.SCHEMA_VERSION + 1}")
        with pytest.raises(db.MigrationError, match="newer"):
            db.initialize_schema(conn)
    finally:
        conn.close()


def test_observation_kind_is_constrained(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.initialize_schema(conn)
        conn.execute(
            "INSERT INTO sessions(session_key, started_at) VALUES ('s1', '2026-01-01T00:00:00+00:00')"
        )
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO observations(session_id, kind, content, created_at)
                VALUES (1, 'memory', 'x', '2026-01-01T00:00:00+00:00')
                """
            )
    finally:
        conn.close()


def test_prompt_from_another_session_is_rejected(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.initialize_schema(conn)
        now = "2026-01-01T00:00:00+00:00"
        conn.execute("INSERT INTO sessions(session_key, started_at) VALUES ('a', ?)", (now,))
        conn.execute("INSERT INTO sessions(session_key, started_at) VALUES ('b', ?)", (now,))
        conn.execute(
            """
            INSERT INTO prompts(session_id, source, ordinal, prompt_text, created_at)
            VALUES (1, 'user', 1, 'fix it', ?)
            """,
            (now,),
        )
        with pytest.raises(sqlite3.IntegrityError, match="different session"):
            conn.execute(
                """
                INSERT INTO observations(session_id, prompt_id, kind, content, created_at)
                VALUES (2, 1, 'command', 'ls', ?)
                """,
                (now,),
            )
    finally:
        conn.close()


def test_write_transaction_gives_up_with_store_busy(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    holder = db.connect(path)
    waiter = db.connect(path)
    try:
        db.configure(holder)
        db.initialize_schema(holder)
        busy_attempts: list[int] = []
        holder.execute("BEGIN IMMEDIATE")
        with pytest.raises(db.StoreBusyError):
            with db.write_transaction(
                waiter, retries=2, backoff_s=0.001, on_busy=busy_attempts.append
            ):
                pass
        holder.execute("ROLLBACK")
        assert busy_attempts == [1, 2]
    finally:
        holder.close()
        waiter.close()


def test_read_only_connect_requires_existing_store(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        db.connect(tmp_path / "missing.sqlite", read_only=True)
    assert not (tmp_path / "missing.sqlite").exists()
