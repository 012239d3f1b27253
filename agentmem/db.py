from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path.home() / ".agentmem" / "agentmem.sqlite"

logger = logging.getLogger(__name__)

OBSERVATION_KINDS: tuple[str, ...] = (
    "command",
    "file_read",
    "file_write",
    "failure",
    "decision",
)


class StoreBusyError(RuntimeError):
    """The write lock could not be taken within the retry budget."""


class MigrationError(RuntimeError):
    pass


class EncryptionKeyError(RuntimeError):
    pass


_KIND_CHECK = ", ".join(f"'{kind}'" for kind in OBSERVATION_KINDS)

# Append-only. A released migration is never edited or renumbered; schema
# changes go into a new entry at the end.
MIGRATIONS: tuple[tuple[str, ...], ...] = (
    (
        """
        CREATE TABLE sessions (
            id INTEGER PRIMARY KEY,
            session_key TEXT NOT NULL UNIQUE,
            started_at TEXT NOT NULL,
            ended_at TEXT,
            cwd TEXT,
            project TEXT,
            metadata_json TEXT
        )
        """,
        """
        CREATE TABLE prompts (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            source TEXT NOT NULL CHECK (source IN ('user', 'agent')),
            ordinal INTEGER NOT NULL CHECK (ordinal > 0),
            prompt_text TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (session_id, ordinal)
        )
        """,
        f"""
        CREATE TABLE observations (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            prompt_id INTEGER REFERENCES prompts(id) ON DELETE SET NULL,
            kind TEXT NOT NULL CHECK (kind IN ({_KIND_CHECK})),
            content TEXT NOT NULL,
            metadata_json TEXT NOT NULL DEFAULT '{{}}',
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX idx_observations_session_created ON observations(session_id, created_at, id)",
        "CREATE INDEX idx_observations_prompt ON observations(prompt_id)",
        "CREATE INDEX idx_prompts_session ON prompts(session_id, ordinal)",
        """
        CREATE TRIGGER observations_prompt_session_bi BEFORE INSERT ON observations
        WHEN new.prompt_id IS NOT NULL
            AND (SELECT session_id FROM prompts WHERE id = new.prompt_id) IS NOT new.session_id
        BEGIN
            SELECT RAISE(ABORT, 'observation prompt belongs to a different session');
        END
        """,
        """
        CREATE TRIGGER observations_prompt_session_bu BEFORE UPDATE OF prompt_id, session_id ON observations
        WHEN new.prompt_id IS NOT NULL
            AND (SELECT session_id FROM prompts WHERE id = new.prompt_id) IS NOT new.session_id
        BEGIN
            SELECT RAISE(ABORT, 'observation prompt belongs to a different session');
        END
        """,
        """
        CREATE VIRTUAL TABLE observations_fts USING fts5(
            kind, content,
            content='observations',
            content_rowid='id'
        )
        """,
        """
        CREATE TRIGGER observations_ai AFTER INSERT ON observations BEGIN
            INSERT INTO observations_fts(rowid, kind, content)
            VALUES (new.id, new.kind, new.content);
        END
        """,
        """
        CREATE TRIGGER observations_au AFTER UPDATE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, kind, content)
            VALUES ('delete', old.id, old.kind, old.content);
            INSERT INTO observations_fts(rowid, kind, content)
            VALUES (new.id, new.kind, new.content);
        END
        """,
        """
        CREATE TRIGGER observations_ad AFTER DELETE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, kind, content)
            VALUES ('delete', old.id, old.kind, old.content);
        END
        """,
    ),
    (
        """
        CREATE TABLE session_summaries (
            id INTEGER PRIMARY KEY,
            session_id INTEGER NOT NULL UNIQUE REFERENCES sessions(id) ON DELETE CASCADE,
            intent TEXT NOT NULL DEFAULT '',
            learned TEXT NOT NULL DEFAULT '',
            completed TEXT NOT NULL DEFAULT '',
            next_steps TEXT NOT NULL DEFAULT '',
            notable_failures TEXT NOT NULL DEFAULT '',
            model TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE summary_files (
            summary_id INTEGER NOT NULL REFERENCES session_summaries(id) ON DELETE CASCADE,
            path TEXT NOT NULL,
            basename TEXT NOT NULL,
            PRIMARY KEY (summary_id, path)
        )
        """,
        "CREATE INDEX idx_summary_files_path ON summary_files(path)",
        "CREATE INDEX idx_summary_files_basename ON summary_files(basename)",
        """
        CREATE VIRTUAL TABLE summaries_fts USING fts5(
            intent, learned, completed, next_steps, notable_failures,
            content='session_summaries',
            content_rowid='id'
        )
        """,
        """
        CREATE TRIGGER session_summaries_ai AFTER INSERT ON session_summaries BEGIN
            INSERT INTO summaries_fts(rowid, intent, learned, completed, next_steps, notable_failures)
            VALUES (new.id, new.intent, new.learned, new.completed, new.next_steps, new.notable_failures);
        END
        """,
        """
        CREATE TRIGGER session_summaries_au AFTER UPDATE ON session_summaries BEGIN
            INSERT INTO summaries_fts(
                summaries_fts, rowid, intent, learned, completed, next_steps, notable_failures
            )
            VALUES (
                'delete', old.id, old.intent, old.learned, old.completed, old.next_steps,
                old.notable_failures
            );
            INSERT INTO summaries_fts(rowid, intent, learned, completed, next_steps, notable_failures)
            VALUES (new.id, new.intent, new.learned, new.completed, new.next_steps, new.notable_failures);
        END
        """,
        """
        CREATE TRIGGER session_summaries_ad AFTER DELETE ON session_summaries BEGIN
            INSERT INTO summaries_fts(
                summaries_fts, rowid, intent, learned, completed, next_steps, notable_failures
            )
            VALUES (
                'delete', old.id, old.intent, old.learned, old.completed, old.next_steps,
                old.notable_failures
            );
        END
        """,
    ),
    (
        "CREATE INDEX idx_sessions_ended ON sessions(ended_at)",
        "CREATE INDEX idx_sessions_project ON sessions(project)",
        "CREATE INDEX idx_observations_kind_created ON observations(kind, created_at DESC)",
    ),
    (
        # NULL until an attempt produced no summary; 'skipped' is final until
        # the session sees new activity, 'failed' is retried after a backoff.
        """
        ALTER TABLE sessions ADD COLUMN summary_status TEXT
            CHECK (summary_status IS NULL OR summary_status IN ('skipped', 'failed'))
        """,
        "ALTER TABLE sessions ADD COLUMN summary_attempts INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE sessions ADD COLUMN next_summary_attempt_at TEXT",
    ),
)

SUMMARY_STATUSES: tuple[str, ...] = ("skipped", "failed")

SCHEMA_VERSION = len(MIGRATIONS)

REQUIRED_TRIGGERS: tuple[str, ...] = (
    "observations_ai",
    "observations_au",
    "observations_ad",
    "session_summaries_ai",
    "session_summaries_au",
    "session_summaries_ad",
)

FTS_TABLES: tuple[str, ...] = ("observations_fts", "summaries_fts")


def _driver(key: str | None) -> Any:
    if not key:
        return sqlite3
    try:
        from sqlcipher3 import dbapi2  # type: ignore[import-not-found]
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "An encryption key is configured but sqlcipher3 is not installed. "
            "Install agentmem[encryption] or unset AGENTMEM_DB_KEY."
        ) from exc
    return dbapi2


def _quote_key(key: str) -> str:
    return "'" + key.replace("'", "''") + "'"


def is_busy_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


def connect(
    db_path: Path | str,
    *,
    key: str | None = None,
    read_only: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a store handle.

    Writers and readers use separate handles. With WAL, a read-only handle
    never waits on the writer. When ``key`` is set the first statement on the
    connection is ``PRAGMA key``; a wrong key only surfaces on the first real
    read (see ``check_key``).
    """

    driver = _driver(key)
    path = Path(db_path).expanduser()
    if read_only and not path.exists():
        raise FileNotFoundError(f"store not found: {path}")
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    # Busy handling is done by write_transaction, not by the driver timeout.
    conn = driver.connect(
        str(path),
        timeout=0.0,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    if key:
        conn.execute(f"PRAGMA key = {_quote_key(key)}")
    conn.row_factory = driver.Row
    return conn


def configure(conn: sqlite3.Connection, *, read_only: bool = False) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    if read_only:
        # Readers get their own handle; query_only turns every write into an error.
        conn.execute("PRAGMA query_only = ON")
        return
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")


def check_key(conn: sqlite3.Connection, *, keyed: bool) -> None:
    """Force the first real read so a wrong key fails here, unambiguously."""

    try:
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    except Exception as exc:
        if keyed and "not a database" in str(exc).lower():
            raise EncryptionKeyError("store could not be decrypted: wrong key") from exc
        raise


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("PRAGMA user_version").fetchone()
    return int(row[0]) if row else 0


def pending_migrations(conn: sqlite3.Connection) -> int:
    return max(0, SCHEMA_VERSION - schema_version(conn))


def initialize_schema(
    conn: sqlite3.Connection,
    *,
    retries: int = 6,
    backoff_s: float = 0.015,
) -> int:
    """Apply pending migrations; return how many were applied.

    Each migration runs in its own immediate transaction together with the
    ``user_version`` bump, so a failure leaves the prior version intact.
    """

    current = schema_version(conn)
    if current > SCHEMA_VERSION:
        raise MigrationError(
            f"store schema version {current} is newer than this build ({SCHEMA_VERSION})"
        )
    applied = 0
    for index in range(current, SCHEMA_VERSION):
        statements = MIGRATIONS[index]
        target = index + 1
        try:
            with write_transaction(conn, retries=retries, backoff_s=backoff_s):
                # Another process may have migrated while we waited for the lock.
                if schema_version(conn) >= target:
                    continue
                for statement in statements:
                    conn.execute(statement)
                conn.execute(f"PRAGMA user_version = {target}")
        except StoreBusyError:
            raise
        except Exception as exc:
            raise MigrationError(f"migration {target} failed: {exc}") from exc
        applied += 1
        logger.info("applied schema migration", extra={"version": target})
    return applied


def missing_triggers(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'trigger'").fetchall()
    existing = {row[0] for row in rows}
    return [name for name in REQUIRED_TRIGGERS if name not in existing]


@contextmanager
def write_transaction(
    conn: sqlite3.Connection,
    *,
    retries: int = 6,
    backoff_s: float = 0.015,
    deadline: float | None = None,
    on_busy: Any = None,
) -> Iterator[sqlite3.Connection]:
    """Hold the single write lock for the duration of the block.

    ``BEGIN IMMEDIATE`` takes the lock up front. A busy store is retried with
    exponential backoff, at most ``retries`` times and never past ``deadline``
    (a ``time.monotonic()`` value); after that ``StoreBusyError`` is raised and
    nothing was written.
    """

    attempt = 0
    while True:
        try:
            conn.execute("BEGIN IMMEDIATE")
            break
        except sqlite3.OperationalError as exc:
            if not is_busy_error(exc):
                raise
            attempt += 1
            delay = backoff_s * (2 ** (attempt - 1))
            now = time.monotonic()
            if attempt > retries or (deadline is not None and now + delay > deadline):
                raise StoreBusyError(f"store busy after {attempt} attempts") from exc
            if on_busy is not None:
                on_busy(attempt)
            time.sleep(delay)
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]
