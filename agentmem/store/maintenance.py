from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import TYPE_CHECKING

from .. import db
from .types import MaintenanceReport, StoreStatus

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

COUNTED_TABLES = ("sessions", "prompts", "observations", "session_summaries", "summary_files")
RESCRUB_BATCH = 500


def _existing_tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row[0] for row in rows}


def table_counts(conn: sqlite3.Connection) -> dict[str, int]:
    existing = _existing_tables(conn)
    counts: dict[str, int] = {}
    for table in COUNTED_TABLES:
        if table not in existing:
            counts[table] = 0
            continue
        row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
        counts[table] = int(row[0]) if row else 0
    return counts


def check_fts(conn: sqlite3.Connection, table: str) -> bool:
    """Run the FTS5 integrity check, comparing the index to its content table."""

    try:
        conn.execute(f"INSERT INTO {table}({table}, rank) VALUES ('integrity-check', 1)")
    except sqlite3.DatabaseError as exc:
        if db.is_busy_error(exc):
            raise
        logger.warning("fts integrity check failed", extra={"table": table, "error": str(exc)})
        return False
    return True


def rebuild_fts(conn: sqlite3.Connection, table: str) -> None:
    conn.execute(f"INSERT INTO {table}({table}) VALUES ('rebuild')")


def optimize_fts(conn: sqlite3.Connection, table: str) -> None:
    conn.execute(f"INSERT INTO {table}({table}) VALUES ('optimize')")


def integrity_ok(conn: sqlite3.Connection) -> bool:
    rows = conn.execute("PRAGMA integrity_check").fetchall()
    return len(rows) == 1 and str(rows[0][0]).lower() == "ok"


def foreign_key_violations(conn: sqlite3.Connection) -> int:
    return len(conn.execute("PRAGMA foreign_key_check").fetchall())


def trigger_statements(names: list[str]) -> list[str]:
    """Find the CREATE TRIGGER statements for ``names`` in the migration list."""

    wanted = set(names)
    found = []
    for migration in db.MIGRATIONS:
        for statement in migration:
            head = statement.strip().split(None, 3)
            if len(head) >= 3 and head[0].upper() == "CREATE" and head[1].upper() == "TRIGGER":
                if head[2] in wanted:
                    found.append(statement)
    return found


def _file_size(path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _fts_checks(store: MemoryStore, problems: list[str]) -> dict[str, bool]:
    existing = _existing_tables(store.conn)
    tables = [table for table in db.FTS_TABLES if table in existing]
    if not tables:
        return {}
    if not store.read_only:
        with store.write_transaction():
            return {table: check_fts(store.conn, table) for table in tables}
    # The check is issued as an INSERT, which a query_only handle refuses.
    conn = db.connect(store.db_path, key=store.key)
    try:
        conn.execute("BEGIN")
        try:
            return {table: check_fts(conn, table) for table in tables}
        finally:
            conn.execute("ROLLBACK")
    except sqlite3.OperationalError as exc:
        if not db.is_busy_error(exc):
            raise
        problems.append("fts integrity check skipped: store busy")
        return {}
    finally:
        conn.close()


def status(store: MemoryStore) -> StoreStatus:
    conn = store.conn
    version = db.schema_version(conn)
    problems: list[str] = []
    pending = db.pending_migrations(conn)
    if pending:
        problems.append(f"{pending} pending migration(s)")
    missing = db.missing_triggers(conn) if version else list(db.REQUIRED_TRIGGERS)
    if missing:
        problems.append(f"missing triggers: {', '.join(missing)}")
    healthy = integrity_ok(conn)
    if not healthy:
        problems.append("integrity_check failed")
    fts_ok = _fts_checks(store, problems)
    for table, ok in fts_ok.items():
        if not ok:
            problems.append(f"{table} index out of sync")
    wal_path = store.db_path.with_name(store.db_path.name + "-wal")
    return StoreStatus(
        path=str(store.db_path),
        size_bytes=_file_size(store.db_path),
        wal_bytes=_file_size(wal_path),
        schema_version=version,
        latest_version=db.SCHEMA_VERSION,
        pending_migrations=pending,
        missing_triggers=missing,
        integrity_ok=healthy,
        fts_ok=fts_ok,
        counts=table_counts(conn),
        problems=problems,
    )


def prune_observations(store: MemoryStore, retention_days: int, *, dry_run: bool = False) -> int:
    """Delete observations older than the window, but only from summarized sessions."""

    if retention_days <= 0:
        return 0
    cutoff = (dt.datetime.now(dt.UTC) - dt.timedelta(days=retention_days)).isoformat()
    where = """
        created_at < ?
        AND session_id IN (SELECT session_id FROM session_summaries)
    """
    if dry_run:
        row = store.conn.execute(
            f"SELECT COUNT(*) FROM observations WHERE {where}", (cutoff,)
        ).fetchone()
        return int(row[0]) if row else 0
    with store.write_transaction():
        cur = store.conn.execute(f"DELETE FROM observations WHERE {where}", (cutoff,))
    pruned = int(cur.rowcount or 0)
    if pruned:
        logger.info("pruned observations", extra={"count": pruned, "days": retention_days})
    return pruned


def rescrub_observations(store: MemoryStore, *, dry_run: bool = False) -> int:
    """Re-apply the current secret patterns to stored observations."""

    changed_total = 0
    last_id = 0
    while True:
        rows = store.conn.execute(
            """
            SELECT id, content, metadata_json FROM observations
            WHERE id > ? ORDER BY id LIMIT ?
            """,
            (last_id, RESCRUB_BATCH),
        ).fetchall()
        if not rows:
            break
        last_id = int(rows[-1]["id"])
        updates = []
        for row in rows:
            content, content_changed = store.filter.redact(row["content"])
            metadata, meta_changed = {}, False
            raw_metadata = row["metadata_json"] or ""
            if store.filter.contains_secret(raw_metadata):
                metadata, meta_changed = store.filter.redact_value(db.from_json(raw_metadata))
            if content_changed or meta_changed:
                updates.append(
                    (
                        content,
                        db.to_json(metadata) if meta_changed else raw_metadata,
                        int(row["id"]),
                    )
                )
        changed_total += len(updates)
        if updates and not dry_run:
            with store.write_transaction():
                store.conn.executemany(
                    "UPDATE observations SET content = ?, metadata_json = ? WHERE id = ?",
                    updates,
                )
    if changed_total:
        logger.warning(
            "rescrub found unredacted observations",
            extra={"count": changed_total, "dry_run": dry_run},
        )
    return changed_total


def _repair_triggers(store: MemoryStore, report: MaintenanceReport, dry_run: bool) -> None:
    missing = db.missing_triggers(store.conn)
    if not missing:
        return
    report.problems.append(f"missing triggers: {', '.join(missing)}")
    if dry_run:
        return
    with store.write_transaction():
        for statement in trigger_statements(missing):
            store.conn.execute(statement)
        # The index may hold stale rows from the time the triggers were gone.
        for table in db.FTS_TABLES:
            rebuild_fts(store.conn, table)
    report.rebuilt.extend(db.FTS_TABLES)
    logger.warning("recreated missing fts triggers", extra={"triggers": missing})


def maintain(
    store: MemoryStore,
    *,
    prune: bool = True,
    rescrub: bool = False,
    dry_run: bool = False,
    retention_days: int = 0,
) -> MaintenanceReport:
    if store.read_only:
        raise RuntimeError("maintenance needs a writable store")
    report = MaintenanceReport()
    conn = store.conn

    _repair_triggers(store, report, dry_run)

    for table in db.FTS_TABLES:
        with store.write_transaction():
            ok = check_fts(conn, table)
        report.fts_ok[table] = ok
        if ok or table in report.rebuilt:
            continue
        report.problems.append(f"{table} index out of sync")
        if dry_run:
            continue
        with store.write_transaction():
            rebuild_fts(conn, table)
            report.fts_ok[table] = check_fts(conn, table)
        report.rebuilt.append(table)

    if not dry_run:
        with store.write_transaction():
            for table in db.FTS_TABLES:
                optimize_fts(conn, table)
        report.optimized = True

    report.integrity_ok = integrity_ok(conn)
    if not report.integrity_ok:
        report.problems.append("integrity_check failed")
    report.foreign_key_violations = foreign_key_violations(conn)
    if report.foreign_key_violations:
        report.problems.append(f"{report.foreign_key_violations} foreign key violation(s)")

    if prune:
        report.pruned_observations = prune_observations(store, retention_days, dry_run=dry_run)
    if rescrub:
        report.rescrubbed = rescrub_observations(store, dry_run=dry_run)

    if not dry_run:
        row = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
        report.checkpointed = bool(row is not None and int(row[0]) == 0)
    logger.info(
        "maintenance finished",
        extra={"dry_run": dry_run, "problems": len(report.problems), "rebuilt": report.rebuilt},
    )
    return report
