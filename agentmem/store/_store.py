from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, get_args

from .. import db
from ..config import AgentMemConfig, load_config
from ..redaction import DEFAULT_FILTER, SecretFilter
from . import maintenance as store_maintenance
from . import search as store_search
from . import utils as store_utils
from .types import (
    MaintenanceReport,
    Observation,
    Prompt,
    PromptSource,
    RecordedEvent,
    SearchHit,
    Session,
    SessionSummary,
    StoreStatus,
    SummaryRecord,
)

logger = logging.getLogger(__name__)

PROMPT_SOURCES: tuple[str, ...] = get_args(PromptSource)


def _session_from_row(row: sqlite3.Row) -> Session:
    # Readers never migrate, so an older store may lack the attempt columns.
    keys = row.keys()
    return Session(
        id=int(row["id"]),
        session_key=row["session_key"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        cwd=row["cwd"],
        project=row["project"],
        metadata=db.from_json(row["metadata_json"]),
        summary_status=row["summary_status"] if "summary_status" in keys else None,
        summary_attempts=int(row["summary_attempts"] or 0) if "summary_attempts" in keys else 0,
    )


def _prompt_from_row(row: sqlite3.Row) -> Prompt:
    return Prompt(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        source=row["source"],
        ordinal=int(row["ordinal"]),
        prompt_text=row["prompt_text"],
        created_at=row["created_at"],
    )


def _observation_from_row(row: sqlite3.Row) -> Observation:
    return Observation(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        prompt_id=int(row["prompt_id"]) if row["prompt_id"] is not None else None,
        kind=row["kind"],
        content=row["content"],
        metadata=db.from_json(row["metadata_json"]),
        created_at=row["created_at"],
    )


class MemoryStore:
    """One store file, one write-capable connection.

    ``read_only=True`` opens a reader handle instead: it never migrates and
    every write statement on it fails. Text and metadata are redacted on every
    write, whoever the caller is.
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        key: str | None = None,
        read_only: bool = False,
        config: AgentMemConfig | None = None,
        check_same_thread: bool = True,
        secret_filter: SecretFilter | None = None,
    ):
        cfg = config or load_config()
        self.config = cfg
        self.db_path = Path(db_path or cfg.resolved_db_path()).expanduser()
        self.read_only = read_only
        self.key = key if key is not None else cfg.db_key
        self.filter = secret_filter or DEFAULT_FILTER
        self.search_weights = dict(cfg.search_weights)
        self.summary_boost = float(cfg.summary_boost)
        self.busy_retries = 0
        self._retries = max(0, int(cfg.write_retries))
        self._backoff_s = max(0.0, cfg.write_backoff_ms / 1000.0)
        self.conn = db.connect(
            self.db_path,
            key=self.key,
            read_only=read_only,
            check_same_thread=check_same_thread,
        )
        try:
            db.check_key(self.conn, keyed=bool(self.key))
            db.configure(self.conn, read_only=read_only)
            if not read_only:
                db.initialize_schema(self.conn, retries=self._retries, backoff_s=self._backoff_s)
        except BaseException:
            self.conn.close()
            raise

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # write plumbing

    def _note_busy(self, attempt: int) -> None:
        self.busy_retries += 1
        logger.debug("store busy, retrying", extra={"attempt": attempt})

    def write_transaction(self, *, deadline: float | None = None):
        return db.write_transaction(
            self.conn,
            retries=self._retries,
            backoff_s=self._backoff_s,
            deadline=deadline,
            on_busy=self._note_busy,
        )

    def _clean_text(self, value: Any) -> str:
        return self.filter.redact(value).text

    def _clean_metadata(self, metadata: dict[str, Any] | None) -> str:
        cleaned, _ = self.filter.redact_value(metadata or {})
        return db.to_json(cleaned)

    # sessions

    def _insert_session(
        self,
        session_key: str,
        *,
        cwd: str | None,
        project: str | None,
        metadata: dict[str, Any] | None,
        started_at: str | None = None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO sessions(session_key, started_at, cwd, project, metadata_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                session_key,
                started_at or store_utils.now_iso(),
                cwd,
                project,
                self._clean_metadata(metadata),
            ),
        )
        return int(cur.lastrowid)

    def _session_id_for_key(
        self,
        session_key: str,
        *,
        cwd: str | None = None,
        project: str | None = None,
        metadata: dict[str, Any] | None = None,
        reopen: bool = False,
    ) -> int:
        row = self.conn.execute(
            "SELECT id, ended_at FROM sessions WHERE session_key = ?",
            (session_key,),
        ).fetchone()
        if row is None:
            return self._insert_session(session_key, cwd=cwd, project=project, metadata=metadata)
        session_id = int(row["id"])
        if reopen and row["ended_at"] is not None:
            # New activity earns a fresh round of summary attempts.
            self.conn.execute(
                """
                UPDATE sessions
                SET ended_at = NULL, summary_status = NULL, summary_attempts = 0,
                    next_summary_attempt_at = NULL
                WHERE id = ?
                """,
                (session_id,),
            )
        return session_id

    def start_session(
        self,
        session_key: str,
        *,
        cwd: str | None = None,
        project: str | None = None,
        metadata: dict[str, Any] | None = None,
        started_at: str | None = None,
    ) -> int:
        with self.write_transaction():
            return self._insert_session(
                session_key,
                cwd=cwd,
                project=project,
                metadata=metadata,
                started_at=started_at,
            )

    def get_or_create_session(
        self,
        session_key: str,
        *,
        cwd: str | None = None,
        project: str | None = None,
        metadata: dict[str, Any] | None = None,
        reopen: bool = False,
        deadline: float | None = None,
    ) -> int:
        with self.write_transaction(deadline=deadline):
            return self._session_id_for_key(
                session_key, cwd=cwd, project=project, metadata=metadata, reopen=reopen
            )

    def end_session(self, session_id: int, *, ended_at: str | None = None) -> None:
        with self.write_transaction():
            self.conn.execute(
                "UPDATE sessions SET ended_at = ? WHERE id = ?",
                (ended_at or store_utils.now_iso(), session_id),
            )

    def close_session(self, session_key: str, *, deadline: float | None = None) -> int | None:
        with self.write_transaction(deadline=deadline):
            row = self.conn.execute(
                "SELECT id FROM sessions WHERE session_key = ?", (session_key,)
            ).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE sessions SET ended_at = ? WHERE id = ?",
                (store_utils.now_iso(), int(row["id"])),
            )
            return int(row["id"])

    def get_session(self, session_id: int) -> Session | None:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row else None

    def get_session_by_key(self, session_key: str) -> Session | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE session_key = ?", (session_key,)
        ).fetchone()
        return _session_from_row(row) if row else None

    def ended_sessions_without_summary(
        self,
        limit: int = 10,
        *,
        max_attempts: int | None = None,
        now: str | None = None,
    ) -> list[Session]:
        """Closed sessions still waiting for a summary, fresh ones first.

        Skipped sessions are left out. Failed ones come back once their
        ``next_summary_attempt_at`` has passed, and never after
        ``max_attempts`` tries.
        """

        attempts_cap = self.config.summary_max_attempts if max_attempts is None else max_attempts
        rows = self.conn.execute(
            """
            SELECT sessions.*
            FROM sessions
            LEFT JOIN session_summaries ON session_summaries.session_id = sessions.id
            WHERE sessions.ended_at IS NOT NULL
              AND session_summaries.id IS NULL
              AND sessions.summary_status IS NOT 'skipped'
              AND (
                sessions.summary_status IS NULL
                OR (
                  sessions.summary_attempts < ?
                  AND (
                    sessions.next_summary_attempt_at IS NULL
                    OR sessions.next_summary_attempt_at <= ?
                  )
                )
              )
              AND EXISTS (SELECT 1 FROM observations WHERE observations.session_id = sessions.id)
            ORDER BY sessions.summary_attempts ASC, sessions.ended_at ASC, sessions.id ASC
            LIMIT ?
            """,
            (max(1, int(attempts_cap)), now or store_utils.now_iso(), limit),
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def record_summary_attempt(
        self,
        session_id: int,
        status: str,
        *,
        retry_after_s: float = 0.0,
    ) -> int:
        """Note an attempt that left the session without a summary.

        Returns the attempt count. ``failed`` attempts back off exponentially
        from ``retry_after_s``.
        """

        if status not in db.SUMMARY_STATUSES:
            raise ValueError(f"invalid summary status: {status}")
        with self.write_transaction():
            row = self.conn.execute(
                "SELECT summary_attempts FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"no session with id {session_id}")
            attempts = int(row["summary_attempts"] or 0) + 1
            next_at = None
            if status == "failed":
                delay = max(0.0, retry_after_s) * (2 ** (attempts - 1))
                next_at = (dt.datetime.now(dt.UTC) + dt.timedelta(seconds=delay)).isoformat()
            self.conn.execute(
                """
                UPDATE sessions
                SET summary_status = ?, summary_attempts = ?, next_summary_attempt_at = ?
                WHERE id = ?
                """,
                (status, attempts, next_at, session_id),
            )
        return attempts

    # prompts

    def _insert_prompt(
        self, session_id: int, prompt_text: str, source: PromptSource
    ) -> Prompt:
        if source not in PROMPT_SOURCES:
            raise ValueError(f"invalid prompt source: {source}")
        row = self.conn.execute(
            "SELECT COALESCE(MAX(ordinal), 0) + 1 AS next FROM prompts WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        ordinal = int(row["next"])
        created_at = store_utils.now_iso()
        text = self._clean_text(prompt_text)
        cur = self.conn.execute(
            """
            INSERT INTO prompts(session_id, source, ordinal, prompt_text, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, source, ordinal, text, created_at),
        )
        return Prompt(
            id=int(cur.lastrowid),
            session_id=session_id,
            source=source,
            ordinal=ordinal,
            prompt_text=text,
            created_at=created_at,
        )

    def add_prompt(
        self,
        session_id: int,
        prompt_text: str,
        source: PromptSource = "user",
        *,
        deadline: float | None = None,
    ) -> int:
        with self.write_transaction(deadline=deadline):
            return self._insert_prompt(session_id, prompt_text, source).id

    def latest_prompt(self, session_id: int) -> Prompt | None:
        row = self.conn.execute(
            "SELECT * FROM prompts WHERE session_id = ? ORDER BY ordinal DESC LIMIT 1",
            (session_id,),
        ).fetchone()
        return _prompt_from_row(row) if row else None

    def session_prompts(self, session_id: int) -> list[Prompt]:
        rows = self.conn.execute(
            "SELECT * FROM prompts WHERE session_id = ? ORDER BY ordinal",
            (session_id,),
        ).fetchall()
        return [_prompt_from_row(row) for row in rows]

    # observations

    def _insert_observation(
        self,
        session_id: int,
        kind: str,
        content: str,
        metadata: dict[str, Any] | None,
        *,
        prompt_id: int | None,
        resolve_prompt: bool,
    ) -> tuple[int, int | None]:
        if kind not in db.OBSERVATION_KINDS:
            raise ValueError(f"invalid observation kind: {kind}")
        if prompt_id is None and resolve_prompt:
            row = self.conn.execute(
                "SELECT id FROM prompts WHERE session_id = ? ORDER BY ordinal DESC LIMIT 1",
                (session_id,),
            ).fetchone()
            prompt_id = int(row["id"]) if row else None
        cur = self.conn.execute(
            """
            INSERT INTO observations(session_id, prompt_id, kind, content, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                prompt_id,
                kind,
                self._clean_text(content),
                self._clean_metadata(metadata),
                store_utils.now_iso(),
            ),
        )
        return int(cur.lastrowid), prompt_id

    def add_observation(
        self,
        session_id: int,
        kind: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        prompt_id: int | None = None,
        resolve_prompt: bool = True,
        deadline: float | None = None,
    ) -> int:
        with self.write_transaction(deadline=deadline):
            observation_id, _ = self._insert_observation(
                session_id,
                kind,
                content,
                metadata,
                prompt_id=prompt_id,
                resolve_prompt=resolve_prompt,
            )
        return observation_id

    def record_event(
        self,
        session_key: str,
        *,
        kind: str | None = None,
        content: str = "",
        metadata: dict[str, Any] | None = None,
        prompt_text: str | None = None,
        prompt_source: str = "user",
        cwd: str | None = None,
        project: str | None = None,
        deadline: float | None = None,
    ) -> RecordedEvent:
        """Find or create the session and persist one prompt or observation atomically."""

        if prompt_text is None and kind is None:
            raise ValueError("record_event needs an observation kind or prompt text")
        with self.write_transaction(deadline=deadline):
            session_id = self._session_id_for_key(session_key, cwd=cwd, project=project)
            if prompt_text is not None:
                prompt = self._insert_prompt(session_id, prompt_text, prompt_source)
                return RecordedEvent(session_id=session_id, prompt_id=prompt.id)
            observation_id, prompt_id = self._insert_observation(
                session_id,
                kind or "",
                content,
                metadata,
                prompt_id=None,
                resolve_prompt=True,
            )
        return RecordedEvent(
            session_id=session_id, observation_id=observation_id, prompt_id=prompt_id
        )

    def get_observation(self, observation_id: int) -> Observation | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        return _observation_from_row(row) if row else None

    def session_observations(
        self, session_id: int, *, kinds: Sequence[str] | None = None
    ) -> list[Observation]:
        params: list[Any] = [session_id]
        clause = ""
        if kinds:
            clause = f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(kinds)
        rows = self.conn.execute(
            f"SELECT * FROM observations WHERE session_id = ?{clause} ORDER BY created_at, id",
            params,
        ).fetchall()
        return [_observation_from_row(row) for row in rows]

    def recent_observations(self, session_id: int, since: str | dt.datetime) -> list[Observation]:
        since_iso = since.isoformat() if isinstance(since, dt.datetime) else since
        rows = self.conn.execute(
            """
            SELECT * FROM observations
            WHERE session_id = ? AND created_at >= ?
            ORDER BY created_at, id
            """,
            (session_id, since_iso),
        ).fetchall()
        return [_observation_from_row(row) for row in rows]

    def update_observation(
        self,
        observation_id: int,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Rewrite an observation in place. Only maintenance re-scrubbing uses this."""

        with self.write_transaction():
            if metadata is None:
                cur = self.conn.execute(
                    "UPDATE observations SET content = ? WHERE id = ?",
                    (self._clean_text(content), observation_id),
                )
            else:
                cur = self.conn.execute(
                    "UPDATE observations SET content = ?, metadata_json = ? WHERE id = ?",
                    (self._clean_text(content), self._clean_metadata(metadata), observation_id),
                )
        return cur.rowcount > 0

    def delete_observation(self, observation_id: int) -> bool:
        with self.write_transaction():
            cur = self.conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
        return cur.rowcount > 0

    def past_observations_on_paths(
        self,
        *,
        exclude_session_id: int | None,
        hot_paths: Iterable[str],
        kinds: Sequence[str] = ("failure", "decision"),
        limit: int = 20,
        project: str | None = None,
    ) -> list[dict[str, Any]]:
        """Failures and decisions from other sessions, each with its path overlap."""

        paths = sorted({store_utils.normalize_path(p) for p in hot_paths if p and p.strip()})
        basenames = sorted({store_utils.path_basename(p) for p in paths})
        kind_marks = ", ".join("?" for _ in kinds)
        if paths:
            path_marks = ", ".join("?" for _ in paths)
            base_marks = ", ".join("?" for _ in basenames)
            overlap_sql = f"""
                CASE
                    WHEN json_extract(o.metadata_json, '$.path') IN ({path_marks}) THEN 1.0
                    WHEN json_extract(o.metadata_json, '$.basename') IN ({base_marks}) THEN 0.5
                    ELSE 0.0
                END
            """
            overlap_params: list[Any] = [*paths, *basenames]
        else:
            overlap_sql = "0.0"
            overlap_params = []
        where = [f"o.kind IN ({kind_marks})", "o.session_id IS NOT ?"]
        params: list[Any] = [*overlap_params, *kinds, exclude_session_id]
        if project:
            where.append("s.project = ?")
            params.append(project)
        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT * FROM (
                SELECT o.*, s.session_key, s.project, {overlap_sql} AS overlap
                FROM observations AS o
                JOIN sessions AS s ON s.id = o.session_id
                WHERE {" AND ".join(where)}
            )
            ORDER BY overlap DESC, created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return db.rows_to_dicts(rows)

    def latest_session_files(
        self,
        *,
        project: str,
        exclude_session_id: int | None = None,
        limit: int = 16,
    ) -> list[str]:
        """Paths touched by the most recent other session of ``project``, newest first."""

        rows = self.conn.execute(
            """
            SELECT json_extract(o.metadata_json, '$.path') AS path, MAX(o.id) AS last_id
            FROM observations AS o
            WHERE o.session_id = (
                SELECT s.id
                FROM sessions AS s
                JOIN observations AS prior ON prior.session_id = s.id
                WHERE s.project = ?
                  AND s.id IS NOT ?
                  AND json_extract(prior.metadata_json, '$.path') IS NOT NULL
                ORDER BY prior.created_at DESC, prior.id DESC
                LIMIT 1
            )
              AND o.kind IN ('file_read', 'file_write', 'failure')
              AND json_extract(o.metadata_json, '$.path') IS NOT NULL
            GROUP BY path
            ORDER BY last_id DESC
            LIMIT ?
            """,
            (project, exclude_session_id, limit),
        ).fetchall()
        return [str(row["path"]) for row in rows if row["path"]]

    # summaries

    def replace_session_summary(
        self,
        session_id: int,
        record: SummaryRecord,
        *,
        files: Iterable[str] = (),
        model: str | None = None,
        deadline: float | None = None,
    ) -> int:
        """Write the summary for a session, overwriting any previous one."""

        fields = {name: self._clean_text(value) for name, value in record.as_dict().items()}
        now = store_utils.now_iso()
        with self.write_transaction(deadline=deadline):
            self.conn.execute(
                """
                INSERT INTO session_summaries(
                    session_id, intent, learned, completed, next_steps, notable_failures,
                    model, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    intent = excluded.intent,
                    learned = excluded.learned,
                    completed = excluded.completed,
                    next_steps = excluded.next_steps,
                    notable_failures = excluded.notable_failures,
                    model = excluded.model,
                    updated_at = excluded.updated_at
                """,
                (
                    session_id,
                    fields["intent"],
                    fields["learned"],
                    fields["completed"],
                    fields["next_steps"],
                    fields["notable_failures"],
                    model,
                    now,
                    now,
                ),
            )
            row = self.conn.execute(
                "SELECT id FROM session_summaries WHERE session_id = ?", (session_id,)
            ).fetchone()
            summary_id = int(row["id"])
            self.conn.execute("DELETE FROM summary_files WHERE summary_id = ?", (summary_id,))
            seen: set[str] = set()
            for raw in files:
                if not raw or not str(raw).strip():
                    continue
                path = store_utils.normalize_path(self._clean_text(raw))
                if path in seen:
                    continue
                seen.add(path)
                self.conn.execute(
                    "INSERT INTO summary_files(summary_id, path, basename) VALUES (?, ?, ?)",
                    (summary_id, path, store_utils.path_basename(path)),
                )
            self.conn.execute(
                """
                UPDATE sessions SET summary_status = NULL, next_summary_attempt_at = NULL
                WHERE id = ?
                """,
                (session_id,),
            )
        return summary_id

    def get_session_summary(self, session_id: int) -> SessionSummary | None:
        row = self.conn.execute(
            "SELECT * FROM session_summaries WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is None:
            return None
        files = [
            r["path"]
            for r in self.conn.execute(
                "SELECT path FROM summary_files WHERE summary_id = ? ORDER BY path",
                (row["id"],),
            ).fetchall()
        ]
        return SessionSummary(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            record=SummaryRecord(**{name: row[name] or "" for name in SummaryRecord.FIELDS}),
            model=row["model"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            files=files,
        )

    def past_summaries_with_overlap(
        self,
        *,
        exclude_session_id: int | None,
        hot_paths: Iterable[str],
        limit: int = 50,
        project: str | None = None,
    ) -> list[dict[str, Any]]:
        """Other sessions' summaries joined against the hot file set.

        An exact path match counts 1.0 and a basename-only match 0.5. Rows come
        back most-overlapping first, then most recent.
        """

        paths = sorted({store_utils.normalize_path(p) for p in hot_paths if p and p.strip()})
        basenames = sorted({store_utils.path_basename(p) for p in paths})
        params: list[Any] = []
        if paths:
            path_marks = ", ".join("?" for _ in paths)
            base_marks = ", ".join("?" for _ in basenames)
            overlap_sql = f"""
                COALESCE((
                    SELECT SUM(
                        CASE
                            WHEN sf.path IN ({path_marks}) THEN 1.0
                            WHEN sf.basename IN ({base_marks}) THEN 0.5
                            ELSE 0.0
                        END
                    )
                    FROM summary_files AS sf
                    WHERE sf.summary_id = ss.id
                ), 0.0)
            """
            params.extend(paths)
            params.extend(basenames)
        else:
            overlap_sql = "0.0"
        where = ["ss.session_id IS NOT ?"]
        params.append(exclude_session_id)
        if project:
            where.append("s.project = ?")
            params.append(project)
        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT ss.*, s.session_key, s.project, s.ended_at,
                {overlap_sql} AS overlap,
                (SELECT group_concat(path, char(10)) FROM summary_files WHERE summary_id = ss.id)
                    AS files
            FROM session_summaries AS ss
            JOIN sessions AS s ON s.id = ss.session_id
            WHERE {" AND ".join(where)}
            ORDER BY overlap DESC, ss.updated_at DESC, ss.id DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        results = db.rows_to_dicts(rows)
        for item in results:
            item["files"] = [p for p in (item.get("files") or "").split("\n") if p]
        return results

    # search

    def search(
        self,
        query: str,
        limit: int = 10,
        kinds: Iterable[str] | None = None,
    ) -> list[SearchHit]:
        return store_search.search(self, query, limit=limit, kinds=kinds)

    # maintenance

    def status(self) -> StoreStatus:
        return store_maintenance.status(self)

    def maintain(
        self,
        *,
        prune: bool = True,
        rescrub: bool = False,
        dry_run: bool = False,
        retention_days: int | None = None,
    ) -> MaintenanceReport:
        return store_maintenance.maintain(
            self,
            prune=prune,
            rescrub=rescrub,
            dry_run=dry_run,
            retention_days=self.config.retention_days if retention_days is None else retention_days,
        )

    def rescrub_observations(self, *, dry_run: bool = False) -> int:
        return store_maintenance.rescrub_observations(self, dry_run=dry_run)

    def prune_observations(self, retention_days: int, *, dry_run: bool = False) -> int:
        return store_maintenance.prune_observations(self, retention_days, dry_run=dry_run)

    def stats(self) -> dict[str, int]:
        return store_maintenance.table_counts(self.conn)
