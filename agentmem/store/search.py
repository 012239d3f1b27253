from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .types import SearchHit

if TYPE_CHECKING:
    from ._store import MemoryStore

_FTS_OPERATORS = {"or", "and", "not", "near"}

OBSERVATION_COLUMNS = ("kind", "content")
SUMMARY_COLUMNS = ("intent", "learned", "completed", "next_steps", "notable_failures")


def expand_query(query: str) -> str:
    """Turn free text into an FTS5 OR-query of quoted terms ('' if nothing usable)."""

    tokens = re.findall(r"[A-Za-z0-9_]+", query or "")
    tokens = [token for token in tokens if token.lower() not in _FTS_OPERATORS]
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"' for token in tokens)


def _weights(store: MemoryStore, columns: Iterable[str]) -> list[float]:
    return [float(store.search_weights.get(column, 1.0)) for column in columns]


def summary_text(row: dict[str, str]) -> str:
    labels = {
        "intent": "Intent",
        "learned": "Learned",
        "completed": "Completed",
        "next_steps": "Next steps",
        "notable_failures": "Failures",
    }
    parts = []
    for column in SUMMARY_COLUMNS:
        value = (row.get(column) or "").strip()
        if value:
            parts.append(f"{labels[column]}: {value}")
    return "\n".join(parts)


def search_observations(
    store: MemoryStore,
    expanded: str,
    limit: int,
    kinds: Iterable[str] | None = None,
) -> list[SearchHit]:
    weights = _weights(store, OBSERVATION_COLUMNS)
    params: list[object] = [*weights, expanded]
    where = ["observations_fts MATCH ?"]
    kind_list = [kind for kind in (kinds or []) if kind]
    if kind_list:
        where.append(f"observations.kind IN ({', '.join('?' for _ in kind_list)})")
        params.extend(kind_list)
    params.append(limit)
    rows = store.conn.execute(
        f"""
        SELECT observations.id, observations.session_id, observations.kind,
            observations.content, observations.created_at,
            -bm25(observations_fts, ?, ?) AS score
        FROM observations_fts
        JOIN observations ON observations.id = observations_fts.rowid
        WHERE {" AND ".join(where)}
        ORDER BY score DESC, observations.id DESC
        LIMIT ?
        """,
        params,
    ).fetchall()
    return [
        SearchHit(
            entity="observation",
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            kind=row["kind"],
            text=row["content"],
            score=float(row["score"]),
            created_at=row["created_at"],
        )
        for row in rows
    ]


def search_summaries(store: MemoryStore, expanded: str, limit: int) -> list[SearchHit]:
    weights = _weights(store, SUMMARY_COLUMNS)
    rows = store.conn.execute(
        """
        SELECT session_summaries.*,
            -bm25(summaries_fts, ?, ?, ?, ?, ?) AS score
        FROM summaries_fts
        JOIN session_summaries ON session_summaries.id = summaries_fts.rowid
        WHERE summaries_fts MATCH ?
        ORDER BY score DESC, session_summaries.id DESC
        LIMIT ?
        """,
        (*weights, expanded, limit),
    ).fetchall()
    return [
        SearchHit(
            entity="summary",
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            kind="summary",
            text=summary_text(dict(row)),
            score=float(row["score"]) * store.summary_boost,
            created_at=row["updated_at"],
        )
        for row in rows
    ]


def search(
    store: MemoryStore,
    query: str,
    limit: int = 10,
    kinds: Iterable[str] | None = None,
    include_summaries: bool = True,
) -> list[SearchHit]:
    if limit <= 0:
        return []
    expanded = expand_query(query)
    if not expanded:
        return []
    kind_list = [kind for kind in (kinds or []) if kind]
    hits = []
    if not kind_list or any(kind != "summary" for kind in kind_list):
        hits.extend(
            search_observations(
                store, expanded, limit, [kind for kind in kind_list if kind != "summary"]
            )
        )
    if include_summaries and (not kind_list or "summary" in kind_list):
        hits.extend(search_summaries(store, expanded, limit))
    hits.sort(key=lambda hit: (hit.score, hit.created_at), reverse=True)
    return hits[:limit]
