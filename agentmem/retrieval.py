from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .capture import resolve_path, truncate_text
from .config import AgentMemConfig, load_config
from .db import from_json
from .store import MemoryStore
from .store.search import summary_text
from .store.utils import now_iso, recency_score

logger = logging.getLogger(__name__)

ITEM_BODY_MAX_CHARS = 600
MICRO_HOT_FILES = 8

SECTION_TITLES = {
    "micro": "Current focus",
    "summary": "Past sessions",
    "decision": "Decisions",
    "failure": "Known failures",
}


@dataclass
class RetrievalContext:
    session_key: str | None = None
    project: str | None = None
    current_files: list[str] = field(default_factory=list)
    recent_kinds: list[str] = field(default_factory=list)
    elapsed_s: float | None = None
    cwd: str | None = None


@dataclass
class MicroSignals:
    hot_files: list[str] = field(default_factory=list)
    reads: int = 0
    writes: int = 0
    failures: int = 0
    commands: int = 0
    read_write_ratio: float | None = None
    recent_kinds: list[str] = field(default_factory=list)
    # Files of the project's previous session; ranking input only, never shown.
    carried_files: list[str] = field(default_factory=list)

    def overlap_paths(self) -> list[str]:
        return self.hot_files or self.carried_files

    def is_empty(self) -> bool:
        return not (self.hot_files or self.reads or self.writes or self.failures or self.commands)


@dataclass
class ContextItem:
    kind: str
    title: str
    body: str
    score: float
    session_key: str | None = None
    created_at: str | None = None
    overlap: float = 0.0
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "body": self.body,
            "score": round(self.score, 4),
            "session_key": self.session_key,
            "created_at": self.created_at,
            "overlap": self.overlap,
            "id": self.id,
        }


@dataclass
class ContextPack:
    items: list[ContextItem] = field(default_factory=list)
    text: str = ""
    micro: MicroSignals | None = None
    partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "text": self.text,
            "micro": None if self.micro is None else self.micro.__dict__.copy(),
            "partial": self.partial,
        }


def _render_line(item: ContextItem) -> str:
    prefix = f"[{item.id}] " if item.id is not None else ""
    body = item.body.replace("\n", " | ") if item.kind != "micro" else item.body
    return f"{prefix}({item.kind}) {item.title} - {body}"


def render_context_pack(items: Iterable[ContextItem]) -> str:
    sections: dict[str, list[str]] = {}
    for item in items:
        sections.setdefault(item.kind, []).append(_render_line(item))
    if not sections:
        return ""
    blocks = []
    for kind in ("micro", "summary", "decision", "failure"):
        lines = sections.pop(kind, None)
        if lines:
            blocks.append(f"## {SECTION_TITLES[kind]}\n" + "\n".join(lines))
    for kind, lines in sections.items():
        blocks.append(f"## {kind.title()}\n" + "\n".join(lines))
    return "\n\n".join(blocks)


def fit_budget(items: list[ContextItem], *, max_items: int, max_chars: int) -> list[ContextItem]:
    """Keep items in rank order while both the item and character budgets hold."""

    selected: list[ContextItem] = []
    for item in items:
        if max_items > 0 and len(selected) >= max_items:
            break
        candidate = selected + [item]
        if max_chars > 0 and len(render_context_pack(candidate)) > max_chars:
            continue
        selected = candidate
    return selected


def _day(value: str | None) -> str:
    return (value or "")[:10]


class Retriever:
    def __init__(self, store: MemoryStore, config: AgentMemConfig | None = None) -> None:
        self.store = store
        self.config = config or store.config

    def micro_signals(self, context: RetrievalContext) -> tuple[MicroSignals, int | None]:
        hot: list[str] = []

        def touch(path: str | None) -> None:
            if not path:
                return
            resolved = resolve_path(path, context.cwd)
            if resolved and resolved not in hot:
                hot.append(resolved)

        for path in context.current_files:
            touch(path)
        signals = MicroSignals(recent_kinds=list(context.recent_kinds))
        session = self.store.get_session_by_key(context.session_key) if context.session_key else None
        if session is not None:
            since = dt.datetime.now(dt.UTC) - dt.timedelta(
                minutes=max(0, self.config.micro_window_minutes)
            )
            observations = self.store.recent_observations(session.id, since)
            for obs in reversed(observations):
                if obs.kind == "file_read":
                    signals.reads += 1
                elif obs.kind == "file_write":
                    signals.writes += 1
                elif obs.kind == "failure":
                    signals.failures += 1
                elif obs.kind == "command":
                    signals.commands += 1
                if obs.kind in {"file_read", "file_write", "failure"}:
                    touch(obs.metadata.get("path"))
            if not signals.recent_kinds:
                signals.recent_kinds = [obs.kind for obs in observations[-10:]]
        if signals.writes:
            signals.read_write_ratio = signals.reads / signals.writes
        elif signals.reads:
            signals.read_write_ratio = float(signals.reads)
        signals.hot_files = hot
        if not hot and context.project:
            signals.carried_files = self.store.latest_session_files(
                project=context.project,
                exclude_session_id=session.id if session else None,
                limit=MICRO_HOT_FILES * 2,
            )
        return signals, session.id if session else None

    def micro_items(self, micro: MicroSignals) -> list[ContextItem]:
        if micro.is_empty():
            return []
        lines = []
        if micro.hot_files:
            shown = micro.hot_files[:MICRO_HOT_FILES]
            lines.append("Recently touched: " + ", ".join(shown))
        activity = f"{micro.reads} read(s), {micro.writes} write(s), {micro.commands} command(s)"
        if micro.failures:
            activity += f", {micro.failures} failure(s)"
        lines.append(activity)
        return [
            ContextItem(
                kind="micro",
                title="this session",
                body="\n".join(lines),
                score=float("inf"),
                created_at=now_iso(),
            )
        ]

    def _score(self, overlap: float, created_at: str | None, now: dt.datetime) -> float:
        return self.config.overlap_weight * overlap + recency_score(created_at, now=now)

    def macro_items(
        self,
        micro: MicroSignals,
        *,
        session_id: int | None,
        project: str | None = None,
    ) -> list[ContextItem]:
        now = dt.datetime.now(dt.UTC)
        items: list[ContextItem] = []
        rows = self.store.past_summaries_with_overlap(
            exclude_session_id=session_id,
            hot_paths=micro.overlap_paths(),
            limit=self.config.macro_candidate_limit,
            project=project,
        )
        for row in rows:
            body = summary_text(row)
            if not body:
                continue
            overlap = float(row.get("overlap") or 0.0)
            title = f"session {row['session_key']}"
            if row.get("ended_at"):
                title += f" ({_day(row['ended_at'])})"
            items.append(
                ContextItem(
                    kind="summary",
                    title=title,
                    body=truncate_text(body, ITEM_BODY_MAX_CHARS),
                    score=self._score(overlap, row.get("updated_at"), now),
                    session_key=row["session_key"],
                    created_at=row.get("updated_at"),
                    overlap=overlap,
                    id=int(row["id"]),
                )
            )
        obs_rows = self.store.past_observations_on_paths(
            exclude_session_id=session_id,
            hot_paths=micro.overlap_paths(),
            limit=self.config.macro_candidate_limit,
            project=project,
        )
        for row in obs_rows:
            overlap = float(row.get("overlap") or 0.0)
            if row["kind"] == "failure" and overlap <= 0:
                continue
            metadata = from_json(row.get("metadata_json"))
            title = str(metadata.get("basename") or "") or _day(row.get("created_at"))
            items.append(
                ContextItem(
                    kind=row["kind"],
                    title=title,
                    body=truncate_text(row["content"], ITEM_BODY_MAX_CHARS),
                    score=self._score(overlap, row.get("created_at"), now),
                    session_key=row.get("session_key"),
                    created_at=row.get("created_at"),
                    overlap=overlap,
                    id=int(row["id"]),
                )
            )
        items.sort(key=lambda item: (item.score, item.created_at or ""), reverse=True)
        return items

    def retrieve(self, context: RetrievalContext) -> ContextPack:
        partial = False
        session_id: int | None = None
        try:
            micro, session_id = self.micro_signals(context)
        except Exception as exc:
            logger.warning("micro layer unavailable", exc_info=exc)
            micro = MicroSignals(
                hot_files=[resolve_path(p, context.cwd) for p in context.current_files if p],
                recent_kinds=list(context.recent_kinds),
            )
            partial = True
        macro: list[ContextItem] = []
        try:
            macro = self.macro_items(micro, session_id=session_id, project=context.project)
        except Exception as exc:
            logger.warning("macro layer unavailable", exc_info=exc)
            partial = True
        ranked = self.micro_items(micro) + macro
        items = fit_budget(
            ranked,
            max_items=self.config.context_max_items,
            max_chars=self.config.context_max_chars,
        )
        return ContextPack(
            items=items,
            text=render_context_pack(items),
            micro=micro,
            partial=partial,
        )


def retrieve_context(
    db_path: Path | str | None,
    context: RetrievalContext,
    config: AgentMemConfig | None = None,
) -> ContextPack:
    """Build a context pack on a read-only handle; any store problem yields an empty pack."""

    cfg = config or load_config()
    try:
        store = MemoryStore(db_path, read_only=True, config=cfg)
    except Exception as exc:
        logger.info("store unavailable for retrieval", extra={"error": str(exc)})
        return ContextPack()
    try:
        return Retriever(store, cfg).retrieve(context)
    finally:
        store.close()
