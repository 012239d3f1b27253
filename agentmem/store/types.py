from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

PromptSource = Literal["user", "agent"]


@dataclass(frozen=True)
class Session:
    id: int
    session_key: str
    started_at: str
    ended_at: str | None
    cwd: str | None
    project: str | None
    metadata: dict[str, Any]
    summary_status: str | None = None
    summary_attempts: int = 0


@dataclass(frozen=True)
class Prompt:
    id: int
    session_id: int
    source: PromptSource
    ordinal: int
    prompt_text: str
    created_at: str


@dataclass(frozen=True)
class Observation:
    id: int
    session_id: int
    prompt_id: int | None
    kind: str
    content: str
    metadata: dict[str, Any]
    created_at: str


@dataclass(frozen=True)
class SummaryRecord:
    """Fixed-shape narrative residue of one closed session."""

    intent: str = ""
    learned: str = ""
    completed: str = ""
    next_steps: str = ""
    notable_failures: str = ""

    FIELDS = ("intent", "learned", "completed", "next_steps", "notable_failures")

    def is_empty(self) -> bool:
        return not any(getattr(self, name).strip() for name in self.FIELDS)

    def as_dict(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in self.FIELDS}


@dataclass(frozen=True)
class SessionSummary:
    id: int
    session_id: int
    record: SummaryRecord
    model: str | None
    created_at: str
    updated_at: str
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RecordedEvent:
    session_id: int
    observation_id: int | None = None
    prompt_id: int | None = None


@dataclass
class SearchHit:
    entity: str
    id: int
    session_id: int
    kind: str
    text: str
    score: float
    created_at: str


@dataclass
class MaintenanceReport:
    optimized: bool = False
    integrity_ok: bool = True
    fts_ok: dict[str, bool] = field(default_factory=dict)
    rebuilt: list[str] = field(default_factory=list)
    foreign_key_violations: int = 0
    pruned_observations: int = 0
    rescrubbed: int = 0
    checkpointed: bool = False
    problems: list[str] = field(default_factory=list)


@dataclass
class StoreStatus:
    path: str
    size_bytes: int
    wal_bytes: int
    schema_version: int
    latest_version: int
    pending_migrations: int
    missing_triggers: list[str]
    integrity_ok: bool
    fts_ok: dict[str, bool]
    counts: dict[str, int]
    problems: list[str] = field(default_factory=list)
