from ._store import PROMPT_SOURCES, MemoryStore
from .types import (
    MaintenanceReport,
    Observation,
    Prompt,
    RecordedEvent,
    SearchHit,
    Session,
    SessionSummary,
    StoreStatus,
    SummaryRecord,
)

__all__ = [
    "MaintenanceReport",
    "MemoryStore",
    "Observation",
    "PROMPT_SOURCES",
    "Prompt",
    "RecordedEvent",
    "SearchHit",
    "Session",
    "SessionSummary",
    "StoreStatus",
    "SummaryRecord",
]
