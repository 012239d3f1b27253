from .events import DEFAULT_SESSION_KEY, classify_event, is_internal_memory_tool
from .types import (
    CommandRun,
    DecisionRecorded,
    Event,
    FileRead,
    FileWrite,
    HookPayload,
    NativePayload,
    PromptSubmitted,
    SessionEnd,
    SessionStart,
    ToolFailure,
    Unknown,
)

__all__ = [
    "DEFAULT_SESSION_KEY",
    "CommandRun",
    "DecisionRecorded",
    "Event",
    "FileRead",
    "FileWrite",
    "HookPayload",
    "NativePayload",
    "PromptSubmitted",
    "SessionEnd",
    "SessionStart",
    "ToolFailure",
    "Unknown",
    "classify_event",
    "is_internal_memory_tool",
]
