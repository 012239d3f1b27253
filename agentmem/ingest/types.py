from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, TypedDict


class HookPayload(TypedDict, total=False):
    hook_event_name: str
    session_id: str
    cwd: str
    project: str
    source: str
    reason: str
    prompt: str
    tool_name: str
    tool_input: dict[str, Any]
    tool_response: Any
    error: Any


class NativePayload(TypedDict, total=False):
    kind: str
    session_id: str
    cwd: str
    project: str
    text: str
    path: str
    error: str
    exit_code: int
    source: str
    operation: str
    old_string: str
    new_string: str


@dataclass(frozen=True, slots=True)
class SessionStart:
    kind: ClassVar[str] = "session_start"
    session_key: str
    cwd: str | None = None
    project: str | None = None
    source: str | None = None


@dataclass(frozen=True, slots=True)
class SessionEnd:
    kind: ClassVar[str] = "session_end"
    session_key: str
    reason: str | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class PromptSubmitted:
    kind: ClassVar[str] = "prompt"
    session_key: str
    text: str
    source: str = "user"
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class CommandRun:
    kind: ClassVar[str] = "command"
    session_key: str
    command: str
    description: str | None = None
    exit_code: int | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class FileRead:
    kind: ClassVar[str] = "file_read"
    session_key: str
    path: str
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class FileWrite:
    kind: ClassVar[str] = "file_write"
    session_key: str
    path: str
    operation: str
    old_string: str = ""
    new_string: str = ""
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class ToolFailure:
    kind: ClassVar[str] = "failure"
    session_key: str
    tool: str
    error: str
    command: str | None = None
    path: str | None = None
    exit_code: int | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class DecisionRecorded:
    kind: ClassVar[str] = "decision"
    session_key: str
    text: str
    path: str | None = None
    cwd: str | None = None


@dataclass(frozen=True, slots=True)
class Unknown:
    kind: ClassVar[str] = "unknown"
    reason: str
    session_key: str | None = None
    cwd: str | None = None


Event = (
    SessionStart
    | SessionEnd
    | PromptSubmitted
    | CommandRun
    | FileRead
    | FileWrite
    | ToolFailure
    | DecisionRecorded
    | Unknown
)
