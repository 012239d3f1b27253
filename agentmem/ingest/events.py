from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, cast

from ..redaction import strip_ansi
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

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "default"

LOW_SIGNAL_TOOLS = {
    "tui",
    "shell",
    "cmd",
    "task",
    "slashcommand",
    "skill",
    "todowrite",
    "todoread",
    "askuserquestion",
    "glob",
    "grep",
    "ls",
    "list",
    "webfetch",
    "websearch",
    "exitplanmode",
}

WRITE_TOOLS = {
    "write": "write",
    "edit": "edit",
    "multiedit": "edit",
    "notebookedit": "edit",
    "patch": "edit",
}

READ_TOOLS = {"read", "notebookread", "view"}
BASH_TOOLS = {"bash", "shell_command", "exec"}


def is_internal_memory_tool(tool: str) -> bool:
    """Return True for the agent's own memory tools.

    Their outputs are previously stored memory; recording them again would
    feed memory back into itself.
    """

    return tool.startswith("agentmem_") or tool.startswith("mcp__agentmem")


def normalize_tool_name(value: Any) -> str:
    tool = str(value or "tool").strip().lower()
    if tool.startswith("mcp__"):
        return tool
    if "." in tool:
        tool = tool.split(".")[-1]
    if ":" in tool:
        tool = tool.split(":")[-1]
    return tool


def _str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    else:
        text = str(value)
    return text if text.strip() else None


def _int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _session_key(payload: Mapping[str, Any]) -> str:
    raw = payload.get("session_id") or payload.get("sessionID") or payload.get("session_key")
    return _str(raw) or DEFAULT_SESSION_KEY


def _edit_strings(tool_input: Mapping[str, Any]) -> tuple[str, str]:
    edits = tool_input.get("edits")
    if isinstance(edits, list) and edits:
        olds = []
        news = []
        for edit in edits:
            if isinstance(edit, Mapping):
                olds.append(str(edit.get("old_string") or ""))
                news.append(str(edit.get("new_string") or ""))
        return "\n".join(olds), "\n".join(news)
    old = tool_input.get("old_string") or tool_input.get("oldString") or ""
    new = (
        tool_input.get("new_string")
        or tool_input.get("newString")
        or tool_input.get("content")
        or tool_input.get("new_source")
        or ""
    )
    return str(old), str(new)


def _response_error(response: Any, error: Any) -> tuple[str | None, int | None]:
    """Pull an error text and exit code out of a tool response, if it failed."""

    explicit = _str(error)
    if explicit:
        return explicit, None
    if isinstance(response, Mapping):
        exit_code = _int(
            response.get("exit_code")
            if response.get("exit_code") is not None
            else response.get("returncode", response.get("exitCode"))
        )
        failed = bool(response.get("is_error") or response.get("isError"))
        failed = failed or bool(response.get("interrupted"))
        failed = failed or (exit_code is not None and exit_code != 0)
        message = _str(response.get("error"))
        if message:
            return message, exit_code
        if failed:
            detail = _str(response.get("stderr")) or _str(response.get("stdout")) or "tool failed"
            return detail, exit_code
        return None, exit_code
    if isinstance(response, str) and response.lstrip().lower().startswith("error:"):
        return response, None
    return None, None


def classify_tool_use(
    session_key: str,
    tool: str,
    tool_input: Mapping[str, Any],
    response: Any,
    *,
    error: Any = None,
    cwd: str | None = None,
) -> Event:
    tool = normalize_tool_name(tool)
    if is_internal_memory_tool(tool):
        return Unknown(reason=f"internal tool {tool}", session_key=session_key, cwd=cwd)
    if tool in LOW_SIGNAL_TOOLS:
        return Unknown(reason=f"low-signal tool {tool}", session_key=session_key, cwd=cwd)
    path = _str(
        tool_input.get("file_path")
        or tool_input.get("filePath")
        or tool_input.get("notebook_path")
        or tool_input.get("path")
    )
    command = _str(tool_input.get("command"))
    error_text, exit_code = _response_error(response, error)
    if error_text:
        return ToolFailure(
            session_key=session_key,
            tool=tool,
            error=strip_ansi(error_text),
            command=command if tool in BASH_TOOLS else None,
            path=path,
            exit_code=exit_code,
            cwd=cwd,
        )
    if tool in BASH_TOOLS:
        if not command:
            return Unknown(reason="command without text", session_key=session_key, cwd=cwd)
        return CommandRun(
            session_key=session_key,
            command=command,
            description=_str(tool_input.get("description")),
            exit_code=exit_code,
            cwd=cwd,
        )
    if tool in READ_TOOLS:
        if not path:
            return Unknown(reason="read without path", session_key=session_key, cwd=cwd)
        return FileRead(session_key=session_key, path=path, cwd=cwd)
    if tool in WRITE_TOOLS:
        if not path:
            return Unknown(reason="write without path", session_key=session_key, cwd=cwd)
        old, new = _edit_strings(tool_input)
        return FileWrite(
            session_key=session_key,
            path=path,
            operation=WRITE_TOOLS[tool],
            old_string=old,
            new_string=new,
            cwd=cwd,
        )
    return Unknown(reason=f"unhandled tool {tool}", session_key=session_key, cwd=cwd)


def _classify_hook(payload: HookPayload) -> Event:
    name = str(payload.get("hook_event_name") or "")
    session_key = _session_key(payload)
    cwd = _str(payload.get("cwd"))
    if name == "SessionStart":
        return SessionStart(
            session_key=session_key,
            cwd=cwd,
            project=_str(payload.get("project")),
            source=_str(payload.get("source")),
        )
    if name == "SessionEnd":
        return SessionEnd(session_key=session_key, reason=_str(payload.get("reason")), cwd=cwd)
    if name == "UserPromptSubmit":
        text = _str(payload.get("prompt"))
        if not text:
            return Unknown(reason="empty prompt", session_key=session_key, cwd=cwd)
        return PromptSubmitted(session_key=session_key, text=text, cwd=cwd)
    if name in {"PostToolUse", "PostToolUseFailure"}:
        raw_input = payload.get("tool_input")
        tool_input = raw_input if isinstance(raw_input, Mapping) else {}
        error = payload.get("error")
        if name == "PostToolUseFailure" and not _str(error):
            error = "tool failed"
        return classify_tool_use(
            session_key,
            str(payload.get("tool_name") or ""),
            tool_input,
            payload.get("tool_response"),
            error=error,
            cwd=cwd,
        )
    return Unknown(reason=f"unhandled hook event {name}", session_key=session_key, cwd=cwd)


def _classify_plugin(payload: Mapping[str, Any]) -> Event:
    session_key = _session_key(payload)
    raw_args = payload.get("args")
    args = raw_args if isinstance(raw_args, Mapping) else {}
    cwd = _str(payload.get("cwd") or args.get("cwd"))
    return classify_tool_use(
        session_key,
        str(payload.get("tool") or ""),
        args,
        payload.get("result"),
        error=payload.get("error"),
        cwd=cwd,
    )


def _classify_native(payload: NativePayload) -> Event:
    kind = str(payload.get("kind") or "").strip().lower()
    session_key = _session_key(payload)
    cwd = _str(payload.get("cwd"))
    text = _str(payload.get("text"))
    path = _str(payload.get("path"))
    if kind == "session_start":
        return SessionStart(
            session_key=session_key,
            cwd=cwd,
            project=_str(payload.get("project")),
            source=_str(payload.get("source")),
        )
    if kind == "session_end":
        return SessionEnd(session_key=session_key, reason=_str(payload.get("reason")), cwd=cwd)
    if kind == "prompt":
        if not text:
            return Unknown(reason="empty prompt", session_key=session_key, cwd=cwd)
        source = str(payload.get("source") or "user")
        return PromptSubmitted(session_key=session_key, text=text, source=source, cwd=cwd)
    if kind == "command":
        exit_code = _int(payload.get("exit_code"))
        error = _str(payload.get("error"))
        if not text:
            return Unknown(reason="command without text", session_key=session_key, cwd=cwd)
        if error or (exit_code is not None and exit_code != 0):
            return ToolFailure(
                session_key=session_key,
                tool="bash",
                error=strip_ansi(error or f"exit code {exit_code}"),
                command=text,
                exit_code=exit_code,
                cwd=cwd,
            )
        return CommandRun(session_key=session_key, command=text, exit_code=exit_code, cwd=cwd)
    if kind == "file_read":
        if not path:
            return Unknown(reason="read without path", session_key=session_key, cwd=cwd)
        return FileRead(session_key=session_key, path=path, cwd=cwd)
    if kind == "file_write":
        if not path:
            return Unknown(reason="write without path", session_key=session_key, cwd=cwd)
        return FileWrite(
            session_key=session_key,
            path=path,
            operation=str(payload.get("operation") or "write"),
            old_string=str(payload.get("old_string") or ""),
            new_string=str(payload.get("new_string") or ""),
            cwd=cwd,
        )
    if kind == "failure":
        error = _str(payload.get("error")) or text
        if not error:
            return Unknown(reason="failure without error", session_key=session_key, cwd=cwd)
        return ToolFailure(
            session_key=session_key,
            tool=str(payload.get("tool") or "unknown"),
            error=strip_ansi(error),
            command=_str(payload.get("command")),
            path=path,
            exit_code=_int(payload.get("exit_code")),
            cwd=cwd,
        )
    if kind == "decision":
        if not text:
            return Unknown(reason="empty decision", session_key=session_key, cwd=cwd)
        return DecisionRecorded(session_key=session_key, text=text, path=path, cwd=cwd)
    return Unknown(reason=f"unknown kind {kind or '<missing>'}", session_key=session_key, cwd=cwd)


def classify_event(payload: Any) -> Event:
    """Map one raw payload onto the closed set of event variants.

    Accepts the native ``{"kind": ...}`` shape, host hook payloads
    (``hook_event_name``) and plugin ``tool.execute.after`` events. Never
    raises; anything it cannot make sense of becomes ``Unknown``.
    """

    if not isinstance(payload, Mapping):
        return Unknown(reason=f"payload is {type(payload).__name__}, not an object")
    try:
        if payload.get("hook_event_name"):
            return _classify_hook(cast(HookPayload, payload))
        if payload.get("type") == "tool.execute.after":
            return _classify_plugin(payload)
        if payload.get("kind"):
            return _classify_native(cast(NativePayload, payload))
    except Exception as exc:
        logger.warning("event classification failed", exc_info=exc)
        return Unknown(reason=f"classification error: {type(exc).__name__}")
    return Unknown(reason="unrecognized payload shape", session_key=_str(payload.get("session_id")))
