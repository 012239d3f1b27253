"""Turn one host event into at most one persisted prompt or observation.

Capture runs inside the host's hook process, so it is built to give up
rather than get in the way: unknown payloads are dropped, every failure is
logged to the side channel, and ``CapturePipeline.capture`` never raises.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import AgentMemConfig, load_config
from .db import StoreBusyError
from .ingest import (
    CommandRun,
    DecisionRecorded,
    Event,
    FileRead,
    FileWrite,
    PromptSubmitted,
    SessionEnd,
    SessionStart,
    ToolFailure,
    Unknown,
    classify_event,
)
from .redaction import DEFAULT_FILTER, SecretFilter
from .store import MemoryStore
from .store.utils import normalize_path, path_basename

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n[agentmem] truncated"

_PRIVATE_RE = re.compile(r"<private>.*?</private>", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class CaptureResult:
    status: str
    kind: str
    observation_id: int | None = None
    prompt_id: int | None = None
    session_id: int | None = None
    reason: str | None = None

    @property
    def stored(self) -> bool:
        return self.status in {"stored", "session"}


@dataclass
class ExtractedObservation:
    kind: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def strip_private(text: str) -> str:
    if not text:
        return ""
    return _PRIVATE_RE.sub("", text)


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}{TRUNCATION_NOTICE}"


def resolve_path(path: str, cwd: str | None) -> str:
    expanded = os.path.expanduser(path.strip())
    if cwd and not os.path.isabs(expanded):
        expanded = os.path.join(cwd, expanded)
    return normalize_path(os.path.normpath(expanded))


def first_line(text: str, max_chars: int) -> str:
    for line in text.splitlines():
        if line.strip():
            return truncate_text(line.strip(), max_chars)
    return ""


def project_for(cwd: str | None, project: str | None = None) -> str | None:
    if project:
        return project
    if not cwd:
        return None
    return path_basename(cwd) or None


class CapturePipeline:
    def __init__(
        self,
        store_factory: Callable[[], MemoryStore],
        config: AgentMemConfig | None = None,
        *,
        secret_filter: SecretFilter | None = None,
    ) -> None:
        self.config = config or load_config()
        self.filter = secret_filter or DEFAULT_FILTER
        self._store_factory = store_factory
        self._store: MemoryStore | None = None

    def _get_store(self) -> MemoryStore:
        if self._store is None:
            self._store = self._store_factory()
        return self._store

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None

    def _path_metadata(self, path: str | None, cwd: str | None) -> dict[str, Any]:
        if not path:
            return {}
        resolved = resolve_path(path, cwd)
        return {"path": resolved, "basename": path_basename(resolved)}

    def extract(self, event: Event) -> ExtractedObservation | None:
        """Reduce an event to the fields worth keeping. Full outputs are never kept."""

        cfg = self.config
        if isinstance(event, CommandRun):
            metadata: dict[str, Any] = {}
            if event.description:
                metadata["description"] = event.description
            if event.exit_code is not None:
                metadata["exit_code"] = event.exit_code
            if event.cwd:
                metadata["cwd"] = event.cwd
            return ExtractedObservation(
                "command",
                truncate_text(strip_private(event.command), cfg.error_max_chars),
                metadata,
            )
        if isinstance(event, FileRead):
            metadata = self._path_metadata(event.path, event.cwd)
            return ExtractedObservation("file_read", f"read {metadata['path']}", metadata)
        if isinstance(event, FileWrite):
            metadata = self._path_metadata(event.path, event.cwd)
            metadata["operation"] = event.operation
            metadata["old_size"] = len(event.old_string)
            metadata["new_size"] = len(event.new_string)
            if event.operation == "edit":
                preview = first_line(strip_private(event.new_string), cfg.preview_max_chars)
                if preview:
                    metadata["preview"] = preview
            return ExtractedObservation(
                "file_write", f"{event.operation} {metadata['path']}", metadata
            )
        if isinstance(event, ToolFailure):
            metadata = self._path_metadata(event.path, event.cwd)
            metadata["tool"] = event.tool
            if event.exit_code is not None:
                metadata["exit_code"] = event.exit_code
            error = truncate_text(strip_private(event.error).strip(), cfg.error_max_chars)
            if event.command:
                metadata["command"] = truncate_text(
                    strip_private(event.command), cfg.preview_max_chars
                )
                content = f"$ {metadata['command']}\n{error}"
            else:
                content = error
            return ExtractedObservation("failure", content, metadata)
        if isinstance(event, DecisionRecorded):
            metadata = self._path_metadata(event.path, event.cwd)
            return ExtractedObservation("decision", strip_private(event.text).strip(), metadata)
        return None

    def capture(self, payload: Any) -> CaptureResult:
        return self.capture_event(classify_event(payload))

    def capture_event(self, event: Event) -> CaptureResult:
        started = time.monotonic()
        deadline = started + max(0, self.config.capture_deadline_ms) / 1000.0
        if isinstance(event, Unknown):
            logger.debug("dropping event", extra={"reason": event.reason})
            return CaptureResult(status="dropped", kind=event.kind, reason=event.reason)
        try:
            result = self._persist(event, deadline)
        except StoreBusyError as exc:
            logger.warning(
                "capture abandoned: store busy",
                extra={"kind": event.kind, "session_key": event.session_key, "error": str(exc)},
            )
            return CaptureResult(status="failed", kind=event.kind, reason="store busy")
        except Exception as exc:
            logger.error(
                "capture failed",
                exc_info=exc,
                extra={"kind": event.kind, "session_key": event.session_key},
            )
            return CaptureResult(status="failed", kind=event.kind, reason=type(exc).__name__)
        logger.debug(
            "captured event",
            extra={
                "kind": event.kind,
                "status": result.status,
                "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return result

    def _persist(self, event: Event, deadline: float) -> CaptureResult:
        if isinstance(event, SessionStart):
            store = self._get_store()
            session_id = store.get_or_create_session(
                event.session_key,
                cwd=event.cwd,
                project=project_for(event.cwd, event.project),
                metadata={"source": event.source} if event.source else None,
                reopen=True,
                deadline=deadline,
            )
            return CaptureResult(status="session", kind=event.kind, session_id=session_id)
        if isinstance(event, SessionEnd):
            store = self._get_store()
            session_id = store.close_session(event.session_key, deadline=deadline)
            if session_id is None:
                return CaptureResult(status="dropped", kind=event.kind, reason="unknown session")
            return CaptureResult(status="session", kind=event.kind, session_id=session_id)
        if isinstance(event, PromptSubmitted):
            text, redacted = self.filter.redact(strip_private(event.text).strip())
            if not text:
                return CaptureResult(status="dropped", kind=event.kind, reason="empty prompt")
            source = event.source if event.source in {"user", "agent"} else "user"
            recorded = self._get_store().record_event(
                event.session_key,
                prompt_text=text,
                prompt_source=source,
                cwd=event.cwd,
                project=project_for(event.cwd),
                deadline=deadline,
            )
            if redacted:
                logger.info("redacted prompt text", extra={"session_id": recorded.session_id})
            return CaptureResult(
                status="stored",
                kind=event.kind,
                prompt_id=recorded.prompt_id,
                session_id=recorded.session_id,
            )

        extracted = self.extract(event)
        if extracted is None or not extracted.content.strip():
            return CaptureResult(status="dropped", kind=event.kind, reason="nothing to record")
        content, content_redacted = self.filter.redact(extracted.content)
        metadata, metadata_redacted = self.filter.redact_value(extracted.metadata)
        recorded = self._get_store().record_event(
            event.session_key,
            kind=extracted.kind,
            content=content,
            metadata=metadata,
            cwd=event.cwd,
            project=project_for(event.cwd),
            deadline=deadline,
        )
        if content_redacted or metadata_redacted:
            logger.info(
                "redacted observation",
                extra={"kind": extracted.kind, "observation_id": recorded.observation_id},
            )
        return CaptureResult(
            status="stored",
            kind=extracted.kind,
            observation_id=recorded.observation_id,
            prompt_id=recorded.prompt_id,
            session_id=recorded.session_id,
        )
