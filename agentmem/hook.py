from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from . import git_info
from .capture import CapturePipeline, project_for
from .config import AgentMemConfig
from .ingest import SessionEnd, SessionStart, classify_event
from .retrieval import RetrievalContext, retrieve_context
from .store import MemoryStore
from .worker import WorkerHandle

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "# agentmem: context from earlier sessions"


def _current_files(payload: dict[str, Any], cwd: str | None, config: AgentMemConfig) -> list[str]:
    """Files named by the payload, then uncommitted changes in the working tree.

    Host session-start payloads rarely name files, so the working tree is what
    gives the overlap ranking something to join against.
    """

    raw = payload.get("files") or payload.get("current_files") or []
    files: list[str] = []
    if isinstance(raw, list):
        files = [str(item) for item in raw if isinstance(item, str) and item.strip()]
    if config.context_git_files:
        for path in git_info.recent_files(cwd):
            if path not in files:
                files.append(path)
    return files


def handle_hook_payload(
    raw: str,
    config: AgentMemConfig,
    *,
    db_path: Path | str | None = None,
    worker: WorkerHandle | None = None,
) -> str:
    """Capture one hook payload and return what belongs on stdout ('' almost always).

    Only a session start produces output: the rendered context pack. Every
    problem is logged and swallowed so the host never sees a failure.
    """

    try:
        payload = json.loads(raw) if raw.strip() else None
    except json.JSONDecodeError as exc:
        logger.warning("hook payload is not json", extra={"error": str(exc)})
        return ""
    path = Path(db_path).expanduser() if db_path else config.resolved_db_path()
    pipeline = CapturePipeline(lambda: MemoryStore(path, config=config), config)
    try:
        event = classify_event(payload)
        result = pipeline.capture_event(event)
    finally:
        pipeline.close()
    if result.status == "failed":
        logger.warning("hook capture failed", extra={"kind": result.kind, "reason": result.reason})

    output = ""
    if isinstance(event, SessionStart):
        try:
            pack = retrieve_context(
                path,
                RetrievalContext(
                    session_key=event.session_key,
                    project=project_for(event.cwd, event.project),
                    current_files=_current_files(payload, event.cwd, config),
                    cwd=event.cwd,
                ),
                config,
            )
            if pack.text:
                output = f"{CONTEXT_HEADER}\n\n{pack.text}\n"
        except Exception as exc:
            logger.error("context retrieval failed", exc_info=exc)
    elif isinstance(event, SessionEnd) and config.worker_auto and config.summarizer_provider:
        try:
            handle = worker or WorkerHandle(path, config=config)
            status = handle.ensure_running()
            logger.debug("worker ensured", extra={"running": status.running, "detail": status.detail})
        except Exception as exc:
            logger.error("could not start worker", exc_info=exc)
    return output
