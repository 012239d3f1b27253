from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import threading
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from .config import AgentMemConfig, load_config
from .store import MemoryStore, Observation, Prompt, Session, SummaryRecord
from .summary_parser import parse_summary_output, skip_reason

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5"

TRANSCRIPT_TRUNCATION_NOTICE = "\n[agentmem] transcript truncated\n"

logger = logging.getLogger(__name__)

SUMMARY_INSTRUCTION = """\
You are summarizing one finished coding session for a developer's long-term memory.
The transcript lists the user's prompts and the tool activity they caused, in order.
Explain how events connect (what was tried, what failed, what fixed it), not just what happened.

Reply with exactly one block:
<summary>
  <intent>what the user set out to do</intent>
  <learned>facts about the codebase or tools worth remembering</learned>
  <completed>what was actually finished</completed>
  <next_steps>open work left for a later session</next_steps>
  <notable_failures>errors, dead ends and surprises, with their causes if known</notable_failures>
  <files><file>path/of/a/relevant/file</file></files>
</summary>
Leave a field empty rather than guessing. If nothing meaningful happened, reply with
<skip_summary reason="..."/> instead."""

LOW_SIGNAL_COMMAND_PATTERNS = [
    re.compile(
        r"^(ls|pwd|cd|cat|head|tail|less|more|which|whoami|date|clear|exit|history)(\s|$)",
        re.IGNORECASE,
    ),
    re.compile(r"^agentmem\s+(query|context|status)\b", re.IGNORECASE),
]


class SummarizeRefused(RuntimeError):
    """Summarization cannot run for this session (open, missing, or disabled)."""


@dataclass(frozen=True)
class SummaryRequest:
    session_key: str
    instruction: str
    transcript: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


class SummaryCollaborator(Protocol):
    name: str

    def generate(self, request: SummaryRequest) -> str | None: ...


class OpenAICollaborator:
    def __init__(
        self,
        model: str | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1200,
        timeout_s: float = 30.0,
    ) -> None:
        self.model = model or DEFAULT_OPENAI_MODEL
        self.name = f"openai:{self.model}"
        self.api_key = api_key
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self._client

    def generate(self, request: SummaryRequest) -> str | None:
        resp = self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": request.instruction},
                {"role": "user", "content": request.transcript},
            ],
            temperature=0,
            max_tokens=self.max_tokens,
        )
        return resp.choices[0].message.content


class AnthropicCollaborator:
    def __init__(
        self,
        model: str | None = None,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1200,
        timeout_s: float = 30.0,
    ) -> None:
        self.model = model or DEFAULT_ANTHROPIC_MODEL
        self.name = f"anthropic:{self.model}"
        self.api_key = api_key
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout_s = timeout_s
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self._client

    def generate(self, request: SummaryRequest) -> str | None:
        resp = self._get_client().messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system=request.instruction,
            messages=[{"role": "user", "content": request.transcript}],
        )
        parts = [
            getattr(block, "text", "")
            for block in resp.content
            if getattr(block, "type", "") == "text"
        ]
        return "".join(parts) or None


class CommandCollaborator:
    """Runs an external program: request JSON on stdin, summary on stdout."""

    def __init__(self, command: str, *, timeout_s: float = 30.0) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("summarizer command is empty")
        self.name = f"command:{self.argv[0]}"
        self.timeout_s = timeout_s

    def generate(self, request: SummaryRequest) -> str | None:
        proc = subprocess.run(
            self.argv,
            input=request.to_json(),
            capture_output=True,
            text=True,
            timeout=self.timeout_s,
            check=False,
        )
        if proc.returncode != 0:
            raise RuntimeError(
                f"summarizer command exited {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        return proc.stdout


def build_collaborator(config: AgentMemConfig | None = None) -> SummaryCollaborator | None:
    cfg = config or load_config()
    provider = (cfg.summarizer_provider or "").strip().lower()
    if not provider:
        return None
    if provider == "openai":
        return OpenAICollaborator(
            cfg.summarizer_model,
            api_key=cfg.summarizer_api_key,
            base_url=cfg.summarizer_base_url,
            max_tokens=cfg.summarizer_max_tokens,
            timeout_s=cfg.summarizer_timeout_s,
        )
    if provider == "anthropic":
        return AnthropicCollaborator(
            cfg.summarizer_model,
            api_key=cfg.summarizer_api_key,
            base_url=cfg.summarizer_base_url,
            max_tokens=cfg.summarizer_max_tokens,
            timeout_s=cfg.summarizer_timeout_s,
        )
    if provider == "command":
        if not cfg.summarizer_command:
            logger.warning("summarizer provider is 'command' but no summarizer_command is set")
            return None
        return CommandCollaborator(cfg.summarizer_command, timeout_s=cfg.summarizer_timeout_s)
    logger.warning("unknown summarizer provider", extra={"provider": provider})
    return None


def is_low_signal_command(text: str) -> bool:
    normalized = text.strip()
    if not normalized:
        return True
    return any(pattern.search(normalized) for pattern in LOW_SIGNAL_COMMAND_PATTERNS)


def _observation_line(obs: Observation) -> str | None:
    if obs.kind == "command":
        if is_low_signal_command(obs.content):
            return None
        return f"[command] $ {obs.content}"
    if obs.kind == "file_write":
        line = f"[{obs.kind}] {obs.content}"
        preview = obs.metadata.get("preview")
        if preview:
            line += f" ({preview})"
        return line
    return f"[{obs.kind}] {obs.content}"


def build_transcript(
    prompts: list[Prompt],
    observations: list[Observation],
    *,
    max_chars: int,
) -> str:
    """Interleave prompts and observations in (created_at, id) order."""

    entries: list[tuple[str, int, int, str]] = []
    for prompt in prompts:
        text = f"[prompt #{prompt.ordinal} {prompt.source}] {prompt.prompt_text}"
        entries.append((prompt.created_at, 0, prompt.id, text))
    for obs in observations:
        line = _observation_line(obs)
        if line:
            entries.append((obs.created_at, 1, obs.id, line))
    entries.sort()
    transcript = "\n".join(entry[3] for entry in entries)
    if max_chars > 0 and len(transcript) > max_chars:
        # Keep the opening intent and the most recent tail.
        head = max_chars // 4
        tail = max_chars - head
        transcript = transcript[:head] + TRANSCRIPT_TRUNCATION_NOTICE + transcript[-tail:]
    return transcript


def touched_files(observations: list[Observation]) -> list[str]:
    files: list[str] = []
    for obs in observations:
        path = obs.metadata.get("path")
        if isinstance(path, str) and path and path not in files:
            files.append(path)
    return files


def call_with_timeout(
    collaborator: SummaryCollaborator,
    request: SummaryRequest,
    timeout_s: float,
) -> str | None:
    """Run ``collaborator.generate`` on a daemon thread, abandoning it after ``timeout_s``."""

    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = collaborator.generate(request)
        except BaseException as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_target, name="agentmem-summarizer", daemon=True)
    thread.start()
    thread.join(timeout_s if timeout_s > 0 else None)
    if thread.is_alive():
        logger.warning(
            "summarizer timed out",
            extra={"collaborator": collaborator.name, "timeout_s": timeout_s},
        )
        return None
    error = outcome.get("error")
    if error is not None:
        logger.warning(
            "summarizer call failed",
            exc_info=error,
            extra={"collaborator": collaborator.name},
        )
        return None
    return outcome.get("value")


class Summarizer:
    def __init__(
        self,
        store: MemoryStore,
        collaborator: SummaryCollaborator | None,
        config: AgentMemConfig | None = None,
    ) -> None:
        self.store = store
        self.collaborator = collaborator
        self.config = config or store.config

    def build_request(self, session: Session) -> tuple[SummaryRequest, list[Observation]]:
        prompts = self.store.session_prompts(session.id)
        observations = self.store.session_observations(session.id)
        transcript = build_transcript(
            prompts, observations, max_chars=self.config.summary_input_max_chars
        )
        request = SummaryRequest(
            session_key=session.session_key,
            instruction=SUMMARY_INSTRUCTION,
            transcript=transcript,
        )
        return request, observations

    def summarize_session(self, session_id: int, *, force: bool = False) -> SummaryRecord | None:
        """Summarize one closed session; ``None`` means it stays unsummarized."""

        session = self.store.get_session(session_id)
        if session is None:
            raise SummarizeRefused(f"no session with id {session_id}")
        record, _ = self._summarize(session, force=force)
        return record

    def _summarize(self, session: Session, *, force: bool) -> tuple[SummaryRecord | None, str]:
        if session.ended_at is None:
            raise SummarizeRefused(f"session {session.session_key} is still open")
        if self.collaborator is None:
            raise SummarizeRefused("summarization is disabled (no summarizer_provider)")
        if not force:
            existing = self.store.get_session_summary(session.id)
            if existing is not None:
                return existing.record, "summarized"
        request, observations = self.build_request(session)
        if not request.transcript.strip():
            logger.info("nothing to summarize", extra={"session_key": session.session_key})
            return None, self._give_up(session, "skipped")
        raw = call_with_timeout(self.collaborator, request, self.config.summarizer_timeout_s)
        if raw is None:
            return None, self._give_up(session, "failed")
        reason = skip_reason(raw)
        parsed = parse_summary_output(raw)
        if parsed is None:
            if reason:
                logger.info(
                    "summarizer skipped session",
                    extra={"session_key": session.session_key, "reason": reason},
                )
                return None, self._give_up(session, "skipped")
            logger.warning(
                "summarizer output unusable",
                extra={"session_key": session.session_key, "chars": len(raw)},
            )
            return None, self._give_up(session, "failed")
        files = touched_files(observations)
        for path in parsed.files:
            if path not in files:
                files.append(path)
        self.store.replace_session_summary(
            session.id,
            parsed.record,
            files=files,
            model=self.collaborator.name,
        )
        logger.info(
            "session summarized",
            extra={"session_key": session.session_key, "files": len(files)},
        )
        return parsed.record, "summarized"

    def _give_up(self, session: Session, status: str) -> str:
        attempts = self.store.record_summary_attempt(
            session.id, status, retry_after_s=self.config.summary_retry_backoff_s
        )
        logger.debug(
            "summary attempt recorded",
            extra={"session_key": session.session_key, "status": status, "attempts": attempts},
        )
        return status

    def summarize_pending(self, limit: int = 10) -> dict[str, int]:
        counts = {"summarized": 0, "skipped": 0, "failed": 0}
        if self.collaborator is None:
            return counts
        for session in self.store.ended_sessions_without_summary(limit):
            try:
                _, outcome = self._summarize(session, force=False)
            except SummarizeRefused as exc:
                logger.info(
                    "skipping session",
                    extra={"session_key": session.session_key, "reason": str(exc)},
                )
                counts["failed"] += 1
                continue
            counts[outcome] += 1
        return counts
