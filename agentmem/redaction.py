"""Credential redaction applied to every piece of text before it is persisted.

The filter runs in two steps. A single combined pattern answers "is there
anything secret-shaped here at all"; when it is not, the input object is
returned untouched. Only on a hit are the individual patterns applied, in
order, replacing just the secret span with ``PLACEHOLDER``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

PLACEHOLDER = "[REDACTED]"

logger = logging.getLogger(__name__)

ANSI_ESCAPE_RE = re.compile(
    r"""
    \x1B
    (?:
        [@-Z\\-_]
      | \[ [0-?]* [ -/]* [@-~]
      | \] [^\x1B]* (?:\x1B\\\\|\x07)
      | P  [0-?]* [ -/]* [\x20-\x7E]* (?:\x1B\\\\|\x07)
    )
    """,
    re.VERBOSE,
)

# Generic fallbacks must not swallow a placeholder written by an earlier pattern.
_NOT_PLACEHOLDER = r"(?!\[REDACTED\])"
_VALUE_CHARS = r"A-Za-z0-9_\-./+=~"


@dataclass(frozen=True)
class SecretPattern:
    name: str
    source: str
    ignore_case: bool = False
    # Capture group holding the secret; 0 replaces the whole match.
    group: int = 0
    # Second opinion on the captured value; False leaves the match alone.
    accept: Callable[[str], bool] | None = None


_IDENTIFIER_RE = re.compile(r"[a-z_]+|[A-Z_]+|[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)+")
_PATH_RE = re.compile(
    r"(?:~|\.{1,2})?(?:/[\w.\-]+){2,}/?|[\w.\-]+(?:/[\w.\-]+)*/[\w\-]+\.[A-Za-z0-9]{1,8}"
)


def looks_like_secret_value(value: str) -> bool:
    """Reject generic-assignment values that read as code or paths, not credentials.

    Plain words and constant names, dotted attribute access, and file paths
    are references to a secret, not the secret itself.
    """

    if _IDENTIFIER_RE.fullmatch(value):
        return False
    if "/" in value and _PATH_RE.fullmatch(value):
        return False
    return True


# Most specific first. Provider prefixes run before the generic assignment
# rules that would otherwise produce a coarser redaction of the same span.
SECRET_PATTERNS: tuple[SecretPattern, ...] = (
    SecretPattern(
        "private_key_block",
        r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----",
    ),
    SecretPattern("anthropic_key", r"\bsk-ant-[A-Za-z0-9_\-]{10,}"),
    SecretPattern("openai_key", r"\bsk-(?:proj-|svcacct-|admin-)?[A-Za-z0-9_\-]{20,}"),
    SecretPattern("github_pat", r"\bgithub_pat_[A-Za-z0-9_]{20,}"),
    SecretPattern("github_token", r"\bgh[pousr]_[A-Za-z0-9]{20,}"),
    SecretPattern("aws_access_key_id", r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
    SecretPattern("slack_token", r"\bxox[baprs]-[A-Za-z0-9-]{10,}", ignore_case=True),
    SecretPattern("google_api_key", r"\bAIza[0-9A-Za-z_\-]{35}"),
    SecretPattern("stripe_key", r"\b[rs]k_(?:live|test)_[0-9A-Za-z]{16,}"),
    SecretPattern(
        "jwt",
        r"\beyJ[A-Za-z0-9_\-]{8,}\.eyJ[A-Za-z0-9_\-]{8,}\.[A-Za-z0-9_\-]{8,}",
    ),
    SecretPattern(
        "url_credentials",
        r"\b[a-z][a-z0-9+.\-]*://[^\s:/@]+:([^\s@/]+)@",
        ignore_case=True,
        group=1,
    ),
    SecretPattern(
        "bearer_token",
        rf"\bbearer\s+{_NOT_PLACEHOLDER}([A-Za-z0-9._~+/\-]{{16,}}=*)",
        ignore_case=True,
        group=1,
    ),
    SecretPattern(
        "generic_assignment",
        r"\b[A-Za-z0-9_\-]*(?:api[_\-]?key|secret|token|password|passwd|pwd|access[_\-]?key|key)"
        rf"['\"]?\s*[:=]\s*['\"]?{_NOT_PLACEHOLDER}([{_VALUE_CHARS}]{{8,}})(?![{_VALUE_CHARS}(\[])",
        ignore_case=True,
        group=1,
        accept=looks_like_secret_value,
    ),
)


class RedactionResult(NamedTuple):
    text: str
    redacted: bool


def _compile(pattern: SecretPattern) -> re.Pattern[str]:
    return re.compile(pattern.source, re.IGNORECASE if pattern.ignore_case else 0)


def _combined_source(patterns: tuple[SecretPattern, ...]) -> str:
    parts = []
    for pattern in patterns:
        if pattern.ignore_case:
            parts.append(f"(?i:{pattern.source})")
        else:
            parts.append(f"(?:{pattern.source})")
    return "|".join(parts)


class SecretFilter:
    """Compiled, immutable credential filter. Safe to share across threads."""

    def __init__(
        self,
        patterns: tuple[SecretPattern, ...] = SECRET_PATTERNS,
        placeholder: str = PLACEHOLDER,
    ) -> None:
        self.placeholder = placeholder
        self._patterns = tuple((pattern, _compile(pattern)) for pattern in patterns)
        self._combined = re.compile(_combined_source(patterns) if patterns else r"(?!)")

    def contains_secret(self, text: str) -> bool:
        return self._combined.search(text) is not None

    def redact(self, text: Any) -> RedactionResult:
        try:
            if not isinstance(text, str):
                text = "" if text is None else str(text)
            if self._combined.search(text) is None:
                return RedactionResult(text, False)
            return self._apply(text)
        except Exception as exc:
            logger.error("redaction failed; withholding entire input", exc_info=exc)
            return RedactionResult(self.placeholder, True)

    def _apply(self, text: str) -> RedactionResult:
        result = text
        changed = False
        for pattern, compiled in self._patterns:
            if compiled.search(result) is None:
                continue
            replaced = compiled.sub(self._replacer(pattern), result)
            if replaced != result:
                changed = True
                result = replaced
        return RedactionResult(result, changed)

    def _replacer(self, pattern: SecretPattern):
        placeholder = self.placeholder
        group = pattern.group

        def _replace(match: re.Match[str]) -> str:
            secret = match.group(group)
            if not secret or not secret.strip():
                return match.group(0)
            if pattern.accept is not None and not pattern.accept(secret):
                return match.group(0)
            if group == 0:
                return placeholder
            start = match.start(group) - match.start(0)
            end = match.end(group) - match.start(0)
            whole = match.group(0)
            return f"{whole[:start]}{placeholder}{whole[end:]}"

        return _replace

    def redact_value(self, value: Any) -> tuple[Any, bool]:
        """Redact every string inside a JSON-like value (keys included)."""

        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            changed = False
            cleaned: dict[Any, Any] = {}
            for key, item in value.items():
                new_key, key_changed = self.redact_value(key) if isinstance(key, str) else (key, False)
                new_item, item_changed = self.redact_value(item)
                changed = changed or key_changed or item_changed
                cleaned[new_key] = new_item
            return cleaned, changed
        if isinstance(value, (list, tuple)):
            changed = False
            items = []
            for item in value:
                new_item, item_changed = self.redact_value(item)
                changed = changed or item_changed
                items.append(new_item)
            return items, changed
        return value, False


DEFAULT_FILTER = SecretFilter()


def redact(text: Any) -> RedactionResult:
    return DEFAULT_FILTER.redact(text)


def redact_text(text: Any) -> str:
    return DEFAULT_FILTER.redact(text).text


def redact_value(value: Any) -> tuple[Any, bool]:
    return DEFAULT_FILTER.redact_value(value)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)
