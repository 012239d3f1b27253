from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from xml.etree import ElementTree

from .store.types import SummaryRecord

SUMMARY_BLOCK_RE = re.compile(r"<summary>.*?</summary>", re.DOTALL)
SKIP_SUMMARY_RE = re.compile(
    r"<skip_summary(?:\s+reason=\"(?P<reason>[^\"]+)\")?\s*/>",
    re.IGNORECASE,
)
CODE_FENCE_RE = re.compile(r"```(?:xml|json)?", re.IGNORECASE)
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

# Older prompt wording used different tag names for the same fields.
FIELD_ALIASES = {
    "intent": ("intent", "request"),
    "learned": ("learned",),
    "completed": ("completed",),
    "next_steps": ("next_steps", "next-steps", "nextSteps"),
    "notable_failures": ("notable_failures", "failures", "notes"),
}

_SUMMARY_TAGS = ("summary", "files", "files_read", "files_modified", "file") + tuple(
    alias for aliases in FIELD_ALIASES.values() for alias in aliases
)
# Prose like "a < b" or "R&D" is not markup; escape it before a second parse.
STRAY_AMPERSAND_RE = re.compile(r"&(?!(?:[A-Za-z]+|#\d+|#x[0-9A-Fa-f]+);)")
STRAY_LT_RE = re.compile(
    r"<(?!/?(?:" + "|".join(re.escape(tag) for tag in _SUMMARY_TAGS) + r")[\s/>])"
)


def escape_stray_markup(block: str) -> str:
    return STRAY_LT_RE.sub("&lt;", STRAY_AMPERSAND_RE.sub("&amp;", block))


@dataclass
class ParsedSummary:
    record: SummaryRecord
    files: list[str] = field(default_factory=list)


def _clean_text(text: str) -> str:
    return CODE_FENCE_RE.sub("", text).strip()


def _text(node: ElementTree.Element | None) -> str:
    if node is None:
        return ""
    return "".join(node.itertext()).strip()


def _child_texts(parent: ElementTree.Element | None, tag: str) -> list[str]:
    if parent is None:
        return []
    items = []
    for child in parent.findall(tag):
        value = _text(child)
        if value:
            items.append(value)
    return items


def _parse_xml(block: str) -> ParsedSummary | None:
    try:
        root = ElementTree.fromstring(block)
    except ElementTree.ParseError:
        try:
            root = ElementTree.fromstring(escape_stray_markup(block))
        except ElementTree.ParseError:
            return None
    values = {}
    for name, aliases in FIELD_ALIASES.items():
        values[name] = ""
        for alias in aliases:
            value = _text(root.find(alias))
            if value:
                values[name] = value
                break
    files = _child_texts(root.find("files"), "file")
    files += _child_texts(root.find("files_read"), "file")
    files += _child_texts(root.find("files_modified"), "file")
    return ParsedSummary(record=SummaryRecord(**values), files=files)


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(f"- {str(item).strip()}" for item in value if str(item).strip())
    return str(value).strip()


def _parse_json(text: str) -> ParsedSummary | None:
    match = JSON_OBJECT_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("summary"), dict):
        data = data["summary"]
    values = {}
    for name, aliases in FIELD_ALIASES.items():
        values[name] = ""
        for alias in aliases:
            value = _as_text(data.get(alias))
            if value:
                values[name] = value
                break
    raw_files = data.get("files") or []
    files = [str(item) for item in raw_files if str(item).strip()] if isinstance(raw_files, list) else []
    return ParsedSummary(record=SummaryRecord(**values), files=files)


def skip_reason(text: str) -> str | None:
    match = SKIP_SUMMARY_RE.search(text or "")
    if not match:
        return None
    return match.group("reason") or "skipped"


def parse_summary_output(text: str | None) -> ParsedSummary | None:
    """Parse collaborator output: a ``<summary>`` XML block or a JSON object.

    Returns ``None`` when nothing usable came back, including a summary whose
    fields are all empty.
    """

    if not text or not text.strip():
        return None
    cleaned = _clean_text(text)
    parsed: ParsedSummary | None = None
    blocks = [block.strip() for block in SUMMARY_BLOCK_RE.findall(cleaned)]
    if blocks:
        parsed = _parse_xml(blocks[-1])
    if parsed is None and "{" in cleaned:
        parsed = _parse_json(cleaned)
    if parsed is None or parsed.record.is_empty():
        return None
    return parsed
