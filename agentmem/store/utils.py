from __future__ import annotations

import datetime as dt


def now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def parse_iso8601(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def recency_score(created_at: str | None, *, now: dt.datetime | None = None) -> float:
    parsed = parse_iso8601(created_at)
    if not parsed:
        return 0.0
    current = now or dt.datetime.now(dt.UTC)
    days_ago = max(0.0, (current - parsed).total_seconds() / 86400.0)
    return 1.0 / (1.0 + (days_ago / 7.0))


def normalize_path(value: str) -> str:
    normalized = value.strip().replace("\\", "/")
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    if len(normalized) > 1:
        normalized = normalized.rstrip("/")
    return normalized


def path_basename(value: str) -> str:
    normalized = normalize_path(value)
    if not normalized:
        return ""
    return normalized.split("/")[-1]
