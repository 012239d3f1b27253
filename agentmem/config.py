from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/agentmem/config.json").expanduser()
DEFAULT_HOME = Path("~/.agentmem")

CONFIG_ENV_OVERRIDES = {
    "db_path": "AGENTMEM_DB_PATH",
    "db_key": "AGENTMEM_DB_KEY",
    "log_path": "AGENTMEM_LOG",
    "log_level": "AGENTMEM_LOG_LEVEL",
    "log_stderr": "AGENTMEM_LOG_STDERR",
    "capture_deadline_ms": "AGENTMEM_CAPTURE_DEADLINE_MS",
    "write_retries": "AGENTMEM_WRITE_RETRIES",
    "write_backoff_ms": "AGENTMEM_WRITE_BACKOFF_MS",
    "context_max_items": "AGENTMEM_CONTEXT_MAX_ITEMS",
    "context_max_chars": "AGENTMEM_CONTEXT_MAX_CHARS",
    "summarizer_provider": "AGENTMEM_SUMMARIZER_PROVIDER",
    "summarizer_model": "AGENTMEM_SUMMARIZER_MODEL",
    "summarizer_api_key": "AGENTMEM_SUMMARIZER_API_KEY",
    "summarizer_base_url": "AGENTMEM_SUMMARIZER_BASE_URL",
    "summarizer_command": "AGENTMEM_SUMMARIZER_COMMAND",
    "summarizer_timeout_s": "AGENTMEM_SUMMARIZER_TIMEOUT_S",
    "summary_max_attempts": "AGENTMEM_SUMMARY_MAX_ATTEMPTS",
    "summary_retry_backoff_s": "AGENTMEM_SUMMARY_RETRY_BACKOFF_S",
    "retention_days": "AGENTMEM_RETENTION_DAYS",
    "context_git_files": "AGENTMEM_CONTEXT_GIT_FILES",
    "worker_auto": "AGENTMEM_WORKER_AUTO",
}

DEFAULT_SEARCH_WEIGHTS: dict[str, float] = {
    "kind": 0.5,
    "content": 1.0,
    "intent": 3.0,
    "learned": 2.0,
    "completed": 1.5,
    "next_steps": 1.5,
    "notable_failures": 1.5,
}

_INT_KEYS = {
    "capture_deadline_ms",
    "write_retries",
    "write_backoff_ms",
    "error_max_chars",
    "preview_max_chars",
    "micro_window_minutes",
    "context_max_items",
    "context_max_chars",
    "macro_candidate_limit",
    "summary_input_max_chars",
    "summary_max_attempts",
    "summary_retry_backoff_s",
    "summarizer_max_tokens",
    "retention_days",
    "worker_interval_s",
    "maintain_interval_s",
}
_FLOAT_KEYS = {"overlap_weight", "summary_boost", "summarizer_timeout_s"}
_BOOL_KEYS = {"log_stderr", "worker_auto", "context_git_files"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("AGENTMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def get_home() -> Path:
    return Path(os.getenv("AGENTMEM_HOME", str(DEFAULT_HOME))).expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class AgentMemConfig:
    db_path: str | None = None
    # Setting a key switches the store to SQLCipher; it must be present before first use.
    db_key: str | None = None
    # None logs to <home>/agentmem.log; "" disables the file handler.
    log_path: str | None = None
    log_level: str = "INFO"
    log_stderr: bool = False

    capture_deadline_ms: int = 1500
    write_retries: int = 6
    write_backoff_ms: int = 15
    error_max_chars: int = 2000
    preview_max_chars: int = 160

    micro_window_minutes: int = 30
    context_max_items: int = 8
    context_max_chars: int = 4000
    macro_candidate_limit: int = 50
    overlap_weight: float = 2.0
    summary_boost: float = 1.5
    search_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SEARCH_WEIGHTS))

    summarizer_provider: str | None = None
    summarizer_model: str | None = None
    summarizer_api_key: str | None = None
    summarizer_base_url: str | None = None
    summarizer_command: str | None = None
    summarizer_timeout_s: float = 30.0
    summarizer_max_tokens: int = 1200
    summary_input_max_chars: int = 12000
    # A failed session is retried after summary_retry_backoff_s, doubling each time.
    summary_max_attempts: int = 3
    summary_retry_backoff_s: int = 600

    # 0 disables pruning. Only observations of summarized sessions are pruned.
    retention_days: int = 0
    # Seed the session-start hot set with uncommitted changes from git.
    context_git_files: bool = True
    worker_auto: bool = True
    worker_interval_s: int = 60
    maintain_interval_s: int = 6 * 60 * 60

    def resolved_db_path(self) -> Path:
        from .db import DEFAULT_DB_PATH

        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_home() / DEFAULT_DB_PATH.name

    def resolved_log_path(self) -> Path | None:
        if self.log_path is None:
            return get_home() / "agentmem.log"
        if not self.log_path.strip():
            return None
        return Path(self.log_path).expanduser()


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _coerce_weights(value: object, current: dict[str, float]) -> dict[str, float]:
    if not isinstance(value, dict):
        warnings.warn(f"Invalid search_weights: {value!r}", RuntimeWarning, stacklevel=2)
        return current
    merged = dict(current)
    for name, weight in value.items():
        if name not in DEFAULT_SEARCH_WEIGHTS:
            continue
        merged[name] = _parse_float(weight, merged[name], key=f"search_weights.{name}")
    return merged


def load_config(path: Path | None = None, *, strict: bool = True) -> AgentMemConfig:
    """Defaults, then the JSON file, then AGENTMEM_* environment variables.

    An unreadable file raises ValueError; with ``strict=False`` it is reported
    as a RuntimeWarning and skipped, which is what the hook path wants.
    """

    cfg = AgentMemConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        if strict:
            raise ValueError(f"{get_config_path(path)}: {exc}") from exc
        warnings.warn(
            f"Ignoring config {get_config_path(path)}: {exc}", RuntimeWarning, stacklevel=2
        )
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: AgentMemConfig, data: dict[str, Any]) -> AgentMemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if key == "search_weights":
            cfg.search_weights = _coerce_weights(value, cfg.search_weights)
            continue
        setattr(cfg, key, value)
    return cfg
