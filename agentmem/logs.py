from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import AgentMemConfig
from .redaction import redact_text

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MAX_LOG_BYTES = 2_000_000
LOG_BACKUPS = 2

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_HANDLER_MARK = "_agentmem_handler"


class ContextFormatter(logging.Formatter):
    """Append ``extra=`` fields to the message as ``key=value`` pairs.

    Field values are redacted: they often carry raw payload fragments.
    """

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if not extras:
            return base
        fields = " ".join(
            f"{key}={redact_text(repr(value))}" for key, value in sorted(extras.items())
        )
        return f"{base} [{fields}]"


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(config: AgentMemConfig, *, stderr: bool | None = None) -> list[logging.Handler]:
    """Route the ``agentmem`` loggers to the log file and, optionally, stderr.

    Nothing is ever attached to stdout: for the hook, stdout is the host's
    context channel. Calling this again replaces the handlers it added before.
    """

    root = logging.getLogger("agentmem")
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(_level(config.log_level))
    root.propagate = False
    formatter = ContextFormatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    log_path = config.resolved_log_path()
    if log_path is not None:
        try:
            Path(log_path).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    log_path,
                    maxBytes=MAX_LOG_BYTES,
                    backupCount=LOG_BACKUPS,
                    encoding="utf-8",
                )
            )
        except OSError as exc:
            print(f"agentmem: cannot open log file {log_path}: {exc}", file=sys.stderr)
    if config.log_stderr if stderr is None else stderr:
        handlers.append(logging.StreamHandler(sys.stderr))
    if not handlers:
        handlers.append(logging.NullHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    return handlers
