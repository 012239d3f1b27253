from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_S = 1.0

LOCKFILE_PATTERNS: list[str] = [
    "uv.lock",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "Cargo.lock",
    "Gemfile.lock",
    "poetry.lock",
    "Pipfile.lock",
]


def run_command(cmd: Sequence[str], cwd: str | None = None) -> str:
    """Run a git query; any failure reads as empty output."""

    try:
        out = subprocess.check_output(
            cmd,
            cwd=cwd,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=GIT_TIMEOUT_S,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("git query failed", extra={"cmd": " ".join(cmd), "error": str(exc)})
        return ""
    return out.strip()


def filter_lockfiles_from_list(files_output: str) -> list[str]:
    lines = []
    for line in files_output.splitlines():
        line = line.strip()
        if line and not any(pattern in line for pattern in LOCKFILE_PATTERNS):
            lines.append(line)
    return lines


def recent_files(cwd: str | None, *, limit: int = 16) -> list[str]:
    """Absolute paths of files changed in the working tree against HEAD."""

    if not cwd:
        return []
    repo_root = run_command(["git", "rev-parse", "--show-toplevel"], cwd=cwd)
    if not repo_root:
        return []
    changed = run_command(["git", "diff", "--name-only", "HEAD"], cwd=cwd)
    root = Path(repo_root)
    return [str(root / name) for name in filter_lockfiles_from_list(changed)[:limit]]
