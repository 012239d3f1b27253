"""Background summarization and maintenance, reached through an explicit handle.

A live worker is one that holds an exclusive ``flock`` on ``worker.lock`` in
the state directory. The lock goes away with the process, so a crashed
worker never looks alive; the pidfile is only used to signal it.
"""

from __future__ import annotations

import fcntl
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from .config import AgentMemConfig, get_home, load_config
from .store import MemoryStore
from .summarizer import Summarizer, build_collaborator

logger = logging.getLogger(__name__)

LOCK_NAME = "worker.lock"
PID_NAME = "worker.pid"
START_LOCK_NAME = "worker.start.lock"
PENDING_BATCH = 10
# A freshly spawned worker may not hold the lock yet.
STARTING_GRACE_S = 10.0


@dataclass(frozen=True)
class WorkerStatus:
    running: bool
    pid: int | None
    detail: str


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_pid(pid_path: Path) -> int | None:
    try:
        raw = pid_path.read_text().strip()
    except FileNotFoundError:
        return None
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _write_pid(pid_path: Path, pid: int) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{pid}\n")


def _clear_pid(pid_path: Path) -> None:
    try:
        pid_path.unlink()
    except FileNotFoundError:
        return


def try_lock(path: Path) -> IO[str] | None:
    """Take an exclusive non-blocking flock; the open file is the lock."""

    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    return handle


def release_lock(handle: IO[str]) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class WorkerHandle:
    def __init__(
        self,
        db_path: Path | str | None = None,
        state_dir: Path | str | None = None,
        config: AgentMemConfig | None = None,
    ) -> None:
        self.config = config or load_config()
        self.db_path = Path(db_path or self.config.resolved_db_path()).expanduser()
        self.state_dir = Path(state_dir or get_home()).expanduser()
        self.lock_path = self.state_dir / LOCK_NAME
        self.pid_path = self.state_dir / PID_NAME
        self.start_lock_path = self.state_dir / START_LOCK_NAME

    def status(self) -> WorkerStatus:
        pid = _read_pid(self.pid_path)
        lock = try_lock(self.lock_path)
        if lock is None:
            return WorkerStatus(True, pid, "lock held")
        release_lock(lock)
        if pid is not None and _pid_running(pid) and self._pidfile_age() < STARTING_GRACE_S:
            return WorkerStatus(False, pid, "starting")
        if pid is not None:
            _clear_pid(self.pid_path)
        return WorkerStatus(False, None, "not running")

    def _pidfile_age(self) -> float:
        try:
            return time.time() - self.pid_path.stat().st_mtime
        except FileNotFoundError:
            return float("inf")

    def _spawn(self) -> int:
        cmd = [
            sys.executable,
            "-m",
            "agentmem",
            "worker",
            "run",
            "--db-path",
            str(self.db_path),
        ]
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with (self.state_dir / "worker.out").open("ab") as out:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=out,
                start_new_session=True,
                env=os.environ.copy(),
            )
        pid = int(proc.pid)
        _write_pid(self.pid_path, pid)
        return pid

    def ensure_running(self) -> WorkerStatus:
        """Start a worker unless one is alive or already being started."""

        current = self.status()
        if current.running or current.detail == "starting":
            return current
        starter = try_lock(self.start_lock_path)
        if starter is None:
            return WorkerStatus(False, current.pid, "start in progress")
        try:
            current = self.status()
            if current.running or current.detail == "starting":
                return current
            pid = self._spawn()
        finally:
            release_lock(starter)
        logger.info("spawned worker", extra={"pid": pid})
        return WorkerStatus(True, pid, "started")

    def stop(self, *, timeout_s: float = 5.0) -> WorkerStatus:
        current = self.status()
        pid = current.pid
        if pid is None:
            detail = "pid unknown" if current.running else "not running"
            return WorkerStatus(current.running, None, detail)
        if not _pid_running(pid):
            _clear_pid(self.pid_path)
            return WorkerStatus(False, pid, "not running")
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as exc:
            return WorkerStatus(current.running, pid, f"signal failed: {exc}")
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if not self.status().running and not _pid_running(pid):
                _clear_pid(self.pid_path)
                return WorkerStatus(False, pid, "stopped")
            time.sleep(0.1)
        return WorkerStatus(True, pid, "timeout")


def run_worker(
    db_path: Path | str | None = None,
    config: AgentMemConfig | None = None,
    stop_event: threading.Event | None = None,
    *,
    state_dir: Path | str | None = None,
    once: bool = False,
) -> bool:
    """Run the worker loop in this process. Returns False if another worker holds the lock."""

    cfg = config or load_config()
    handle = WorkerHandle(db_path, state_dir, cfg)
    lock = try_lock(handle.lock_path)
    if lock is None:
        logger.info("worker already running", extra={"lock": str(handle.lock_path)})
        return False
    stop = stop_event or threading.Event()
    previous_handlers = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous_handlers[signum] = signal.signal(signum, lambda *_: stop.set())
    _write_pid(handle.pid_path, os.getpid())
    store: MemoryStore | None = None
    try:
        store = MemoryStore(handle.db_path, config=cfg)
        summarizer = Summarizer(store, build_collaborator(cfg), cfg)
        last_maintain = time.monotonic()
        logger.info("worker started", extra={"db_path": str(handle.db_path)})
        while not stop.is_set():
            try:
                counts = summarizer.summarize_pending(PENDING_BATCH)
                if any(counts.values()):
                    logger.info("worker summarize pass", extra=counts)
                if once or time.monotonic() - last_maintain >= cfg.maintain_interval_s:
                    report = store.maintain(prune=True)
                    last_maintain = time.monotonic()
                    if report.problems:
                        logger.warning("maintenance problems", extra={"problems": report.problems})
            except Exception as exc:
                logger.exception("worker iteration failed", exc_info=exc)
            if once:
                break
            stop.wait(max(1, cfg.worker_interval_s))
    finally:
        if store is not None:
            store.close()
        if _read_pid(handle.pid_path) == os.getpid():
            _clear_pid(handle.pid_path)
        release_lock(lock)
        for signum, previous in previous_handlers.items():
            signal.signal(signum, previous)
        logger.info("worker stopped")
    return True
