from __future__ import annotations

import logging
from pathlib import Path

import pytest

from agentmem.config import CONFIG_ENV_OVERRIDES


@pytest.fixture(autouse=True)
def _isolate_agentmem_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    home = tmp_path / "agentmem-home"
    monkeypatch.setenv("AGENTMEM_HOME", str(home))
    monkeypatch.setenv("AGENTMEM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("AGENTMEM_DB_PATH", str(home / "agentmem.sqlite"))


@pytest.fixture(autouse=True)
def _reset_agentmem_logger():
    yield
    logger = logging.getLogger("agentmem")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
