import json
from pathlib import Path

import pytest

from agentmem.config import (
    CONFIG_ENV_OVERRIDES,
    DEFAULT_SEARCH_WEIGHTS,
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
)


def _write(path: Path, data: dict) -> Path:
    path.write_text(json.dumps(data))
    return path


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_load_config_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        load_config(config_path)

    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="must be an object"):
        load_config(config_path)


def test_lenient_load_warns_and_uses_defaults(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    monkeypatch.setenv("AGENTMEM_CONTEXT_MAX_ITEMS", "4")
    with pytest.warns(RuntimeWarning, match="Ignoring config"):
        cfg = load_config(config_path, strict=False)
    assert cfg.context_max_items == 4
    assert cfg.context_max_chars == 4000


def test_empty_config_file_is_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("  \n")
    assert load_config(config_path).context_max_items == 8


def test_config_file_values_apply(tmp_path: Path) -> None:
    config_path = _write(
        tmp_path / "config.json",
        {
            "context_max_items": 3,
            "summary_boost": "2.5",
            "worker_auto": "off",
            "search_weights": {"intent": 5, "bogus": 9},
            "summarizer_provider": "anthropic",
            "not_a_setting": True,
        },
    )
    cfg = load_config(config_path)

    assert cfg.context_max_items == 3
    assert cfg.summary_boost == 2.5
    assert cfg.worker_auto is False
    assert cfg.search_weights["intent"] == 5.0
    assert cfg.search_weights["content"] == DEFAULT_SEARCH_WEIGHTS["content"]
    assert "bogus" not in cfg.search_weights
    assert cfg.summarizer_provider == "anthropic"


def test_env_overrides_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = _write(tmp_path / "config.json", {"context_max_chars": 1000})
    monkeypatch.setenv("AGENTMEM_CONTEXT_MAX_CHARS", "2500")
    monkeypatch.setenv("AGENTMEM_LOG_STDERR", "yes")

    cfg = load_config(config_path)

    assert cfg.context_max_chars == 2500
    assert cfg.log_stderr is True
    assert get_env_overrides()["context_max_chars"] == "2500"


def test_summarizer_credentials_come_from_env(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config_path = _write(
        tmp_path / "config.json",
        {"summarizer_api_key": "from-file", "summarizer_base_url": "http://file"},
    )
    monkeypatch.setenv("AGENTMEM_SUMMARIZER_API_KEY", "from-env")
    monkeypatch.setenv("AGENTMEM_SUMMARIZER_BASE_URL", "http://localhost:8080/v1")
    monkeypatch.setenv("AGENTMEM_SUMMARY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("AGENTMEM_CONTEXT_GIT_FILES", "off")

    overrides = get_env_overrides()
    cfg = load_config(config_path)

    assert overrides["summarizer_api_key"] == "from-env"
    assert overrides["summarizer_base_url"] == "http://localhost:8080/v1"
    assert cfg.summarizer_api_key == "from-env"
    assert cfg.summarizer_base_url == "http://localhost:8080/v1"
    assert cfg.summary_max_attempts == 5
    assert cfg.context_git_files is False


def test_every_env_override_names_a_setting() -> None:
    cfg = load_config()
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        assert hasattr(cfg, key)
        assert env_var.startswith("AGENTMEM_")


def test_invalid_env_value_warns_and_keeps_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENTMEM_WRITE_RETRIES", "lots")
    with pytest.warns(RuntimeWarning, match="write_retries"):
        cfg = load_config()
    assert cfg.write_retries == 6


def test_paths_follow_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("AGENTMEM_DB_PATH")
    monkeypatch.setenv("AGENTMEM_HOME", str(tmp_path / "home"))
    cfg = load_config()
    assert cfg.resolved_db_path() == tmp_path / "home" / "agentmem.sqlite"
    assert cfg.resolved_log_path() == tmp_path / "home" / "agentmem.log"
    cfg.log_path = ""
    assert cfg.resolved_log_path() is None


def test_config_path_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENTMEM_CONFIG", str(tmp_path / "custom.json"))
    assert get_config_path() == tmp_path / "custom.json"
