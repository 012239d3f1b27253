from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest
from typer.testing import CliRunner

from agentmem import __version__
from agentmem.cli import app
from agentmem.hook import CONTEXT_HEADER
from agentmem.store import MemoryStore, SummaryRecord

runner = CliRunner()


@pytest.fixture
def db_path() -> Path:
    return Path(os.environ["AGENTMEM_DB_PATH"])


def _seed_past_session(db_path: Path) -> None:
    store = MemoryStore(db_path)
    try:
        session_id = store.start_session("old", cwd="/repo", project="repo")
        store.add_observation(session_id, "command", "pytest -q")
        store.end_session(session_id)
        store.replace_session_summary(
            session_id,
            SummaryRecord(intent="Rewrote the parser", next_steps="Handle tabs"),
            files=["/repo/parser.py"],
        )
    finally:
        store.close()


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("hook", "status", "maintain", "query", "context", "summarize", "worker"):
        assert name in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_hook_session_start_prints_context(db_path: Path) -> None:
    _seed_past_session(db_path)
    payload = {
        "hook_event_name": "SessionStart",
        "session_id": "new",
        "cwd": "/repo",
        "files": ["/repo/parser.py"],
    }

    result = runner.invoke(app, ["hook"], input=json.dumps(payload))

    assert result.exit_code == 0
    assert result.stdout.startswith(CONTEXT_HEADER)
    assert "Intent: Rewrote the parser" in result.stdout


def test_hook_tool_event_is_silent(db_path: Path) -> None:
    payload = {
        "hook_event_name": "PostToolUse",
        "session_id": "abc",
        "tool_name": "Bash",
        "tool_input": {"command": "export KEY=sk-abcdefghijklmnopqrstuvwxyz123456"},
        "tool_response": {"exit_code": 0},
    }

    result = runner.invoke(app, ["hook"], input=json.dumps(payload))

    assert result.exit_code == 0
    assert result.stdout == ""
    store = MemoryStore(db_path, read_only=True)
    try:
        hits = store.search("export")
    finally:
        store.close()
    assert [hit.text for hit in hits] == ["export KEY=[REDACTED]"]


@pytest.mark.parametrize("raw", ["{broken", "", "[1, 2]"])
def test_hook_never_fails(raw: str) -> None:
    result = runner.invoke(app, ["hook"], input=raw)
    assert result.exit_code == 0
    assert result.stdout == ""


def test_invalid_config_refuses_commands_but_not_the_hook(db_path: Path) -> None:
    Path(os.environ["AGENTMEM_CONFIG"]).write_text("{not-json")
    MemoryStore(db_path).close()

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 2
    assert "Invalid config" in status.stdout

    payload = {"hook_event_name": "UserPromptSubmit", "session_id": "s", "prompt": "hi there"}
    with pytest.warns(RuntimeWarning, match="Ignoring config"):
        hook = runner.invoke(app, ["hook"], input=json.dumps(payload))
    assert hook.exit_code == 0
    store = MemoryStore(db_path, read_only=True)
    try:
        assert store.stats()["prompts"] == 1
    finally:
        store.close()


def test_status_missing_store_is_refused(tmp_path: Path) -> None:
    result = runner.invoke(app, ["status", "--db-path", str(tmp_path / "missing.sqlite")])
    assert result.exit_code == 2
    assert not (tmp_path / "missing.sqlite").exists()


def test_status_healthy_store(db_path: Path) -> None:
    _seed_past_session(db_path)
    result = runner.invoke(app, ["status", "--json"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["problems"] == []
    assert payload["counts"]["session_summaries"] == 1
    assert payload["worker"]["running"] is False


def test_status_and_maintain_report_problems(db_path: Path) -> None:
    store = MemoryStore(db_path)
    store.conn.execute("DROP TRIGGER session_summaries_au")
    store.close()

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 1
    assert "session_summaries_au" in status.stdout

    maintain = runner.invoke(app, ["maintain"])
    assert maintain.exit_code == 1

    again = runner.invoke(app, ["maintain", "--json"])
    assert again.exit_code == 0
    assert json.loads(again.stdout)["problems"] == []


def test_query_outputs_matches(db_path: Path) -> None:
    _seed_past_session(db_path)
    result = runner.invoke(app, ["query", "parser", "--json"])
    assert result.exit_code == 0
    hits = json.loads(result.stdout)
    assert hits[0]["entity"] == "summary"


def test_query_missing_store_is_refused(tmp_path: Path) -> None:
    result = runner.invoke(app, ["query", "x", "--db-path", str(tmp_path / "missing.sqlite")])
    assert result.exit_code == 2


def test_context_command_json(db_path: Path) -> None:
    _seed_past_session(db_path)
    result = runner.invoke(
        app, ["context", "--file", "/repo/parser.py", "--project", "repo", "--json"]
    )
    assert result.exit_code == 0
    pack = json.loads(result.stdout)
    assert [item["kind"] for item in pack["items"]] == ["micro", "summary"]
    assert pack["items"][1]["overlap"] == 1.0


def test_summarize_without_provider_is_refused(db_path: Path) -> None:
    _seed_past_session(db_path)
    result = runner.invoke(app, ["summarize", "--session", "old"])
    assert result.exit_code == 2


def test_summarize_with_command_provider(
    db_path: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    script = tmp_path / "summarize.py"
    script.write_text(
        "import sys\n"
        "sys.stdin.read()\n"
        "print('<summary><intent>Ran from the CLI</intent></summary>')\n"
    )
    monkeypatch.setenv("AGENTMEM_SUMMARIZER_PROVIDER", "command")
    monkeypatch.setenv("AGENTMEM_SUMMARIZER_COMMAND", f"{sys.executable} {script}")
    store = MemoryStore(db_path)
    try:
        session_id = store.start_session("s1")
        store.add_observation(session_id, "decision", "keep the CLI thin")
        store.end_session(session_id)
        store.start_session("still-open")
    finally:
        store.close()

    done = runner.invoke(app, ["summarize", "--session", "s1"])
    assert done.exit_code == 0
    assert "Ran from the CLI" in done.stdout

    refused = runner.invoke(app, ["summarize", "--session", "still-open"])
    assert refused.exit_code == 2

    unknown = runner.invoke(app, ["summarize", "--session", "nope"])
    assert unknown.exit_code == 2


def test_worker_status_command() -> None:
    result = runner.invoke(app, ["worker", "status", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["running"] is False
