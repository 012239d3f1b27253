import sqlite3
import threading
import time
from pathlib import Path

import pytest

from agentmem import db
from agentmem.store import MemoryStore, SummaryRecord


def _store(tmp_path: Path, **kwargs) -> MemoryStore:
    return MemoryStore(tmp_path / "mem.sqlite", **kwargs)


def test_record_event_round_trip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    recorded = store.record_event(
        "s-1",
        kind="file_write",
        content="edit /repo/app.py",
        metadata={"path": "/repo/app.py", "basename": "app.py"},
        cwd="/repo",
        project="repo",
    )
    obs = store.get_observation(recorded.observation_id)
    session = store.get_session(recorded.session_id)

    assert obs is not None
    assert obs.kind == "file_write"
    assert obs.content == "edit /repo/app.py"
    assert obs.metadata == {"path": "/repo/app.py", "basename": "app.py"}
    assert obs.prompt_id is None
    assert session is not None
    assert session.session_key == "s-1"
    assert session.project == "repo"
    assert session.ended_at is None


def test_observation_links_to_latest_prompt(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.record_event("s-1", prompt_text="add a login page")
    second = store.record_event("s-1", prompt_text="now write tests", prompt_source="agent")
    obs = store.record_event("s-1", kind="command", content="pytest -q")

    prompts = store.session_prompts(first.session_id)
    assert [p.ordinal for p in prompts] == [1, 2]
    assert [p.source for p in prompts] == ["user", "agent"]
    assert obs.prompt_id == second.prompt_id
    assert store.latest_prompt(first.session_id).id == second.prompt_id


def test_invalid_kind_and_source_are_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    with pytest.raises(ValueError):
        store.add_observation(session_id, "memory", "x")
    with pytest.raises(ValueError):
        store.add_prompt(session_id, "hello", source="system")
    assert store.session_observations(session_id) == []


def test_writes_are_redacted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    recorded = store.record_event(
        "s-1",
        kind="command",
        content="export KEY=sk-abcdefghijklmnopqrstuvwxyz123456",
        metadata={"description": "password=hunter2hunter2"},
    )
    obs = store.get_observation(recorded.observation_id)
    assert obs.content == "export KEY=[REDACTED]"
    assert obs.metadata == {"description": "password=[REDACTED]"}


def test_fts_follows_insert_update_delete(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    obs_id = store.add_observation(session_id, "decision", "use sqlite for the queue")

    assert [hit.id for hit in store.search("queue")] == [obs_id]

    store.update_observation(obs_id, "use redis for the cache")
    assert store.search("queue") == []
    assert [hit.id for hit in store.search("redis")] == [obs_id]

    assert store.delete_observation(obs_id)
    assert store.search("redis") == []


def test_search_covers_summaries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    store.add_observation(session_id, "command", "make build")
    store.end_session(session_id)
    store.replace_session_summary(
        session_id,
        SummaryRecord(intent="Speed up the tokenizer", learned="regex was the bottleneck"),
        files=["/repo/tokenizer.py"],
    )

    hits = store.search("tokenizer bottleneck")
    assert hits
    assert hits[0].entity == "summary"
    assert "Intent: Speed up the tokenizer" in hits[0].text


@pytest.mark.parametrize("query", ["", "   ", "OR AND", "!!!"])
def test_unusable_queries_return_nothing(tmp_path: Path, query: str) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    store.add_observation(session_id, "command", "ls -la")
    assert store.search(query) == []


def test_search_query_syntax_is_neutralized(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    obs_id = store.add_observation(session_id, "failure", "ImportError: no module named yaml")
    hits = store.search('yaml" NEAR(')
    assert [hit.id for hit in hits] == [obs_id]


def test_summary_overwrite_replaces_files(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.start_session("s-1")
    store.end_session(session_id)
    first_id = store.replace_session_summary(
        session_id, SummaryRecord(intent="first"), files=["/a.py", "/a.py", "/b.py"]
    )
    second_id = store.replace_session_summary(
        session_id, SummaryRecord(intent="second"), files=["/c.py"], model="test"
    )
    summary = store.get_session_summary(session_id)

    assert first_id == second_id
    assert summary.record.intent == "second"
    assert summary.files == ["/c.py"]
    assert summary.model == "test"
    assert store.stats()["session_summaries"] == 1
    assert [hit.entity for hit in store.search("first")] == []


def test_reopening_a_session_clears_ended_at(tmp_path: Path) -> None:
    store = _store(tmp_path)
    session_id = store.get_or_create_session("s-1")
    assert store.close_session("s-1") == session_id
    assert store.get_session(session_id).ended_at is not None
    assert store.get_or_create_session("s-1", reopen=True) == session_id
    assert store.get_session(session_id).ended_at is None
    assert store.close_session("unknown") is None


def test_ended_sessions_without_summary(tmp_path: Path) -> None:
    store = _store(tmp_path)
    empty = store.start_session("empty")
    busy = store.start_session("busy")
    open_one = store.start_session("open")
    store.add_observation(busy, "command", "make")
    store.add_observation(open_one, "command", "make")
    store.end_session(empty)
    store.end_session(busy)

    pending = store.ended_sessions_without_summary()
    assert [s.session_key for s in pending] == ["busy"]

    store.replace_session_summary(busy, SummaryRecord(intent="done"))
    assert store.ended_sessions_without_summary() == []


def test_past_observations_rank_by_path_overlap(tmp_path: Path) -> None:
    store = _store(tmp_path)
    old = store.start_session("old")
    exact = store.add_observation(
        old, "failure", "boom", {"path": "/repo/src/app.py", "basename": "app.py"}
    )
    base = store.add_observation(
        old, "failure", "bang", {"path": "/other/app.py", "basename": "app.py"}
    )
    store.add_observation(old, "decision", "unrelated", {"path": "/x.py", "basename": "x.py"})
    current = store.start_session("current")

    rows = store.past_observations_on_paths(
        exclude_session_id=current, hot_paths=["/repo/src/app.py"]
    )
    overlaps = {row["id"]: row["overlap"] for row in rows}
    assert rows[0]["id"] == exact
    assert overlaps[exact] == 1.0
    assert overlaps[base] == 0.5
    assert len(rows) == 3


def test_read_only_store_rejects_writes(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    MemoryStore(path).close()
    reader = MemoryStore(path, read_only=True)
    try:
        with pytest.raises(sqlite3.OperationalError):
            reader.conn.execute(
                "INSERT INTO sessions(session_key, started_at) VALUES ('x', 'now')"
            )
    finally:
        reader.close()


def test_read_only_store_never_creates_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        MemoryStore(tmp_path / "nope.sqlite", read_only=True)


def test_concurrent_writer_is_retried(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    store = MemoryStore(path, check_same_thread=False)
    session_id = store.start_session("s-1")
    holder = db.connect(path, check_same_thread=False)
    holder.execute("BEGIN IMMEDIATE")
    released = threading.Event()

    def release() -> None:
        time.sleep(0.05)
        holder.execute("ROLLBACK")
        released.set()

    thread = threading.Thread(target=release)
    thread.start()
    try:
        obs_id = store.add_observation(session_id, "command", "make test")
    finally:
        thread.join()
        holder.close()

    assert released.is_set()
    assert store.get_observation(obs_id) is not None
    assert store.busy_retries >= 1


def test_exhausted_retries_raise_and_write_nothing(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    store = MemoryStore(path)
    session_id = store.start_session("s-1")
    holder = db.connect(path)
    holder.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(db.StoreBusyError):
            store.add_observation(session_id, "command", "make test", deadline=time.monotonic())
    finally:
        holder.execute("ROLLBACK")
        holder.close()
    assert store.session_observations(session_id) == []
