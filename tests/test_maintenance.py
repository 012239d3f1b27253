from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from agentmem import db
from agentmem.redaction import SecretFilter, SecretPattern
from agentmem.store import MemoryStore, SummaryRecord


@pytest.fixture
def store(tmp_path: Path):
    store = MemoryStore(tmp_path / "mem.sqlite")
    yield store
    store.close()


def _old(days: int) -> str:
    return (dt.datetime.now(dt.UTC) - dt.timedelta(days=days)).isoformat()


def test_healthy_store_reports_no_problems(store: MemoryStore) -> None:
    session_id = store.start_session("s1")
    store.add_observation(session_id, "command", "make")

    status = store.status()
    report = store.maintain()

    assert status.problems == []
    assert status.schema_version == db.SCHEMA_VERSION
    assert status.fts_ok == {"observations_fts": True, "summaries_fts": True}
    assert status.counts["observations"] == 1
    assert report.problems == []
    assert report.optimized
    assert report.integrity_ok


def test_dropped_trigger_is_reported_and_repaired(store: MemoryStore) -> None:
    session_id = store.start_session("s1")
    store.conn.execute("DROP TRIGGER observations_ai")
    store.add_observation(session_id, "decision", "vendor the schema files")

    assert "observations_ai" in store.status().missing_triggers
    assert store.search("vendor") == []

    report = store.maintain()

    assert any("missing triggers" in problem for problem in report.problems)
    assert "observations_fts" in report.rebuilt
    assert db.missing_triggers(store.conn) == []
    assert [hit.text for hit in store.search("vendor")] == ["vendor the schema files"]
    assert store.status().problems == []


def test_dry_run_changes_nothing(store: MemoryStore) -> None:
    store.conn.execute("DROP TRIGGER observations_ad")
    report = store.maintain(dry_run=True)
    assert report.problems
    assert "observations_ad" in db.missing_triggers(store.conn)
    assert not report.optimized
    assert not report.checkpointed


def test_prune_only_touches_summarized_sessions(store: MemoryStore) -> None:
    summarized = store.start_session("done")
    pending = store.start_session("pending")
    old_done = store.add_observation(summarized, "command", "make old")
    fresh_done = store.add_observation(summarized, "command", "make fresh")
    old_pending = store.add_observation(pending, "command", "make pending")
    for obs_id in (old_done, old_pending):
        store.conn.execute(
            "UPDATE observations SET created_at = ? WHERE id = ?", (_old(40), obs_id)
        )
    store.end_session(summarized)
    store.replace_session_summary(summarized, SummaryRecord(intent="build"))

    assert store.prune_observations(30, dry_run=True) == 1
    report = store.maintain(retention_days=30)

    assert report.pruned_observations == 1
    assert store.get_observation(old_done) is None
    assert store.get_observation(fresh_done) is not None
    assert store.get_observation(old_pending) is not None
    assert store.search("old") == []


def test_zero_retention_disables_pruning(store: MemoryStore) -> None:
    assert store.prune_observations(0) == 0


def test_rescrub_applies_new_patterns(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    loose = MemoryStore(path, secret_filter=SecretFilter(()))
    session_id = loose.start_session("s1")
    obs_id = loose.add_observation(session_id, "command", "deploy --pin internal-4242")
    loose.close()

    strict_filter = SecretFilter((SecretPattern("pin", r"internal-\d{4}"),))
    strict = MemoryStore(path, secret_filter=strict_filter)
    try:
        assert strict.rescrub_observations(dry_run=True) == 1
        assert strict.get_observation(obs_id).content == "deploy --pin internal-4242"
        report = strict.maintain(rescrub=True)
        assert report.rescrubbed == 1
        assert strict.get_observation(obs_id).content == "deploy --pin [REDACTED]"
        assert strict.search("4242") == []
    finally:
        strict.close()


def test_read_only_status_and_refused_maintenance(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    MemoryStore(path).close()
    reader = MemoryStore(path, read_only=True)
    try:
        status = reader.status()
        assert status.problems == []
        assert status.fts_ok == {"observations_fts": True, "summaries_fts": True}
        with pytest.raises(RuntimeError):
            reader.maintain()
    finally:
        reader.close()
