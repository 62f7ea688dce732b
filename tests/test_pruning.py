"""
Tests for docmemory.pruning — candidate identification, execution pipeline,
failure isolation, events, policy updates and scheduling.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from docmemory.compression import decompress_payload
from docmemory.config import MaintenanceConfig, PolicyLimits, PruningPolicy
from docmemory.errors import (
    MaintenanceBusyError,
    MaintenanceError,
    StorageError,
    ValidationError,
)
from docmemory.events import EventBus
from docmemory.graph import KnowledgeGraph
from docmemory.pruning import MaintenanceEngine
from docmemory.store import RecordStore
from docmemory.types import CancelToken, MemoryRecord

NOW = datetime.now(timezone.utc)
LONG_TEXT = "configure the navigation sidebar and the search plugin " * 30
RELAXED = PolicyLimits(min_max_age_days=0.0001, min_max_size_mb=0.0001, min_max_entries=1)
WORDS = ["alpha bravo charlie", "delta echo foxtrot", "golf hotel india",
         "juliet kilo lima", "mike november oscar", "papa quebec romeo"]


def _ts(days):
    return (NOW - timedelta(days=days)).isoformat()


@pytest.fixture
def store(tmp_path):
    s = RecordStore(tmp_path / "mem")
    yield s
    s.close()


def _engine(store, graph=None, events=None, **policy):
    return MaintenanceEngine(
        store,
        graph,
        policy=PruningPolicy(**policy),
        config=MaintenanceConfig(limits=RELAXED),
        events=events or EventBus(),
    )


def _add(store, days, rtype="interaction", tags=None, metadata=None, **data):
    md = dict(metadata or {})
    if tags:
        md["tags"] = tags
    return store.append(MemoryRecord(type=rtype, data=data, metadata=md, timestamp=_ts(days)))


# ---------------------------------------------------------------------------
# Candidate identification
# ---------------------------------------------------------------------------


class TestCandidates:
    def test_age(self, store):
        old = _add(store, 400, note=WORDS[0])
        _add(store, 5, note=WORDS[1])
        candidates = _engine(store).identify_pruning_candidates()
        assert [r.id for r in candidates.by_age] == [old.id]

    def test_preserved_never_age_candidate(self, store):
        _add(store, 400, tags=["successful_deployment"], note=WORDS[0])
        _add(store, 400, note="user_preference dark mode")
        _add(store, 400, rtype="deployment", status="ok", success=True)
        candidates = _engine(store).identify_pruning_candidates()
        assert candidates.by_age == []

    def test_redundancy_keeps_one(self, store):
        a = _add(store, 3, question="how to deploy hugo to github pages")
        b = _add(store, 2, question="how to deploy hugo to github pages?")
        store.get(a.id)
        candidates = _engine(store).identify_pruning_candidates()
        assert [r.id for r in candidates.by_redundancy] == [b.id]
        assert candidates.clusters[0].keeper.id == a.id

    def test_size_lowest_importance_first(self, store):
        a = _add(store, 100, note=WORDS[0])
        b = _add(store, 10, note=WORDS[1])
        _add(store, 5, rtype="configuration", note=WORDS[2])
        _add(store, 1, note=WORDS[3])
        candidates = _engine(store, max_entries=2).identify_pruning_candidates()
        assert [r.id for r in candidates.by_size] == [a.id, b.id]

    def test_size_skips_preserved(self, store):
        _add(store, 100, tags=["critical_error"], note=WORDS[0])
        b = _add(store, 10, note=WORDS[1])
        _add(store, 1, note=WORDS[2])
        candidates = _engine(store, max_entries=2).identify_pruning_candidates()
        assert [r.id for r in candidates.by_size] == [b.id]

    def test_compression_candidates(self, store):
        old = _add(store, 60, text=LONG_TEXT)
        _add(store, 60, tags=["user_preference"], note=WORDS[1])
        _add(store, 2, note=WORDS[2])
        engine = _engine(store)
        records = store.load()
        candidates = engine.identify_pruning_candidates(records)
        compress = engine.identify_compression_candidates(records, candidates)
        assert [r.id for r in compress] == [old.id]

    def test_eviction_candidates_not_compressed(self, store):
        _add(store, 400, text=LONG_TEXT)
        engine = _engine(store)
        assert engine.identify_compression_candidates() == []

    def test_read_only(self, store):
        _add(store, 400, note=WORDS[0])
        _engine(store).identify_pruning_candidates()
        assert store.count() == 1


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecutePruning:
    def test_removes_old_and_backs_up(self, store):
        old = _add(store, 400, note=WORDS[0])
        keep = _add(store, 5, note=WORDS[1])
        result = _engine(store).execute_pruning()
        assert result.entries_removed == 1
        assert result.backup_created
        assert Path(result.backup_path).is_dir()
        assert result.validation_passed
        assert result.errors == []
        assert result.space_saved > 0
        assert store.get(old.id) is None
        assert store.get(keep.id) is not None

    def test_backup_holds_removed_record(self, store):
        old = _add(store, 400, note=WORDS[0])
        result = _engine(store).execute_pruning()
        snapshot = RecordStore(result.backup_path)
        assert snapshot.get(old.id) is not None

    def test_preserved_record_survives(self, store):
        kept = _add(store, 400, tags=["successful_deployment"], note=WORDS[0])
        result = _engine(store).execute_pruning()
        assert result.entries_removed == 0
        assert result.patterns_preserved == 1
        assert store.get(kept.id) is not None

    def test_dry_run(self, store):
        _add(store, 400, note=WORDS[0])
        result = _engine(store).execute_pruning(dry_run=True)
        assert result.dry_run
        assert result.candidates["by_age"] == 1
        assert result.entries_removed == 0
        assert not result.backup_created
        assert store.count() == 1

    def test_no_backup_when_disabled(self, store):
        _add(store, 400, note=WORDS[0])
        engine = MaintenanceEngine(
            store, policy=PruningPolicy(),
            config=MaintenanceConfig(backup_before_prune=False, limits=RELAXED),
        )
        result = engine.execute_pruning()
        assert result.entries_removed == 1
        assert not result.backup_created

    def test_partial_failure_continues(self, store, monkeypatch):
        for i in range(3):
            _add(store, 400 + i, note=WORDS[i])
        real_delete = store.delete
        calls = []

        def flaky_delete(record_id):
            calls.append(record_id)
            if len(calls) == 2:
                raise StorageError("disk error", path="x")
            return real_delete(record_id)

        monkeypatch.setattr(store, "delete", flaky_delete)
        result = _engine(store).execute_pruning()
        assert result.entries_removed == 2
        assert len(result.errors) == 1
        issue = result.errors[0]
        assert issue.record_id == calls[1]
        assert issue.operation == "delete"
        assert "disk error" in issue.reason
        assert store.ids() == [calls[1]]
        assert result.validation_passed

    def test_backup_failure_aborts_without_mutation(self, store, monkeypatch):
        _add(store, 400, note=WORDS[0])

        def broken_snapshot(dest):
            raise StorageError("read-only filesystem", path=str(dest))

        monkeypatch.setattr(store, "snapshot", broken_snapshot)
        result = _engine(store).execute_pruning()
        assert not result.backup_created
        assert result.entries_removed == 0
        assert result.errors[0].operation == "backup"
        assert store.count() == 1

    def test_compression(self, store):
        rec = _add(store, 60, text=LONG_TEXT)
        result = _engine(store).execute_pruning()
        assert result.entries_compressed == 1
        (stored,) = store.load()
        assert stored.is_compressed
        assert stored.timestamp == rec.timestamp
        assert decompress_payload(stored) == {"text": LONG_TEXT}
        assert store.get(rec.id) is None

    def test_merge_cluster(self, store):
        for day, link in ((3, "a"), (2, "b"), (1, "c")):
            _add(store, day, question="how to deploy hugo to github pages", links=[link])
        result = _engine(store).execute_pruning()
        assert result.entries_removed == 2
        assert result.entries_merged == 2
        (merged,) = store.load()
        assert sorted(merged.data["links"]) == ["a", "b", "c"]
        assert len(merged.metadata["mergedFrom"]) == 2

    def test_graph_cascade(self, store):
        _add(store, 400, rtype="analysis", metadata={"projectId": "legacy"}, language="Perl")
        _add(store, 2, rtype="analysis", metadata={"projectId": "current"}, language="Python")
        graph = KnowledgeGraph(store)
        graph.build_from_memories()
        assert graph.get_node("project:legacy") is not None
        _engine(store, graph).execute_pruning()
        assert graph.get_node("project:legacy") is None
        assert graph.get_node("tech:perl") is None
        assert graph.get_node("project:current") is not None

    def test_graph_follows_compressed_record_to_eviction(self, store):
        rec = _add(store, 60, rtype="analysis", metadata={"projectId": "p1"},
                   language="Perl", structure={"notes": LONG_TEXT})
        graph = KnowledgeGraph(store)
        graph.build_from_memories()
        engine = _engine(store, graph)

        result = engine.execute_pruning()
        assert result.entries_compressed == 1
        (compressed,) = store.load()
        assert compressed.id != rec.id
        assert graph.get_node("project:p1").properties["sources"] == [compressed.id]

        engine.update_policy(max_age=40)
        result = engine.execute_pruning()
        assert result.entries_removed == 1
        assert store.count() == 0
        assert graph.get_node("project:p1") is None
        assert graph.get_node("tech:perl") is None

    def test_graph_follows_merged_keeper(self, store):
        for day, link in ((3, "a"), (2, "b"), (1, "c")):
            _add(store, day, rtype="analysis", metadata={"projectId": "docs"},
                 language="Python", question="how to deploy hugo to github pages",
                 links=[link])
        graph = KnowledgeGraph(store)
        graph.build_from_memories()
        result = _engine(store, graph).execute_pruning()
        assert result.entries_merged == 2
        (merged,) = store.load()
        assert graph.get_node("project:docs").properties["sources"] == [merged.id]

    def test_cancel_between_records(self, store):
        for i in range(3):
            _add(store, 400 + i, note=WORDS[i])
        events = EventBus()
        token = CancelToken()
        events.subscribe("entry_removed", lambda e: token.cancel())
        result = _engine(store, events=events).execute_pruning(cancel=token)
        assert result.cancelled
        assert result.entries_removed == 1
        assert store.count() == 2


# ---------------------------------------------------------------------------
# Events and concurrency
# ---------------------------------------------------------------------------


class TestEvents:
    def test_lifecycle_events(self, store):
        _add(store, 400, note=WORDS[0])
        _add(store, 60, text=LONG_TEXT)
        events = EventBus()
        seen = []
        events.subscribe("*", seen.append)
        _engine(store, events=events).execute_pruning()
        names = [e.name for e in seen]
        assert names[0] == "pruning_started"
        assert names[-1] == "pruning_completed"
        assert "entry_removed" in names
        assert "entry_compressed" in names
        started = seen[0].payload
        assert started["by_age"] == 1
        assert started["compression"] == 1

    def test_busy_guard(self, store):
        _add(store, 400, note=WORDS[0])
        events = EventBus()
        engine = _engine(store, events=events)
        outcome = []

        def reenter(event):
            try:
                engine.execute_pruning()
            except MaintenanceBusyError:
                outcome.append("busy")

        events.subscribe("pruning_started", reenter)
        engine.execute_pruning()
        assert outcome == ["busy"]
        assert not engine.busy

    def test_scheduled_tick_skipped_when_busy(self, store):
        events = EventBus()
        engine = _engine(store, events=events)
        skipped = []
        events.subscribe("scheduled_run_skipped", skipped.append)
        events.subscribe("pruning_started", lambda e: engine._scheduled_run())
        engine.execute_pruning()
        assert len(skipped) == 1


# ---------------------------------------------------------------------------
# Policy, metrics, recommendations
# ---------------------------------------------------------------------------


class TestPolicy:
    def test_update_policy(self, store):
        events = EventBus()
        seen = []
        events.subscribe("policy_updated", seen.append)
        engine = _engine(store, events=events)
        engine.update_policy(max_age=90)
        assert engine.policy.max_age == 90
        assert seen[0].payload["changes"] == {"max_age": 90}

    def test_invalid_update_keeps_previous(self, store):
        engine = _engine(store)
        with pytest.raises(ValidationError):
            engine.update_policy(max_age=-1)
        with pytest.raises(ValidationError):
            engine.update_policy(retention=3)
        assert engine.policy.max_age == 180

    def test_invalid_initial_policy(self, store):
        with pytest.raises(MaintenanceError):
            MaintenanceEngine(store, policy=PruningPolicy(max_age=0))


class TestMetrics:
    def test_metrics_after_run(self, store):
        _add(store, 400, note=WORDS[0])
        _add(store, 60, text=LONG_TEXT)
        engine = _engine(store)
        assert engine.get_optimization_metrics()["last_optimization"] is None
        engine.execute_pruning()
        metrics = engine.get_optimization_metrics()
        assert metrics["total_entries"] == 1
        assert metrics["entries_pruned"] == 1
        assert metrics["compression_ratio"] == 1.0
        assert metrics["index_size"] > 0
        assert metrics["last_optimization"] is not None

    def test_recommendations(self, store):
        _add(store, 400, note=WORDS[0])
        rec = _engine(store).get_pruning_recommendations()
        assert rec["should_prune"]
        assert any("older than" in r for r in rec["reasons"])
        assert rec["estimated_savings"] > 0
        assert rec["recommended_policy"] == {"max_age": 150, "compression_threshold": 23}


class TestScheduling:
    def test_invalid_cron_rejected(self, store):
        engine = _engine(store)
        with pytest.raises(ValidationError):
            engine.schedule_automatic_pruning("every tuesday")
        assert not engine.scheduled

    def test_schedule_and_stop(self, store):
        engine = _engine(store)
        scheduler = engine.schedule_automatic_pruning("0 3 * * *")
        try:
            assert engine.scheduled
            assert scheduler.next_run() > NOW
        finally:
            assert engine.stop_automatic_pruning()
        assert not engine.scheduled
        assert not engine.stop_automatic_pruning()
