"""
Maintenance Engine — Policy-Driven Pruning and Optimization

Pipeline of one run:
    Idle -> Candidate Identification -> (Backup) -> Eviction/Compression
         -> Validation -> Idle

Candidates:
  - by_age:        older than max_age and not preserved
  - by_redundancy: near-duplicates of a kept record (cluster keeper survives)
  - by_size:       lowest importance first until size and count fit the policy
  - compression:   older than compression_threshold, not preserved, not evicted

Per-entry failures never abort a run: they are collected as
MaintenanceIssue items in PruningResult.errors. The engine never runs
concurrently with itself; a second manual run raises MaintenanceBusyError,
a scheduled tick that finds the engine busy is skipped.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from docmemory.compression import (
    CompressionResult,
    CompressionStrategy,
    compress_entry,
)
from docmemory.config import MaintenanceConfig, PruningPolicy
from docmemory.consolidate import RedundancyCluster, find_redundant_clusters, merge_cluster
from docmemory.errors import MaintenanceBusyError, MaintenanceError, StorageError
from docmemory.events import EventBus
from docmemory.graph import KnowledgeGraph
from docmemory.policy import importance_score, is_preserved, merge_policy
from docmemory.scheduler import PruningScheduler, validate_cron
from docmemory.store import RecordStore
from docmemory.types import CancelToken, MemoryRecord, _now_iso

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MaintenanceIssue:
    """A per-entry failure collected during a run."""

    record_id: str
    operation: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PruningCandidates:
    by_age: List[MemoryRecord] = field(default_factory=list)
    by_size: List[MemoryRecord] = field(default_factory=list)
    by_redundancy: List[MemoryRecord] = field(default_factory=list)
    clusters: List[RedundancyCluster] = field(default_factory=list)

    def all(self) -> List[MemoryRecord]:
        """Eviction order: age, then redundancy, then size (unique ids)."""
        seen: Set[str] = set()
        out = []
        for rec in self.by_age + self.by_redundancy + self.by_size:
            if rec.id not in seen:
                seen.add(rec.id)
                out.append(rec)
        return out

    def ids(self) -> Set[str]:
        return {r.id for r in self.all()}

    def counts(self) -> Dict[str, int]:
        return {
            "by_age": len(self.by_age),
            "by_size": len(self.by_size),
            "by_redundancy": len(self.by_redundancy),
        }


@dataclass
class PruningResult:
    entries_removed: int = 0
    entries_compressed: int = 0
    entries_merged: int = 0
    backup_created: bool = False
    backup_path: Optional[str] = None
    validation_passed: bool = False
    duration_ms: float = 0.0
    space_saved: int = 0
    patterns_preserved: int = 0
    candidates: Dict[str, int] = field(default_factory=dict)
    errors: List[MaintenanceIssue] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MaintenanceEngine:
    """
    Evicts, compresses and deduplicates records under a retention policy.

    Holds a non-blocking busy lock for the duration of a run.
    """

    def __init__(
        self,
        store: RecordStore,
        graph: Optional[KnowledgeGraph] = None,
        *,
        policy: Optional[PruningPolicy] = None,
        config: Optional[MaintenanceConfig] = None,
        events: Optional[EventBus] = None,
        backup_root: Optional[Union[str, Path]] = None,
    ):
        self._store = store
        self._graph = graph
        self._config = config or MaintenanceConfig()
        self._events = events or EventBus()
        policy = policy or PruningPolicy()
        errors = policy.validate(self._config.limits)
        if errors:
            raise MaintenanceError(f"Invalid initial policy: {'; '.join(errors)}")
        self._policy = policy
        self._backup_root = Path(backup_root) if backup_root else store.directory / "backups"
        self._busy = threading.Lock()
        self._policy_lock = threading.Lock()
        self._scheduler: Optional[PruningScheduler] = None

        self._entries_pruned = 0
        self._duplicates_removed = 0
        self._last_optimization: Optional[str] = None
        self._last_gain = 0.0
        self._runs = 0

    @property
    def policy(self) -> PruningPolicy:
        return self._policy

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    # -- Policy ---------------------------------------------------------------

    def update_policy(self, **partial: Any) -> PruningPolicy:
        """Merge a partial update into the policy.

        Raises:
            ValidationError: On unknown fields or invariant violations; the
                previous policy stays in force.
        """
        with self._policy_lock:
            updated = merge_policy(self._policy, partial, self._config.limits)
            self._policy = updated
        logger.info(f"Pruning policy updated: {sorted(partial)}")
        self._events.emit("policy_updated", {
            "changes": dict(partial), "policy": updated.to_dict(),
        })
        return updated

    # -- Candidate identification ---------------------------------------------

    def _access_key(self, record: MemoryRecord) -> str:
        entry = self._store.index_entry(record.id)
        if entry is not None and entry.last_accessed:
            return entry.last_accessed
        return record.timestamp or ""

    def _record_size(self, record: MemoryRecord) -> int:
        entry = self._store.index_entry(record.id)
        return entry.size if entry is not None else record.size()

    def _connection_counts(self) -> Dict[str, int]:
        """Graph connectivity per source record id."""
        counts: Dict[str, int] = {}
        if self._graph is None:
            return counts
        for node in self._graph.get_all_nodes():
            degree = len(self._graph.get_connections(node.id))
            for rid in node.properties.get("sources", []) or []:
                counts[rid] = counts.get(rid, 0) + degree
        return counts

    def identify_pruning_candidates(
        self,
        records: Optional[List[MemoryRecord]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PruningCandidates:
        """Classify live records against the current policy (read-only)."""
        policy = self._policy
        now = now or datetime.now(timezone.utc)
        if records is None:
            records = self._store.load()
        candidates = PruningCandidates()
        preserved = {r.id for r in records if is_preserved(r, policy.preserve_patterns)}

        cutoff = now - timedelta(days=policy.max_age)
        for rec in records:
            if rec.id not in preserved and rec.created < cutoff:
                candidates.by_age.append(rec)
        evicted = {r.id for r in candidates.by_age}

        remaining = [r for r in records if r.id not in evicted]
        candidates.clusters = find_redundant_clusters(
            remaining,
            policy.redundancy_threshold,
            access_key=self._access_key,
            scan_limit=self._config.redundancy_scan_limit,
        )
        for cluster in candidates.clusters:
            for dup in cluster.duplicates:
                if dup.id not in preserved:
                    candidates.by_redundancy.append(dup)
                    evicted.add(dup.id)

        remaining = [r for r in records if r.id not in evicted]
        size = sum(self._record_size(r) for r in remaining)
        count = len(remaining)
        if size / _MB > policy.max_size or count > policy.max_entries:
            connections = self._connection_counts()
            scored = sorted(
                remaining,
                key=lambda r: (importance_score(r, connections=connections.get(r.id, 0), now=now),
                               r.timestamp or "", r.id),
            )
            for rec in scored:
                if size / _MB <= policy.max_size and count <= policy.max_entries:
                    break
                if rec.id in preserved:
                    continue
                score = importance_score(rec, connections=connections.get(rec.id, 0), now=now)
                if score > self._config.preserve_importance:
                    continue
                candidates.by_size.append(rec)
                size -= self._record_size(rec)
                count -= 1

        logger.debug(f"Pruning candidates: {candidates.counts()}")
        return candidates

    def identify_compression_candidates(
        self,
        records: Optional[List[MemoryRecord]] = None,
        candidates: Optional[PruningCandidates] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[MemoryRecord]:
        """Old, uncompressed, unpreserved records that are not being evicted."""
        policy = self._policy
        now = now or datetime.now(timezone.utc)
        if records is None:
            records = self._store.load()
        if candidates is None:
            candidates = self.identify_pruning_candidates(records, now=now)
        evicted = candidates.ids()
        cutoff = now - timedelta(days=policy.compression_threshold)
        return [
            r for r in records
            if r.id not in evicted
            and not r.is_compressed
            and r.created < cutoff
            and not is_preserved(r, policy.preserve_patterns)
        ]

    # -- Compression ------------------------------------------------------------

    def compress_entry(
        self, record: MemoryRecord, strategy: Optional[CompressionStrategy] = None,
    ) -> CompressionResult:
        """Compress one record's payload (unsaved). Never raises."""
        strategy = strategy or CompressionStrategy(
            type=self._config.compression_strategy,
            threshold=self._config.compression_min_bytes,
        )
        return compress_entry(record, strategy)

    # -- Execution ----------------------------------------------------------------

    def execute_pruning(
        self, cancel: Optional[CancelToken] = None, dry_run: bool = False,
    ) -> PruningResult:
        """Run the full maintenance pipeline once.

        Raises:
            MaintenanceBusyError: If another run is in progress.
            MaintenanceError: If the run fails as a whole (e.g. unreadable store).
        """
        if not self._busy.acquire(blocking=False):
            raise MaintenanceBusyError("Pruning already in progress")
        try:
            return self._run(cancel, dry_run)
        finally:
            self._busy.release()

    def _issue(self, result: PruningResult, record_id: str, operation: str, reason: str) -> None:
        logger.warning(f"Maintenance {operation} failed for {record_id}: {reason}")
        result.errors.append(MaintenanceIssue(record_id, operation, reason))

    def _run(self, cancel: Optional[CancelToken], dry_run: bool) -> PruningResult:
        started = time.monotonic()
        result = PruningResult(dry_run=dry_run)
        policy = self._policy
        try:
            records = self._store.load(cancel=cancel)
            candidates = self.identify_pruning_candidates(records)
            to_compress = self.identify_compression_candidates(records, candidates)
            result.candidates = {**candidates.counts(), "compression": len(to_compress)}
            result.patterns_preserved = sum(
                1 for r in records if is_preserved(r, policy.preserve_patterns)
            )
            self._events.emit("pruning_started", {**result.candidates, "dry_run": dry_run})

            if dry_run:
                result.validation_passed = True
                return self._finish(result, started)

            evictions = candidates.all()
            if self._config.backup_before_prune and (evictions or to_compress):
                dest = self._backup_root / f"pruning-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')}"
                try:
                    self._store.snapshot(dest)
                except StorageError as e:
                    self._issue(result, "*", "backup", str(e))
                    self._events.emit("pruning_error", {"error": f"backup failed: {e}"})
                    return self._finish(result, started)
                result.backup_created = True
                result.backup_path = str(dest)

            bytes_before = self._store.live_bytes()
            removed_ids = self._evict(evictions, candidates, result, cancel)
            if not result.cancelled:
                self._merge_clusters(candidates, removed_ids, result)
                self._compress(to_compress, result, cancel)

            if self._config.compact_after_prune and (removed_ids or result.entries_compressed):
                try:
                    self._store.compact()
                except StorageError as e:
                    self._issue(result, "*", "compact", str(e))

            result.space_saved = max(0, bytes_before - self._store.live_bytes())
            result.validation_passed = self._validate(removed_ids)
            self._entries_pruned += result.entries_removed
            self._last_gain = (result.space_saved / bytes_before * 100.0) if bytes_before else 0.0
            return self._finish(result, started)
        except Exception as e:
            logger.error(f"Pruning run failed: {e}", exc_info=True)
            self._events.emit("pruning_error", {"error": str(e)})
            raise MaintenanceError(f"Pruning run failed: {e}") from e

    def _evict(
        self,
        evictions: List[MemoryRecord],
        candidates: PruningCandidates,
        result: PruningResult,
        cancel: Optional[CancelToken],
    ) -> Set[str]:
        redundant = {r.id for r in candidates.by_redundancy}
        age = {r.id for r in candidates.by_age}
        removed: Set[str] = set()
        for rec in evictions:
            if cancel is not None and cancel.cancelled:
                result.cancelled = True
                logger.info("Pruning cancelled during eviction")
                break
            reason = "age" if rec.id in age else "redundancy" if rec.id in redundant else "size"
            try:
                if not self._store.delete(rec.id):
                    self._issue(result, rec.id, "delete", "record no longer present")
                    continue
            except Exception as e:
                self._issue(result, rec.id, "delete", str(e))
                continue
            removed.add(rec.id)
            result.entries_removed += 1
            if reason == "redundancy":
                self._duplicates_removed += 1
            if self._graph is not None:
                try:
                    self._graph.detach_record(rec.id)
                except Exception as e:
                    self._issue(result, rec.id, "graph_detach", str(e))
            self._events.emit("entry_removed", {"id": rec.id, "type": rec.type, "reason": reason})
        return removed

    def _merge_clusters(
        self, candidates: PruningCandidates, removed: Set[str], result: PruningResult,
    ) -> None:
        for cluster in candidates.clusters:
            gone = [d for d in cluster.duplicates if d.id in removed]
            if not cluster.can_merge or len(gone) < 2:
                continue
            merged_view = RedundancyCluster(keeper=cluster.keeper, duplicates=gone,
                                            can_merge=True)
            try:
                stored = self._store.supersede(cluster.keeper.id, merge_cluster(merged_view))
            except Exception as e:
                self._issue(result, cluster.keeper.id, "merge", str(e))
                continue
            result.entries_merged += len(gone)
            self._move_sources(cluster.keeper.id, stored.id, result)

    def _compress(
        self, records: List[MemoryRecord], result: PruningResult, cancel: Optional[CancelToken],
    ) -> None:
        for rec in records:
            if cancel is not None and cancel.cancelled:
                result.cancelled = True
                logger.info("Pruning cancelled during compression")
                break
            entry = self._store.index_entry(rec.id)
            if entry is None or not entry.live:
                continue  # superseded by a merge
            outcome = self.compress_entry(rec)
            if not outcome.compressed:
                if outcome.error:
                    self._issue(result, rec.id, "compress", outcome.error)
                continue
            try:
                stored = self._store.supersede(rec.id, outcome.record)
            except Exception as e:
                self._issue(result, rec.id, "compress", str(e))
                continue
            result.entries_compressed += 1
            self._move_sources(rec.id, stored.id, result)
            self._events.emit("entry_compressed", {
                "id": rec.id,
                "new_id": stored.id,
                "original_size": outcome.original_size,
                "compressed_size": outcome.compressed_size,
            })

    def _move_sources(self, old_id: str, new_id: str, result: PruningResult) -> None:
        if self._graph is None:
            return
        try:
            self._graph.replace_source(old_id, new_id)
        except Exception as e:
            self._issue(result, old_id, "graph_relink", str(e))

    def _validate(self, removed_ids: Set[str]) -> bool:
        report = self._store.verify()
        if not report.valid:
            logger.warning(f"Post-pruning validation found {len(report.errors)} error(s)")
            return False
        still_live = set(self._store.ids()) & removed_ids
        if still_live:
            logger.warning(f"Post-pruning validation: {len(still_live)} removed id(s) still live")
            return False
        return True

    def _finish(self, result: PruningResult, started: float) -> PruningResult:
        result.duration_ms = round((time.monotonic() - started) * 1000.0, 3)
        if not result.dry_run:
            self._last_optimization = _now_iso()
            self._runs += 1
        logger.info(
            f"Pruning complete: {result.entries_removed} removed, "
            f"{result.entries_compressed} compressed, {len(result.errors)} error(s) "
            f"in {result.duration_ms:.1f}ms{' (dry run)' if result.dry_run else ''}"
        )
        self._events.emit("pruning_completed", result.to_dict())
        return result

    # -- Introspection --------------------------------------------------------------

    def get_optimization_metrics(self) -> Dict[str, Any]:
        records = self._store.load()
        total = len(records)
        compressed = sum(1 for r in records if r.is_compressed)
        index_path = self._store.index_path
        return {
            "total_entries": total,
            "storage_size": self._store.live_bytes() / _MB,
            "index_size": index_path.stat().st_size if index_path.exists() else 0,
            "compression_ratio": compressed / total if total else 0.0,
            "duplicates_removed": self._duplicates_removed,
            "entries_pruned": self._entries_pruned,
            "performance_gain": round(self._last_gain, 3),
            "last_optimization": self._last_optimization,
        }

    def get_pruning_recommendations(self) -> Dict[str, Any]:
        """Whether a run is advisable, why, and a tighter policy suggestion."""
        policy = self._policy
        limits = self._config.limits
        metrics = self.get_optimization_metrics()
        candidates = self.identify_pruning_candidates()
        reasons: List[str] = []

        if metrics["storage_size"] > policy.max_size * 0.8:
            reasons.append(f"Storage size ({metrics['storage_size']:.2f}MB) approaching limit")
        if metrics["total_entries"] > policy.max_entries * 0.8:
            reasons.append(f"Entry count ({metrics['total_entries']}) approaching limit")
        if candidates.by_age:
            reasons.append(f"{len(candidates.by_age)} record(s) older than {policy.max_age} days")
        if candidates.by_redundancy:
            reasons.append(f"{len(candidates.by_redundancy)} near-duplicate record(s)")
        if self._last_optimization is None:
            reasons.append("No optimization run recorded")
        else:
            last = datetime.fromisoformat(self._last_optimization)
            if datetime.now(timezone.utc) - last > timedelta(days=7):
                reasons.append("Regular maintenance window (weekly optimization)")

        estimated = sum(self._record_size(r) for r in candidates.all())
        return {
            "should_prune": bool(reasons),
            "reasons": reasons,
            "estimated_savings": estimated,
            "recommended_policy": {
                "max_age": max(limits.min_max_age_days, 30, policy.max_age - 30),
                "compression_threshold": max(7, policy.compression_threshold - 7),
            },
        }

    # -- Scheduling -------------------------------------------------------------

    def schedule_automatic_pruning(self, cron: str) -> PruningScheduler:
        """Start (or restart) background pruning on a cron schedule.

        Raises:
            ValidationError: If the cron expression is invalid (before any
                scheduling change).
        """
        validate_cron(cron)
        self.stop_automatic_pruning()
        self._scheduler = PruningScheduler(
            cron, self._scheduled_run, budget_seconds=self._config.run_budget_seconds,
        )
        self._scheduler.start()
        return self._scheduler

    def stop_automatic_pruning(self) -> bool:
        if self._scheduler is None:
            return False
        self._scheduler.stop()
        self._scheduler = None
        return True

    @property
    def scheduled(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _scheduled_run(self) -> Optional[PruningResult]:
        try:
            return self.execute_pruning()
        except MaintenanceBusyError:
            logger.info("Scheduled pruning skipped: engine busy")
            self._events.emit("scheduled_run_skipped", {"reason": "busy"})
            return None
