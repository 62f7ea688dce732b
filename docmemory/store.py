"""
Record Store — Append-Only Partitioned Log

Layout under the storage directory:
    {type}_{yyyy}_{mm}.log   - one partition per record type and calendar month
    .index.json              - sidecar index {id -> file, byte offset, size, ...}

Every partition starts with a marker line identifying it as a docmemory log;
each following line is one JSON record. Records are never rewritten in place:
deletion tombstones the index entry, compaction physically drops dead lines.

Thread safety: a re-entrant lock serializes appends, deletes and index writes.
Cross-process writers are not supported.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from docmemory.errors import IntegrityError, StorageError, ValidationError
from docmemory.types import (
    CancelToken,
    IntegrityReport,
    MemoryRecord,
    _now_iso,
    compute_checksum,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
RECORD_MARKER = "# DOCMEMORY_RECORD_LOG"

_PARTITION_RE = re.compile(r"^(?P<type>[a-z][a-z0-9_]*?)_(?P<year>\d{4})_(?P<month>\d{2})\.log$")
_MARKER_VERSION_RE = re.compile(r"\bv(\d+)\s*$")

_REQUIRED_FIELDS = ("id", "type", "timestamp", "data", "checksum")

TimeBound = Union[str, datetime, None]


# ---------------------------------------------------------------------------
# Index and load metadata
# ---------------------------------------------------------------------------


@dataclass
class IndexEntry:
    """Location and bookkeeping for one stored record."""

    id: str
    file: str
    offset: int
    size: int
    type: str
    timestamp: str
    checksum: str
    last_accessed: Optional[str] = None
    deleted_at: Optional[str] = None

    @property
    def live(self) -> bool:
        return self.deleted_at is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> IndexEntry:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class LoadMeta:
    """Diagnostics of the last load() call."""

    files_scanned: int = 0
    lines_read: int = 0
    records_loaded: int = 0
    corrupt_lines: int = 0
    stale_lines: int = 0
    cancelled: bool = False
    corrupt_details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_datetime(value: TimeBound) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return parse_timestamp(value.isoformat())
    return parse_timestamp(value)


def partition_name(record_type: str, timestamp: str) -> str:
    """Partition file name for a record type and timestamp."""
    dt = parse_timestamp(timestamp)
    return f"{record_type}_{dt.year:04d}_{dt.month:02d}.log"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RecordStore:
    """
    Append-only, content-addressed record store.

    Thread-safe via explicit lock. Reads seek directly to indexed offsets.
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        *,
        schema_version: int = SCHEMA_VERSION,
        index_file: str = ".index.json",
        fsync: bool = False,
    ):
        """Open (or create) a record store directory.

        Raises:
            IntegrityError: If a ``*.log`` file in the directory lacks the
                record-log marker or carries a newer schema.
            StorageError: If the directory cannot be created.
        """
        self._dir = Path(storage_dir)
        self._schema_version = schema_version
        self._index_path = self._dir / index_file
        self._fsync = fsync
        self._lock = threading.RLock()
        self._index: Dict[str, IndexEntry] = {}
        self._index_dirty = False
        self.last_load_meta: Optional[LoadMeta] = None

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory: {e}",
                               path=str(self._dir)) from e

        self._check_markers()
        self._load_index()
        logger.info(
            f"RecordStore initialized: {self._dir} "
            f"({self.count()} records, {len(self._index) - self.count()} tombstones)"
        )

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def index_path(self) -> Path:
        return self._index_path

    def close(self) -> None:
        """Flush pending index updates (access times)."""
        self.flush()

    def flush(self) -> None:
        with self._lock:
            if self._index_dirty:
                self._save_index()

    # -- File format --------------------------------------------------------

    def _marker_line(self) -> str:
        return f"{RECORD_MARKER} v{self._schema_version}\n"

    def _partition_paths(self) -> List[Path]:
        return sorted(p for p in self._dir.glob("*.log") if p.is_file())

    def _check_markers(self) -> None:
        for path in self._partition_paths():
            try:
                with open(path, "rb") as f:
                    first = f.readline().decode("utf-8", errors="replace").strip()
            except OSError as e:
                raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
            if not first:
                # zero-byte partition, marker is written on first append
                continue
            if not first.startswith(RECORD_MARKER):
                raise IntegrityError(
                    f"Refusing to operate on foreign file {path.name}: missing record-log marker",
                    subject=str(path),
                )
            m = _MARKER_VERSION_RE.search(first)
            if m and int(m.group(1)) > self._schema_version:
                raise IntegrityError(
                    f"{path.name} has schema v{m.group(1)}, newer than supported "
                    f"v{self._schema_version}",
                    subject=str(path),
                )

    # -- Index --------------------------------------------------------------

    def _load_index(self) -> None:
        if not self._index_path.exists():
            if self._partition_paths():
                logger.warning(f"Index missing in {self._dir}, rebuilding from partitions")
                self.rebuild_index()
            return
        try:
            with open(self._index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            entries = raw.get("entries", []) if isinstance(raw, dict) else []
            self._index = {e["id"]: IndexEntry.from_dict(e) for e in entries}
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Index unreadable ({e}), rebuilding from partitions")
            self._index = {}
            self.rebuild_index()
        except OSError as e:
            raise StorageError(f"Cannot read index: {e}", path=str(self._index_path)) from e

    def _save_index(self) -> None:
        payload = {
            "version": self._schema_version,
            "updatedAt": _now_iso(),
            "entries": [e.to_dict() for e in self._index.values()],
        }
        tmp = self._index_path.with_name(self._index_path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
            os.replace(tmp, self._index_path)
        except OSError as e:
            raise StorageError(f"Cannot write index: {e}", path=str(self._index_path)) from e
        self._index_dirty = False

    def index_entry(self, record_id: str) -> Optional[IndexEntry]:
        """Index entry for an id (tombstoned entries included)."""
        return self._index.get(record_id)

    def ids(self) -> List[str]:
        """Ids of all live records."""
        with self._lock:
            return [e.id for e in self._index.values() if e.live]

    def count(self) -> int:
        with self._lock:
            return sum(1 for e in self._index.values() if e.live)

    def live_bytes(self) -> int:
        with self._lock:
            return sum(e.size for e in self._index.values() if e.live)

    # -- Write operations ---------------------------------------------------

    def append(self, record: Union[MemoryRecord, Dict[str, Any]]) -> MemoryRecord:
        """Validate and append a record. Idempotent on identical content.

        Returns:
            The stored record with ``id``, ``checksum`` and ``timestamp`` set.
            When a live record with the same id exists, that record is
            returned and nothing is written.

        Raises:
            ValidationError: Malformed type, payload, metadata or timestamp.
            StorageError: Filesystem failure.
        """
        if isinstance(record, dict):
            record = MemoryRecord.from_dict(record)
        if not isinstance(record, MemoryRecord):
            raise ValidationError(f"Cannot append {type(record).__name__}")
        record.validate()

        record_id = record.expected_id()
        checksum = compute_checksum(record.data)

        with self._lock:
            existing = self._index.get(record_id)
            if existing is not None and existing.live:
                logger.debug(f"Append of {record_id}: identical content already stored")
                return self._read_entry(existing)

            stored = MemoryRecord(
                id=record_id,
                timestamp=record.timestamp or _now_iso(),
                type=record.type,
                data=record.data,
                metadata=record.metadata,
                checksum=checksum,
            )
            fname = partition_name(stored.type, stored.timestamp)
            offset, size = self._write_line(self._dir / fname, stored.to_json())

            self._index[record_id] = IndexEntry(
                id=record_id,
                file=fname,
                offset=offset,
                size=size,
                type=stored.type,
                timestamp=stored.timestamp,
                checksum=checksum,
                last_accessed=existing.last_accessed if existing else None,
            )
            self._save_index()
            if existing is not None:
                logger.debug(f"Revived tombstoned record {record_id}")
            else:
                logger.debug(f"Appended {stored.type} record {record_id} to {fname}")
            return stored

    def _write_line(self, path: Path, line: str) -> Tuple[int, int]:
        """Append one line to a partition. Returns (offset, size) of the line."""
        payload = line.encode("utf-8")
        try:
            with open(path, "ab") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    f.write(self._marker_line().encode("utf-8"))
                offset = f.tell()
                f.write(payload + b"\n")
                f.flush()
                if self._fsync:
                    os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"Cannot append to {path.name}: {e}", path=str(path)) from e
        return offset, len(payload)

    def delete(self, record_id: str) -> bool:
        """Tombstone a record. Returns False if absent or already deleted."""
        with self._lock:
            entry = self._index.get(record_id)
            if entry is None or not entry.live:
                return False
            entry.deleted_at = _now_iso()
            try:
                self._save_index()
            except StorageError:
                entry.deleted_at = None
                raise
            logger.debug(f"Tombstoned record {record_id}")
            return True

    def supersede(self, old_id: str, record: MemoryRecord) -> MemoryRecord:
        """Append a new version of a record and tombstone the old id.

        Raises:
            ValidationError: If ``old_id`` is not a live record.
        """
        with self._lock:
            entry = self._index.get(old_id)
            if entry is None or not entry.live:
                raise ValidationError(f"Cannot supersede unknown record {old_id}")
            stored = self.append(record)
            if stored.id != old_id:
                self.delete(old_id)
            return stored

    # -- Read operations ----------------------------------------------------

    def _read_entry(self, entry: IndexEntry) -> MemoryRecord:
        """Read and verify the line an index entry points to."""
        path = self._dir / entry.file
        try:
            with open(path, "rb") as f:
                f.seek(entry.offset)
                raw = f.read(entry.size)
        except OSError as e:
            raise StorageError(f"Cannot read {entry.file}: {e}", path=str(path)) from e
        try:
            d = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityError(
                f"Record {entry.id}: unreadable line at {entry.file}:{entry.offset}",
                subject=entry.id,
            ) from e
        if not isinstance(d, dict) or d.get("id") != entry.id:
            raise IntegrityError(
                f"Record {entry.id}: index points at a different line in {entry.file}",
                subject=entry.id,
            )
        rec = MemoryRecord.from_dict(d)
        actual = compute_checksum(rec.data)
        if actual != rec.checksum or actual != entry.checksum:
            raise IntegrityError(
                f"Record {entry.id}: checksum mismatch", subject=entry.id,
            )
        return rec

    def get(self, record_id: str) -> Optional[MemoryRecord]:
        """Read a single live record by id, recording the access time.

        Raises:
            IntegrityError: If the stored line fails checksum verification.
        """
        with self._lock:
            entry = self._index.get(record_id)
            if entry is None or not entry.live:
                return None
            rec = self._read_entry(entry)
            entry.last_accessed = _now_iso()
            self._index_dirty = True
            return rec

    def _select_partitions(
        self,
        record_type: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[Path]:
        selected = []
        for path in self._partition_paths():
            m = _PARTITION_RE.match(path.name)
            if not m:
                continue
            if record_type is not None and m.group("type") != record_type:
                continue
            ym = (int(m.group("year")), int(m.group("month")))
            if start is not None and ym < (start.year, start.month):
                continue
            if end is not None and ym > (end.year, end.month):
                continue
            selected.append(path)
        return selected

    def _scan(self, path: Path) -> Iterator[Tuple[int, int, Optional[Dict[str, Any]], str]]:
        """Yield (offset, size, parsed-or-None, error) for each data line."""
        with open(path, "rb") as f:
            offset = 0
            for raw in f:
                line_offset = offset
                offset += len(raw)
                text = raw.rstrip(b"\r\n")
                if not text.strip() or text.startswith(b"#"):
                    continue
                try:
                    d = json.loads(text.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    yield line_offset, len(text), None, "invalid JSON"
                    continue
                if not isinstance(d, dict) or any(k not in d for k in _REQUIRED_FIELDS):
                    yield line_offset, len(text), None, "missing fields"
                    continue
                if compute_checksum(d["data"]) != d["checksum"]:
                    yield line_offset, len(text), None, "checksum mismatch"
                    continue
                yield line_offset, len(text), d, ""

    def load(
        self,
        record_type: Optional[str] = None,
        start: TimeBound = None,
        end: TimeBound = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[MemoryRecord]:
        """Stream the relevant partitions and return live records.

        Corrupt lines are skipped and counted in ``last_load_meta``.
        Results are ordered by timestamp (oldest first).
        """
        start_dt = _to_datetime(start)
        end_dt = _to_datetime(end)
        meta = LoadMeta()
        results: List[MemoryRecord] = []

        with self._lock:
            index = dict(self._index)
        for path in self._select_partitions(record_type, start_dt, end_dt):
            if cancel is not None and cancel.cancelled:
                meta.cancelled = True
                break
            meta.files_scanned += 1
            try:
                for offset, size, d, error in self._scan(path):
                    if cancel is not None and cancel.cancelled:
                        meta.cancelled = True
                        break
                    meta.lines_read += 1
                    if d is None:
                        meta.corrupt_lines += 1
                        meta.corrupt_details.append(
                            {"file": path.name, "offset": offset, "reason": error}
                        )
                        logger.warning(f"Skipping corrupt line in {path.name}@{offset}: {error}")
                        continue
                    entry = index.get(d["id"])
                    if (entry is None or not entry.live or entry.file != path.name
                            or entry.offset != offset):
                        meta.stale_lines += 1
                        continue
                    rec = MemoryRecord.from_dict(d)
                    created = rec.created
                    if start_dt is not None and created < start_dt:
                        continue
                    if end_dt is not None and created > end_dt:
                        continue
                    results.append(rec)
            except OSError as e:
                raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
            if meta.cancelled:
                break

        results.sort(key=lambda r: r.created)
        meta.records_loaded = len(results)
        self.last_load_meta = meta
        if meta.corrupt_lines:
            logger.warning(f"load(): skipped {meta.corrupt_lines} corrupt line(s)")
        return results

    def all_records(self) -> List[MemoryRecord]:
        return self.load()

    def query(
        self,
        record_type: Optional[str] = None,
        *,
        project_id: Optional[str] = None,
        repository: Optional[str] = None,
        ssg: Optional[str] = None,
        tags: Optional[List[str]] = None,
        start: TimeBound = None,
        end: TimeBound = None,
        limit: Optional[int] = None,
    ) -> List[MemoryRecord]:
        """Filter live records by metadata. Tags match if any tag is present.

        Results are ordered newest first.
        """
        records = self.load(record_type, start, end)
        out = []
        for rec in reversed(records):
            md = rec.metadata
            if project_id is not None and md.get("projectId") != project_id:
                continue
            if repository is not None and md.get("repository") != repository:
                continue
            if ssg is not None and md.get("ssg") != ssg:
                continue
            if tags and not set(tags) & set(rec.tags):
                continue
            out.append(rec)
            if limit is not None and len(out) >= limit:
                break
        return out

    # -- Maintenance operations ----------------------------------------------

    def rebuild_index(self) -> int:
        """Rescan all partitions and rebuild the index.

        The last valid line of an id wins. Tombstones and access times
        from the previous index are kept. Returns the number of live records.
        """
        with self._lock:
            previous = self._index
            rebuilt: Dict[str, IndexEntry] = {}
            for path in self._partition_paths():
                if not _PARTITION_RE.match(path.name):
                    continue
                try:
                    for offset, size, d, error in self._scan(path):
                        if d is None:
                            logger.warning(f"rebuild_index: skipping {path.name}@{offset}: {error}")
                            continue
                        rebuilt[d["id"]] = IndexEntry(
                            id=d["id"], file=path.name, offset=offset, size=size,
                            type=d["type"], timestamp=d["timestamp"],
                            checksum=d["checksum"],
                        )
                except OSError as e:
                    raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
            for rid, entry in rebuilt.items():
                old = previous.get(rid)
                if old is not None:
                    entry.last_accessed = old.last_accessed
                    entry.deleted_at = old.deleted_at
            self._index = rebuilt
            self._save_index()
            live = sum(1 for e in rebuilt.values() if e.live)
            logger.info(f"Index rebuilt: {live} live, {len(rebuilt) - live} tombstoned")
            return live

    def compact(self, record_type: Optional[str] = None) -> Dict[str, int]:
        """Rewrite partitions keeping only live indexed lines.

        Tombstoned ids are dropped from the index once their line is gone.
        Partitions left without records are removed.
        """
        stats = {"files_rewritten": 0, "files_removed": 0,
                 "lines_dropped": 0, "bytes_reclaimed": 0}
        with self._lock:
            selected = self._select_partitions(record_type, None, None)
            processed = {p.name for p in selected}
            for path in selected:
                before = path.stat().st_size
                live_entries = sorted(
                    (e for e in self._index.values() if e.file == path.name and e.live),
                    key=lambda e: e.offset,
                )
                total_lines = 0
                kept: List[Tuple[IndexEntry, bytes]] = []
                try:
                    with open(path, "rb") as f:
                        for raw in f:
                            if raw.strip() and not raw.startswith(b"#"):
                                total_lines += 1
                        for entry in live_entries:
                            f.seek(entry.offset)
                            kept.append((entry, f.read(entry.size)))
                except OSError as e:
                    raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e

                if not kept:
                    path.unlink()
                    stats["files_removed"] += 1
                    stats["lines_dropped"] += total_lines
                    stats["bytes_reclaimed"] += before
                    continue
                if len(kept) == total_lines:
                    continue

                tmp = path.with_name(path.name + ".tmp")
                new_offsets: List[int] = []
                try:
                    with open(tmp, "wb") as f:
                        f.write(self._marker_line().encode("utf-8"))
                        for entry, raw in kept:
                            new_offsets.append(f.tell())
                            f.write(raw + b"\n")
                        f.flush()
                        if self._fsync:
                            os.fsync(f.fileno())
                    os.replace(tmp, path)
                except OSError as e:
                    raise StorageError(f"Cannot compact {path.name}: {e}", path=str(path)) from e
                for (entry, _), off in zip(kept, new_offsets):
                    entry.offset = off
                stats["files_rewritten"] += 1
                stats["lines_dropped"] += total_lines - len(kept)
                stats["bytes_reclaimed"] += before - path.stat().st_size

            for rid in [rid for rid, e in self._index.items()
                        if not e.live and e.file in processed]:
                del self._index[rid]
            self._save_index()
        logger.info(
            f"Compaction: {stats['files_rewritten']} rewritten, "
            f"{stats['files_removed']} removed, {stats['lines_dropped']} lines dropped"
        )
        return stats

    def snapshot(self, dest: Union[str, Path]) -> Path:
        """Copy partitions and index into ``dest``. Returns the directory."""
        dest = Path(dest)
        with self._lock:
            if self._index_dirty:
                self._save_index()
            try:
                dest.mkdir(parents=True, exist_ok=True)
                for path in self._partition_paths():
                    shutil.copy2(path, dest / path.name)
                if self._index_path.exists():
                    shutil.copy2(self._index_path, dest / self._index_path.name)
            except OSError as e:
                raise StorageError(f"Snapshot failed: {e}", path=str(dest)) from e
        logger.info(f"Record store snapshot written to {dest}")
        return dest

    def statistics(self) -> Dict[str, Any]:
        """Summary statistics for the record store."""
        with self._lock:
            entries = list(self._index.values())
        live = [e for e in entries if e.live]
        by_type: Dict[str, int] = {}
        by_month: Dict[str, int] = {}
        for e in live:
            by_type[e.type] = by_type.get(e.type, 0) + 1
            month = parse_timestamp(e.timestamp).strftime("%Y-%m")
            by_month[month] = by_month.get(month, 0) + 1
        disk_bytes = sum(p.stat().st_size for p in self._partition_paths())
        index_bytes = self._index_path.stat().st_size if self._index_path.exists() else 0
        stamps = sorted(e.timestamp for e in live)
        return {
            "total_entries": len(live),
            "tombstones": len(entries) - len(live),
            "by_type": by_type,
            "by_month": by_month,
            "live_bytes": sum(e.size for e in live),
            "disk_bytes": disk_bytes,
            "index_bytes": index_bytes,
            "partitions": len(self._partition_paths()),
            "oldest": stamps[0] if stamps else None,
            "newest": stamps[-1] if stamps else None,
        }

    def verify(self) -> IntegrityReport:
        """Check that every live index entry resolves to a matching line."""
        report = IntegrityReport()
        with self._lock:
            entries = [e for e in self._index.values() if e.live]
            for entry in entries:
                if not (self._dir / entry.file).exists():
                    report.errors.append(f"{entry.id}: partition {entry.file} missing")
                    continue
                try:
                    self._read_entry(entry)
                except (IntegrityError, StorageError) as e:
                    report.errors.append(str(e))
        for path in self._partition_paths():
            if not _PARTITION_RE.match(path.name):
                report.warnings.append(f"{path.name}: not a recognized partition name")
        report.valid = not report.errors
        return report
