"""
Memory Manager — remember / recall / forget / search on top of the Record Store.

The manager carries an optional MemoryContext (project and repository) that
is merged into the metadata of every remembered record and into metadata
filters of searches. Recently recalled records are kept in a small bounded
cache; cache hits are re-checked against the store index so that records
removed by maintenance are never served.

Events: memory_created, memory_updated, memory_deleted, context_changed.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from docmemory.errors import ValidationError
from docmemory.events import EventBus
from docmemory.store import RecordStore
from docmemory.types import MemoryRecord, _now_iso

logger = logging.getLogger(__name__)

SORT_KEYS = ("relevance", "timestamp", "type")
GROUP_KEYS = ("type", "project", "date")

# metadata filter key -> RecordStore.query keyword
_FILTER_KEYS = {
    "type": "record_type",
    "projectId": "project_id",
    "repository": "repository",
    "ssg": "ssg",
    "tags": "tags",
    "start": "start",
    "end": "end",
    "limit": "limit",
}


@dataclass
class MemoryContext:
    """Ambient project scope for remembered records."""

    project_id: Optional[str] = None
    repository: Optional[str] = None

    def as_metadata(self) -> Dict[str, str]:
        md: Dict[str, str] = {}
        if self.project_id:
            md["projectId"] = self.project_id
        if self.repository:
            md["repository"] = self.repository
        return md


SearchResult = Union[List[MemoryRecord], Dict[str, List[MemoryRecord]]]


class MemoryManager:
    """Consumer-facing API over a RecordStore."""

    def __init__(
        self,
        store: RecordStore,
        *,
        events: Optional[EventBus] = None,
        cache_size: int = 100,
        context: Optional[MemoryContext] = None,
    ):
        self._store = store
        self._events = events or EventBus()
        self._cache_size = max(0, int(cache_size))
        self._cache: "OrderedDict[str, MemoryRecord]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self._context = context

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def context(self) -> Optional[MemoryContext]:
        return self._context

    def set_context(self, context: Optional[MemoryContext]) -> None:
        self._context = context
        self._events.emit("context_changed", {
            "projectId": context.project_id if context else None,
            "repository": context.repository if context else None,
        })

    # -- Cache ----------------------------------------------------------------

    def _cache_put(self, record: MemoryRecord) -> None:
        if self._cache_size == 0:
            return
        with self._cache_lock:
            self._cache[record.id] = record
            self._cache.move_to_end(record.id)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

    def _cache_drop(self, record_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(record_id, None)

    def cached_ids(self) -> List[str]:
        with self._cache_lock:
            return list(self._cache)

    # -- Operations -------------------------------------------------------------

    def remember(
        self,
        record_type: str,
        data: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRecord:
        """Append a record, merging the active context into its metadata.

        Explicit metadata wins over the context.

        Raises:
            ValidationError: Malformed type, payload or metadata.
        """
        md: Dict[str, Any] = {}
        if self._context is not None:
            md.update(self._context.as_metadata())
        md.update(metadata or {})
        stored = self._store.append(MemoryRecord(type=record_type, data=data, metadata=md))
        self._cache_put(stored)
        self._events.emit("memory_created", {"id": stored.id, "type": stored.type})
        return stored

    def recall(self, record_id: str) -> Optional[MemoryRecord]:
        with self._cache_lock:
            cached = self._cache.get(record_id)
        if cached is not None:
            entry = self._store.index_entry(record_id)
            if entry is not None and entry.live:
                with self._cache_lock:
                    if record_id in self._cache:
                        self._cache.move_to_end(record_id)
                return cached
            self._cache_drop(record_id)
            return None
        rec = self._store.get(record_id)
        if rec is not None:
            self._cache_put(rec)
        return rec

    def forget(self, record_id: str) -> bool:
        removed = self._store.delete(record_id)
        self._cache_drop(record_id)
        if removed:
            self._events.emit("memory_deleted", {"id": record_id})
        return removed

    def update(
        self,
        record_id: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[MemoryRecord]:
        """Supersede a record with a new version. Returns None if absent.

        ``data`` and ``metadata`` are shallow-merged over the current values.
        """
        existing = self.recall(record_id)
        if existing is None:
            return None
        new_data = {**existing.data, **(data or {})}
        new_md = {**existing.metadata, **(metadata or {})}
        stored = self._store.supersede(
            record_id,
            MemoryRecord(type=existing.type, data=new_data, metadata=new_md, timestamp=_now_iso()),
        )
        self._cache_drop(record_id)
        self._cache_put(stored)
        self._events.emit("memory_updated", {"id": stored.id, "previous": record_id})
        return stored

    def search(
        self,
        query: Union[str, Dict[str, Any], None] = None,
        *,
        sort_by: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> SearchResult:
        """Search by free text or by metadata filters.

        A string matches records whose projectId equals it, then records
        tagged with it. A dict is a metadata filter (keys: type, projectId,
        repository, ssg, tags, start, end, limit); missing projectId and
        repository are filled from the active context.

        Raises:
            ValidationError: Unknown filter key, sort or grouping.
        """
        if sort_by is not None and sort_by not in SORT_KEYS:
            raise ValidationError(f"Invalid sort_by {sort_by!r}; expected one of {SORT_KEYS}")
        if group_by is not None and group_by not in GROUP_KEYS:
            raise ValidationError(f"Invalid group_by {group_by!r}; expected one of {GROUP_KEYS}")

        if isinstance(query, str):
            results = self._store.query(project_id=query)
            seen = {r.id for r in results}
            results.extend(r for r in self._store.query(tags=[query]) if r.id not in seen)
        else:
            filters = dict(query or {})
            unknown = set(filters) - set(_FILTER_KEYS)
            if unknown:
                raise ValidationError(f"Unknown search filter(s): {sorted(unknown)}")
            if self._context is not None:
                for key, value in self._context.as_metadata().items():
                    filters.setdefault(key, value)
            if isinstance(filters.get("tags"), str):
                filters["tags"] = [filters["tags"]]
            results = self._store.query(**{_FILTER_KEYS[k]: v for k, v in filters.items()})

        if sort_by == "timestamp":
            results = sorted(results, key=lambda r: r.created, reverse=True)
        elif sort_by == "type":
            results = sorted(results, key=lambda r: r.type)

        if group_by is None:
            return results
        grouped: Dict[str, List[MemoryRecord]] = {}
        for rec in results:
            if group_by == "type":
                key = rec.type
            elif group_by == "project":
                key = rec.project_id or "unknown"
            else:
                key = rec.timestamp.split("T")[0]
            grouped.setdefault(key, []).append(rec)
        return grouped

    def related(self, record: MemoryRecord, limit: int = 10) -> List[MemoryRecord]:
        """Records sharing the project, then the type, then any tag."""
        out: Dict[str, MemoryRecord] = {}
        groups: List[List[MemoryRecord]] = []
        if record.project_id:
            groups.append(self._store.query(project_id=record.project_id))
        groups.append(self._store.query(record.type, limit=limit * 2))
        if record.tags:
            groups.append(self._store.query(tags=record.tags, limit=limit * 2))
        for group in groups:
            for rec in group:
                if rec.id != record.id and rec.id not in out:
                    out[rec.id] = rec
        return list(out.values())[:limit]

    def close(self) -> None:
        with self._cache_lock:
            self._cache.clear()
        self._store.close()
