"""
Redundancy Detection — Near-Duplicate Clustering and Merge

Clusters live records by type, then by payload similarity
(see docmemory.similarity.record_similarity), and picks one keeper per
cluster: the most recently accessed member (falls back to the record
timestamp; tie-break: lexicographic id). Everything else in the cluster is
an eviction candidate.

Merge contract (for clusters that can merge):
  - Only records of one type whose primitive fields do not conflict
  - Keeper values win; lists are unioned in order; nested maps are merged
  - Tags are unioned into the keeper metadata
  - Never mutates originals: returns a new record version for the keeper
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from docmemory.similarity import record_similarity
from docmemory.types import MemoryRecord

logger = logging.getLogger(__name__)

AccessKey = Callable[[MemoryRecord], str]


@dataclass
class RedundancyCluster:
    """A group of near-duplicate records and the member that survives."""

    keeper: MemoryRecord
    duplicates: List[MemoryRecord] = field(default_factory=list)
    min_similarity: float = 1.0
    can_merge: bool = False

    @property
    def size(self) -> int:
        return 1 + len(self.duplicates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keeper": self.keeper.id,
            "duplicates": [r.id for r in self.duplicates],
            "min_similarity": round(self.min_similarity, 4),
            "can_merge": self.can_merge,
        }


def _default_access_key(record: MemoryRecord) -> str:
    return record.timestamp or ""


def find_redundant_clusters(
    records: List[MemoryRecord],
    threshold: float,
    *,
    access_key: Optional[AccessKey] = None,
    scan_limit: Optional[int] = None,
) -> List[RedundancyCluster]:
    """
    Greedy near-duplicate clustering within each record type.

    A record joins a cluster when its similarity to the cluster seed is
    >= threshold. Compressed records are never clustered. With
    ``scan_limit``, only the most recent records of each type are compared.
    """
    access_key = access_key or _default_access_key

    by_type: Dict[str, List[MemoryRecord]] = defaultdict(list)
    for rec in records:
        if rec.is_compressed:
            continue
        by_type[rec.type].append(rec)

    clusters: List[RedundancyCluster] = []
    for rtype in sorted(by_type):
        type_records = sorted(by_type[rtype], key=lambda r: (r.timestamp or "", r.id or ""),
                              reverse=True)
        if scan_limit is not None and len(type_records) > scan_limit:
            logger.debug(f"Redundancy scan of {rtype} limited to {scan_limit} records")
            type_records = type_records[:scan_limit]

        assigned: Set[str] = set()
        for i, seed in enumerate(type_records):
            if seed.id in assigned:
                continue
            members = [seed]
            scores = []
            assigned.add(seed.id)
            for other in type_records[i + 1:]:
                if other.id in assigned:
                    continue
                score = record_similarity(seed, other)
                if score >= threshold:
                    members.append(other)
                    scores.append(score)
                    assigned.add(other.id)
            if len(members) < 2:
                continue
            ordered = sorted(members, key=lambda r: (access_key(r), r.id or ""), reverse=True)
            clusters.append(RedundancyCluster(
                keeper=ordered[0],
                duplicates=ordered[1:],
                min_similarity=min(scores),
                can_merge=can_merge(members),
            ))

    return clusters


def _conflicts(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    for key, value in a.items():
        if key not in b or b[key] == value:
            continue
        if isinstance(value, list) and isinstance(b[key], list):
            continue
        if isinstance(value, dict) and isinstance(b[key], dict):
            continue
        return True
    return False


def can_merge(records: List[MemoryRecord]) -> bool:
    """True if all records share a type and no primitive field conflicts."""
    if len(records) < 2:
        return False
    first = records[0]
    if any(r.type != first.type for r in records[1:]):
        return False
    return not any(_conflicts(first.data, r.data) for r in records[1:])


def _merge_values(keep: Any, other: Any) -> Any:
    if isinstance(keep, dict) and isinstance(other, dict):
        out = dict(other)
        for k, v in keep.items():
            out[k] = _merge_values(v, other[k]) if k in other else v
        return out
    if isinstance(keep, list) and isinstance(other, list):
        merged = list(keep)
        for item in other:
            if item not in merged:
                merged.append(item)
        return merged
    return keep


def merge_cluster(cluster: RedundancyCluster) -> MemoryRecord:
    """Build the merged keeper version (unsaved). Deterministic."""
    data: Dict[str, Any] = dict(cluster.keeper.data)
    tags: List[str] = list(cluster.keeper.tags)
    seen_tags = {t.lower() for t in tags}
    for dup in sorted(cluster.duplicates, key=lambda r: r.id or ""):
        data = _merge_values(data, dup.data)
        for tag in dup.tags:
            if tag.lower() not in seen_tags:
                seen_tags.add(tag.lower())
                tags.append(tag)

    metadata = dict(cluster.keeper.metadata)
    if tags:
        metadata["tags"] = tags
    metadata["mergedFrom"] = sorted(r.id for r in cluster.duplicates)
    return MemoryRecord(
        type=cluster.keeper.type,
        data=data,
        metadata=metadata,
        timestamp=cluster.keeper.timestamp,
    )
