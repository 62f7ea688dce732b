"""
Memory Data Model — Records, Graph Entities, Query Shapes

Records are immutable once appended: their id is a content hash over
type + data + metadata, so resubmitting the same content converges on the
same id. Updates append a new version and tombstone the old id.

Payloads form a tagged union keyed by record type. Each type declares the
fields it knows about; unknown fields pass through, known fields with the
wrong shape are rejected before any I/O.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from docmemory.errors import ValidationError

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

RecordType = Literal[
    "analysis", "recommendation", "deployment", "configuration", "interaction",
]

VALID_RECORD_TYPES: set = {
    "analysis", "recommendation", "deployment", "configuration", "interaction",
}

NodeType = Literal[
    "project", "technology", "pattern", "user", "outcome", "recommendation",
    "configuration", "documentation", "code_file", "documentation_section",
]


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str) -> str:
    """Generate a unique namespaced id, e.g. ``project:1a2b3c4d5e6f``."""
    return f"{prefix}:{uuid.uuid4().hex[:12]}"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def canonical_json(obj: Any) -> str:
    """Deterministic JSON encoding used for hashing."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"),
        ensure_ascii=False, default=str,
    )


def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def compute_record_id(record_type: str, data: Dict[str, Any],
                      metadata: Dict[str, Any]) -> str:
    """Content-addressed id: ignores timestamp, covers type + data + metadata."""
    payload = canonical_json({"type": record_type, "data": data, "metadata": metadata})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def compute_checksum(data: Dict[str, Any]) -> str:
    """Checksum of the serialized payload, independent of the id."""
    return content_hash(canonical_json(data))


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------

# type -> (required fields, known field -> accepted types)
PAYLOAD_SCHEMAS: Dict[str, Tuple[Tuple[str, ...], Dict[str, tuple]]] = {
    "analysis": ((), {
        "language": (str, dict),
        "framework": (str, dict),
        "structure": (dict,),
        "dependencies": (dict, list),
    }),
    "recommendation": (("recommended",), {
        "recommended": (str,),
        "score": (int, float),
        "confidence": (int, float),
        "reasoning": (str, list),
    }),
    "deployment": (("status",), {
        "status": (str,),
        "duration": (int, float),
        "details": (str, dict, list),
    }),
    # catch-all variants
    "configuration": ((), {}),
    "interaction": ((), {}),
}


def validate_payload(record_type: str, data: Any) -> None:
    """Check a payload against its variant. Raises ValidationError."""
    if record_type not in VALID_RECORD_TYPES:
        raise ValidationError(f"Invalid record type: {record_type!r}")
    if not isinstance(data, dict):
        raise ValidationError(
            f"Record data must be a mapping, got {type(data).__name__}"
        )
    if data.get("_compressed") is True:
        # compressed envelope, the variant was checked before compression
        if not isinstance(data.get("_type"), str) or "_data" not in data:
            raise ValidationError(f"{record_type}: malformed compressed payload")
        return
    required, known = PAYLOAD_SCHEMAS[record_type]
    missing = [name for name in required if name not in data]
    if missing:
        raise ValidationError(
            f"{record_type} payload missing required field(s): {', '.join(missing)}"
        )
    for name, accepted in known.items():
        if name in data and data[name] is not None and not isinstance(data[name], accepted):
            names = "/".join(t.__name__ for t in accepted)
            raise ValidationError(
                f"{record_type}.{name}: expected {names}, got {type(data[name]).__name__}"
            )


def validate_metadata(metadata: Any) -> None:
    """Check the metadata map shape. Raises ValidationError."""
    if not isinstance(metadata, dict):
        raise ValidationError(
            f"Record metadata must be a mapping, got {type(metadata).__name__}"
        )
    tags = metadata.get("tags")
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        raise ValidationError("metadata.tags must be a list of strings")
    for key in ("projectId", "repository", "ssg"):
        value = metadata.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"metadata.{key} must be a string")


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """
    Unit of the record store.

    ``id`` and ``checksum`` are filled in by the store on append; callers
    normally build records with ``type``, ``data`` and ``metadata`` only.
    """

    type: RecordType = "interaction"
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None
    id: Optional[str] = None
    checksum: Optional[str] = None

    def validate(self) -> None:
        """Validate type, payload, metadata and timestamp."""
        validate_payload(self.type, self.data)
        validate_metadata(self.metadata)
        if self.timestamp is not None:
            parse_timestamp(self.timestamp)

    @property
    def tags(self) -> List[str]:
        return list(self.metadata.get("tags") or [])

    @property
    def project_id(self) -> Optional[str]:
        return self.metadata.get("projectId")

    @property
    def created(self) -> datetime:
        """Parsed timestamp (UTC)."""
        return parse_timestamp(self.timestamp or _now_iso())

    @property
    def is_compressed(self) -> bool:
        return bool(self.metadata.get("compressed"))

    def expected_id(self) -> str:
        return compute_record_id(self.type, self.data, self.metadata)

    def expected_checksum(self) -> str:
        return compute_checksum(self.data)

    def size(self) -> int:
        """Serialized size in bytes (one log line, without newline)."""
        return len(self.to_json().encode("utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "data": self.data,
            "metadata": self.metadata,
            "checksum": self.checksum,
        }

    def to_json(self) -> str:
        """Serialize to a compact single-line JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        """Deserialize from dict, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        filtered = {k: v for k, v in d.items() if k in known}
        if filtered.get("metadata") is None:
            filtered["metadata"] = {}
        return cls(**filtered)


# ---------------------------------------------------------------------------
# Graph entities
# ---------------------------------------------------------------------------

def derive_edge_id(source: str, edge_type: str, target: str) -> str:
    """Edge id derived from its endpoints and type."""
    return f"{source}-{edge_type}-{target}"


@dataclass
class GraphNode:
    """Typed vertex of the knowledge graph."""

    id: str = ""
    type: str = "project"
    label: str = ""
    properties: Dict[str, Any] = field(default_factory=dict)
    weight: float = 1.0
    last_updated: str = field(default_factory=_now_iso)

    def validate(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ValidationError("GraphNode.id must be a non-empty string")
        if not isinstance(self.type, str) or not self.type:
            raise ValidationError(f"GraphNode {self.id}: type is required")
        if not isinstance(self.properties, dict):
            raise ValidationError(f"GraphNode {self.id}: properties must be a mapping")
        if not isinstance(self.weight, (int, float)):
            raise ValidationError(f"GraphNode {self.id}: weight must be a number")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> GraphNode:
        data = dict(d)
        if "lastUpdated" in data and "last_updated" not in data:
            data["last_updated"] = data.pop("lastUpdated")
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GraphEdge:
    """Typed, weighted relationship between two nodes."""

    source: str = ""
    target: str = ""
    type: str = "uses"
    weight: float = 1.0
    confidence: float = 1.0
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = ""
    last_updated: str = field(default_factory=_now_iso)

    def __post_init__(self):
        """Derive the id from source/type/target when not supplied."""
        if not self.id and self.source and self.target and self.type:
            self.id = derive_edge_id(self.source, self.type, self.target)

    def validate(self) -> None:
        for name in ("source", "target", "type"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValidationError(f"GraphEdge.{name} must be a non-empty string")
        if not isinstance(self.confidence, (int, float)) or not 0.0 <= self.confidence <= 1.0:
            raise ValidationError(
                f"GraphEdge {self.id}: confidence {self.confidence!r} not in [0, 1]"
            )
        if not isinstance(self.weight, (int, float)):
            raise ValidationError(f"GraphEdge {self.id}: weight must be a number")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> GraphEdge:
        data = dict(d)
        if "lastUpdated" in data and "last_updated" not in data:
            data["last_updated"] = data.pop("lastUpdated")
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GraphPath:
    """A hop sequence: ``len(edges) == len(nodes) - 1``."""

    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    total_weight: float = 0.0
    confidence: float = 1.0

    @property
    def hops(self) -> int:
        return len(self.edges)

    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]


@dataclass
class GraphQuery:
    """Typed predicates for KnowledgeGraph.query(). All are optional."""

    node_types: Optional[List[str]] = None
    edge_types: Optional[List[str]] = None
    properties: Optional[Dict[str, Any]] = None
    min_weight: Optional[float] = None
    start_node: Optional[str] = None
    max_depth: Optional[int] = None


@dataclass
class GraphQueryResult:
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    paths: List[GraphPath] = field(default_factory=list)


@dataclass
class IntegrityReport:
    """Outcome of a read-only consistency check."""

    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Cooperative cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Cooperative cancellation flag checked between records."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
