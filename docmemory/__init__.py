"""
docmemory — persistent memory substrate for documentation tooling.

Append-only, content-addressed record log; a knowledge graph derived from
records and persisted as JSONL tables; a policy-driven maintenance engine
for pruning, compression and deduplication.
"""

__version__ = "0.3.0"

from docmemory.types import (
    MemoryRecord,
    GraphNode,
    GraphEdge,
    GraphPath,
    GraphQuery,
    GraphQueryResult,
    IntegrityReport,
    CancelToken,
)
from docmemory.errors import (
    DocMemoryError,
    ValidationError,
    IntegrityError,
    IntegrityWarning,
    StorageError,
    MaintenanceError,
    MaintenanceBusyError,
)
from docmemory.store import RecordStore, SCHEMA_VERSION
from docmemory.graph_store import GraphStore
from docmemory.graph import KnowledgeGraph
from docmemory.config import MemoryConfig, PruningPolicy, load_config
from docmemory.pruning import MaintenanceEngine, PruningResult
from docmemory.manager import MemoryContext, MemoryManager
from docmemory.system import MemorySystem

__all__ = [
    "__version__",
    "MemoryRecord",
    "GraphNode",
    "GraphEdge",
    "GraphPath",
    "GraphQuery",
    "GraphQueryResult",
    "IntegrityReport",
    "CancelToken",
    "DocMemoryError",
    "ValidationError",
    "IntegrityError",
    "IntegrityWarning",
    "StorageError",
    "MaintenanceError",
    "MaintenanceBusyError",
    "RecordStore",
    "GraphStore",
    "KnowledgeGraph",
    "MemoryConfig",
    "PruningPolicy",
    "load_config",
    "MaintenanceEngine",
    "PruningResult",
    "MemoryContext",
    "MemoryManager",
    "MemorySystem",
    "SCHEMA_VERSION",
]
