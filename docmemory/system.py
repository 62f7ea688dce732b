"""
MemorySystem — one handle wiring every component of a storage directory.

Layout of a storage directory:
    <dir>/{type}_{yyyy}_{mm}.log      record partitions
    <dir>/.index.json                 record index
    <dir>/backups/pruning-*/          pre-pruning snapshots
    <dir>/graph/                      entity and relationship tables (+ backups/)

All components share one EventBus. Construct once per directory and pass
the handle (or its parts) to collaborators.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from docmemory.config import MemoryConfig
from docmemory.errors import IntegrityError, ValidationError
from docmemory.events import EventBus
from docmemory.graph import KnowledgeGraph
from docmemory.graph_store import GraphStore
from docmemory.manager import MemoryManager
from docmemory.pruning import MaintenanceEngine
from docmemory.store import RecordStore

logger = logging.getLogger(__name__)


class MemorySystem:
    """Record store, graph, manager and maintenance engine of one directory."""

    def __init__(
        self,
        store: RecordStore,
        graph_store: GraphStore,
        graph: KnowledgeGraph,
        manager: MemoryManager,
        maintenance: MaintenanceEngine,
        events: EventBus,
        config: MemoryConfig,
    ):
        self.store = store
        self.graph_store = graph_store
        self.graph = graph
        self.manager = manager
        self.maintenance = maintenance
        self.events = events
        self.config = config
        self._closed = False

    @classmethod
    def open(
        cls,
        storage_dir: Union[str, Path],
        config: Optional[MemoryConfig] = None,
        *,
        load_graph: bool = True,
    ) -> MemorySystem:
        """Open (or initialize) a storage directory.

        Raises:
            ValidationError: If ``config`` is invalid.
            IntegrityError: If a record partition is foreign or too new.
            StorageError: If the directory cannot be created.
        """
        config = config or MemoryConfig()
        errors = config.validate()
        if errors:
            raise ValidationError(f"Config validation failed: {'; '.join(errors)}")

        root = Path(storage_dir)
        events = EventBus()
        store = RecordStore(
            root,
            schema_version=config.store.schema_version,
            index_file=config.store.index_file,
            fsync=config.store.fsync,
        )
        graph_store = GraphStore(
            root / config.graph.directory,
            enable_backups=config.graph.enable_backups,
            keep_backups=config.graph.keep_backups,
            schema_version=config.graph.schema_version,
        )
        graph = KnowledgeGraph(
            store, graph_store, similarity_threshold=config.graph.similarity_threshold,
        )
        if load_graph:
            try:
                graph.load_from_memory()
            except (IntegrityError, ValidationError) as e:
                logger.warning(f"Persisted graph not loaded: {e}")
        manager = MemoryManager(store, events=events, cache_size=config.manager.cache_size)
        maintenance = MaintenanceEngine(
            store,
            graph,
            policy=config.policy,
            config=config.maintenance,
            events=events,
        )
        logger.info(f"Memory system opened: {root}")
        return cls(store, graph_store, graph, manager, maintenance, events, config)

    @property
    def directory(self) -> Path:
        return self.store.directory

    def rebuild_graph(self, persist: bool = True) -> Dict[str, int]:
        """Derive the graph from all records, optionally saving it."""
        stats = self.graph.build_from_memories()
        if persist:
            self.graph.save_to_memory()
        return stats

    def status(self) -> Dict[str, Any]:
        return {
            "directory": str(self.directory),
            "store": self.store.statistics(),
            "graph": self.graph.get_statistics(),
            "graph_files": self.graph_store.get_statistics(),
            "maintenance": self.maintenance.get_optimization_metrics(),
            "scheduled": self.maintenance.scheduled,
        }

    def close(self) -> None:
        if self._closed:
            return
        self.maintenance.stop_automatic_pruning()
        self.manager.close()
        self._closed = True
        logger.info(f"Memory system closed: {self.directory}")

    def __enter__(self) -> MemorySystem:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
