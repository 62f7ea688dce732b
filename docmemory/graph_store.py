"""
Graph Store — Durable Entity and Relationship Tables

Files under the graph directory:
    knowledge-graph-entities.jsonl        - one GraphNode per line
    knowledge-graph-relationships.jsonl   - one GraphEdge per line
    backups/{entities|relationships}-<timestamp>-<seq>.jsonl

Both tables start with a marker line; a directory holding files without it
is refused. Writes go to a temporary file that replaces the table, after the
previous version has been copied into backups/ (newest ``keep_backups`` kept
per kind).
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import warnings
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from docmemory.errors import IntegrityError, IntegrityWarning, StorageError, ValidationError
from docmemory.types import GraphEdge, GraphNode, IntegrityReport, _now_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

ENTITY_FILE = "knowledge-graph-entities.jsonl"
RELATIONSHIP_FILE = "knowledge-graph-relationships.jsonl"
ENTITY_MARKER = "# DOCMEMORY_KNOWLEDGE_GRAPH_ENTITIES"
RELATIONSHIP_MARKER = "# DOCMEMORY_KNOWLEDGE_GRAPH_RELATIONSHIPS"

BackupKind = Literal["entities", "relationships"]
_KINDS = ("entities", "relationships")


def _backup_stamp() -> str:
    """Filesystem-safe UTC timestamp; lexical order is chronological."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class GraphStore:
    """
    JSONL-backed persistence for knowledge graph nodes and edges.

    Thread-safe via explicit lock. Last writer wins at file level.
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        *,
        enable_backups: bool = True,
        keep_backups: int = 10,
        schema_version: int = SCHEMA_VERSION,
    ):
        """Open (or initialize) a graph directory.

        Raises:
            IntegrityError: If a table file exists without its marker.
            StorageError: If the directory or files cannot be created.
        """
        self._dir = Path(storage_dir)
        self._backup_dir = self._dir / "backups"
        self._enable_backups = enable_backups
        self._keep_backups = keep_backups
        self._schema_version = schema_version
        self._lock = threading.Lock()
        self.entity_path = self._dir / ENTITY_FILE
        self.relationship_path = self._dir / RELATIONSHIP_FILE

        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            if enable_backups:
                self._backup_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create graph directory: {e}", path=str(self._dir)) from e

        self._initialize_file(self.entity_path, ENTITY_MARKER)
        self._initialize_file(self.relationship_path, RELATIONSHIP_MARKER)
        logger.info(f"GraphStore initialized: {self._dir} (backups={'on' if enable_backups else 'off'})")

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def _marker(self, prefix: str) -> str:
        return f"{prefix} v{self._schema_version}"

    def _initialize_file(self, path: Path, prefix: str) -> None:
        if path.exists():
            self._check_marker(path, prefix)
            return
        try:
            path.write_text(self._marker(prefix) + "\n", encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot create {path.name}: {e}", path=str(path)) from e

    @staticmethod
    def _check_marker(path: Path, prefix: str) -> None:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                first = f.readline().strip()
        except OSError as e:
            raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
        if not first.startswith(prefix):
            raise IntegrityError(
                f"Refusing to operate on {path.name}: missing marker {prefix!r}",
                subject=str(path),
            )

    def _path_for(self, kind: str) -> Tuple[Path, str]:
        if kind == "entities":
            return self.entity_path, ENTITY_MARKER
        if kind == "relationships":
            return self.relationship_path, RELATIONSHIP_MARKER
        raise ValidationError(f"Unknown graph table {kind!r}; expected one of {_KINDS}")

    # -- Backups -------------------------------------------------------------

    def _backup_file(self, kind: str) -> Optional[Path]:
        """Copy the current table into backups/. Returns None when skipped."""
        if not self._enable_backups:
            return None
        path, _ = self._path_for(kind)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            has_rows = any(line.strip() and not line.startswith("#") for line in f)
        if not has_rows:
            return None
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = _backup_stamp()
        # zero-padded sequence keeps same-stamp backups in creation order
        taken = [p.stem.rsplit("-", 1)[-1]
                 for p in self._backup_dir.glob(f"{kind}-{stamp}-*.jsonl")]
        n = max((int(s) for s in taken if s.isdigit()), default=-1) + 1
        target = self._backup_dir / f"{kind}-{stamp}-{n:03d}.jsonl"
        try:
            shutil.copy2(path, target)
        except OSError as e:
            logger.warning(f"Failed to back up {path.name}: {e}")
            return None
        self._cleanup_backups(kind)
        logger.debug(f"Backed up {path.name} to {target.name}")
        return target

    def _cleanup_backups(self, kind: str) -> None:
        backups = self.list_backups(kind)
        for old in backups[:-self._keep_backups]:
            try:
                old.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {old.name}: {e}")

    def list_backups(self, kind: str) -> List[Path]:
        """Backups of one table, oldest first."""
        self._path_for(kind)
        if not self._backup_dir.exists():
            return []
        return sorted(self._backup_dir.glob(f"{kind}-*.jsonl"))

    def restore_from_backup(self, kind: str, timestamp: Optional[str] = None) -> Path:
        """Restore one table from its newest (or the named) backup.

        Returns:
            Path of the backup that was restored.

        Raises:
            StorageError: If no matching backup exists.
            IntegrityError: If the backup lacks the table marker.
        """
        path, prefix = self._path_for(kind)
        with self._lock:
            backups = self.list_backups(kind)
            if not backups:
                raise StorageError(f"No backups found for {kind}", path=str(self._backup_dir))
            if timestamp:
                matches = [b for b in backups if timestamp in b.name]
                if not matches:
                    raise StorageError(
                        f"Backup of {kind} with timestamp {timestamp} not found",
                        path=str(self._backup_dir),
                    )
                source = matches[-1]
            else:
                source = backups[-1]
            self._check_marker(source, prefix)
            tmp = path.with_name(path.name + ".tmp")
            try:
                shutil.copy2(source, tmp)
                os.replace(tmp, path)
            except OSError as e:
                raise StorageError(f"Restore of {kind} failed: {e}", path=str(path)) from e
        logger.info(f"Restored {kind} from backup: {source.name}")
        return source

    # -- Write operations ------------------------------------------------------

    def _write_tmp(self, path: Path, prefix: str, rows: List[Dict[str, Any]]) -> Path:
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(self._marker(prefix) + "\n")
                for row in rows:
                    f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            raise StorageError(f"Cannot write {tmp.name}: {e}", path=str(tmp)) from e
        return tmp

    @staticmethod
    def _validate_nodes(nodes: List[GraphNode]) -> None:
        seen = set()
        for node in nodes:
            node.validate()
            if node.id in seen:
                raise IntegrityError(f"Duplicate entity id {node.id}", subject=node.id)
            seen.add(node.id)

    @staticmethod
    def _validate_edges(edges: List[GraphEdge]) -> None:
        for edge in edges:
            edge.validate()

    def save_entities(self, nodes: List[GraphNode]) -> None:
        """Replace the entity table."""
        self._validate_nodes(nodes)
        with self._lock:
            self._backup_file("entities")
            tmp = self._write_tmp(self.entity_path, ENTITY_MARKER, [n.to_dict() for n in nodes])
            try:
                os.replace(tmp, self.entity_path)
            except OSError as e:
                raise StorageError(f"Cannot replace entities: {e}", path=str(self.entity_path)) from e
        logger.debug(f"Saved {len(nodes)} entities")

    def save_relationships(self, edges: List[GraphEdge]) -> None:
        """Replace the relationship table."""
        self._validate_edges(edges)
        with self._lock:
            self._backup_file("relationships")
            tmp = self._write_tmp(self.relationship_path, RELATIONSHIP_MARKER,
                                  [e.to_dict() for e in edges])
            try:
                os.replace(tmp, self.relationship_path)
            except OSError as e:
                raise StorageError(
                    f"Cannot replace relationships: {e}", path=str(self.relationship_path),
                ) from e
        logger.debug(f"Saved {len(edges)} relationships")

    def save_graph(self, nodes: List[GraphNode], edges: List[GraphEdge]) -> None:
        """Replace both tables; a failed second swap rolls back the first."""
        self._validate_nodes(nodes)
        self._validate_edges(edges)
        with self._lock:
            self._backup_file("entities")
            self._backup_file("relationships")
            ent_tmp = self._write_tmp(self.entity_path, ENTITY_MARKER,
                                      [n.to_dict() for n in nodes])
            rel_tmp = self._write_tmp(self.relationship_path, RELATIONSHIP_MARKER,
                                      [e.to_dict() for e in edges])
            previous = self.entity_path.read_bytes() if self.entity_path.exists() else None
            try:
                os.replace(ent_tmp, self.entity_path)
            except OSError as e:
                rel_tmp.unlink(missing_ok=True)
                raise StorageError(f"Cannot replace entities: {e}", path=str(self.entity_path)) from e
            try:
                os.replace(rel_tmp, self.relationship_path)
            except OSError as e:
                if previous is not None:
                    self.entity_path.write_bytes(previous)
                    logger.warning("Rolled back entities after failed relationship write")
                raise StorageError(
                    f"Cannot replace relationships: {e}", path=str(self.relationship_path),
                ) from e
        logger.info(f"Graph saved: {len(nodes)} entities, {len(edges)} relationships")

    # -- Read operations ------------------------------------------------------

    def _read_rows(self, path: Path, prefix: str) -> List[Tuple[int, Dict[str, Any]]]:
        if not path.exists():
            return []
        self._check_marker(path, prefix)
        rows = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    try:
                        d = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"{path.name}:{lineno}: invalid JSON, skipped")
                        continue
                    if not isinstance(d, dict):
                        logger.warning(f"{path.name}:{lineno}: not an object, skipped")
                        continue
                    rows.append((lineno, d))
        except OSError as e:
            raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
        return rows

    def load_entities(self) -> List[GraphNode]:
        nodes = []
        for lineno, d in self._read_rows(self.entity_path, ENTITY_MARKER):
            if not d.get("id") or not d.get("type"):
                logger.warning(f"{ENTITY_FILE}:{lineno}: entity without id/type, skipped")
                continue
            try:
                node = GraphNode.from_dict(d)
                node.validate()
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"{ENTITY_FILE}:{lineno}: invalid entity, skipped: {e}")
                continue
            nodes.append(node)
        return nodes

    def load_relationships(self) -> List[GraphEdge]:
        edges = []
        for lineno, d in self._read_rows(self.relationship_path, RELATIONSHIP_MARKER):
            if not d.get("source") or not d.get("target") or not d.get("type"):
                logger.warning(
                    f"{RELATIONSHIP_FILE}:{lineno}: relationship without source/target/type, skipped"
                )
                continue
            try:
                edge = GraphEdge.from_dict(d)
                edge.validate()
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"{RELATIONSHIP_FILE}:{lineno}: invalid relationship, skipped: {e}")
                continue
            edges.append(edge)
        return edges

    def load_graph(self) -> Tuple[List[GraphNode], List[GraphEdge]]:
        with self._lock:
            return self.load_entities(), self.load_relationships()

    # -- Integrity and statistics ----------------------------------------------

    def verify_integrity(self) -> IntegrityReport:
        """Duplicate entity ids are errors; dangling edges are warnings."""
        report = IntegrityReport()
        nodes, edges = self.load_graph()

        seen = set()
        for node in nodes:
            if node.id in seen:
                report.errors.append(f"Duplicate entity ID: {node.id}")
            seen.add(node.id)

        seen_edges = set()
        for edge in edges:
            if edge.id in seen_edges:
                report.warnings.append(f"Duplicate relationship ID: {edge.id}")
            seen_edges.add(edge.id)
            if edge.source not in seen:
                report.warnings.append(
                    f"Relationship {edge.id} references missing source entity: {edge.source}"
                )
            if edge.target not in seen:
                report.warnings.append(
                    f"Relationship {edge.id} references missing target entity: {edge.target}"
                )

        report.valid = not report.errors
        for msg in report.errors:
            logger.error(msg)
        if report.warnings:
            logger.warning(f"Graph integrity: {len(report.warnings)} warning(s)")
            warnings.warn(
                f"{len(report.warnings)} graph integrity warning(s)",
                IntegrityWarning, stacklevel=2,
            )
        return report

    def get_statistics(self) -> Dict[str, Any]:
        nodes, edges = self.load_graph()
        sizes = {}
        mtimes = []
        for kind in _KINDS:
            path, _ = self._path_for(kind)
            if path.exists():
                st = path.stat()
                sizes[kind] = st.st_size
                mtimes.append(st.st_mtime)
            else:
                sizes[kind] = 0
        last_modified = (
            datetime.fromtimestamp(max(mtimes), tz=timezone.utc).isoformat()
            if mtimes else None
        )
        return {
            "entity_count": len(nodes),
            "relationship_count": len(edges),
            "schema_version": self._schema_version,
            "last_modified": last_modified,
            "file_sizes": sizes,
            "backup_count": {kind: len(self.list_backups(kind)) for kind in _KINDS},
        }

    def export_as_json(self) -> Dict[str, Any]:
        """Full snapshot with a metadata header."""
        nodes, edges = self.load_graph()
        return {
            "metadata": {
                "version": str(self._schema_version),
                "exportedAt": _now_iso(),
                "entityCount": len(nodes),
                "relationshipCount": len(edges),
            },
            "entities": [n.to_dict() for n in nodes],
            "relationships": [e.to_dict() for e in edges],
        }
