"""
Knowledge Graph — In-Memory Adjacency Model

Nodes are projects, technologies, outcomes and configurations; edges are
typed, weighted relationships between them. The graph is either populated
directly or derived from the record store by build_from_memories(), and is
made durable through a GraphStore.

Derived ids are stable (``project:<id>``, ``tech:<name>``,
``outcome:<status>:<ssg>``, ``config:<project>:<ssg>``), so rebuilding
merges into existing nodes instead of duplicating them. Every derived node
and edge lists the record ids it came from under ``properties["sources"]``.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from typing import Any, Dict, List, Optional, Set, Tuple

from docmemory.errors import IntegrityError, StorageError
from docmemory.graph_store import GraphStore
from docmemory.similarity import set_jaccard
from docmemory.store import RecordStore
from docmemory.types import (
    GraphEdge,
    GraphNode,
    GraphPath,
    GraphQuery,
    GraphQueryResult,
    MemoryRecord,
    _generate_id,
    _now_iso,
)

logger = logging.getLogger(__name__)

# technology -> technologies it builds on
KNOWN_DEPENDENCIES: Dict[str, List[str]] = {
    "tech:react": ["tech:javascript", "tech:nodejs"],
    "tech:vue": ["tech:javascript", "tech:nodejs"],
    "tech:angular": ["tech:typescript", "tech:nodejs"],
    "tech:gatsby": ["tech:react", "tech:graphql"],
    "tech:next.js": ["tech:react", "tech:nodejs"],
    "tech:nuxt.js": ["tech:vue", "tech:nodejs"],
    "tech:docusaurus": ["tech:react", "tech:markdown"],
    "tech:jekyll": ["tech:ruby", "tech:markdown"],
    "tech:hugo": ["tech:go", "tech:markdown"],
    "tech:mkdocs": ["tech:python", "tech:markdown"],
    "tech:sphinx": ["tech:python"],
}

_MAX_QUERY_PATHS = 1000


def _name_of(value: Any, key: str) -> Optional[str]:
    """Technology name from a plain string or a ``{key: name}`` mapping."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        name = value.get(key) or value.get("name")
        return name.strip() if isinstance(name, str) and name.strip() else None
    return None


def _tech_id(name: str) -> str:
    return f"tech:{name.lower()}"


class KnowledgeGraph:
    """
    Typed, weighted graph with adjacency indexes in both directions.

    Thread-safe via explicit lock.
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        graph_store: Optional[GraphStore] = None,
        *,
        similarity_threshold: float = 0.7,
    ):
        self._store = store
        self._graph_store = graph_store
        self._similarity_threshold = similarity_threshold
        self._lock = threading.RLock()
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}
        self._out: Dict[str, Set[str]] = {}
        self._in: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()
            self._edges.clear()
            self._out.clear()
            self._in.clear()

    # -- Nodes -----------------------------------------------------------------

    def add_node(self, node: GraphNode) -> GraphNode:
        """Insert a new node.

        Raises:
            IntegrityError: If a node with the same id already exists.
            ValidationError: If the node is malformed.
        """
        if not node.id:
            node.id = _generate_id(node.type or "node")
        if not node.last_updated:
            node.last_updated = _now_iso()
        node.validate()
        with self._lock:
            if node.id in self._nodes:
                raise IntegrityError(f"Duplicate node id {node.id}", subject=node.id)
            self._nodes[node.id] = node
        return node

    def replace_node(self, node: GraphNode) -> GraphNode:
        """Insert or overwrite a node; incident edges are kept."""
        node.validate()
        node.last_updated = _now_iso()
        with self._lock:
            self._nodes[node.id] = node
        return node

    def merge_node(self, node: GraphNode) -> GraphNode:
        """Merge properties (and source lists) into an existing node, or insert."""
        node.validate()
        with self._lock:
            existing = self._nodes.get(node.id)
            if existing is None:
                node.last_updated = node.last_updated or _now_iso()
                self._nodes[node.id] = node
                return node
            sources = set(existing.properties.get("sources", [])) | set(
                node.properties.get("sources", [])
            )
            existing.properties.update(node.properties)
            if sources:
                existing.properties["sources"] = sorted(sources)
            if node.label:
                existing.label = node.label
            existing.last_updated = _now_iso()
            return existing

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def find_nodes(self, node_type: Optional[str] = None, **properties: Any) -> List[GraphNode]:
        with self._lock:
            return [
                n for n in self._nodes.values()
                if (node_type is None or n.type == node_type)
                and all(n.properties.get(k) == v for k, v in properties.items())
            ]

    def remove_node(self, node_id: str) -> bool:
        """Remove a node and every edge touching it. False if absent."""
        with self._lock:
            if node_id not in self._nodes:
                return False
            for edge_id in list(self._out.get(node_id, ())) + list(self._in.get(node_id, ())):
                self._drop_edge(edge_id)
            del self._nodes[node_id]
            self._out.pop(node_id, None)
            self._in.pop(node_id, None)
        logger.debug(f"Removed node {node_id}")
        return True

    # -- Edges -----------------------------------------------------------------

    def add_edge(self, edge: GraphEdge) -> GraphEdge:
        """Insert an edge, replacing any edge with the same id.

        Edges to unknown nodes are accepted and logged.
        """
        edge.validate()
        if not edge.last_updated:
            edge.last_updated = _now_iso()
        with self._lock:
            if edge.id in self._edges:
                self._drop_edge(edge.id)
            self._edges[edge.id] = edge
            self._out.setdefault(edge.source, set()).add(edge.id)
            self._in.setdefault(edge.target, set()).add(edge.id)
            missing = [n for n in (edge.source, edge.target) if n not in self._nodes]
        if missing:
            logger.debug(f"Edge {edge.id} references unknown node(s): {', '.join(missing)}")
        return edge

    def _drop_edge(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            return
        self._out.get(edge.source, set()).discard(edge_id)
        self._in.get(edge.target, set()).discard(edge_id)

    def remove_edge(self, edge_id: str) -> bool:
        with self._lock:
            if edge_id not in self._edges:
                return False
            self._drop_edge(edge_id)
            return True

    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        return self._edges.get(edge_id)

    def find_edges(
        self,
        source: Optional[str] = None,
        target: Optional[str] = None,
        edge_type: Optional[str] = None,
    ) -> List[GraphEdge]:
        with self._lock:
            if source is not None:
                candidates = [self._edges[e] for e in self._out.get(source, ())]
            elif target is not None:
                candidates = [self._edges[e] for e in self._in.get(target, ())]
            else:
                candidates = list(self._edges.values())
        return [
            e for e in candidates
            if (target is None or e.target == target)
            and (edge_type is None or e.type == edge_type)
        ]

    # -- Queries ---------------------------------------------------------------

    def get_all_nodes(self) -> List[GraphNode]:
        with self._lock:
            return list(self._nodes.values())

    def get_all_edges(self) -> List[GraphEdge]:
        with self._lock:
            return list(self._edges.values())

    def get_connections(self, node_id: str) -> List[str]:
        """Neighbor ids via outgoing and incoming edges (sorted, unique)."""
        with self._lock:
            neighbors = {self._edges[e].target for e in self._out.get(node_id, ())}
            neighbors |= {self._edges[e].source for e in self._in.get(node_id, ())}
        neighbors.discard(node_id)
        return sorted(neighbors)

    def _degree(self, node_id: str) -> int:
        return len(self._out.get(node_id, ())) + len(self._in.get(node_id, ()))

    def query(self, q: GraphQuery) -> GraphQueryResult:
        """Filter nodes and edges by typed predicates.

        With ``start_node`` and ``max_depth``, also enumerates the simple
        paths of up to ``max_depth`` hops leaving the start node through the
        filtered edges.
        """
        with self._lock:
            nodes = list(self._nodes.values())
            edges = list(self._edges.values())

            if q.node_types is not None:
                nodes = [n for n in nodes if n.type in q.node_types]
            if q.edge_types is not None:
                edges = [e for e in edges if e.type in q.edge_types]
            if q.properties:
                nodes = [
                    n for n in nodes
                    if all(n.properties.get(k) == v for k, v in q.properties.items())
                ]
            if q.min_weight is not None:
                nodes = [n for n in nodes if n.weight >= q.min_weight]
                edges = [e for e in edges if e.weight >= q.min_weight]

            paths: List[GraphPath] = []
            if q.start_node and q.max_depth and q.start_node in self._nodes:
                allowed = {e.id for e in edges}
                self._explore_paths(q.start_node, q.max_depth, allowed, paths)

        return GraphQueryResult(nodes=nodes, edges=edges, paths=paths)

    def _explore_paths(
        self, start: str, max_depth: int, allowed: Set[str], out: List[GraphPath],
    ) -> None:
        stack: List[Tuple[List[str], List[GraphEdge]]] = [([start], [])]
        while stack and len(out) < _MAX_QUERY_PATHS:
            node_ids, path_edges = stack.pop()
            if path_edges:
                out.append(self._make_path(node_ids, path_edges))
            if len(path_edges) >= max_depth:
                continue
            for edge_id in sorted(self._out.get(node_ids[-1], ()), reverse=True):
                if edge_id not in allowed:
                    continue
                edge = self._edges[edge_id]
                if edge.target in node_ids or edge.target not in self._nodes:
                    continue
                stack.append((node_ids + [edge.target], path_edges + [edge]))

    def _make_path(self, node_ids: List[str], edges: List[GraphEdge]) -> GraphPath:
        confidence = 1.0
        for e in edges:
            confidence *= e.confidence
        return GraphPath(
            nodes=[self._nodes[n] for n in node_ids],
            edges=list(edges),
            total_weight=sum(e.weight for e in edges),
            confidence=confidence,
        )

    def find_path(
        self, source: str, target: str, max_depth: Optional[int] = None,
    ) -> Optional[GraphPath]:
        """Shortest path by hop count over outgoing edges (BFS).

        Returns the single-node path when ``source == target`` and None when
        either node is unknown or no path exists within ``max_depth`` hops.
        """
        with self._lock:
            if source not in self._nodes or target not in self._nodes:
                return None
            if source == target:
                return GraphPath(nodes=[self._nodes[source]], edges=[])

            parents: Dict[str, Tuple[str, GraphEdge]] = {}
            visited = {source}
            queue = deque([(source, 0)])
            while queue:
                current, depth = queue.popleft()
                if max_depth is not None and depth >= max_depth:
                    continue
                for edge_id in sorted(self._out.get(current, ())):
                    edge = self._edges[edge_id]
                    nxt = edge.target
                    if nxt in visited or nxt not in self._nodes:
                        continue
                    visited.add(nxt)
                    parents[nxt] = (current, edge)
                    if nxt == target:
                        node_ids = [target]
                        path_edges: List[GraphEdge] = []
                        while node_ids[-1] != source:
                            prev, via = parents[node_ids[-1]]
                            path_edges.append(via)
                            node_ids.append(prev)
                        node_ids.reverse()
                        path_edges.reverse()
                        return self._make_path(node_ids, path_edges)
                    queue.append((nxt, depth + 1))
        return None

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            nodes_by_type: Dict[str, int] = {}
            for n in self._nodes.values():
                nodes_by_type[n.type] = nodes_by_type.get(n.type, 0) + 1
            edges_by_type: Dict[str, int] = {}
            for e in self._edges.values():
                edges_by_type[e.type] = edges_by_type.get(e.type, 0) + 1
            degrees = {nid: self._degree(nid) for nid in self._nodes}
            ranked = sorted(degrees.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
            node_count = len(self._nodes)
            return {
                "node_count": node_count,
                "edge_count": len(self._edges),
                "nodes_by_type": nodes_by_type,
                "edges_by_type": edges_by_type,
                "average_connectivity": (
                    sum(degrees.values()) / node_count if node_count else 0.0
                ),
                "most_connected_nodes": [
                    {"id": nid, "label": self._nodes[nid].label, "connections": deg}
                    for nid, deg in ranked
                ],
            }

    # -- Derivation from records ---------------------------------------------

    def build_from_memories(self) -> Dict[str, int]:
        """Derive nodes and edges from all live records. Idempotent.

        Returns:
            Counts of records scanned and nodes/edges derived.
        """
        if self._store is None:
            raise StorageError("No record store attached to the knowledge graph")
        records = self._store.load()
        nodes: Dict[str, GraphNode] = {}
        edges: Dict[str, GraphEdge] = {}
        for rec in records:
            self._derive(rec, nodes, edges)

        with self._lock:
            for node in nodes.values():
                self.merge_node(node)
            for edge in edges.values():
                existing = self._edges.get(edge.id)
                if existing is not None:
                    merged = set(existing.properties.get("sources", [])) | set(
                        edge.properties.get("sources", [])
                    )
                    edge.properties["sources"] = sorted(merged)
                self.add_edge(edge)
            self._weight_recommendations(set(edges))
            self._compute_project_similarity()
            self._compute_dependencies()
            self._update_weights()

        logger.info(
            f"Graph built from {len(records)} records: "
            f"{len(self._nodes)} nodes, {len(self._edges)} edges"
        )
        return {"records": len(records), "nodes": len(nodes), "edges": len(edges)}

    @staticmethod
    def _source_props(rec: MemoryRecord, **props: Any) -> Dict[str, Any]:
        props = {k: v for k, v in props.items() if v is not None}
        props["sources"] = [rec.id]
        return props

    def _put_node(self, nodes: Dict[str, GraphNode], node: GraphNode) -> GraphNode:
        existing = nodes.get(node.id)
        if existing is None:
            nodes[node.id] = node
            return node
        sources = set(existing.properties["sources"]) | set(node.properties["sources"])
        existing.properties.update(node.properties)
        existing.properties["sources"] = sorted(sources)
        return existing

    @staticmethod
    def _put_edge(edges: Dict[str, GraphEdge], edge: GraphEdge) -> None:
        existing = edges.get(edge.id)
        if existing is not None:
            edge.properties["sources"] = sorted(
                set(existing.properties["sources"]) | set(edge.properties["sources"])
            )
        edges[edge.id] = edge

    def _derive(
        self, rec: MemoryRecord, nodes: Dict[str, GraphNode], edges: Dict[str, GraphEdge],
    ) -> None:
        if rec.is_compressed:
            return
        data = rec.data
        md = rec.metadata
        project_id = md.get("projectId")
        ssg = md.get("ssg") or data.get("ssg")
        if not isinstance(ssg, str) or not ssg.strip():
            ssg = None
        project: Optional[GraphNode] = None
        if project_id:
            project = self._put_node(nodes, GraphNode(
                id=f"project:{project_id}", type="project", label=project_id,
                properties=self._source_props(
                    rec, repository=md.get("repository"), lastActivity=rec.timestamp,
                ),
            ))

        def _tech(name: str, category: str, **extra: Any) -> GraphNode:
            return self._put_node(nodes, GraphNode(
                id=_tech_id(name), type="technology", label=name,
                properties=self._source_props(rec, category=category, **extra),
            ))

        def _link(target: GraphNode, edge_type: str, *, weight: float = 1.0,
                  confidence: float = 1.0, **extra: Any) -> None:
            if project is None:
                return
            self._put_edge(edges, GraphEdge(
                source=project.id, target=target.id, type=edge_type,
                weight=weight, confidence=confidence,
                properties=self._source_props(rec, **extra),
            ))

        if rec.type == "analysis":
            lang = _name_of(data.get("language"), "primary")
            if lang:
                _link(_tech(lang, "language"), "uses", confidence=0.9, origin="analysis")
            framework = data.get("framework")
            fw_name = _name_of(framework, "name")
            if fw_name:
                version = framework.get("version") if isinstance(framework, dict) else None
                _link(_tech(fw_name, "framework", version=version), "uses",
                      confidence=0.8, origin="analysis")

        elif rec.type == "recommendation":
            recommended = data.get("recommended")
            if recommended:
                score = data.get("score")
                confidence = data.get("confidence")
                _link(
                    _tech(recommended, "ssg", score=score), "recommends",
                    weight=float(score) if isinstance(score, (int, float)) and score > 0 else 1.0,
                    confidence=(float(confidence)
                                if isinstance(confidence, (int, float)) and 0 <= confidence <= 1
                                else 0.5),
                    reasoning=data.get("reasoning"),
                )

        elif rec.type == "deployment":
            status = data.get("status")
            outcome = self._put_node(nodes, GraphNode(
                id=f"outcome:{status}:{ssg or 'unknown'}", type="outcome",
                label=f"{status} with {ssg or 'unknown'}",
                properties=self._source_props(
                    rec, status=status, ssg=ssg, duration=data.get("duration"),
                ),
            ))
            _link(outcome, "results_in", timestamp=rec.timestamp, details=data.get("details"))
            if ssg:
                _link(_tech(ssg, "ssg"), "project_deployed_with",
                      status=status, timestamp=rec.timestamp)

        elif rec.type == "configuration" and ssg:
            scope = project_id or "global"
            config = self._put_node(nodes, GraphNode(
                id=f"config:{scope}:{ssg.lower()}", type="configuration",
                label=f"{ssg} configuration",
                properties=self._source_props(rec, ssg=ssg),
            ))
            _link(config, "configured_with")
            self._put_edge(edges, GraphEdge(
                source=config.id, target=_tech(ssg, "ssg").id, type="uses",
                properties=self._source_props(rec),
            ))

    def _weight_recommendations(self, edge_ids: Set[str]) -> None:
        """Scale freshly derived recommendation edges by their target's success rate."""
        outcomes = [n for n in self._nodes.values() if n.type == "outcome"]
        for edge_id in edge_ids:
            edge = self._edges.get(edge_id)
            if edge is None or edge.type != "recommends":
                continue
            tech = self._nodes.get(edge.target)
            if tech is None or tech.type != "technology":
                continue
            related = [o for o in outcomes
                       if str(o.properties.get("ssg", "")).lower() == tech.label.lower()]
            if not related:
                continue
            rate = sum(1 for o in related if o.properties.get("status") == "success") / len(related)
            edge.weight *= 1 + rate

    def _technologies_of(self, project_id: str) -> Set[str]:
        return {
            self._edges[e].target for e in self._out.get(project_id, ())
            if self._edges[e].target in self._nodes
            and self._nodes[self._edges[e].target].type == "technology"
        }

    def _compute_project_similarity(self) -> None:
        projects = sorted(n.id for n in self._nodes.values() if n.type == "project")
        techs = {p: self._technologies_of(p) for p in projects}
        for i, a in enumerate(projects):
            for b in projects[i + 1:]:
                if not techs[a] or not techs[b]:
                    continue
                sim = set_jaccard(techs[a], techs[b])
                if sim > self._similarity_threshold:
                    self.add_edge(GraphEdge(
                        source=a, target=b, type="similar_to",
                        weight=sim, confidence=sim,
                        properties={"computed": True, "similarityScore": sim},
                    ))

    def _compute_dependencies(self) -> None:
        for tech, deps in KNOWN_DEPENDENCIES.items():
            if tech not in self._nodes:
                continue
            for dep in deps:
                if dep in self._nodes:
                    self.add_edge(GraphEdge(
                        source=tech, target=dep, type="depends_on",
                        weight=0.8, confidence=0.9,
                        properties={"computed": True, "dependency_type": "runtime"},
                    ))

    def _update_weights(self) -> None:
        """Connectivity-based weights for derived nodes."""
        for node in self._nodes.values():
            if "sources" not in node.properties:
                continue
            base = 0.5 if node.type == "outcome" and node.properties.get("status") != "success" else 1.0
            node.weight = round(base * math.log10(len(self.get_connections(node.id)) + 1), 6)

    def detach_record(self, record_id: str) -> int:
        """Forget a record: drop it from source lists and remove orphaned nodes.

        A node whose id is the record id is removed as well. Returns the
        number of nodes removed.
        """
        removed = 0
        with self._lock:
            if self.remove_node(record_id):
                removed += 1
            for node in list(self._nodes.values()):
                sources = node.properties.get("sources")
                if not sources or record_id not in sources:
                    continue
                remaining = [s for s in sources if s != record_id]
                if remaining:
                    node.properties["sources"] = remaining
                else:
                    self.remove_node(node.id)
                    removed += 1
            for edge in list(self._edges.values()):
                sources = edge.properties.get("sources")
                if not sources or record_id not in sources:
                    continue
                remaining = [s for s in sources if s != record_id]
                if remaining:
                    edge.properties["sources"] = remaining
                else:
                    self._drop_edge(edge.id)
        if removed:
            logger.debug(f"Detached record {record_id}: {removed} node(s) removed")
        return removed

    def replace_source(self, old_id: str, new_id: str) -> int:
        """Re-point source lists from a superseded record to its new version.

        Returns the number of nodes and edges updated.
        """
        updated = 0
        with self._lock:
            for item in list(self._nodes.values()) + list(self._edges.values()):
                sources = item.properties.get("sources")
                if not sources or old_id not in sources:
                    continue
                item.properties["sources"] = sorted(
                    {new_id if s == old_id else s for s in sources}
                )
                updated += 1
        if updated:
            logger.debug(f"Sources moved from {old_id} to {new_id} on {updated} item(s)")
        return updated

    # -- Persistence -----------------------------------------------------------

    def save_to_memory(self) -> Dict[str, int]:
        """Persist the whole graph through the attached GraphStore."""
        if self._graph_store is None:
            raise StorageError("No graph store attached to the knowledge graph")
        with self._lock:
            nodes = list(self._nodes.values())
            edges = list(self._edges.values())
        self._graph_store.save_graph(nodes, edges)
        return {"nodes": len(nodes), "edges": len(edges)}

    def load_from_memory(self) -> Dict[str, int]:
        """Replace the in-memory graph with the persisted one.

        The new tables are assembled and checked before the swap, so a
        failed load leaves the in-memory graph untouched.

        Raises:
            IntegrityError: If storage holds duplicate node ids.
            ValidationError: If a persisted node or edge is malformed.
        """
        if self._graph_store is None:
            raise StorageError("No graph store attached to the knowledge graph")
        nodes, edges = self._graph_store.load_graph()
        new_nodes: Dict[str, GraphNode] = {}
        for node in nodes:
            node.validate()
            if node.id in new_nodes:
                raise IntegrityError(f"Duplicate node id {node.id} in storage", subject=node.id)
            new_nodes[node.id] = node
        new_edges: Dict[str, GraphEdge] = {}
        out: Dict[str, Set[str]] = {}
        inc: Dict[str, Set[str]] = {}
        for edge in edges:
            edge.validate()
            if not edge.last_updated:
                edge.last_updated = _now_iso()
            previous = new_edges.pop(edge.id, None)
            if previous is not None:
                out[previous.source].discard(edge.id)
                inc[previous.target].discard(edge.id)
            new_edges[edge.id] = edge
            out.setdefault(edge.source, set()).add(edge.id)
            inc.setdefault(edge.target, set()).add(edge.id)
        with self._lock:
            self._nodes = new_nodes
            self._edges = new_edges
            self._out = out
            self._in = inc
        logger.info(f"Graph loaded: {len(new_nodes)} nodes, {len(new_edges)} edges")
        return {"nodes": len(new_nodes), "edges": len(new_edges)}
