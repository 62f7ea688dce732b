"""
Tests for docmemory.graph — node/edge model, queries, paths, derivation.
"""

import pytest

from docmemory.errors import IntegrityError, StorageError, ValidationError
from docmemory.graph import KnowledgeGraph
from docmemory.graph_store import GraphStore
from docmemory.store import RecordStore
from docmemory.types import GraphEdge, GraphNode, GraphQuery, MemoryRecord


@pytest.fixture
def graph():
    return KnowledgeGraph()


@pytest.fixture
def backed(tmp_path):
    store = RecordStore(tmp_path / "mem")
    gs = GraphStore(tmp_path / "mem" / "graph")
    yield store, gs, KnowledgeGraph(store, gs)
    store.close()


def _chain(graph, *ids, etype="uses", confidence=1.0):
    for nid in ids:
        if graph.get_node(nid) is None:
            graph.add_node(GraphNode(id=nid, type="technology", label=nid))
    for a, b in zip(ids, ids[1:]):
        graph.add_edge(GraphEdge(source=a, target=b, type=etype, confidence=confidence))


# ---------------------------------------------------------------------------
# Nodes and edges
# ---------------------------------------------------------------------------


class TestNodes:
    def test_generated_id(self, graph):
        node = graph.add_node(GraphNode(type="pattern", label="x"))
        assert node.id.startswith("pattern:")

    def test_duplicate_id_raises(self, graph):
        graph.add_node(GraphNode(id="project:a"))
        with pytest.raises(IntegrityError):
            graph.add_node(GraphNode(id="project:a", label="again"))
        assert len(graph) == 1

    def test_replace_node(self, graph):
        graph.add_node(GraphNode(id="project:a", label="old"))
        graph.replace_node(GraphNode(id="project:a", label="new"))
        assert graph.get_node("project:a").label == "new"

    def test_merge_node_unions_sources(self, graph):
        graph.add_node(GraphNode(id="tech:go", properties={"sources": ["r1"], "a": 1}))
        merged = graph.merge_node(GraphNode(id="tech:go", properties={"sources": ["r2"], "b": 2}))
        assert merged.properties["sources"] == ["r1", "r2"]
        assert merged.properties["a"] == 1 and merged.properties["b"] == 2

    def test_find_nodes(self, graph):
        graph.add_node(GraphNode(id="tech:py", type="technology", properties={"category": "language"}))
        graph.add_node(GraphNode(id="tech:hugo", type="technology", properties={"category": "ssg"}))
        assert [n.id for n in graph.find_nodes("technology", category="ssg")] == ["tech:hugo"]

    def test_remove_node_cascades(self, graph):
        _chain(graph, "a", "b", "c")
        assert graph.remove_node("b")
        assert graph.get_all_edges() == []
        assert graph.get_connections("a") == []
        assert not graph.remove_node("b")


class TestEdges:
    def test_same_id_replaces(self, graph):
        _chain(graph, "a", "b")
        graph.add_edge(GraphEdge(source="a", target="b", type="uses", weight=5.0))
        edges = graph.get_all_edges()
        assert len(edges) == 1
        assert edges[0].weight == 5.0

    def test_orphan_edge_accepted(self, graph):
        graph.add_node(GraphNode(id="a"))
        edge = graph.add_edge(GraphEdge(source="a", target="ghost"))
        assert graph.get_edge(edge.id) is edge

    def test_find_edges(self, graph):
        _chain(graph, "a", "b", "c")
        graph.add_edge(GraphEdge(source="a", target="c", type="depends_on"))
        assert len(graph.find_edges(source="a")) == 2
        assert [e.id for e in graph.find_edges(source="a", edge_type="depends_on")] == ["a-depends_on-c"]
        assert len(graph.find_edges(target="c")) == 2

    def test_remove_edge(self, graph):
        _chain(graph, "a", "b")
        assert graph.remove_edge("a-uses-b")
        assert not graph.remove_edge("a-uses-b")

    def test_connections_undirected(self, graph):
        _chain(graph, "a", "b", "c")
        assert graph.get_connections("b") == ["a", "c"]


# ---------------------------------------------------------------------------
# Queries and paths
# ---------------------------------------------------------------------------


class TestQuery:
    def test_type_filters(self, graph):
        graph.add_node(GraphNode(id="project:a", type="project"))
        graph.add_node(GraphNode(id="tech:py", type="technology"))
        graph.add_edge(GraphEdge(source="project:a", target="tech:py", type="uses"))
        graph.add_edge(GraphEdge(source="project:a", target="tech:py", type="recommends"))
        result = graph.query(GraphQuery(node_types=["project"], edge_types=["uses"]))
        assert [n.id for n in result.nodes] == ["project:a"]
        assert [e.type for e in result.edges] == ["uses"]

    def test_min_weight(self, graph):
        graph.add_node(GraphNode(id="heavy", weight=2.0))
        graph.add_node(GraphNode(id="light", weight=0.1))
        assert [n.id for n in graph.query(GraphQuery(min_weight=1.0)).nodes] == ["heavy"]

    def test_paths_from_start(self, graph):
        _chain(graph, "a", "b", "c", "d")
        result = graph.query(GraphQuery(start_node="a", max_depth=2))
        hops = sorted(p.node_ids() for p in result.paths)
        assert hops == [["a", "b"], ["a", "b", "c"]]


class TestFindPath:
    def test_path_correctness(self, graph):
        _chain(graph, "a", "b", "c", confidence=0.5)
        path = graph.find_path("a", "c")
        assert path.node_ids() == ["a", "b", "c"]
        assert len(path.edges) == len(path.nodes) - 1
        for edge, (src, dst) in zip(path.edges, zip(path.node_ids(), path.node_ids()[1:])):
            assert edge.source == src and edge.target == dst
        assert path.confidence == pytest.approx(0.25)

    def test_shortest(self, graph):
        _chain(graph, "a", "b", "c", "d")
        graph.add_edge(GraphEdge(source="a", target="d", type="uses"))
        assert graph.find_path("a", "d").hops == 1

    def test_direction_respected(self, graph):
        _chain(graph, "a", "b")
        assert graph.find_path("b", "a") is None

    def test_max_depth(self, graph):
        _chain(graph, "a", "b", "c", "d")
        assert graph.find_path("a", "d", max_depth=2) is None
        assert graph.find_path("a", "d", max_depth=3) is not None

    def test_same_node(self, graph):
        graph.add_node(GraphNode(id="a"))
        path = graph.find_path("a", "a")
        assert path.node_ids() == ["a"] and path.hops == 0

    def test_unknown_nodes(self, graph):
        assert graph.find_path("x", "y") is None

    def test_orphan_not_traversed(self, graph):
        graph.add_node(GraphNode(id="a"))
        graph.add_edge(GraphEdge(source="a", target="ghost"))
        assert graph.find_path("a", "ghost") is None


class TestStatistics:
    def test_counts(self, graph):
        graph.add_node(GraphNode(id="project:a", type="project", label="A"))
        _chain(graph, "tech:x", "tech:y")
        graph.add_edge(GraphEdge(source="project:a", target="tech:x"))
        stats = graph.get_statistics()
        assert stats["node_count"] == 3
        assert stats["edge_count"] == 2
        assert stats["nodes_by_type"] == {"project": 1, "technology": 2}
        assert stats["edges_by_type"] == {"uses": 2}
        assert stats["average_connectivity"] == pytest.approx(4 / 3)
        assert stats["most_connected_nodes"][0] == {"id": "tech:x", "label": "tech:x",
                                                    "connections": 2}


# ---------------------------------------------------------------------------
# Derivation from records
# ---------------------------------------------------------------------------


class TestBuildFromMemories:
    def test_requires_store(self, graph):
        with pytest.raises(StorageError):
            graph.build_from_memories()

    def test_analysis_and_deployment(self, backed):
        store, _, graph = backed
        store.append(MemoryRecord(type="analysis", data={
            "language": {"primary": "Python"}, "framework": {"name": "Django", "version": "5"},
        }, metadata={"projectId": "site"}))
        store.append(MemoryRecord(type="deployment", data={"status": "success"},
                                  metadata={"projectId": "site", "ssg": "mkdocs"}))
        counts = graph.build_from_memories()
        assert counts["records"] == 2
        assert graph.get_node("project:site") is not None
        assert graph.get_node("tech:python").properties["category"] == "language"
        assert graph.get_node("tech:django").properties["version"] == "5"
        assert graph.get_edge("project:site-uses-tech:python") is not None
        assert graph.get_edge("project:site-results_in-outcome:success:mkdocs") is not None
        assert graph.get_edge("project:site-project_deployed_with-tech:mkdocs") is not None
        # mkdocs builds on python
        assert graph.get_edge("tech:mkdocs-depends_on-tech:python") is not None

    def test_analysis_without_project(self, backed):
        store, _, graph = backed
        store.append(MemoryRecord(type="analysis", data={"language": "Go"}))
        graph.build_from_memories()
        assert graph.get_node("tech:go") is not None
        assert graph.get_all_edges() == []

    def test_rebuild_idempotent(self, backed):
        store, _, graph = backed
        store.append(MemoryRecord(type="recommendation",
                                  data={"recommended": "Hugo", "score": 0.9, "confidence": 0.8},
                                  metadata={"projectId": "p"}))
        store.append(MemoryRecord(type="deployment", data={"status": "success"},
                                  metadata={"projectId": "p", "ssg": "hugo"}))
        graph.build_from_memories()
        first = {e.id: e.weight for e in graph.get_all_edges()}
        graph.build_from_memories()
        second = {e.id: e.weight for e in graph.get_all_edges()}
        assert first == second
        # success rate 1.0 doubles the recommendation weight
        assert first["project:p-recommends-tech:hugo"] == pytest.approx(1.8)

    def test_similar_projects(self, backed):
        store, _, graph = backed
        for project in ("one", "two"):
            store.append(MemoryRecord(type="analysis",
                                      data={"language": "TypeScript", "framework": "React"},
                                      metadata={"projectId": project}))
        graph.build_from_memories()
        edge = graph.get_edge("project:one-similar_to-project:two")
        assert edge is not None
        assert edge.properties["similarityScore"] == pytest.approx(1.0)

    def test_configuration_nodes(self, backed):
        store, _, graph = backed
        store.append(MemoryRecord(type="configuration", data={"theme": "material"},
                                  metadata={"ssg": "MkDocs"}))
        graph.build_from_memories()
        assert graph.get_node("config:global:mkdocs") is not None
        assert graph.get_edge("config:global:mkdocs-uses-tech:mkdocs") is not None

    def test_detach_record(self, backed):
        store, _, graph = backed
        rec = store.append(MemoryRecord(type="analysis", data={"language": "Rust"},
                                        metadata={"projectId": "solo"}))
        graph.build_from_memories()
        removed = graph.detach_record(rec.id)
        assert removed == 2
        assert graph.get_node("tech:rust") is None
        assert graph.get_all_edges() == []

    def test_replace_source_follows_superseded_record(self, backed):
        store, _, graph = backed
        rec = store.append(MemoryRecord(type="analysis", data={"language": "Rust"},
                                        metadata={"projectId": "solo"}))
        graph.build_from_memories()
        updated = graph.replace_source(rec.id, "f" * 16)
        assert updated == 3
        assert graph.get_node("project:solo").properties["sources"] == ["f" * 16]
        assert graph.detach_record(rec.id) == 0
        assert graph.detach_record("f" * 16) == 2
        assert graph.get_all_nodes() == []


class TestPersistence:
    def test_save_and_load(self, backed):
        _, gs, graph = backed
        _chain(graph, "a", "b")
        assert graph.save_to_memory() == {"nodes": 2, "edges": 1}
        fresh = KnowledgeGraph(graph_store=gs)
        fresh.load_from_memory()
        assert {n.id for n in fresh.get_all_nodes()} == {"a", "b"}
        assert fresh.find_path("a", "b") is not None

    def test_duplicate_ids_leave_graph_untouched(self, backed):
        _, gs, graph = backed
        graph.add_node(GraphNode(id="keep"))
        with open(gs.entity_path, "a", encoding="utf-8") as f:
            f.write('{"id": "dup", "type": "technology"}\n' * 2)
        with pytest.raises(IntegrityError):
            graph.load_from_memory()
        assert graph.get_node("keep") is not None

    def test_invalid_rows_skipped_on_load(self, backed):
        _, gs, graph = backed
        _chain(graph, "project:a", "project:b")
        graph.save_to_memory()
        with open(gs.relationship_path, "a", encoding="utf-8") as f:
            f.write('{"source": "project:a", "target": "project:b", "type": "depends_on", '
                    '"confidence": 2.0}\n')
        fresh = KnowledgeGraph(graph_store=gs)
        assert fresh.load_from_memory() == {"nodes": 2, "edges": 1}
        assert fresh.get_edge("project:a-uses-project:b") is not None
        assert fresh.get_edge("project:a-depends_on-project:b") is None

    def test_failed_load_leaves_graph_untouched(self, backed, monkeypatch):
        _, gs, graph = backed
        _chain(graph, "a", "b")
        bad = GraphEdge(source="x", target="y", confidence=2.0)
        monkeypatch.setattr(gs, "load_graph",
                            lambda: ([GraphNode(id="x"), GraphNode(id="y")], [bad]))
        with pytest.raises(ValidationError):
            graph.load_from_memory()
        assert {n.id for n in graph.get_all_nodes()} == {"a", "b"}
        assert graph.find_path("a", "b") is not None

    def test_requires_graph_store(self, graph):
        with pytest.raises(StorageError):
            graph.save_to_memory()
