from __future__ import annotations

from pathlib import Path

import pytest

from intentcode_factory.errors import GraphInvariantError, InvalidPathError
from intentcode_factory.graph import GraphStore
from intentcode_factory.models import EdgeType, GenerationRecord, GraphNode, NodeType
from intentcode_factory.state_store import GraphStateStore


def _graph(tmp_path: Path) -> GraphStore:
    return GraphStore(GraphStateStore(tmp_path / "state"), instance_id="default")


def _root(graph: GraphStore, tmp_path: Path) -> GraphNode:
    return graph.get_or_create_node(None, NodeType.INTENT_ROOT, "Intent", json_content={"path": str(tmp_path / "intent")})


def test_get_or_create_node_is_idempotent(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    first = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    second = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    assert first.id == second.id
    assert len(graph.state_store.all_nodes()) == 1


def test_same_name_different_type_are_distinct_nodes(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    project = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    a = graph.get_or_create_node(project, NodeType.INTENT_DIR, "lib")
    b = graph.get_or_create_node(project, NodeType.SPEC_DIR, "lib")
    assert a.id != b.id


def test_insert_requires_existing_parent(tmp_path: Path) -> None:
    store = GraphStateStore(tmp_path / "state")
    with pytest.raises(GraphInvariantError):
        store.insert_node(GraphNode(parent_id="missing", instance_id="default", type=NodeType.INTENT_FILE, name="a"))


def test_get_or_create_path_builds_directory_chain(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    file_node = graph.get_or_create_path(
        root,
        tmp_path / "intent" / "lib" / "math" / "calc.ts.md",
        dir_type=NodeType.INTENT_DIR,
        file_type=NodeType.INTENT_FILE,
    )
    lib = graph.find_child(root, NodeType.INTENT_DIR, "lib")
    assert lib is not None
    math = graph.find_child(lib, NodeType.INTENT_DIR, "math")
    assert math is not None
    assert file_node.parent_id == math.id
    assert file_node.type == NodeType.INTENT_FILE

    again = graph.get_or_create_path(
        root,
        str(tmp_path / "intent" / "lib" / "math" / "calc.ts.md"),
        dir_type=NodeType.INTENT_DIR,
        file_type=NodeType.INTENT_FILE,
    )
    assert again.id == file_node.id


@pytest.mark.parametrize(
    "relative",
    ["../escape.ts.md", "lib/../calc.ts.md", "lib//calc.ts.md", "./calc.ts.md"],
)
def test_get_or_create_path_rejects_invalid_segments(tmp_path: Path, relative: str) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    with pytest.raises(InvalidPathError):
        graph.get_or_create_path(
            root,
            f"{tmp_path / 'intent'}/{relative}",
            dir_type=NodeType.INTENT_DIR,
            file_type=NodeType.INTENT_FILE,
        )


def test_get_or_create_path_rejects_path_outside_root(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    with pytest.raises(InvalidPathError, match="Invalid path"):
        graph.get_or_create_path(
            root,
            tmp_path / "intent-other" / "calc.ts.md",
            dir_type=NodeType.INTENT_DIR,
            file_type=NodeType.INTENT_FILE,
        )


def test_find_path_does_not_create(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    found = graph.find_path(
        root, tmp_path / "intent" / "lib" / "calc.ts.md", dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
    )
    assert found is None
    assert graph.children(root) == []


def test_file_nodes_reconstructs_paths(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    for relative in ("b.ts.md", "lib/a.ts.md"):
        graph.get_or_create_path(
            root, tmp_path / "intent" / relative, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
        )
    paths = [path for path, _ in graph.file_nodes(root, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE)]
    assert paths == [tmp_path / "intent" / "b.ts.md", tmp_path / "intent" / "lib" / "a.ts.md"]


def test_set_content_recomputes_hashes(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    node = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    updated = graph.set_content(node, content="hello", json_content={"b": 1, "a": 2})
    assert updated.content_hash is not None
    assert updated.json_content_hash is not None

    reordered = graph.set_content(updated, json_content={"a": 2, "b": 1})
    assert reordered.json_content_hash == updated.json_content_hash
    assert reordered.content == "hello"


def test_delete_refuses_while_references_remain(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    project = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    child = graph.get_or_create_node(project, NodeType.DEPS, "Dependencies")
    with pytest.raises(GraphInvariantError, match="children"):
        graph.state_store.delete_node(project.id)

    other = graph.get_or_create_node(project, NodeType.EXTENSIONS, "Extensions")
    graph.link(other, child, EdgeType.DEPENDS_ON, "zod")
    with pytest.raises(GraphInvariantError, match="edges"):
        graph.state_store.delete_node(child.id)


def test_cascade_delete_leaves_no_orphans(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    project = graph.get_or_create_node(None, NodeType.PROJECT, "demo")
    manifest = graph.get_or_create_node(project, NodeType.DEPS, "Dependencies")
    file_node = graph.get_or_create_path(
        root, tmp_path / "intent" / "lib" / "calc.ts.md", dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
    )
    derived = graph.get_or_create_node(file_node, NodeType.INDEXED_DATA, "Indexed data")
    graph.link(file_node, manifest, EdgeType.DEPENDS_ON, "zod")
    graph.state_store.upsert_generation(
        GenerationRecord(node_id=derived.id, tool_id="indexer:m", prompt_hash="h", prompt="p", content="{}")
    )
    lib = graph.find_child(root, NodeType.INTENT_DIR, "lib")
    assert lib is not None

    deleted = graph.cascade_delete(lib)

    assert deleted == 3
    assert graph.get_node(file_node.id) is None
    assert graph.edges_to(manifest) == []
    assert graph.state_store.generations_for(derived.id) == []
    assert graph.find_orphans() == ([], [])
    assert graph.get_node(root.id) is not None


def test_cascade_delete_excluding_self_keeps_node(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    root = _root(graph, tmp_path)
    graph.get_or_create_path(root, tmp_path / "intent" / "a.ts.md", dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE)

    assert graph.cascade_delete(root, including_self=False) == 1
    assert graph.get_node(root.id) is not None
    assert graph.children(root) == []


def test_state_store_round_trips_through_disk(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    project = graph.get_or_create_node(None, NodeType.PROJECT, "demo", json_content={"path": "/tmp/demo"})
    manifest = graph.get_or_create_node(project, NodeType.DEPS, "Dependencies")
    graph.link(project, manifest, EdgeType.IMPLEMENTS)

    reloaded = GraphStore(GraphStateStore(tmp_path / "state"), instance_id="default")
    found = reloaded.find_child(None, NodeType.PROJECT, "demo")
    assert found is not None
    assert found.id == project.id
    assert found.path == Path("/tmp/demo")
    assert len(reloaded.edges_from(found, EdgeType.IMPLEMENTS)) == 1


def test_transaction_writes_once_on_exit(tmp_path: Path) -> None:
    store = GraphStateStore(tmp_path / "state")
    graph = GraphStore(store, instance_id="default")
    with store.transaction():
        graph.get_or_create_node(None, NodeType.PROJECT, "demo")
        assert not store.graph_path.exists()
    assert store.graph_path.is_file()


def test_reads_return_copies(tmp_path: Path) -> None:
    graph = _graph(tmp_path)
    node = graph.get_or_create_node(None, NodeType.PROJECT, "demo", json_content={"path": "/a"})
    assert node.json_content is not None
    node.json_content["path"] = "/mutated"
    stored = graph.require_node(node.id)
    assert stored.json_content == {"path": "/a"}
