#!/usr/bin/env python3
"""
Relationship Graph Tests

1. Invariants - no self-loops, no edges across owners or to missing memories
2. related() - bounded breadth-first walk, both directions, cycle safe
3. Rebuild - a fresh MemoryGraph rehydrates from SQLite
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from coachmem.graph import MemoryGraph
from coachmem.models import MemoryEntry, MemoryRelationship, RelationshipType
from coachmem.text import semantic_hash


def add(store, owner_id, content):
    entry = MemoryEntry(owner_id=owner_id, content=content, semantic_hash=semantic_hash(content))
    store.add_memory(entry)
    return entry.id


@pytest.fixture
def graph(store):
    return MemoryGraph(store)


@pytest.fixture
def chain(store, graph):
    """a -> b -> c -> d, plus a contradicts e."""
    ids = {name: add(store, "user_a", f"memory {name} about running") for name in "abcde"}
    graph.add_relationship("user_a", MemoryRelationship(ids["a"], ids["b"], RelationshipType.SUPPORTS, strength=0.9))
    graph.add_relationship("user_a", MemoryRelationship(ids["b"], ids["c"], RelationshipType.ELABORATES, strength=0.8))
    graph.add_relationship("user_a", MemoryRelationship(ids["c"], ids["d"], RelationshipType.RELATED, strength=0.6))
    graph.add_relationship("user_a", MemoryRelationship(ids["e"], ids["a"], RelationshipType.CONTRADICTS, strength=0.7))
    return ids


class TestInvariants:
    """Edges that must never be stored."""

    def test_self_loop_rejected(self, store, graph):
        a = add(store, "user_a", "I love coffee")
        assert not graph.add_relationship("user_a", MemoryRelationship(a, a, RelationshipType.SUPPORTS))
        assert store.get_relationships("user_a") == []

    def test_cross_owner_rejected(self, store, graph):
        a = add(store, "user_a", "I love coffee")
        b = add(store, "user_b", "I hate coffee")
        assert not graph.add_relationship("user_a", MemoryRelationship(a, b, RelationshipType.CONTRADICTS))
        assert store.get_relationships("user_a") == []

    def test_missing_endpoint_rejected(self, store, graph):
        a = add(store, "user_a", "I love coffee")
        assert not graph.add_relationship("user_a", MemoryRelationship(a, "mem_missing", RelationshipType.RELATED))

    def test_replacing_an_edge(self, store, graph):
        a = add(store, "user_a", "I love coffee")
        b = add(store, "user_a", "Coffee every morning")
        graph.add_relationship("user_a", MemoryRelationship(a, b, RelationshipType.RELATED))
        graph.add_relationship("user_a", MemoryRelationship(a, b, RelationshipType.SUPPORTS))

        assert graph.get_edge("user_a", a, b)["edge_type"] == "supports"
        assert len(store.get_relationships("user_a")) == 1


class TestRelated:
    """Breadth-first traversal."""

    def test_depth_one(self, graph, chain):
        found = graph.related("user_a", chain["b"], depth=1)
        by_id = {hop["memory_id"]: hop for hop in found}

        assert set(by_id) == {chain["a"], chain["c"]}
        assert by_id[chain["a"]]["direction"] == "incoming"
        assert by_id[chain["c"]]["direction"] == "outgoing"
        assert all(hop["depth"] == 1 for hop in found)

    def test_depth_limit(self, graph, chain):
        found = {hop["memory_id"]: hop["depth"] for hop in graph.related("user_a", chain["a"], depth=2)}
        assert found == {chain["b"]: 1, chain["e"]: 1, chain["c"]: 2}

    def test_nearest_first(self, graph, chain):
        depths = [hop["depth"] for hop in graph.related("user_a", chain["a"], depth=3)]
        assert depths == sorted(depths)

    def test_relation_type_filter(self, graph, chain):
        found = graph.related("user_a", chain["a"], depth=3, relation_types=[RelationshipType.CONTRADICTS])
        assert [hop["memory_id"] for hop in found] == [chain["e"]]

    def test_cycle_terminates(self, graph, chain):
        graph.add_relationship("user_a", MemoryRelationship(chain["d"], chain["a"], RelationshipType.RELATED))
        found = graph.related("user_a", chain["a"], depth=10)
        ids = [hop["memory_id"] for hop in found]
        assert len(ids) == len(set(ids)) == 4

    def test_other_owner_gets_nothing(self, graph, chain):
        assert graph.related("user_b", chain["a"]) == []

    def test_unknown_memory(self, graph, chain):
        assert graph.related("user_a", "mem_missing") == []

    def test_find_contradictions(self, graph, chain):
        assert graph.find_contradictions("user_a", chain["a"]) == [chain["e"]]
        assert graph.find_contradictions("user_a", chain["e"]) == [chain["a"]]


class TestRebuild:

    def test_fresh_graph_loads_from_store(self, store, chain):
        rebuilt = MemoryGraph(store)
        stats = rebuilt.get_stats("user_a")
        assert stats["nodes"] == 5
        assert stats["edges"] == 4
        assert stats["edge_types"]["contradicts"] == 1

    def test_remove_memory(self, store, graph, chain):
        store.delete_memory(chain["b"], "user_a")
        graph.remove_memory(chain["b"])
        found = graph.related("user_a", chain["a"], depth=5)
        assert [hop["memory_id"] for hop in found] == [chain["e"]]
