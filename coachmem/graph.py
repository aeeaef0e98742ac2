"""
Relationship graph - typed edges between one owner's memories.

SQLite (through MemoryStore) is the durable copy of every edge. This module
keeps a networkx DiGraph index over it, keyed by memory id, that is loaded
per owner on first use and updated on every write.

Invariants enforced here, before anything is written:
- no self-loops (source != target)
- both endpoints exist and belong to the same owner
Cycles are fine; traversal uses a visited set.
"""

from collections import deque
from typing import Optional

import networkx as nx

from coachmem.log import get_logger
from coachmem.models import MemoryRelationship, RelationshipType
from coachmem.storage import MemoryStore

logger = get_logger("coachmem.graph")


class MemoryGraph:
    """Adjacency index over MemoryRelationship rows.

    Usage:
        graph = MemoryGraph(store)
        graph.add_relationship("user_1", rel)
        graph.related("user_1", "mem_abc", depth=2)
    """

    def __init__(self, store: MemoryStore):
        self.store = store
        self.graph = nx.DiGraph()
        self._loaded_owners: set[str] = set()

    def _ensure_owner(self, owner_id: str) -> None:
        """Hydrate the owner's nodes and edges from storage once."""
        if owner_id in self._loaded_owners:
            return
        for memory in self.store.list_memories(owner_id):
            self.graph.add_node(memory.id, owner_id=owner_id)
        for rel in self.store.get_relationships(owner_id):
            self._add_edge(rel)
        self._loaded_owners.add(owner_id)

    def _add_edge(self, rel: MemoryRelationship) -> None:
        self.graph.add_edge(
            rel.source_id,
            rel.target_id,
            id=rel.id,
            edge_type=rel.relationship_type.value,
            strength=rel.strength,
            confidence=rel.confidence,
            context=rel.context,
            created_at=rel.created_at.isoformat(),
        )

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    def add_memory(self, owner_id: str, memory_id: str) -> None:
        self._ensure_owner(owner_id)
        self.graph.add_node(memory_id, owner_id=owner_id)

    def remove_memory(self, memory_id: str) -> None:
        """Drop the node and its incident edges from the index."""
        if self.graph.has_node(memory_id):
            self.graph.remove_node(memory_id)

    def add_relationship(self, owner_id: str, rel: MemoryRelationship) -> bool:
        """Validate, persist and index an edge.

        An existing edge between the same ordered pair is replaced.

        Returns:
            True if the edge was stored, False if it violates an invariant
        """
        if rel.source_id == rel.target_id:
            logger.debug(f"Rejected self-loop on {rel.source_id}")
            return False

        self._ensure_owner(owner_id)
        for endpoint in (rel.source_id, rel.target_id):
            if self.store.get_memory(endpoint, owner_id) is None:
                logger.debug(f"Rejected edge: {endpoint} is not a memory of {owner_id}")
                return False
            self.graph.add_node(endpoint, owner_id=owner_id)

        self.store.upsert_relationship(owner_id, rel)
        self._add_edge(rel)
        return True

    def remove_relationship(self, owner_id: str, source_id: str, target_id: str) -> bool:
        """Delete one directed edge from storage and the index."""
        self._ensure_owner(owner_id)
        removed = self.store.delete_relationship(owner_id, source_id, target_id)
        if self.graph.has_edge(source_id, target_id):
            self.graph.remove_edge(source_id, target_id)
        return removed

    # =========================================================================
    # QUERY OPERATIONS
    # =========================================================================

    def get_edge(self, owner_id: str, source_id: str, target_id: str) -> Optional[dict]:
        self._ensure_owner(owner_id)
        if not self.graph.has_edge(source_id, target_id):
            return None
        return dict(self.graph.edges[source_id, target_id])

    def edges_for(self, owner_id: str, memory_id: str) -> list[dict]:
        """Every edge touching memory_id, in either direction."""
        self._ensure_owner(owner_id)
        if not self.graph.has_node(memory_id):
            return []
        edges = []
        for _, target, data in self.graph.out_edges(memory_id, data=True):
            edges.append({"source_id": memory_id, "target_id": target, **data})
        for source, _, data in self.graph.in_edges(memory_id, data=True):
            edges.append({"source_id": source, "target_id": memory_id, **data})
        return edges

    def related(
        self,
        owner_id: str,
        memory_id: str,
        depth: int = 2,
        relation_types: Optional[list[RelationshipType]] = None,
    ) -> list[dict]:
        """Breadth-first walk from memory_id over edges in both directions.

        Args:
            owner_id: Owner of the start memory
            memory_id: Starting memory
            depth: Maximum number of hops
            relation_types: Only follow these edge types (None = all)

        Returns:
            One entry per reachable memory, nearest first:
            {memory_id, relationship_type, direction, depth, strength, confidence, via}
        """
        self._ensure_owner(owner_id)
        if depth <= 0 or not self.graph.has_node(memory_id):
            return []
        if self.graph.nodes[memory_id].get("owner_id") != owner_id:
            return []

        allowed = {r.value for r in relation_types} if relation_types else None
        visited = {memory_id}
        queue = deque([(memory_id, 0)])
        found = []

        while queue:
            node, hops = queue.popleft()
            if hops >= depth:
                continue

            neighbours = [
                (target, "outgoing", self.graph.edges[node, target])
                for target in self.graph.successors(node)
            ] + [
                (source, "incoming", self.graph.edges[source, node])
                for source in self.graph.predecessors(node)
            ]
            # Strongest edges first so the nearest-first order is stable
            neighbours.sort(key=lambda n: n[2].get("strength", 0.0), reverse=True)

            for neighbour, direction, data in neighbours:
                if neighbour in visited:
                    continue
                if allowed and data.get("edge_type") not in allowed:
                    continue
                visited.add(neighbour)
                found.append({
                    "memory_id": neighbour,
                    "relationship_type": data.get("edge_type"),
                    "direction": direction,
                    "depth": hops + 1,
                    "strength": data.get("strength", 0.0),
                    "confidence": data.get("confidence", 0.0),
                    "via": node,
                })
                queue.append((neighbour, hops + 1))

        return found

    def find_contradictions(self, owner_id: str, memory_id: str) -> list[str]:
        """Memories joined to this one by a contradicts edge, either direction."""
        return sorted({
            edge["target_id"] if edge["source_id"] == memory_id else edge["source_id"]
            for edge in self.edges_for(owner_id, memory_id)
            if edge.get("edge_type") == RelationshipType.CONTRADICTS.value
        })

    def get_stats(self, owner_id: str) -> dict:
        self._ensure_owner(owner_id)
        nodes = [n for n, d in self.graph.nodes(data=True) if d.get("owner_id") == owner_id]
        edge_types: dict[str, int] = {}
        for u, v, data in self.graph.subgraph(nodes).edges(data=True):
            etype = data.get("edge_type", "unknown")
            edge_types[etype] = edge_types.get(etype, 0) + 1
        return {
            "nodes": len(nodes),
            "edges": sum(edge_types.values()),
            "edge_types": edge_types,
        }
