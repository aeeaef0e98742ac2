"""
Relationship Engine - how do two memories relate?

Runs only from the background queue. For a freshly stored memory it pulls
the owner's nearest memories and classifies each pair as one of
contradicts / supersedes / elaborates / supports / related (or nothing).

Signals:
- semantic: embedding cosine similarity, or polarity opposition for contradictions
- structural: overlap of topic words (opinion and negation words removed)
- temporal: how close in time the two memories were created

Confidence = weighted blend of the three. A pair that raises is logged and
skipped; the rest of the batch carries on. Each pair of memories keeps at
most one edge. A new edge replaces one in the same direction unless that
would downgrade it to related. An edge pointing the other way is replaced
only if it is a related edge.

Also home to atomic fact extraction, the other background job run per memory.
"""

import asyncio
import re
from datetime import datetime
from typing import Optional

from coachmem.config import RelationshipConfig
from coachmem.embedding import cosine_similarity
from coachmem.errors import StorageError
from coachmem.graph import MemoryGraph
from coachmem.log import get_logger
from coachmem.models import (
    AtomicFact,
    FactType,
    MemoryEntry,
    MemoryRelationship,
    RelationshipType,
    clamp,
)
from coachmem.storage import MemoryStore
from coachmem.text import (
    jaccard,
    overlap_coefficient,
    polarity_opposition,
    tokenize,
    topic_tokens,
)

logger = get_logger("coachmem.relationships")


# =============================================================================
# ATOMIC FACTS
# =============================================================================

FACT_PATTERNS = [
    (FactType.GOAL, re.compile(r"\b(goal|target|want to|trying to|aim to|plan to|hoping to)\b", re.IGNORECASE)),
    (FactType.PREFERENCE, re.compile(
        r"\b(prefer|prefers|like|likes|love|loves|enjoy|enjoys|hate|hates|dislike|dislikes|"
        r"favorite|favourite|avoid)\b", re.IGNORECASE)),
    (FactType.RELATIONSHIP, re.compile(
        r"\bmy (wife|husband|partner|son|daughter|kids?|child|children|mom|mother|dad|father|"
        r"sister|brother|friend|coach|trainer|doctor)\b", re.IGNORECASE)),
    (FactType.BEHAVIOR, re.compile(
        r"\b(usually|always|never|often|tend to|every (?:day|morning|evening|night|week)|"
        r"routine|habit)\b", re.IGNORECASE)),
    (FactType.ATTRIBUTE, re.compile(
        r"\b(i am|i'm|allergic|intolerant|weigh|years old|tall|diagnosed|have (?:a|an) \w+)\b",
        re.IGNORECASE)),
]

CLAUSE_SPLIT = re.compile(r"[.!?;]+|\bbut\b|\bhowever\b", re.IGNORECASE)

BASE_FACT_CONFIDENCE = 0.6


def fact_confidence(text: str) -> float:
    """Certainty words raise confidence, hedges lower it. Range [0.1, 1.0]."""
    lowered = text.lower()
    confidence = BASE_FACT_CONFIDENCE
    if re.search(r"\b(always|never)\b", lowered):
        confidence += 0.2
    if re.search(r"\b(specifically|exactly|definitely)\b", lowered):
        confidence += 0.15
    if len(text) > 50:
        confidence += 0.1
    if re.search(r"\b(maybe|probably|perhaps|might)\b", lowered):
        confidence -= 0.2
    if re.search(r"\b(think|believe|guess)\b", lowered):
        confidence -= 0.1
    return clamp(confidence, 0.1, 1.0)


def extract_atomic_facts(memory_id: str, content: str) -> list[AtomicFact]:
    """Split content into clauses and keep one fact per clause that matches a pattern."""
    facts = []
    seen = set()
    for clause in CLAUSE_SPLIT.split(content or ""):
        clause = clause.strip(" ,")
        if len(clause) < 3 or clause.lower() in seen:
            continue
        for fact_type, pattern in FACT_PATTERNS:
            if pattern.search(clause):
                seen.add(clause.lower())
                facts.append(AtomicFact(
                    memory_id=memory_id,
                    fact_type=fact_type,
                    content=clause,
                    confidence=fact_confidence(clause),
                ))
                break
    return facts


# =============================================================================
# RELATIONSHIP CLASSIFICATION
# =============================================================================

SUPERSEDE_CUES = re.compile(
    r"\b(now|anymore|no longer|instead|switched|changed|these days|not anymore|used to)\b",
    re.IGNORECASE,
)


def _days_between(a: datetime, b: datetime) -> float:
    return abs((a - b).total_seconds()) / 86400.0


class RelationshipEngine:
    """Classify and store edges for one memory against its neighbours.

    Usage:
        engine = RelationshipEngine(store, graph, config.relationships)
        edges = await engine.analyze_memory("user_1", "mem_abc")
    """

    def __init__(self, store: MemoryStore, graph: MemoryGraph, config: RelationshipConfig):
        self.store = store
        self.graph = graph
        self.config = config
        self._metrics = {
            "memories_analyzed": 0,
            "pairs_compared": 0,
            "pair_failures": 0,
            "edges_written": 0,
            "facts_extracted": 0,
        }

    def _confidence(self, semantic: float, structural: float, temporal: float) -> float:
        c = self.config
        total = c.semantic_weight + c.structural_weight + c.temporal_weight
        if total <= 0:
            return 0.0
        blended = c.semantic_weight * semantic + c.structural_weight * structural + c.temporal_weight * temporal
        return clamp(blended / total)

    def classify(
        self,
        memory: MemoryEntry,
        other: MemoryEntry,
        similarity: Optional[float] = None,
    ) -> Optional[MemoryRelationship]:
        """Decide the edge between two memories, or None if they are unrelated.

        Edge direction follows meaning: the newer memory supersedes the older,
        the longer memory elaborates the shorter, otherwise memory -> other.
        """
        c = self.config
        if similarity is None:
            similarity = cosine_similarity(memory.embedding, other.embedding)
        similarity = max(0.0, similarity)

        topics_a = topic_tokens(memory.content)
        topics_b = topic_tokens(other.content)
        overlap = overlap_coefficient(topics_a, topics_b)
        structural = jaccard(topics_a, topics_b)
        temporal = max(0.0, 1.0 - _days_between(memory.created_at, other.created_at) / c.temporal_window_days)

        newer, older = (memory, other) if memory.created_at >= other.created_at else (other, memory)
        shared = ", ".join(sorted(topics_a & topics_b)[:3])

        opposition = polarity_opposition(memory.content, other.content)
        if opposition > 0 and overlap >= c.contradiction_min_overlap:
            rel_type = RelationshipType.CONTRADICTS
            source, target = memory, other
            semantic = opposition
            context = f"opposite stance on {shared}" if shared else "opposite stance"

        elif SUPERSEDE_CUES.search(newer.content) and (
            overlap >= c.contradiction_min_overlap or similarity >= c.supersede_similarity
        ):
            rel_type = RelationshipType.SUPERSEDES
            source, target = newer, older
            semantic = max(similarity, overlap)
            context = "newer statement replaces older"

        elif self._elaborates(memory, other, topics_a, topics_b):
            rel_type = RelationshipType.ELABORATES
            source, target = (memory, other) if len(memory.content) >= len(other.content) else (other, memory)
            semantic = max(similarity, overlap)
            context = f"adds detail on {shared}" if shared else "adds detail"

        elif similarity >= c.support_similarity or overlap >= c.support_overlap:
            rel_type = RelationshipType.SUPPORTS
            source, target = memory, other
            semantic = max(similarity, overlap)
            context = f"agrees on {shared}" if shared else "agrees"

        elif similarity >= c.related_similarity or overlap >= c.related_overlap:
            rel_type = RelationshipType.RELATED
            source, target = memory, other
            semantic = max(similarity, overlap)
            context = f"shares {shared}" if shared else "similar meaning"

        else:
            return None

        return MemoryRelationship(
            source_id=source.id,
            target_id=target.id,
            relationship_type=rel_type,
            strength=max(similarity, overlap),
            confidence=self._confidence(semantic, structural, temporal),
            context=context,
        )

    @staticmethod
    def _elaborates(a: MemoryEntry, b: MemoryEntry, topics_a: set, topics_b: set) -> bool:
        longer, shorter = (topics_a, topics_b) if len(a.content) >= len(b.content) else (topics_b, topics_a)
        long_len = max(len(a.content), len(b.content))
        short_len = min(len(a.content), len(b.content))
        if not shorter or short_len == 0:
            return False
        covered = len(shorter & longer) / len(shorter)
        return covered >= 0.8 and long_len >= 1.5 * short_len

    def _candidates(self, memory: MemoryEntry) -> list[tuple[MemoryEntry, Optional[float]]]:
        k = self.config.candidate_k
        if memory.embedding is not None:
            try:
                return [
                    (entry, similarity)
                    for entry, similarity in self.store.nearest(memory.embedding, k + 1, memory.owner_id)
                    if entry.id != memory.id
                ][:k]
            except StorageError as e:
                logger.warning(f"Vector search unavailable for {memory.id}, using keywords: {e}")

        terms = memory.keywords or [w for w in tokenize(memory.content) if len(w) > 3]
        return [
            (entry, None)
            for entry in self.store.keyword_search(memory.owner_id, terms, limit=k + 1)
            if entry.id != memory.id
        ][:k]

    async def analyze_memory(self, owner_id: str, memory_id: str) -> list[MemoryRelationship]:
        """Compare one memory with its neighbours and store the edges found.

        Returns:
            The edges written (empty if the memory no longer exists)
        """
        memory = self.store.get_memory(memory_id, owner_id)
        if memory is None:
            logger.debug(f"Skipping relationship analysis, {memory_id} is gone")
            return []

        self._metrics["memories_analyzed"] += 1
        written = []

        for other, similarity in self._candidates(memory):
            self._metrics["pairs_compared"] += 1
            try:
                rel = self._analyze_pair(owner_id, memory, other, similarity)
                if rel is not None:
                    written.append(rel)
            except Exception as e:
                self._metrics["pair_failures"] += 1
                logger.warning(f"Relationship analysis failed for {memory.id} / {other.id}: {e}")
            # Let the queue's task timeout cancel between pairs
            await asyncio.sleep(0)

        return written

    def _analyze_pair(
        self,
        owner_id: str,
        memory: MemoryEntry,
        other: MemoryEntry,
        similarity: Optional[float],
    ) -> Optional[MemoryRelationship]:
        """Classify one pair and store the edge. A pair keeps at most one edge."""
        rel = self.classify(memory, other, similarity)
        if rel is None or rel.confidence < self.config.min_confidence:
            return None

        is_related = rel.relationship_type == RelationshipType.RELATED
        existing = self.graph.get_edge(owner_id, rel.source_id, rel.target_id)
        if existing and is_related and existing.get("edge_type") != RelationshipType.RELATED.value:
            return None  # keep the more specific edge

        reverse = self.graph.get_edge(owner_id, rel.target_id, rel.source_id)
        if reverse:
            if is_related or reverse.get("edge_type") != RelationshipType.RELATED.value:
                return None
            self.graph.remove_relationship(owner_id, rel.target_id, rel.source_id)

        if not self.graph.add_relationship(owner_id, rel):
            return None
        self._metrics["edges_written"] += 1
        logger.debug(
            f"{rel.relationship_type.value}: {rel.source_id} -> {rel.target_id} "
            f"(confidence {rel.confidence:.2f})"
        )
        return rel

    async def extract_facts(self, owner_id: str, memory_id: str) -> list[AtomicFact]:
        """Re-extract and store the atomic facts of one memory."""
        memory = self.store.get_memory(memory_id, owner_id)
        if memory is None:
            return []
        facts = extract_atomic_facts(memory.id, memory.content)
        self.store.replace_facts(memory.id, facts)
        self._metrics["facts_extracted"] += len(facts)
        return facts

    def get_metrics(self) -> dict:
        return dict(self._metrics)
