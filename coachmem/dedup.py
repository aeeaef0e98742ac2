"""
Deduplication - skip, merge or create?

Decision order for a candidate (owner, text, vector):
1. Fingerprint lookup. Any text the owner already stored (or that was
   merged into a stored memory) resolves to skip. This makes repeated
   submissions idempotent even when the embedding provider is down.
2. Top-K nearest memories of the owner, banded by cosine similarity:
   exact -> skip, high -> merge, related -> create + related edge,
   none -> create.

Merge policy (deterministic):
- keywords are unioned, importance is the max of both
- the newer content replaces the stored content (temporal precedence)
- unless a stored atomic fact is contradicted by a new fact AND the stored
  fact's confidence is strictly higher; then the stored content is kept,
  and the conflict is returned for review. Equal confidence -> newer wins.
"""

from typing import Optional

from coachmem.config import DedupConfig
from coachmem.errors import DedupConflict, StorageError
from coachmem.log import get_logger
from coachmem.models import (
    AtomicFact,
    DedupAction,
    DedupDecision,
    MemoryEntry,
    SimilarityBand,
    clamp,
)
from coachmem.relationships import extract_atomic_facts
from coachmem.storage import MemoryStore
from coachmem.text import overlap_coefficient, polarity_opposition, topic_tokens

logger = get_logger("coachmem.dedup")

# Two facts must share at least this much topic to count as contradicting
FACT_TOPIC_OVERLAP = 0.3


class DeduplicationEngine:
    """Compare a candidate memory against the owner's existing memories.

    Usage:
        dedup = DeduplicationEngine(store, config.dedup)
        decision = dedup.decide("user_1", fingerprint, vector)
    """

    def __init__(self, store: MemoryStore, config: DedupConfig):
        self.store = store
        self.config = config
        self._metrics = {
            "skipped": 0,
            "merged": 0,
            "created": 0,
            "related_links": 0,
            "fail_open": 0,
            "conflicts": 0,
        }

    def classify(self, similarity: float) -> SimilarityBand:
        """Map a cosine similarity onto a dedup band."""
        if similarity >= self.config.exact_threshold:
            return SimilarityBand.EXACT
        if similarity >= self.config.high_threshold:
            return SimilarityBand.HIGH
        if similarity >= self.config.related_threshold:
            return SimilarityBand.RELATED
        return SimilarityBand.NONE

    def _record(self, decision: DedupDecision) -> DedupDecision:
        key = {
            DedupAction.SKIP: "skipped",
            DedupAction.MERGE: "merged",
            DedupAction.CREATE: "created",
        }[decision.action]
        self._metrics[key] += 1
        if decision.related_id:
            self._metrics["related_links"] += 1
        return decision

    def decide(
        self,
        owner_id: str,
        semantic_hash: str,
        vector: Optional[list[float]],
    ) -> DedupDecision:
        """Pick skip / merge / create for a candidate.

        Args:
            owner_id: Owner of the candidate
            semantic_hash: Fingerprint of the candidate's normalised text
            vector: Candidate embedding, or None if embedding failed upstream

        Returns:
            A DedupDecision. Never raises for provider or index failures.
        """
        existing_id = self.store.find_by_hash(owner_id, semantic_hash)
        if existing_id:
            return self._record(DedupDecision(
                action=DedupAction.SKIP,
                band=SimilarityBand.EXACT,
                similarity=1.0,
                existing_id=existing_id,
                reason="identical content already stored",
            ))

        if vector is None:
            self._metrics["fail_open"] += 1
            logger.warning(f"No embedding for owner {owner_id}, creating without similarity dedup")
            return self._record(DedupDecision(
                action=DedupAction.CREATE,
                band=SimilarityBand.NONE,
                reason="embedding unavailable, dedup skipped",
            ))

        try:
            neighbours = self.store.nearest(vector, self.config.top_k, owner_id)
        except StorageError as e:
            self._metrics["fail_open"] += 1
            logger.warning(f"Vector search failed for owner {owner_id}, creating without dedup: {e}")
            return self._record(DedupDecision(
                action=DedupAction.CREATE,
                band=SimilarityBand.NONE,
                reason="vector search unavailable, dedup skipped",
            ))

        if not neighbours:
            return self._record(DedupDecision(
                action=DedupAction.CREATE,
                band=SimilarityBand.NONE,
                reason="no existing memories",
            ))

        best, similarity = max(neighbours, key=lambda pair: pair[1])
        band = self.classify(similarity)
        logger.debug(f"Closest match {best.id} at {similarity:.3f} ({band.value})")

        if band == SimilarityBand.EXACT:
            decision = DedupDecision(DedupAction.SKIP, band, similarity, existing_id=best.id,
                                     reason="near-identical memory exists")
        elif band == SimilarityBand.HIGH:
            decision = DedupDecision(DedupAction.MERGE, band, similarity, existing_id=best.id,
                                     reason="highly similar memory exists")
        elif band == SimilarityBand.RELATED:
            decision = DedupDecision(DedupAction.CREATE, band, similarity, related_id=best.id,
                                     reason="related memory exists")
        else:
            decision = DedupDecision(DedupAction.CREATE, band, similarity,
                                     reason="no similar memory")
        return self._record(decision)

    # =========================================================================
    # MERGE
    # =========================================================================

    def _stored_facts(self, memory: MemoryEntry) -> list[AtomicFact]:
        """Facts already extracted for the memory, or extracted now if none yet."""
        facts = self.store.get_facts(memory.id)
        return facts or extract_atomic_facts(memory.id, memory.content)

    def find_conflict(self, existing: MemoryEntry, new_content: str) -> Optional[DedupConflict]:
        """First stored fact that a new fact contradicts with lower confidence."""
        new_facts = extract_atomic_facts(existing.id, new_content)
        if not new_facts:
            return None

        for stored in self._stored_facts(existing):
            stored_topics = topic_tokens(stored.content)
            for fact in new_facts:
                if polarity_opposition(stored.content, fact.content) <= 0:
                    continue
                if overlap_coefficient(stored_topics, topic_tokens(fact.content)) < FACT_TOPIC_OVERLAP:
                    continue
                if stored.confidence > fact.confidence:
                    return DedupConflict(
                        memory_id=existing.id,
                        stored_fact=stored.content,
                        new_fact=fact.content,
                        reason=(
                            f"stored fact held with higher confidence "
                            f"({stored.confidence:.2f} > {fact.confidence:.2f})"
                        ),
                    )
        return None

    def merge(
        self,
        existing: MemoryEntry,
        new_content: str,
        new_hash: str,
        new_keywords: list[str],
        new_importance: float,
        new_vector: Optional[list[float]],
    ) -> tuple[MemoryEntry, list[str], Optional[DedupConflict]]:
        """Fold a candidate into an existing memory.

        Returns:
            (updated entry, fingerprints to alias to it, conflict or None)
        """
        conflict = self.find_conflict(existing, new_content)

        existing.keywords = list(dict.fromkeys([*existing.keywords, *(k.lower() for k in new_keywords)]))
        existing.importance_score = clamp(max(existing.importance_score, new_importance))

        aliases = [new_hash]
        if conflict is None:
            aliases.append(existing.semantic_hash)
            existing.content = new_content
            existing.semantic_hash = new_hash
            if new_vector is not None:
                existing.embedding = new_vector
        else:
            self._metrics["conflicts"] += 1
            logger.warning(f"Merge conflict on {existing.id}: {conflict.reason}")

        return existing, aliases, conflict

    def get_metrics(self) -> dict:
        return dict(self._metrics)
