"""
Contextual retrieval - which memories matter for this turn?

Pipeline:
1. Candidates: owner's nearest memories by vector, unioned with a keyword match
2. Score: weighted sum of semantic, temporal, importance and access signals
3. Cut: drop scores below a threshold that depends on query specificity
4. Diversity: cap per category and in total, drop duplicate content
5. Cache: (owner, context fingerprint) -> result, until the owner writes

Degraded mode: when the query cannot be embedded or the vector index is
down, candidates come from keyword search only and the semantic signal is
a keyword-overlap score scaled by `degraded_factor`. The result says so.

Slow mode: the query embedding has its own timeout, after which retrieval
falls back to degraded mode. Scoring then stops at the deadline and whatever
was scored is returned, flagged partial (and not cached).
"""

import asyncio
import math
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from coachmem.cache import RetrievalCache
from coachmem.config import RetrievalConfig
from coachmem.embedding import EmbeddingService, cosine_similarity
from coachmem.errors import ProviderError, StorageError
from coachmem.log import get_logger
from coachmem.models import (
    MemoryEntry,
    RankedMemory,
    RetrievalContext,
    RetrievalFilters,
    RetrievalResult,
)
from coachmem.storage import MemoryStore
from coachmem.text import extract_keywords, semantic_hash, stem, tokenize

logger = get_logger("coachmem.retrieval")


def keyword_overlap(terms: list[str], memory: MemoryEntry) -> float:
    """Fraction of query terms found in the memory's words or keywords."""
    if not terms:
        return 0.0
    words = {stem(w) for w in tokenize(memory.content)} | {stem(k) for k in memory.keywords}
    hits = sum(1 for term in terms if stem(term) in words)
    return hits / len(terms)


class RetrievalRanker:
    """Multi-factor ranker over one owner's memories.

    Usage:
        ranker = RetrievalRanker(store, embeddings, cache, config.retrieval)
        result = await ranker.retrieve("user_1", RetrievalContext(query="breakfast ideas"))
    """

    def __init__(
        self,
        store: MemoryStore,
        embeddings: EmbeddingService,
        cache: RetrievalCache,
        config: RetrievalConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.embeddings = embeddings
        self.cache = cache
        self.config = config
        self._clock = clock
        self._metrics = {
            "queries": 0,
            "cache_hits": 0,
            "degraded": 0,
            "partial": 0,
            "candidates": 0,
            "below_threshold": 0,
            "diversity_dropped": 0,
        }

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def temporal_score(self, memory: MemoryEntry, now: Optional[datetime] = None) -> float:
        """Half-life decay on age, boosted when recent, discounted when stale."""
        now = now or datetime.now()
        age_days = max(0.0, (now - memory.created_at).total_seconds() / 86400.0)
        score = 0.5 ** (age_days / self.config.half_life_days)
        if age_days <= self.config.recent_days:
            score = min(1.0, score * 1.25)
        elif age_days > self.config.stale_days:
            score *= self.config.stale_discount
        return score

    def access_score(self, memory: MemoryEntry) -> float:
        # Log scale so first few accesses matter most
        saturation = max(1, self.config.access_saturation)
        return min(1.0, math.log1p(memory.access_count) / math.log1p(saturation))

    def threshold_for(self, terms: list[str]) -> float:
        """Precise queries (many significant terms) need a higher score."""
        if len(terms) >= self.config.precise_min_terms:
            return self.config.precise_threshold
        return self.config.exploratory_threshold

    def _combine(self, semantic: float, temporal: float, importance: float, access: float) -> float:
        w = self.config.weights
        total = w.semantic + w.temporal + w.importance + w.access
        return (
            w.semantic * semantic
            + w.temporal * temporal
            + w.importance * importance
            + w.access * access
        ) / total

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _embed_query(self, owner_id: str, query: str) -> Optional[list[float]]:
        try:
            result = await asyncio.wait_for(
                self.embeddings.embed(owner_id, query),
                timeout=self.config.query_embed_timeout,
            )
            return result.vector
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"Query embedding unavailable, keyword-only retrieval: {e}")
            return None

    def _candidates(
        self,
        owner_id: str,
        query_vector: Optional[list[float]],
        terms: list[str],
    ) -> tuple[dict[str, tuple[MemoryEntry, Optional[float]]], bool]:
        """Vector neighbours unioned with keyword hits. Returns (candidates, degraded)."""
        candidates: dict[str, tuple[MemoryEntry, Optional[float]]] = {}
        degraded = query_vector is None

        if query_vector is not None:
            try:
                for entry, similarity in self.store.nearest(query_vector, self.config.candidate_k, owner_id):
                    candidates[entry.id] = (entry, similarity)
            except StorageError as e:
                degraded = True
                logger.warning(f"Vector search unavailable, keyword-only retrieval: {e}")

        for entry in self.store.keyword_search(owner_id, terms, limit=self.config.keyword_limit):
            if entry.id not in candidates:
                candidates[entry.id] = (entry, None)

        return candidates, degraded

    def _diversify(self, ranked: list[RankedMemory], max_results: int) -> list[RankedMemory]:
        """Cap per category and in total; drop repeated content."""
        per_category: dict[str, int] = {}
        seen_hashes = set()
        kept = []
        for item in ranked:
            if len(kept) >= max_results:
                break
            category = item.memory.category.value
            fingerprint = item.memory.semantic_hash or semantic_hash(item.memory.content)
            if fingerprint in seen_hashes or per_category.get(category, 0) >= self.config.max_per_category:
                self._metrics["diversity_dropped"] += 1
                continue
            seen_hashes.add(fingerprint)
            per_category[category] = per_category.get(category, 0) + 1
            kept.append(item)
        return kept

    async def retrieve(
        self,
        owner_id: str,
        context: RetrievalContext,
        filters: Optional[RetrievalFilters] = None,
    ) -> RetrievalResult:
        """Rank the owner's memories for a conversational context.

        Args:
            owner_id: Whose memories to search
            context: Recent messages and/or an explicit query
            filters: Optional category / importance / size filters

        Returns:
            RetrievalResult, capped per category and in total
        """
        filters = filters or RetrievalFilters()
        self._metrics["queries"] += 1

        query = context.query_text()
        if not query:
            return RetrievalResult(memories=[])

        fingerprint = f"{semantic_hash(query)}|{filters.fingerprint()}"
        cached = self.cache.get(owner_id, fingerprint)
        if cached is not None:
            self._metrics["cache_hits"] += 1
            return replace(cached, cached=True)

        terms = extract_keywords(query, limit=10)

        query_vector = await self._embed_query(owner_id, query)
        candidates, degraded = self._candidates(owner_id, query_vector, terms)
        self._metrics["candidates"] += len(candidates)
        deadline = self._clock() + self.config.timeout

        threshold = self.threshold_for(terms)
        if degraded:
            threshold *= self.config.degraded_factor
            self._metrics["degraded"] += 1

        now = datetime.now()
        ranked: list[RankedMemory] = []
        partial = False

        for entry, similarity in candidates.values():
            if self._clock() > deadline:
                partial = True
                break

            if filters.categories and entry.category not in filters.categories:
                continue
            if entry.importance_score < filters.min_importance:
                continue

            reasons = []
            overlap = keyword_overlap(terms, entry)
            if degraded:
                semantic = overlap * self.config.degraded_factor
            elif similarity is not None:
                semantic = max(0.0, similarity)
            elif entry.embedding is not None:
                semantic = max(0.0, cosine_similarity(query_vector, entry.embedding))
            else:
                semantic = overlap * self.config.degraded_factor

            if semantic > 0 and similarity is not None:
                reasons.append("semantic match")
            if overlap > 0:
                reasons.append("keyword match")

            temporal = self.temporal_score(entry, now)
            age_days = (now - entry.created_at).total_seconds() / 86400.0
            if age_days <= self.config.recent_days:
                reasons.append("recent")
            elif age_days > self.config.stale_days:
                reasons.append("stale")
            if entry.importance_score > 0.8:
                reasons.append("important")

            access = self.access_score(entry)
            score = self._combine(semantic, temporal, entry.importance_score, access)

            if score < threshold:
                self._metrics["below_threshold"] += 1
                continue

            ranked.append(RankedMemory(
                memory=entry,
                score=score,
                semantic=semantic,
                temporal=temporal,
                importance=entry.importance_score,
                access=access,
                reasons=reasons,
            ))

        if partial:
            self._metrics["partial"] += 1
            logger.warning(f"Retrieval for {owner_id} hit the {self.config.timeout}s deadline, returning partial results")

        ranked.sort(key=lambda r: (r.score, r.importance, r.memory.created_at), reverse=True)

        max_results = self.config.max_results
        if filters.max_results:
            max_results = min(max_results, filters.max_results)
        selected = self._diversify(ranked, max_results)

        try:
            self.store.record_access([item.memory.id for item in selected])
        except Exception as e:
            logger.warning(f"Could not record access for {owner_id}: {e}")

        result = RetrievalResult(
            memories=selected,
            degraded=degraded,
            partial=partial,
            threshold=threshold,
        )
        if not partial:
            self.cache.set(owner_id, fingerprint, result)
        return result

    def get_metrics(self) -> dict:
        return dict(self._metrics)
