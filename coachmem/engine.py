"""
Memory Engine - the one object callers talk to.

Wires storage, caches, providers, detection, dedup, the relationship
engine, the background queue and the retrieval ranker together.

Creation path (synchronous up to the dedup decision):
    detect -> embed (cached) -> dedup decide -> store / merge
    -> invalidate owner's retrieval cache -> queue background work

Background path (QueueScheduler, never on the request path):
    relationship analysis (medium), atomic fact extraction (low),
    cache cleanup (low)

Only ValidationError escapes the creation path. Every other failure turns
into a "skip" result with a reason.
"""

import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from coachmem.cache import EmbeddingCache, RetrievalCache
from coachmem.config import EngineConfig, load_config
from coachmem.dedup import DeduplicationEngine
from coachmem.detection import DetectionEngine
from coachmem.embedding import EmbeddingService
from coachmem.errors import (
    CircuitOpenError,
    DuplicateContentError,
    ProviderError,
    QueueOverflow,
    StorageError,
    ValidationError,
)
from coachmem.graph import MemoryGraph
from coachmem.log import get_logger
from coachmem.models import (
    BackgroundTask,
    CreateResult,
    DedupAction,
    DedupDecision,
    MemoryCategory,
    MemoryEntry,
    MemoryRelationship,
    RelationshipType,
    RetrievalContext,
    RetrievalFilters,
    RetrievalResult,
    TaskPriority,
    TaskType,
)
from coachmem.providers import (
    EmbeddingProvider,
    OllamaTextAnalyzer,
    SentenceTransformerEmbedder,
    TextAnalysisProvider,
)
from coachmem.queue import BackgroundQueue, QueueScheduler
from coachmem.relationships import RelationshipEngine
from coachmem.retrieval import RetrievalRanker
from coachmem.storage import MemoryStore
from coachmem.text import extract_keywords, semantic_hash

logger = get_logger("coachmem.engine")

ContextLike = Union[RetrievalContext, str, list, None]


def _as_context(context: ContextLike) -> RetrievalContext:
    if isinstance(context, RetrievalContext):
        return context
    if isinstance(context, str):
        return RetrievalContext(query=context)
    if isinstance(context, list):
        return RetrievalContext(messages=context)
    return RetrievalContext()


class MemoryEngine:
    """Facade over the whole memory subsystem.

    Usage:
        engine = MemoryEngine.from_config()
        engine.start()                          # background scheduler
        result = await engine.create_or_merge("user_1", "I'm allergic to peanuts")
        ranked = await engine.retrieve("user_1", "snack ideas")
        await engine.close()
    """

    def __init__(
        self,
        config: EngineConfig,
        embedding_provider: EmbeddingProvider,
        analyzer: Optional[TextAnalysisProvider] = None,
        store: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self.analyzer = analyzer

        self.store = store or MemoryStore(Path(config.data_dir))
        self.graph = MemoryGraph(self.store)

        self.embedding_cache = EmbeddingCache(
            config.cache.embedding_max_size, config.cache.embedding_ttl, clock=clock
        )
        self.retrieval_cache = RetrievalCache(
            config.cache.retrieval_max_size, config.cache.retrieval_ttl, clock=clock
        )

        self.embeddings = EmbeddingService(
            embedding_provider,
            self.embedding_cache,
            dimension=config.providers.embedding_dimension,
            timeout=config.providers.embed_timeout,
        )
        self.detector = DetectionEngine(analyzer, config.detection, timeout=config.providers.analyzer_timeout)
        self.dedup = DeduplicationEngine(self.store, config.dedup)
        self.relationships = RelationshipEngine(self.store, self.graph, config.relationships)
        self.ranker = RetrievalRanker(
            self.store, self.embeddings, self.retrieval_cache, config.retrieval, clock=clock
        )

        self.queue = BackgroundQueue(config.queue, clock=clock)
        self.queue.register_handler(TaskType.RELATIONSHIP_ANALYSIS, self._handle_relationships)
        self.queue.register_handler(TaskType.FACT_EXTRACTION, self._handle_facts)
        self.queue.register_handler(TaskType.CACHE_CLEANUP, self._handle_cache_cleanup)
        self.scheduler = QueueScheduler(
            self.queue, config.queue.interval, on_tick=[self._maybe_schedule_cleanup]
        )
        self._last_cleanup = clock()

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        config_path: Optional[Path] = None,
    ) -> "MemoryEngine":
        """Engine with the default providers: local sentence-transformers + Ollama."""
        config = config or load_config(config_path)
        p = config.providers
        return cls(
            config,
            embedding_provider=SentenceTransformerEmbedder(p.embedding_model),
            analyzer=OllamaTextAnalyzer(p.analyzer_base_url, p.analyzer_model, p.analyzer_timeout),
        )

    # =========================================================================
    # CREATION
    # =========================================================================

    def _require_owner(self, owner_id: Any) -> str:
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationError("owner_id must be a non-empty string", field="owner_id")
        return owner_id

    def _bound(self, content: str) -> str:
        """Trim to the maximum content length, on a word boundary where possible."""
        limit = self.config.detection.max_content_length
        if len(content) <= limit:
            return content
        cut = content[:limit].rsplit(" ", 1)[0] or content[:limit]
        logger.debug(f"Content truncated from {len(content)} to {len(cut)} characters")
        return cut

    async def create_or_merge(
        self,
        owner_id: str,
        text: str,
        context: ContextLike = None,
    ) -> CreateResult:
        """Detect, deduplicate and store a piece of conversation.

        Args:
            owner_id: Owner of the memory
            text: Raw message text
            context: Recent messages (list of {"role", "content"}) or a RetrievalContext

        Returns:
            CreateResult with action skip / merge / create

        Raises:
            ValidationError: owner_id or text is not usable
        """
        self._require_owner(owner_id)
        if not isinstance(text, str):
            raise ValidationError("text must be a string", field="text")

        try:
            content = self._bound(text.strip())
            messages = _as_context(context).messages
            detection = await self.detector.detect(content, messages)
            if not detection.should_remember:
                return CreateResult(DedupAction.SKIP, reason="not memory-worthy")
            return await self._store(
                owner_id, content, detection.category, detection.importance, detection.keywords
            )
        except ValidationError:
            raise
        except Exception as e:
            logger.warning(f"Memory creation failed for {owner_id}, skipping: {e}")
            return CreateResult(DedupAction.SKIP, reason=f"error: {e}")

    async def remember(
        self,
        owner_id: str,
        content: str,
        category: Union[MemoryCategory, str] = MemoryCategory.CONTEXT,
        importance: float = 0.5,
        keywords: Optional[list[str]] = None,
    ) -> CreateResult:
        """Store a memory the user asked for explicitly. No detection, strict validation.

        Raises:
            ValidationError: Empty/oversized content, unknown category, or
                importance outside [0, 1]
        """
        self._require_owner(owner_id)
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must be a non-empty string", field="content")
        content = content.strip()
        if len(content) > self.config.detection.max_content_length:
            raise ValidationError(
                f"content exceeds {self.config.detection.max_content_length} characters",
                field="content",
            )
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            raise ValidationError(f"importance must be a number, got {importance!r}", field="importance")
        if not 0.0 <= float(importance) <= 1.0:
            raise ValidationError(f"importance must be in [0, 1], got {importance}", field="importance")
        try:
            category = MemoryCategory.parse(category)
        except ValueError:
            raise ValidationError(f"unknown category {category!r}", field="category")

        keywords = keywords or extract_keywords(content, self.config.detection.max_keywords)

        try:
            return await self._store(owner_id, content, category, float(importance), keywords)
        except ValidationError:
            raise
        except Exception as e:
            logger.warning(f"Manual memory failed for {owner_id}, skipping: {e}")
            return CreateResult(DedupAction.SKIP, reason=f"error: {e}")

    async def _embed_or_none(self, owner_id: str, content: str) -> Optional[list[float]]:
        try:
            return (await self.embeddings.embed(owner_id, content)).vector
        except ProviderError as e:
            logger.warning(f"Embedding failed for {owner_id}, dedup will fail open: {e}")
            return None

    async def _store(
        self,
        owner_id: str,
        content: str,
        category: MemoryCategory,
        importance: float,
        keywords: list[str],
    ) -> CreateResult:
        fingerprint = semantic_hash(content)
        vector = await self._embed_or_none(owner_id, content)
        decision = self.dedup.decide(owner_id, fingerprint, vector)

        if decision.action == DedupAction.SKIP:
            return CreateResult(DedupAction.SKIP, decision.existing_id, decision.reason)

        if decision.action == DedupAction.MERGE:
            existing = self.store.get_memory(decision.existing_id, owner_id)
            if existing is not None:
                return self._merge(existing, content, fingerprint, keywords, importance, vector, decision)
            # Deleted between search and merge; store the candidate as new

        entry = MemoryEntry(
            owner_id=owner_id,
            content=content,
            category=category,
            importance_score=importance,
            keywords=keywords,
            embedding=vector,
            semantic_hash=fingerprint,
        )
        try:
            self.store.add_memory(entry)
        except DuplicateContentError as e:
            # A concurrent submission won the race; converge on its memory
            return CreateResult(DedupAction.SKIP, e.memory_id, "identical content already stored")

        self.graph.add_memory(owner_id, entry.id)
        if decision.related_id:
            self._link_related(owner_id, entry.id, decision)

        self._after_write(owner_id, entry.id)
        logger.info(f"Created memory {entry.id} for {owner_id} ({entry.category.value})")
        return CreateResult(DedupAction.CREATE, entry.id, decision.reason)

    def _merge(
        self,
        existing: MemoryEntry,
        content: str,
        fingerprint: str,
        keywords: list[str],
        importance: float,
        vector: Optional[list[float]],
        decision: DedupDecision,
    ) -> CreateResult:
        merged, aliases, conflict = self.dedup.merge(
            existing, content, fingerprint, keywords, importance, vector
        )
        self.store.update_memory(merged, aliases)

        reason = decision.reason
        if conflict is not None:
            self.store.add_review_flag(
                merged.owner_id,
                merged.id,
                conflict.stored_fact,
                conflict.new_fact,
                conflict.reason,
                new_content=content,
            )
            reason = f"merged, conflict flagged for review: {conflict.reason}"

        self._after_write(merged.owner_id, merged.id)
        logger.info(f"Merged into memory {merged.id} (similarity {decision.similarity:.2f})")
        return CreateResult(DedupAction.MERGE, merged.id, reason, conflict=conflict is not None)

    def _link_related(self, owner_id: str, memory_id: str, decision: DedupDecision) -> None:
        rel = MemoryRelationship(
            source_id=memory_id,
            target_id=decision.related_id,
            relationship_type=RelationshipType.RELATED,
            strength=decision.similarity,
            confidence=decision.similarity,
            context="similar at creation",
        )
        try:
            self.graph.add_relationship(owner_id, rel)
        except StorageError as e:
            logger.warning(f"Could not link {memory_id} to {decision.related_id}: {e}")

    def _enqueue(self, task_type: TaskType, payload: dict, priority: TaskPriority) -> Optional[BackgroundTask]:
        try:
            return self.queue.enqueue(task_type, payload, priority)
        except QueueOverflow as e:
            logger.debug(f"Background work dropped: {e}")
            return None

    def _after_write(self, owner_id: str, memory_id: str) -> None:
        self.retrieval_cache.invalidate_owner(owner_id)
        payload = {"owner_id": owner_id, "memory_id": memory_id}
        self._enqueue(TaskType.RELATIONSHIP_ANALYSIS, payload, TaskPriority.MEDIUM)
        self._enqueue(TaskType.FACT_EXTRACTION, payload, TaskPriority.LOW)

    # =========================================================================
    # RETRIEVAL & GRAPH
    # =========================================================================

    async def retrieve(
        self,
        owner_id: str,
        context: ContextLike,
        filters: Optional[RetrievalFilters] = None,
    ) -> RetrievalResult:
        """Ranked memories for a conversational context (query string, messages, or RetrievalContext)."""
        self._require_owner(owner_id)
        try:
            return await self.ranker.retrieve(owner_id, _as_context(context), filters)
        except StorageError as e:
            logger.warning(f"Retrieval failed for {owner_id}: {e}")
            return RetrievalResult(memories=[], degraded=True)

    def related(
        self,
        owner_id: str,
        memory_id: str,
        depth: int = 2,
        relation_types: Optional[list[Union[RelationshipType, str]]] = None,
    ) -> list[dict]:
        """Memories reachable from memory_id through the relationship graph."""
        self._require_owner(owner_id)
        types = [RelationshipType(t) for t in relation_types] if relation_types else None
        hops = self.graph.related(owner_id, memory_id, depth=depth, relation_types=types)
        memories = {m.id: m for m in self.store.get_memories([h["memory_id"] for h in hops], owner_id)}
        return [
            {**hop, "content": memories[hop["memory_id"]].content,
             "category": memories[hop["memory_id"]].category.value}
            for hop in hops
            if hop["memory_id"] in memories
        ]

    def delete_memory(self, owner_id: str, memory_id: str) -> bool:
        """Remove a memory with its facts, aliases, edges and vector."""
        self._require_owner(owner_id)
        deleted = self.store.delete_memory(memory_id, owner_id)
        if deleted:
            self.graph.remove_memory(memory_id)
            self.retrieval_cache.invalidate_owner(owner_id)
            logger.info(f"Deleted memory {memory_id} for {owner_id}")
        return deleted

    # =========================================================================
    # CONFLICT REVIEW
    # =========================================================================

    def list_conflicts(self, owner_id: str, include_resolved: bool = False) -> list[dict]:
        self._require_owner(owner_id)
        return self.store.list_review_flags(owner_id, include_resolved=include_resolved)

    async def resolve_conflict(self, owner_id: str, flag_id: str, accept_new: bool = False) -> bool:
        """Close a review flag.

        Args:
            owner_id: Owner of the flagged memory
            flag_id: Flag to resolve
            accept_new: Replace the stored content with the flagged new content

        Returns:
            True if an open flag was resolved
        """
        self._require_owner(owner_id)
        flag = self.store.get_review_flag(owner_id, flag_id)
        if flag is None or flag["resolved"]:
            return False

        if accept_new and flag["new_content"]:
            memory = self.store.get_memory(flag["memory_id"], owner_id)
            if memory is not None:
                old_hash = memory.semantic_hash
                memory.content = flag["new_content"]
                memory.semantic_hash = semantic_hash(memory.content)
                vector = await self._embed_or_none(owner_id, memory.content)
                if vector is not None:
                    memory.embedding = vector
                self.store.update_memory(memory, [old_hash])
                self._after_write(owner_id, memory.id)

        return self.store.resolve_review_flag(
            owner_id, flag_id, "accepted_new" if accept_new else "kept_existing"
        )

    # =========================================================================
    # BACKGROUND WORK
    # =========================================================================

    async def _handle_relationships(self, task: BackgroundTask) -> None:
        await self.relationships.analyze_memory(task.payload["owner_id"], task.payload["memory_id"])

    async def _handle_facts(self, task: BackgroundTask) -> None:
        await self.relationships.extract_facts(task.payload["owner_id"], task.payload["memory_id"])

    async def _handle_cache_cleanup(self, task: BackgroundTask) -> None:
        removed = self.embedding_cache.cleanup() + self.retrieval_cache.cleanup()
        if removed:
            logger.debug(f"Cache cleanup removed {removed} expired entries")

    def _maybe_schedule_cleanup(self) -> None:
        now = self._clock()
        if now - self._last_cleanup >= self.config.cache.cleanup_interval:
            self._last_cleanup = now
            self._enqueue(TaskType.CACHE_CLEANUP, {}, TaskPriority.LOW)

    async def process_background_once(self) -> dict:
        """Run a single queue cycle now (tests and manual flushes)."""
        try:
            summary = await self.queue.process_cycle()
        except CircuitOpenError as e:
            return {"completed": [], "failed": [], "paused": True, "retry_in": e.retry_in}
        return {**summary, "paused": False}

    def start(self) -> None:
        """Start the periodic background scheduler (needs a running event loop)."""
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def close(self) -> None:
        await self.stop()
        if self.analyzer is not None and hasattr(self.analyzer, "aclose"):
            await self.analyzer.aclose()
        self.store.close()

    # =========================================================================
    # STATS
    # =========================================================================

    def get_stats(self, owner_id: str) -> dict:
        self._require_owner(owner_id)
        return {
            **self.store.get_stats(owner_id),
            "graph": self.graph.get_stats(owner_id),
        }

    def get_metrics(self) -> dict:
        return {
            "detection": self.detector.get_metrics(),
            "dedup": self.dedup.get_metrics(),
            "relationships": self.relationships.get_metrics(),
            "retrieval": self.ranker.get_metrics(),
            "queue": self.queue.get_metrics(),
            "embedding_cache": self.embedding_cache.get_metrics(),
            "retrieval_cache": self.retrieval_cache.get_metrics(),
        }
