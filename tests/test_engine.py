#!/usr/bin/env python3
"""
Memory Engine Scenario Tests

End-to-end behaviour through the MemoryEngine facade:
1. Creation - merge, idempotence, related links, concurrency
2. Failure handling - providers down, errors become skips
3. Validation - strict remember()
4. Background - relationship analysis, facts, cleanup, pause
5. Conflicts - flagged merges and their resolution
6. Deletion - cascades through graph, facts and caches
"""

import asyncio
import dataclasses
import time

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from coachmem.errors import ProviderError, ValidationError
from coachmem.models import (
    DedupAction,
    MemoryCategory,
    TaskType,
)
from conftest import FakeAnalyzer, pinned_vector


class TestCreation:
    """create_or_merge() outcomes."""

    @pytest.mark.asyncio
    async def test_create(self, engine):
        result = await engine.create_or_merge("user_a", "I'm allergic to peanuts")

        assert result.action == DedupAction.CREATE
        memory = engine.store.get_memory(result.memory_id, "user_a")
        assert memory.category == MemoryCategory.PERSONAL_INFO
        assert memory.importance_score == 0.8
        assert "peanuts" in memory.keywords

    @pytest.mark.asyncio
    async def test_small_talk_skipped(self, engine):
        result = await engine.create_or_merge("user_a", "ok thanks, see you")
        assert result.action == DedupAction.SKIP
        assert result.reason == "not memory-worthy"
        assert engine.store.count_memories("user_a") == 0

    @pytest.mark.asyncio
    async def test_similar_statement_merges(self, engine):
        first = await engine.create_or_merge("user_a", "I like morning workouts")
        second = await engine.create_or_merge("user_a", "I prefer exercising in the morning")

        assert first.action == DedupAction.CREATE
        assert second.action == DedupAction.MERGE
        assert second.memory_id == first.memory_id
        assert engine.store.count_memories("user_a") == 1

        merged = engine.store.get_memory(first.memory_id)
        assert {"like", "morning", "workouts", "prefer", "exercising"} <= set(merged.keywords)
        assert merged.content == "I prefer exercising in the morning"

    @pytest.mark.asyncio
    async def test_resubmission_is_idempotent(self, engine):
        first = await engine.create_or_merge("user_a", "I like morning workouts")
        await engine.create_or_merge("user_a", "I prefer exercising in the morning")

        for text in ("I like morning workouts", "i like morning workouts!!", "I prefer exercising in the morning"):
            again = await engine.create_or_merge("user_a", text)
            assert again.action == DedupAction.SKIP
            assert again.memory_id == first.memory_id
        assert engine.store.count_memories("user_a") == 1

    @pytest.mark.asyncio
    async def test_related_band_links_at_creation(self, engine, fake_embedder):
        fake_embedder.pin("I drink coffee every morning", pinned_vector(1.0))
        fake_embedder.pin("I like a strong coffee", pinned_vector(0.75))

        a = await engine.remember("user_a", "I drink coffee every morning", category="context")
        b = await engine.remember("user_a", "I like a strong coffee", category="preference")

        assert a.action == b.action == DedupAction.CREATE
        hops = engine.related("user_a", b.memory_id)
        assert [(h["memory_id"], h["relationship_type"]) for h in hops] == [(a.memory_id, "related")]

    @pytest.mark.asyncio
    async def test_concurrent_identical_submissions(self, engine):
        results = await asyncio.gather(*[
            engine.create_or_merge("user_a", "I'm allergic to peanuts") for _ in range(5)
        ])

        created = [r for r in results if r.action == DedupAction.CREATE]
        assert len(created) == 1
        assert {r.memory_id for r in results} == {created[0].memory_id}
        assert engine.store.count_memories("user_a") == 1

    @pytest.mark.asyncio
    async def test_owners_are_separate(self, engine):
        a = await engine.create_or_merge("user_a", "I'm allergic to peanuts")
        b = await engine.create_or_merge("user_b", "I'm allergic to peanuts")
        assert a.action == b.action == DedupAction.CREATE
        assert a.memory_id != b.memory_id

    @pytest.mark.asyncio
    async def test_long_content_bounded(self, make_engine):
        engine = make_engine(detection={"max_content_length": 60})
        text = "I prefer morning workouts " + "because the gym is quiet " * 10
        result = await engine.create_or_merge("user_a", text)

        memory = engine.store.get_memory(result.memory_id)
        assert len(memory.content) <= 60


class TestMonotonicity:
    """Tighter dedup thresholds never store fewer memories."""

    @pytest.mark.asyncio
    async def test_raising_thresholds(self, engine, fake_embedder):
        fake_embedder.pin("I like coffee in the morning", pinned_vector(1.0))
        fake_embedder.pin("I like my morning coffee", pinned_vector(0.9))

        counts = []
        bands = [(0.80, 0.70, 0.60), (0.95, 0.85, 0.70), (0.95, 0.92, 0.70), (0.99, 0.98, 0.97)]
        for i, (exact, high, related) in enumerate(bands):
            engine.dedup.config = dataclasses.replace(
                engine.dedup.config, exact_threshold=exact, high_threshold=high, related_threshold=related,
            )
            owner = f"user_{i}"
            await engine.create_or_merge(owner, "I like coffee in the morning")
            await engine.create_or_merge(owner, "I like my morning coffee")
            counts.append(engine.store.count_memories(owner))

        assert counts == sorted(counts)
        assert counts[0] == 1
        assert counts[-1] == 2


class TestFailureHandling:
    """Providers down never block a write."""

    @pytest.mark.asyncio
    async def test_analyzer_down_uses_heuristic(self, make_engine):
        engine = make_engine(analyzer=FakeAnalyzer(error=ProviderError("down")))
        result = await engine.create_or_merge("user_a", "I'm allergic to peanuts")

        assert result.action == DedupAction.CREATE
        assert engine.get_metrics()["detection"]["provider_failures"] == 1

    @pytest.mark.asyncio
    async def test_analyzer_timeout_uses_heuristic(self, make_engine):
        engine = make_engine(
            analyzer=FakeAnalyzer(reply={"shouldRemember": False}, delay=1.0),
            providers={"analyzer_timeout": 0.01},
        )
        result = await engine.create_or_merge("user_a", "I'm allergic to peanuts")
        assert result.action == DedupAction.CREATE

    @pytest.mark.asyncio
    async def test_analyzer_result_used(self, make_engine):
        engine = make_engine(analyzer=FakeAnalyzer(reply={
            "shouldRemember": True, "category": "instruction", "importance": 1.0, "keywords": ["metric"],
        }))
        result = await engine.create_or_merge("user_a", "Use kilograms when talking about my weight")

        memory = engine.store.get_memory(result.memory_id)
        assert memory.category == MemoryCategory.INSTRUCTION
        assert memory.importance_score == 1.0

    @pytest.mark.asyncio
    async def test_embedder_down_fails_open(self, engine, fake_embedder):
        fake_embedder.fail = True
        first = await engine.create_or_merge("user_a", "I'm allergic to peanuts")
        again = await engine.create_or_merge("user_a", "I'm allergic to peanuts")

        assert first.action == DedupAction.CREATE
        assert engine.store.get_memory(first.memory_id).embedding is None
        assert again.action == DedupAction.SKIP
        assert engine.get_metrics()["dedup"]["fail_open"] == 1

    @pytest.mark.asyncio
    async def test_internal_error_becomes_skip(self, engine, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(engine.dedup, "decide", broken)
        result = await engine.create_or_merge("user_a", "I'm allergic to peanuts")

        assert result.action == DedupAction.SKIP
        assert result.reason.startswith("error:")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("owner_id", ["", "   ", None, 42])
    async def test_bad_owner(self, engine, owner_id):
        with pytest.raises(ValidationError):
            await engine.create_or_merge(owner_id, "I'm allergic to peanuts")

    @pytest.mark.asyncio
    async def test_bad_text(self, engine):
        with pytest.raises(ValidationError):
            await engine.create_or_merge("user_a", None)


class TestRemember:
    """Strict manual storage."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("importance", [0.0, 0.3, 1.0, 1])
    async def test_importance_kept(self, engine, importance):
        result = await engine.remember("user_a", "I walk the dog every evening", importance=importance)
        assert engine.store.get_memory(result.memory_id).importance_score == float(importance)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs,field", [
        ({"importance": 1.5}, "importance"),
        ({"importance": -0.1}, "importance"),
        ({"importance": "high"}, "importance"),
        ({"importance": True}, "importance"),
        ({"category": "hobby"}, "category"),
    ])
    async def test_rejected(self, engine, kwargs, field):
        with pytest.raises(ValidationError) as exc:
            await engine.remember("user_a", "I walk the dog every evening", **kwargs)
        assert exc.value.field == field
        assert engine.store.count_memories("user_a") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_empty_content(self, engine, content):
        with pytest.raises(ValidationError):
            await engine.remember("user_a", content)

    @pytest.mark.asyncio
    async def test_oversized_content(self, make_engine):
        engine = make_engine(detection={"max_content_length": 20})
        with pytest.raises(ValidationError):
            await engine.remember("user_a", "x" * 21)

    @pytest.mark.asyncio
    async def test_keywords_default_from_content(self, engine):
        result = await engine.remember("user_a", "Knee injury from marathon training", category="personal_info")
        memory = engine.store.get_memory(result.memory_id)
        assert memory.keywords[:2] == ["knee", "injury"]


class TestBackground:
    """Queue-driven work."""

    @pytest.mark.asyncio
    async def test_writes_enqueue_analysis(self, engine):
        await engine.create_or_merge("user_a", "I love coffee")
        types = [t.task_type for t in engine.queue.pending()]
        assert types == [TaskType.RELATIONSHIP_ANALYSIS, TaskType.FACT_EXTRACTION]

    @pytest.mark.asyncio
    async def test_contradiction_detected(self, engine):
        love = await engine.create_or_merge("user_a", "I love coffee")
        hate = await engine.create_or_merge("user_a", "I hate coffee")
        assert hate.action == DedupAction.CREATE

        summary = await engine.process_background_once()
        assert not summary["paused"]
        assert len(summary["completed"]) == 4

        assert engine.graph.find_contradictions("user_a", love.memory_id) == [hate.memory_id]
        hops = engine.related("user_a", love.memory_id, relation_types=["contradicts"])
        assert hops[0]["memory_id"] == hate.memory_id
        assert hops[0]["content"] == "I hate coffee"
        assert hops[0]["confidence"] >= 0.9

    @pytest.mark.asyncio
    async def test_slow_analysis_times_out(self, make_engine, monkeypatch):
        engine = make_engine(queue={"task_timeout": 0.05, "max_retries": 0})
        for content in ("I love coffee", "I hate coffee", "I love yoga"):
            result = await engine.create_or_merge("user_a", content)
            assert result.action == DedupAction.CREATE

        def slow_classify(memory, other, similarity=None):
            time.sleep(0.1)
            return None

        monkeypatch.setattr(engine.relationships, "classify", slow_classify)
        await engine.process_background_once()

        assert engine.queue.get_metrics()["timeouts"] >= 1
        timed_out = [t for t in engine.queue.dead_letters if t.last_error.startswith("timed out")]
        assert timed_out
        assert all(t.task_type == TaskType.RELATIONSHIP_ANALYSIS for t in timed_out)

    @pytest.mark.asyncio
    async def test_facts_extracted(self, engine):
        result = await engine.create_or_merge("user_a", "I love yoga but I hate running")
        await engine.process_background_once()

        facts = engine.store.get_facts(result.memory_id)
        assert {f.content for f in facts} == {"I love yoga", "I hate running"}

    @pytest.mark.asyncio
    async def test_paused_when_circuit_open(self, engine):
        for _ in range(engine.config.queue.failure_threshold):
            engine.queue.breaker.record_failure()

        summary = await engine.process_background_once()
        assert summary["paused"]
        assert summary["retry_in"] > 0

    @pytest.mark.asyncio
    async def test_creation_works_while_paused(self, engine):
        for _ in range(engine.config.queue.failure_threshold):
            engine.queue.breaker.record_failure()

        result = await engine.create_or_merge("user_a", "I love coffee")
        assert result.action == DedupAction.CREATE

    @pytest.mark.asyncio
    async def test_periodic_cache_cleanup(self, make_engine, clock):
        engine = make_engine(clock=clock, cache={"embedding_ttl": 60.0, "cleanup_interval": 300.0})
        await engine.create_or_merge("user_a", "I love coffee")
        assert len(engine.embedding_cache) == 1
        await engine.process_background_once()

        clock.advance(301)
        for hook in engine.scheduler.on_tick:
            hook()
        assert [t.task_type for t in engine.queue.pending()] == [TaskType.CACHE_CLEANUP]

        await engine.process_background_once()
        assert len(engine.embedding_cache) == 0

    @pytest.mark.asyncio
    async def test_scheduler_lifecycle(self, make_engine):
        engine = make_engine(queue={"interval": 0.01})
        await engine.create_or_merge("user_a", "I love coffee")

        engine.start()
        await asyncio.sleep(0.1)
        await engine.stop()

        assert len(engine.queue) == 0
        assert engine.get_metrics()["queue"]["processed"] == 2


class TestConflicts:
    """Merges that would overwrite a stronger stored fact."""

    @pytest.fixture
    def pinned(self, fake_embedder):
        fake_embedder.pin("I always and specifically like morning workouts", pinned_vector(1.0))
        fake_embedder.pin("I maybe hate morning workouts", pinned_vector(0.9))

    @pytest.mark.asyncio
    async def test_conflict_flagged(self, engine, pinned):
        first = await engine.create_or_merge("user_a", "I always and specifically like morning workouts")
        second = await engine.create_or_merge("user_a", "I maybe hate morning workouts")

        assert second.action == DedupAction.MERGE
        assert second.conflict
        memory = engine.store.get_memory(first.memory_id)
        assert memory.content == "I always and specifically like morning workouts"

        conflicts = engine.list_conflicts("user_a")
        assert len(conflicts) == 1
        assert conflicts[0]["new_content"] == "I maybe hate morning workouts"
        assert engine.get_stats("user_a")["open_conflicts"] == 1

    @pytest.mark.asyncio
    async def test_keep_existing(self, engine, pinned):
        first = await engine.create_or_merge("user_a", "I always and specifically like morning workouts")
        await engine.create_or_merge("user_a", "I maybe hate morning workouts")
        flag = engine.list_conflicts("user_a")[0]

        assert await engine.resolve_conflict("user_a", flag["id"])
        assert engine.list_conflicts("user_a") == []
        assert engine.store.get_memory(first.memory_id).content.startswith("I always")
        assert not await engine.resolve_conflict("user_a", flag["id"])

    @pytest.mark.asyncio
    async def test_accept_new(self, engine, pinned):
        first = await engine.create_or_merge("user_a", "I always and specifically like morning workouts")
        await engine.create_or_merge("user_a", "I maybe hate morning workouts")
        flag = engine.list_conflicts("user_a")[0]

        assert await engine.resolve_conflict("user_a", flag["id"], accept_new=True)
        memory = engine.store.get_memory(first.memory_id)
        assert memory.content == "I maybe hate morning workouts"
        assert engine.list_conflicts("user_a", include_resolved=True)[0]["resolution"] == "accepted_new"

    @pytest.mark.asyncio
    async def test_other_owner_cannot_resolve(self, engine, pinned):
        await engine.create_or_merge("user_a", "I always and specifically like morning workouts")
        await engine.create_or_merge("user_a", "I maybe hate morning workouts")
        flag = engine.list_conflicts("user_a")[0]
        assert not await engine.resolve_conflict("user_b", flag["id"])


class TestDeletion:
    """Everything attached to a memory goes with it."""

    @pytest.mark.asyncio
    async def test_delete_cascades(self, engine):
        love = await engine.create_or_merge("user_a", "I love coffee")
        hate = await engine.create_or_merge("user_a", "I hate coffee")
        await engine.process_background_once()
        await engine.retrieve("user_a", "coffee")

        assert engine.delete_memory("user_a", love.memory_id)

        assert engine.store.get_memory(love.memory_id) is None
        assert engine.related("user_a", hate.memory_id) == []
        assert engine.get_stats("user_a")["relationships"] == 0
        assert engine.store.get_facts(love.memory_id) == []

        result = await engine.retrieve("user_a", "coffee")
        assert not result.cached
        assert love.memory_id not in [r.memory.id for r in result.memories]

    @pytest.mark.asyncio
    async def test_deleted_text_can_be_stored_again(self, engine):
        first = await engine.create_or_merge("user_a", "I love coffee")
        engine.delete_memory("user_a", first.memory_id)
        again = await engine.create_or_merge("user_a", "I love coffee")
        assert again.action == DedupAction.CREATE

    @pytest.mark.asyncio
    async def test_other_owner_cannot_delete(self, engine):
        result = await engine.create_or_merge("user_a", "I love coffee")
        assert not engine.delete_memory("user_b", result.memory_id)

    @pytest.mark.asyncio
    async def test_background_task_for_deleted_memory(self, engine):
        result = await engine.create_or_merge("user_a", "I love coffee")
        engine.delete_memory("user_a", result.memory_id)

        summary = await engine.process_background_once()
        assert len(summary["completed"]) == 2
        assert engine.store.get_facts(result.memory_id) == []


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_and_metrics(self, engine):
        await engine.create_or_merge("user_a", "I love coffee")
        await engine.create_or_merge("user_a", "I'm allergic to peanuts")

        stats = engine.get_stats("user_a")
        assert stats["total_memories"] == 2
        assert stats["by_category"]["preference"] == 1
        assert stats["by_category"]["personal_info"] == 1
        assert stats["graph"]["nodes"] == 2

        metrics = engine.get_metrics()
        assert set(metrics) == {
            "detection", "dedup", "relationships", "retrieval",
            "queue", "embedding_cache", "retrieval_cache",
        }
        assert metrics["dedup"]["created"] == 2
