#!/usr/bin/env python3
"""
Embedding Service Tests

Cache first, provider on a miss, and every provider problem surfaces as
ProviderError so creation can fail open.
"""

import math

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from coachmem.cache import EmbeddingCache
from coachmem.embedding import EmbeddingService, cosine_similarity
from coachmem.errors import EmbeddingDimensionError, ProviderError, ProviderTimeout
from conftest import DIM, FakeEmbedder


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def service(embedder):
    return EmbeddingService(embedder, EmbeddingCache(max_size=100, ttl=60), dimension=DIM, timeout=1.0)


class TestEmbed:
    """Caching and fingerprints."""

    @pytest.mark.asyncio
    async def test_second_call_hits_cache(self, service, embedder):
        first = await service.embed("user_1", "I like morning workouts")
        second = await service.embed("user_1", "I like morning workouts")

        assert not first.cached
        assert second.cached
        assert first.vector == second.vector
        assert embedder.calls == 1

    @pytest.mark.asyncio
    async def test_formatting_variants_share_cache(self, service, embedder):
        await service.embed("user_1", "I like tea.")
        result = await service.embed("user_1", "i like   TEA")
        assert result.cached
        assert embedder.calls == 1

    @pytest.mark.asyncio
    async def test_cache_is_per_owner(self, service, embedder):
        await service.embed("user_1", "I like tea")
        result = await service.embed("user_2", "I like tea")
        assert not result.cached
        assert embedder.calls == 2

    @pytest.mark.asyncio
    async def test_fingerprint_returned(self, service):
        result = await service.embed("user_1", "I like tea")
        assert result.semantic_hash == service.fingerprint("I like tea")
        assert len(result.vector) == DIM


class TestProviderFailures:
    """Failures are typed, nothing is cached."""

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, embedder):
        service = EmbeddingService(FakeEmbedder(dimension=16), EmbeddingCache(10, 60), dimension=DIM)
        with pytest.raises(EmbeddingDimensionError) as exc:
            await service.embed("user_1", "I like tea")
        assert exc.value.expected == DIM
        assert exc.value.actual == 16

    @pytest.mark.asyncio
    async def test_non_finite_vector(self, service, embedder):
        embedder.pin("I like tea", [math.nan] * DIM)
        with pytest.raises(ProviderError):
            await service.embed("user_1", "I like tea")

    @pytest.mark.asyncio
    async def test_provider_down(self, service, embedder):
        embedder.fail = True
        with pytest.raises(ProviderError):
            await service.embed("user_1", "I like tea")
        assert len(service.cache) == 0

    @pytest.mark.asyncio
    async def test_timeout(self, embedder):
        embedder.delay = 1.0
        service = EmbeddingService(embedder, EmbeddingCache(10, 60), dimension=DIM, timeout=0.01)
        with pytest.raises(ProviderTimeout):
            await service.embed("user_1", "I like tea")


class TestCosineSimilarity:

    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_degenerate_inputs(self):
        assert cosine_similarity(None, [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_fake_embedder_pair(self):
        # The merge scenario elsewhere relies on this pair landing in the high band
        embedder = FakeEmbedder()
        a = embedder.vectorize("I like morning workouts")
        b = embedder.vectorize("I prefer exercising in the morning")
        assert cosine_similarity(a, b) == pytest.approx(3.25 / 3.75)
