"""
Embedding service - text in, (vector, fingerprint) out.

Every lookup first computes the semantic hash of the normalised text, then
checks the per-owner EmbeddingCache. Only a miss reaches the provider.
Provider failures are raised as ProviderError so the caller can decide to
skip deduplication instead of blocking the write.
"""

import asyncio
from typing import Optional, Sequence

import numpy as np

from coachmem.cache import EmbeddingCache
from coachmem.errors import EmbeddingDimensionError, ProviderError, ProviderTimeout
from coachmem.log import get_logger
from coachmem.models import EmbeddingResult
from coachmem.providers import EmbeddingProvider
from coachmem.text import normalize_text, semantic_hash

logger = get_logger("coachmem.embedding")


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is missing or zero."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class EmbeddingService:
    """Cached front for an EmbeddingProvider.

    Usage:
        service = EmbeddingService(provider, cache, dimension=384)
        result = await service.embed("user_1", "I like morning workouts")
        result.vector, result.semantic_hash
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        dimension: int,
        timeout: float = 10.0,
    ):
        self.provider = provider
        self.cache = cache
        self.dimension = dimension
        self.timeout = timeout

    def fingerprint(self, text: str) -> str:
        return semantic_hash(text)

    def _check(self, vector) -> list[float]:
        if vector is None:
            raise ProviderError("Provider returned no vector", provider=self.provider.name)
        values = [float(x) for x in vector]
        if len(values) != self.dimension:
            # Never truncate or pad: a mismatched model is a configuration bug
            raise EmbeddingDimensionError(self.dimension, len(values), provider=self.provider.name)
        if not np.all(np.isfinite(values)):
            raise ProviderError("Provider returned non-finite values", provider=self.provider.name)
        return values

    async def embed(self, owner_id: str, text: str) -> EmbeddingResult:
        """Return the embedding and fingerprint for text.

        Raises:
            ProviderError: Provider unavailable, timed out, or wrong dimension
        """
        fingerprint = self.fingerprint(text)
        cached = self.cache.get(owner_id, fingerprint)
        if cached is not None:
            return EmbeddingResult(vector=cached, semantic_hash=fingerprint, cached=True)

        try:
            raw = await asyncio.wait_for(
                self.provider.embed(normalize_text(text) or text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(
                f"Embedding timed out after {self.timeout}s", provider=self.provider.name
            )
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding failed: {e}", provider=self.provider.name)

        vector = self._check(raw)
        self.cache.set(owner_id, fingerprint, vector)
        return EmbeddingResult(vector=vector, semantic_hash=fingerprint, cached=False)
