"""
Error taxonomy for the memory engine.

Only ValidationError is meant to reach a caller. Everything else is
recovered inside the engine: provider errors fall back to heuristics,
storage errors degrade retrieval, queue errors are counted and logged.
"""

from typing import Optional


class MemoryEngineError(Exception):
    """Base class for every error raised by coachmem."""
    pass


class ConfigError(MemoryEngineError):
    """Configuration value is missing or out of range."""
    pass


class ProviderError(MemoryEngineError):
    """Text-analysis or embedding provider is unavailable or misbehaved."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderTimeout(ProviderError):
    """Provider did not answer within the configured timeout."""
    pass


class EmbeddingDimensionError(ProviderError):
    """Provider returned a vector whose length differs from the system dimension."""

    def __init__(self, expected: int, actual: int, provider: Optional[str] = None):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            provider=provider,
        )
        self.expected = expected
        self.actual = actual


class ValidationError(MemoryEngineError):
    """Caller supplied an invalid value (importance, category, content)."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DedupConflict(MemoryEngineError):
    """A merge would overwrite a stored fact held with higher confidence."""

    def __init__(self, memory_id: str, stored_fact: str, new_fact: str, reason: str):
        super().__init__(f"Merge conflict on {memory_id}: {reason}")
        self.memory_id = memory_id
        self.stored_fact = stored_fact
        self.new_fact = new_fact
        self.reason = reason


class QueueOverflow(MemoryEngineError):
    """A background task was dropped because the queue is full."""

    def __init__(self, task_id: str, depth: int):
        super().__init__(f"Background queue full ({depth}), dropped task {task_id}")
        self.task_id = task_id
        self.depth = depth


class CircuitOpenError(MemoryEngineError):
    """Background processing is paused by the circuit breaker."""

    def __init__(self, retry_in: float):
        super().__init__(f"Circuit breaker open, retry in {retry_in:.1f}s")
        self.retry_in = retry_in


class StorageError(MemoryEngineError):
    """Persistence or vector index operation failed."""
    pass


class DuplicateContentError(StorageError):
    """Insert lost a race: the owner already holds a memory with this fingerprint."""

    def __init__(self, owner_id: str, semantic_hash: str, memory_id: str):
        super().__init__(f"Owner {owner_id} already stores {semantic_hash} as {memory_id}")
        self.owner_id = owner_id
        self.semantic_hash = semantic_hash
        self.memory_id = memory_id
