"""
Data model for the memory engine.

Four stored things:
- MemoryEntry: one remembered statement owned by one user
- AtomicFact: a single proposition pulled out of a MemoryEntry
- MemoryRelationship: a typed, directed edge between two memories
- BackgroundTask: a unit of deferred work on the background queue

Plus the small result types passed between components.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# =============================================================================
# ENUMS
# =============================================================================

class MemoryCategory(str, Enum):
    """What kind of thing a memory is about."""
    PREFERENCE = "preference"
    PERSONAL_INFO = "personal_info"
    CONTEXT = "context"
    INSTRUCTION = "instruction"

    @classmethod
    def parse(cls, value: Any) -> "MemoryCategory":
        """Strict conversion; raises ValueError for unknown categories."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


class FactType(str, Enum):
    PREFERENCE = "preference"
    ATTRIBUTE = "attribute"
    RELATIONSHIP = "relationship"
    BEHAVIOR = "behavior"
    GOAL = "goal"


class RelationshipType(str, Enum):
    """Edge types between memories."""
    CONTRADICTS = "contradicts"    # opposite polarity on the same topic
    SUPPORTS = "supports"          # same claim, same polarity
    ELABORATES = "elaborates"      # source adds detail to target
    SUPERSEDES = "supersedes"      # newer source replaces older target
    RELATED = "related"            # same topic, no stronger signal


class TaskPriority(float, Enum):
    HIGH = 1.0
    MEDIUM = 0.5
    LOW = 0.1


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    RELATIONSHIP_ANALYSIS = "relationship_analysis"
    FACT_EXTRACTION = "fact_extraction"
    CACHE_CLEANUP = "cache_cleanup"


class DedupAction(str, Enum):
    SKIP = "skip"
    MERGE = "merge"
    CREATE = "create"


class SimilarityBand(str, Enum):
    EXACT = "exact"
    HIGH = "high"
    RELATED = "related"
    NONE = "none"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


# =============================================================================
# STORED ENTITIES
# =============================================================================

@dataclass
class MemoryEntry:
    """A remembered statement.

    importance_score is clamped into [0, 1] on construction. The category
    must be one of MemoryCategory; strings are converted.
    """
    owner_id: str
    content: str
    category: MemoryCategory = MemoryCategory.CONTEXT
    importance_score: float = 0.5
    keywords: list[str] = field(default_factory=list)
    embedding: Optional[list[float]] = None
    semantic_hash: str = ""
    id: str = field(default_factory=lambda: new_id("mem"))
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None

    def __post_init__(self):
        self.category = MemoryCategory.parse(self.category)
        self.importance_score = clamp(self.importance_score)
        # Keep keyword order stable but unique
        self.keywords = list(dict.fromkeys(k.lower() for k in self.keywords if k))

    def to_dict(self, include_embedding: bool = False) -> dict:
        data = {
            "id": self.id,
            "owner_id": self.owner_id,
            "content": self.content,
            "category": self.category.value,
            "importance_score": self.importance_score,
            "keywords": list(self.keywords),
            "semantic_hash": self.semantic_hash,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class AtomicFact:
    memory_id: str
    fact_type: FactType
    content: str
    confidence: float = 0.5
    verified: bool = False
    id: str = field(default_factory=lambda: new_id("fact"))
    extracted_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.fact_type = FactType(self.fact_type)
        self.confidence = clamp(self.confidence)


@dataclass
class MemoryRelationship:
    """Directed edge source -> target. Self-loops are rejected by the graph."""
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    strength: float = 0.5
    confidence: float = 0.5
    context: str = ""
    id: str = field(default_factory=lambda: new_id("rel"))
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.relationship_type = RelationshipType(self.relationship_type)
        self.strength = clamp(self.strength)
        self.confidence = clamp(self.confidence)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["relationship_type"] = self.relationship_type.value
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class BackgroundTask:
    task_type: TaskType
    payload: dict
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    id: str = field(default_factory=lambda: new_id("task"))
    created_at: datetime = field(default_factory=datetime.now)
    last_error: Optional[str] = None
    next_attempt_at: float = 0.0    # monotonic clock; 0 = ready now


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class DetectionResult:
    should_remember: bool
    category: MemoryCategory = MemoryCategory.CONTEXT
    importance: float = 0.0
    keywords: list[str] = field(default_factory=list)
    source: str = "none"            # provider, heuristic, none

    def __post_init__(self):
        self.category = MemoryCategory.parse(self.category)
        self.importance = clamp(self.importance)

    @classmethod
    def not_memorable(cls, source: str = "none") -> "DetectionResult":
        return cls(should_remember=False, source=source)


@dataclass
class EmbeddingResult:
    vector: Optional[list[float]]
    semantic_hash: str
    cached: bool = False


@dataclass
class DedupDecision:
    action: DedupAction
    band: SimilarityBand
    similarity: float = 0.0
    existing_id: Optional[str] = None
    related_id: Optional[str] = None
    reason: str = ""


@dataclass
class CreateResult:
    """What create_or_merge / remember did."""
    action: DedupAction
    memory_id: Optional[str] = None
    reason: str = ""
    conflict: bool = False

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "memory_id": self.memory_id,
            "reason": self.reason,
            "conflict": self.conflict,
        }


@dataclass
class RetrievalContext:
    """Conversation state a retrieval is made for."""
    messages: list[dict] = field(default_factory=list)   # {"role", "content"}
    query: Optional[str] = None
    recent_messages: int = 3

    def query_text(self) -> str:
        """Explicit query, else the last few user messages joined."""
        if self.query and self.query.strip():
            return self.query.strip()
        user_messages = [
            m.get("content", "").strip()
            for m in self.messages
            if m.get("role", "user") == "user" and m.get("content", "").strip()
        ]
        return " ".join(user_messages[-self.recent_messages:])


@dataclass
class RetrievalFilters:
    categories: Optional[list[MemoryCategory]] = None
    min_importance: float = 0.0
    max_results: Optional[int] = None

    def __post_init__(self):
        if self.categories is not None:
            self.categories = [MemoryCategory.parse(c) for c in self.categories]

    def fingerprint(self) -> str:
        cats = ",".join(sorted(c.value for c in self.categories)) if self.categories else "*"
        return f"{cats}|{self.min_importance:.3f}|{self.max_results}"


@dataclass
class RankedMemory:
    memory: MemoryEntry
    score: float
    semantic: float
    temporal: float
    importance: float
    access: float
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            **self.memory.to_dict(),
            "relevance": round(self.score, 4),
            "scores": {
                "semantic": round(self.semantic, 4),
                "temporal": round(self.temporal, 4),
                "importance": round(self.importance, 4),
                "access": round(self.access, 4),
            },
            "reasons": list(self.reasons),
        }


@dataclass
class RetrievalResult:
    memories: list[RankedMemory]
    degraded: bool = False          # vector search unavailable, keyword-only scores
    partial: bool = False           # timed out before every candidate was scored
    cached: bool = False
    threshold: float = 0.0
