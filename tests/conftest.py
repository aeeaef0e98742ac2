"""
Shared test fixtures.

The fake embedder is deterministic: every known word has its own dimension
(weight 0.5) and synonyms share a concept dimension (weight 1.0), so
"I like morning workouts" and "I prefer exercising in the morning" land at
cosine ~0.87 without any model download. Exact similarities can be forced
with FakeEmbedder.pin().
"""

import asyncio
import hashlib
import math
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from coachmem.config import load_config
from coachmem.errors import ProviderError
from coachmem.providers import EmbeddingProvider, TextAnalysisProvider
from coachmem.text import STOPWORDS, normalize_text

DIM = 128

CONCEPTS = {
    "like": "pref_pos", "likes": "pref_pos", "prefer": "pref_pos", "prefers": "pref_pos",
    "love": "pref_pos", "loves": "pref_pos", "enjoy": "pref_pos", "enjoys": "pref_pos",
    "hate": "pref_neg", "hates": "pref_neg", "dislike": "pref_neg", "dislikes": "pref_neg",
    "workout": "exercise", "workouts": "exercise", "exercising": "exercise", "exercise": "exercise",
    "training": "exercise", "running": "exercise", "run": "exercise",
    "morning": "morning", "mornings": "morning", "early": "morning",
    "evening": "evening", "night": "evening",
    "coffee": "coffee", "espresso": "coffee",
    "tea": "tea",
    "peanuts": "allergy", "peanut": "allergy", "allergic": "allergy", "nuts": "allergy",
    "sleep": "sleep", "sleeping": "sleep",
    "breakfast": "food", "lunch": "food", "dinner": "food", "meal": "food", "meals": "food",
    "vegetarian": "diet", "vegan": "diet", "diet": "diet",
    "yoga": "yoga",
    "swimming": "swim", "swim": "swim",
    "weight": "weight", "lose": "weight", "kg": "weight",
}
CONCEPT_DIMS = {name: i for i, name in enumerate(sorted(set(CONCEPTS.values())))}

VOCAB = sorted({
    *CONCEPTS.keys(),
    "daily", "specifically", "maybe", "goal", "want", "remind", "water", "drink",
    "knee", "injury", "walk", "walking", "steps", "calories", "protein", "spicy", "food",
    "stress", "work", "job", "kids", "wife", "husband", "doctor", "marathon", "10k",
})
VOCAB_OFFSET = 20
VOCAB_DIMS = {word: VOCAB_OFFSET + i for i, word in enumerate(VOCAB)}
HASHED_START = VOCAB_OFFSET + len(VOCAB)
HASHED_SLOTS = 6
PIN_A, PIN_B = DIM - 2, DIM - 1

assert len(CONCEPT_DIMS) <= VOCAB_OFFSET
assert HASHED_START + HASHED_SLOTS <= PIN_A


def pinned_vector(cosine: float) -> list[float]:
    """Unit vector at exactly `cosine` to pinned_vector(1.0)."""
    vector = [0.0] * DIM
    vector[PIN_A] = cosine
    vector[PIN_B] = math.sqrt(max(0.0, 1.0 - cosine * cosine))
    return vector


class FakeEmbedder(EmbeddingProvider):
    """Bag-of-concepts embedder with a fixed vocabulary."""

    name = "fake"

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.calls = 0
        self.fail = False
        self.delay = 0.0
        self.pinned: dict[str, list[float]] = {}

    def pin(self, text: str, vector: list[float]) -> None:
        self.pinned[normalize_text(text)] = vector

    def vectorize(self, text: str) -> list[float]:
        vector = [0.0] * max(DIM, self.dimension)
        for word in normalize_text(text).split():
            if word in STOPWORDS:
                continue
            if word in CONCEPTS:
                vector[CONCEPT_DIMS[CONCEPTS[word]]] += 1.0
            if word in VOCAB_DIMS:
                vector[VOCAB_DIMS[word]] += 0.5
            else:
                slot = int(hashlib.md5(word.encode()).hexdigest(), 16) % HASHED_SLOTS
                vector[HASHED_START + slot] += 0.5
        if not any(vector):
            vector[HASHED_START] = 1.0
        return vector[: self.dimension]

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("fake embedder is down", provider=self.name)
        key = normalize_text(text)
        if key in self.pinned:
            return list(self.pinned[key])
        return self.vectorize(text)


class FakeAnalyzer(TextAnalysisProvider):
    """Returns a canned reply, raises, or hangs."""

    name = "fake-analyzer"

    def __init__(self, reply=None, error: Exception = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = 0

    async def analyze(self, text, context=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return dict(self.reply) if isinstance(self.reply, dict) else self.reply


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def make_config(temp_data_dir):
    """Build an EngineConfig rooted in the temp dir, with test overrides."""
    def _make(**sections):
        overrides = {"data_dir": str(temp_data_dir), "providers": {"embedding_dimension": DIM}}
        for section, values in sections.items():
            overrides.setdefault(section, {}).update(values)
        return load_config(path=temp_data_dir / "absent.yaml", overrides=overrides)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def store(temp_data_dir):
    """Fresh memory store for each test."""
    from coachmem.storage import MemoryStore
    store = MemoryStore(data_dir=temp_data_dir)
    yield store
    store.close()


@pytest.fixture
def make_engine(make_config, fake_embedder):
    """Engine factory wired to the fake embedder; heuristic detection unless an analyzer is given."""
    from coachmem.engine import MemoryEngine
    engines = []

    def _make(analyzer=None, clock=None, **sections):
        kwargs = {"clock": clock} if clock else {}
        engine = MemoryEngine(make_config(**sections), fake_embedder, analyzer=analyzer, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.store.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def clock():
    return FakeClock()
