"""
Detection - is this message worth remembering?

Two layers:
1. The text-analysis provider (an LLM), bounded by a timeout
2. A local pattern heuristic used when the provider fails or is absent

If both fail the message is simply not remembered. Detection never raises
into the caller and never writes anything.
"""

import asyncio
import re
from typing import Optional

from coachmem.config import DetectionConfig
from coachmem.errors import ProviderError
from coachmem.log import get_logger
from coachmem.models import DetectionResult, MemoryCategory
from coachmem.providers import TextAnalysisProvider
from coachmem.text import content_ratio, extract_keywords, tokenize

logger = get_logger("coachmem.detection")


# =============================================================================
# HEURISTIC PATTERNS
# =============================================================================

# "remember that I'm vegetarian" -> group 1 is the thing to remember
EXPLICIT_TRIGGERS = [
    re.compile(r"\bmake\s+sure\s+(?:you\s+)?remember\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bremember\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bdon'?t\s+forget\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bkeep\s+in\s+mind\s+(?:that\s+)?(.+)", re.IGNORECASE),
    re.compile(r"\bnote\s+that\s+(.+)", re.IGNORECASE),
    re.compile(r"\bsave\s+(?:this\s+)?to\s+memory\s*:?\s*(.+)", re.IGNORECASE),
]

EXPLICIT_IMPORTANCE = 0.9

# First match wins, so the more specific categories come first
CATEGORY_PATTERNS = [
    (
        re.compile(
            r"\b(from now on|please (?:always|never|don'?t|do not)|"
            r"(?:don'?t|do not|stop) (?:ask|suggest|recommend|remind)\w*|"
            r"always remind|call me|speak to me|talk to me)\b"
        ),
        MemoryCategory.INSTRUCTION,
        0.8,
    ),
    (
        re.compile(
            r"\b(allergic|allergy|allergies|intolerant|intolerance|cannot|can'?t eat|"
            r"injury|injured|diabetes|diabetic|asthma|medication|condition|pregnant)\b"
        ),
        MemoryCategory.PERSONAL_INFO,
        0.8,
    ),
    (
        re.compile(r"\b(goal|target|want to|trying to|aim to|plan to|hoping to)\b"),
        MemoryCategory.PERSONAL_INFO,
        0.9,
    ),
    (
        re.compile(r"\b(prefer|prefers|like|likes|love|loves|enjoy|enjoys|hate|hates|"
                   r"dislike|dislikes|favorite|favourite|avoid)\b"),
        MemoryCategory.PREFERENCE,
        0.7,
    ),
    (
        re.compile(r"\b(weight|exercise|exercising|workout|workouts|diet|calories|sleep|"
                   r"stress|running|training|meal|meals|steps)\b"),
        MemoryCategory.CONTEXT,
        0.6,
    ),
]

PLACEHOLDER_CONTENT = {"undefined", "null", "none", "n/a", "na", "nan", "[object object]"}

MIN_CONTENT_LENGTH = 5


def find_explicit_trigger(text: str) -> Optional[str]:
    """Return the text after an explicit "remember ..." trigger, if any."""
    for pattern in EXPLICIT_TRIGGERS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def validate_content(text: str) -> Optional[str]:
    """Return a rejection reason, or None if the content looks storable."""
    stripped = (text or "").strip()
    if len(stripped) < MIN_CONTENT_LENGTH:
        return "content too short"
    if stripped.lower() in PLACEHOLDER_CONTENT:
        return "placeholder content"
    words = tokenize(stripped)
    if len(words) > 3 and content_ratio(stripped) < 0.5:
        return "repetitive content"
    return None


def heuristic_detect(text: str, config: DetectionConfig) -> DetectionResult:
    """Pattern-based detection. No I/O, no model calls."""
    rejection = validate_content(text)
    if rejection:
        logger.debug(f"Heuristic rejected content: {rejection}")
        return DetectionResult.not_memorable("heuristic")

    explicit = find_explicit_trigger(text)
    body = (explicit or text).lower()

    category, importance = None, 0.0
    for pattern, pattern_category, pattern_importance in CATEGORY_PATTERNS:
        if pattern.search(body):
            category, importance = pattern_category, pattern_importance
            break

    if explicit:
        category = category or MemoryCategory.CONTEXT
        importance = max(importance, EXPLICIT_IMPORTANCE)

    if category is None or importance < config.min_importance:
        return DetectionResult.not_memorable("heuristic")

    return DetectionResult(
        should_remember=True,
        category=category,
        importance=importance,
        keywords=extract_keywords(explicit or text, config.max_keywords),
        source="heuristic",
    )


# =============================================================================
# DETECTION ENGINE
# =============================================================================

class DetectionEngine:
    """Provider first, heuristic second, "not memorable" last.

    Usage:
        detector = DetectionEngine(analyzer, config.detection, timeout=8.0)
        result = await detector.detect("I'm allergic to peanuts", context=messages)
    """

    def __init__(
        self,
        analyzer: Optional[TextAnalysisProvider],
        config: DetectionConfig,
        timeout: float = 8.0,
    ):
        self.analyzer = analyzer
        self.config = config
        self.timeout = timeout
        self._metrics = {
            "provider_calls": 0,
            "provider_failures": 0,
            "heuristic_fallbacks": 0,
            "detections": 0,
        }

    def _from_provider(self, raw: dict, text: str) -> DetectionResult:
        """Validate a provider reply. Any malformed field is a provider failure."""
        if not isinstance(raw, dict):
            raise ProviderError("Analysis result is not an object")

        should_remember = raw.get("shouldRemember", raw.get("should_remember"))
        if isinstance(should_remember, str) and should_remember.strip().lower() in ("true", "false"):
            should_remember = should_remember.strip().lower() == "true"
        if not isinstance(should_remember, bool):
            raise ProviderError(f"Invalid shouldRemember: {should_remember!r}")

        try:
            category = MemoryCategory.parse(raw.get("category", "context"))
        except ValueError:
            raise ProviderError(f"Invalid category: {raw.get('category')!r}")

        importance = raw.get("importance", 0.5)
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            raise ProviderError(f"Invalid importance: {importance!r}")
        if not 0.0 <= float(importance) <= 1.0:
            raise ProviderError(f"Importance out of range: {importance}")

        keywords = raw.get("keywords") or []
        if not isinstance(keywords, list):
            keywords = []
        keywords = [str(k).strip().lower() for k in keywords if str(k).strip()]
        if not keywords:
            keywords = extract_keywords(text, self.config.max_keywords)

        return DetectionResult(
            should_remember=should_remember,
            category=category,
            importance=importance,
            keywords=keywords[: self.config.max_keywords],
            source="provider",
        )

    async def _ask_provider(self, text: str, context: Optional[list[dict]]) -> DetectionResult:
        self._metrics["provider_calls"] += 1
        try:
            raw = await asyncio.wait_for(self.analyzer.analyze(text, context), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderError(f"Analyzer timed out after {self.timeout}s", provider=self.analyzer.name)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Analyzer failed: {e}", provider=self.analyzer.name)
        return self._from_provider(raw, text)

    async def detect(self, text: str, context: Optional[list[dict]] = None) -> DetectionResult:
        """Decide whether text is memory-worthy. Never raises."""
        self._metrics["detections"] += 1

        if validate_content(text):
            return DetectionResult.not_memorable("validation")

        if self.analyzer is not None:
            try:
                result = await self._ask_provider(text, context)
                if not result.should_remember and find_explicit_trigger(text):
                    # The user asked outright; honour it
                    result.should_remember = True
                    result.importance = max(result.importance, EXPLICIT_IMPORTANCE)
                return result
            except ProviderError as e:
                self._metrics["provider_failures"] += 1
                logger.warning(f"Analysis provider failed, using heuristic: {e}")

        self._metrics["heuristic_fallbacks"] += 1
        try:
            return heuristic_detect(text, self.config)
        except Exception as e:
            logger.warning(f"Heuristic detection failed, not remembering: {e}")
            return DetectionResult.not_memorable("none")

    def get_metrics(self) -> dict:
        return dict(self._metrics)
