"""
External providers - the two things the engine asks the outside world.

1. Embedding provider: text -> vector of a fixed dimension
2. Text-analysis provider: text -> {shouldRemember, category, importance, keywords}

Both are async. The engine never trusts them to be up: every call is
wrapped so failures turn into ProviderError and the caller falls back.
"""

import asyncio
import json
import re
from typing import Any, Optional

import httpx

from coachmem.errors import ProviderError, ProviderTimeout
from coachmem.log import get_logger

logger = get_logger("coachmem.providers")


class EmbeddingProvider:
    """Interface: turn text into a vector."""

    name = "embedding"

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError


class TextAnalysisProvider:
    """Interface: judge whether text is worth remembering."""

    name = "analysis"

    async def analyze(self, text: str, context: Optional[list[dict]] = None) -> dict:
        raise NotImplementedError


# =============================================================================
# EMBEDDINGS
# =============================================================================

class SentenceTransformerEmbedder(EmbeddingProvider):
    """Local embeddings via sentence-transformers.

    all-MiniLM-L6-v2 is fast and good quality: 384 dimensions, ~90MB model.
    The model is lazy-loaded on first use to keep startup quick.
    """

    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None

    @property
    def model(self):
        """Load the embedding model (lazy - only when first needed)."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, text: str) -> list[float]:
        return self.model.encode(text, normalize_embeddings=True).tolist()

    async def embed(self, text: str) -> list[float]:
        # encode() is CPU bound; keep it off the event loop
        try:
            return await asyncio.to_thread(self._encode, text)
        except Exception as e:
            raise ProviderError(f"Embedding failed: {e}", provider=self.name)


# =============================================================================
# TEXT ANALYSIS
# =============================================================================

ANALYSIS_PROMPT = """Analyze this wellness coaching message and decide if it contains information worth remembering for future coaching sessions.

Message: "{message}"

Previous context:
{context}

Use exactly one of these categories:
- "preference" for likes, dislikes, workout or food preferences
- "personal_info" for health conditions, allergies, lifestyle, background
- "context" for situational details that may be referenced later
- "instruction" for rules the user wants the coach to follow

Return JSON only:
{{"shouldRemember": true/false, "category": "preference|personal_info|context|instruction", "importance": 0.0-1.0, "keywords": ["key", "words"]}}"""


def parse_analysis_json(raw: str) -> dict:
    """Pull the first JSON object out of an LLM reply.

    Models wrap JSON in code fences or add prose around it, and sometimes
    leave trailing commas. Tries, in order: the first balanced {...},
    the first line that looks like an object, first '{' to last '}'.

    Raises:
        ProviderError: If nothing parseable is found
    """
    if not raw:
        raise ProviderError("Empty analysis response")

    cleaned = re.sub(r"```(?:json)?", "", raw).strip()

    candidates = []
    match = re.search(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", cleaned)
    if match:
        candidates.append(match.group(0))
    for line in cleaned.splitlines():
        line = line.strip()
        if line.startswith("{") and "}" in line:
            candidates.append(line)
            break
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        candidates.append(cleaned[first:last + 1])

    for candidate in candidates:
        candidate = re.sub(r",\s*}", "}", candidate)
        candidate = re.sub(r",\s*]", "]", candidate)
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise ProviderError(f"No JSON object in analysis response: {raw[:100]!r}")


class OllamaTextAnalyzer(TextAnalysisProvider):
    """Memory-worthiness analysis through a local Ollama model."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def _build_prompt(self, text: str, context: Optional[list[dict]]) -> str:
        recent = (context or [])[-3:]
        context_lines = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in recent)
        return ANALYSIS_PROMPT.format(message=text, context=context_lines or "(none)")

    async def analyze(self, text: str, context: Optional[list[dict]] = None) -> dict:
        payload = {
            "model": self.model,
            "prompt": self._build_prompt(text, context),
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.1},
        }
        try:
            response = await self.client.post("/api/generate", json=payload)
            response.raise_for_status()
            body: Any = response.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Analyzer timed out: {e}", provider=self.name)
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Analyzer request failed: {e}", provider=self.name)

        return parse_analysis_json(body.get("response", "") if isinstance(body, dict) else "")

    async def aclose(self) -> None:
        await self.client.aclose()
