"""Render ranked memories as coaching system-prompt context."""

from typing import Optional

from coachmem.models import RankedMemory

DEFAULT_CONTEXT_LIMIT = 4
IMPORTANT_THRESHOLD = 0.8

CONTEXT_HEADER = "What you know about this user from previous conversations:"


def build_memory_context(
    ranked: list[RankedMemory],
    limit: int = DEFAULT_CONTEXT_LIMIT,
    header: Optional[str] = CONTEXT_HEADER,
) -> str:
    """Bullet list of the top memories, most relevant first.

    Memories with importance above 0.8 are prefixed with [Important].
    Returns "" when there is nothing to say, so callers can skip the section.

    Example:
        What you know about this user from previous conversations:
        - [Important] Allergic to peanuts
        - Prefers morning workouts
    """
    if not ranked or limit <= 0:
        return ""

    top = sorted(ranked, key=lambda r: r.score, reverse=True)[:limit]
    lines = []
    for item in top:
        prefix = "[Important] " if item.memory.importance_score > IMPORTANT_THRESHOLD else ""
        lines.append(f"- {prefix}{item.memory.content.strip()}")

    if header:
        lines.insert(0, header)
    return "\n".join(lines)
