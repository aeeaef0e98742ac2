"""
MCP Server - how the chat layer talks to the memory engine.

Seven tools, all taking an explicit owner_id:

1. memory_create   - "Here's a message, remember it if it matters"
2. memory_remember - "Store exactly this" (strict validation)
3. memory_retrieve - "What should the coach know right now?"
4. memory_related  - "What connects to this memory?"
5. memory_delete   - "Forget this"
6. memory_stats    - "How big is this user's memory?"
7. memory_conflicts - "Which merges need a human to decide?"
"""

import asyncio
import json
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from coachmem.engine import MemoryEngine
from coachmem.errors import ValidationError
from coachmem.log import get_logger
from coachmem.models import MemoryCategory, RelationshipType, RetrievalContext, RetrievalFilters
from coachmem.prompt import build_memory_context

logger = get_logger("coachmem.server")

# Create the MCP server
server = Server("coachmem")

# Created on first use
_engine: Optional[MemoryEngine] = None


def get_engine() -> MemoryEngine:
    """Get the memory engine, creating it if needed."""
    global _engine
    if _engine is None:
        _engine = MemoryEngine.from_config()
    return _engine


OWNER_PROPERTY = {
    "type": "string",
    "description": "Id of the user who owns the memories",
}

MESSAGES_PROPERTY = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "role": {"type": "string"},
            "content": {"type": "string"},
        },
    },
    "description": "Recent conversation messages, oldest first",
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Tell the client what tools are available."""
    return [
        Tool(
            name="memory_create",
            description="""Offer a conversation message to the memory engine.

The engine decides whether it is worth remembering, then deduplicates it
against what the user already has:
- skip: already known
- merge: folded into a very similar memory (keywords unioned)
- create: stored as a new memory

Relationship analysis happens later in the background.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "text": {"type": "string", "description": "The message text"},
                    "messages": MESSAGES_PROPERTY,
                },
                "required": ["owner_id", "text"],
            },
        ),
        Tool(
            name="memory_remember",
            description="Store a memory exactly as given (the user asked to save it). "
                        "Rejects unknown categories and importance outside 0-1.",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "content": {"type": "string", "description": "What to remember"},
                    "category": {
                        "type": "string",
                        "enum": [c.value for c in MemoryCategory],
                        "default": MemoryCategory.CONTEXT.value,
                    },
                    "importance": {
                        "type": "number",
                        "minimum": 0,
                        "maximum": 1,
                        "default": 0.5,
                        "description": "0.0 (trivial) to 1.0 (critical)",
                    },
                    "keywords": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["owner_id", "content"],
            },
        ),
        Tool(
            name="memory_retrieve",
            description="Rank the user's memories for the current conversation. "
                        "Returns a prompt-ready context block plus the scored memories.",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "query": {"type": "string", "description": "Explicit query (optional)"},
                    "messages": MESSAGES_PROPERTY,
                    "categories": {
                        "type": "array",
                        "items": {"type": "string", "enum": [c.value for c in MemoryCategory]},
                    },
                    "min_importance": {"type": "number", "minimum": 0, "maximum": 1, "default": 0},
                    "max_results": {"type": "integer", "minimum": 1},
                },
                "required": ["owner_id"],
            },
        ),
        Tool(
            name="memory_related",
            description="Walk the relationship graph from one memory "
                        "(contradicts, supports, elaborates, supersedes, related).",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "memory_id": {"type": "string"},
                    "depth": {"type": "integer", "minimum": 1, "maximum": 5, "default": 2},
                    "relation_types": {
                        "type": "array",
                        "items": {"type": "string", "enum": [r.value for r in RelationshipType]},
                    },
                },
                "required": ["owner_id", "memory_id"],
            },
        ),
        Tool(
            name="memory_delete",
            description="Delete a memory with its facts and relationships.",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "memory_id": {"type": "string"},
                },
                "required": ["owner_id", "memory_id"],
            },
        ),
        Tool(
            name="memory_stats",
            description="Memory totals, category distribution, relationships and engine metrics.",
            inputSchema={
                "type": "object",
                "properties": {"owner_id": OWNER_PROPERTY},
                "required": ["owner_id"],
            },
        ),
        Tool(
            name="memory_conflicts",
            description="""List merges that were held back because they contradict a stored
fact the user stated more firmly.

Pass flag_id to resolve one: accept_new=true replaces the stored content
with the new statement, otherwise the stored content is kept.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "owner_id": OWNER_PROPERTY,
                    "flag_id": {"type": "string", "description": "Flag to resolve (optional)"},
                    "accept_new": {"type": "boolean", "default": False},
                },
                "required": ["owner_id"],
            },
        ),
    ]


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


async def dispatch(engine: MemoryEngine, name: str, arguments: dict) -> list[TextContent]:
    """Run one tool against an engine. Separate from call_tool so it can be tested directly."""
    owner_id = arguments.get("owner_id", "")

    if name == "memory_create":
        result = await engine.create_or_merge(
            owner_id, arguments.get("text", ""), arguments.get("messages") or []
        )
        return _text(json.dumps(result.to_dict()))

    elif name == "memory_remember":
        result = await engine.remember(
            owner_id,
            arguments.get("content", ""),
            category=arguments.get("category", MemoryCategory.CONTEXT.value),
            importance=arguments.get("importance", 0.5),
            keywords=arguments.get("keywords"),
        )
        return _text(json.dumps(result.to_dict()))

    elif name == "memory_retrieve":
        try:
            filters = RetrievalFilters(
                categories=arguments.get("categories"),
                min_importance=arguments.get("min_importance", 0.0),
                max_results=arguments.get("max_results"),
            )
        except ValueError as e:
            raise ValidationError(str(e), field="categories")
        context = RetrievalContext(
            messages=arguments.get("messages") or [],
            query=arguments.get("query"),
        )
        result = await engine.retrieve(owner_id, context, filters)
        if not result.memories:
            return _text("No relevant memories found.")

        payload = {
            "context": build_memory_context(result.memories),
            "degraded": result.degraded,
            "partial": result.partial,
            "memories": [m.to_dict() for m in result.memories],
        }
        return _text(json.dumps(payload, indent=2))

    elif name == "memory_related":
        memory_id = arguments.get("memory_id")
        related = engine.related(
            owner_id,
            memory_id,
            depth=arguments.get("depth", 2),
            relation_types=arguments.get("relation_types"),
        )
        if not related:
            return _text(f"No related memories found for: {memory_id}")

        lines = [f"Memories related to {memory_id}\n"]
        for i, hop in enumerate(related, 1):
            arrow = "->" if hop["direction"] == "outgoing" else "<-"
            lines.append(
                f"{i}. {arrow} {hop['relationship_type']} (depth {hop['depth']}, "
                f"confidence {hop['confidence']:.2f}) [{hop['category']}]\n"
                f"   {hop['content']}\n"
            )
        return _text("\n".join(lines))

    elif name == "memory_delete":
        memory_id = arguments.get("memory_id", "")
        if engine.delete_memory(owner_id, memory_id):
            return _text(f"Deleted: {memory_id}")
        return _text(f"Not found: {memory_id}")

    elif name == "memory_stats":
        stats = {**engine.get_stats(owner_id), "engine": engine.get_metrics()}
        return _text(json.dumps(stats, indent=2, default=str))

    elif name == "memory_conflicts":
        flag_id = arguments.get("flag_id")
        if flag_id:
            accept_new = bool(arguments.get("accept_new", False))
            if await engine.resolve_conflict(owner_id, flag_id, accept_new=accept_new):
                return _text(f"Resolved {flag_id}: {'accepted new' if accept_new else 'kept existing'}")
            return _text(f"No open conflict: {flag_id}")

        conflicts = engine.list_conflicts(owner_id)
        if not conflicts:
            return _text("No open conflicts.")
        return _text(json.dumps(conflicts, indent=2))

    return _text(f"Unknown tool: {name}")


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls from the client."""
    try:
        return await dispatch(get_engine(), name, arguments or {})
    except ValidationError as e:
        return _text(f"Validation error: {e}")
    except Exception as e:
        logger.error(f"Error in {name}: {e}", exc_info=True)
        return _text(f"Error: {type(e).__name__}: {e}")


# =============================================================================
# SERVER STARTUP
# =============================================================================

def serve():
    """Start the MCP server over stdio, with the background scheduler running."""

    async def main():
        engine = get_engine()
        engine.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options()
                )
        finally:
            await engine.close()

    asyncio.run(main())


if __name__ == "__main__":
    serve()
