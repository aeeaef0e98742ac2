"""
coachmem - memory engine for an AI wellness coach.

Decides what to remember, deduplicates it, links related memories in the
background, and ranks what to recall for the next turn.
"""

__version__ = "0.1.0"


def serve() -> None:
    """Run the coachmem MCP server.

    This is called when you run: python -m coachmem.server
    Or through the `coachmem` console script.
    """
    from coachmem.server import serve as _serve
    _serve()


__all__ = ["serve", "__version__"]
