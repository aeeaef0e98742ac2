"""Logger setup shared by every coachmem module."""

import logging
import os
import sys


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with a single stderr handler attached.

    The MCP server talks over stdout, so log output must stay on stderr.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        level = os.environ.get("COACHMEM_LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
    return logger
