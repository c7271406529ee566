"""
MCP Server for the Recall memory store.

Exposes the store to an owning agent. The agent computes embeddings with its
own model and passes them in; this server never embeds text.

Tools:
- memory_store: store one memory or a batch
- memory_search: hybrid, semantic, or keyword search
- memory_similarity: cosine similarity of two vectors
- memory_stats: counts and index health
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Any

from mcp.server.fastmcp import FastMCP

from .errors import ValidationError
from .similarity import cosine_similarity
from .storage import MemoryStore

logger = logging.getLogger(__name__)

# Initialize MCP server
mcp = FastMCP("recall-memory")

# Store instance (initialized on first use)
_store: MemoryStore | None = None
_store_lock = threading.Lock()


def get_memory_store() -> MemoryStore:
    """Get the memory store instance."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                db_path = os.environ.get(
                    "RECALL_DB_PATH",
                    os.path.expanduser("~/.recall-memory/memory.db")
                )
                pool_size = int(os.environ.get("RECALL_POOL_SIZE", "5"))
                busy_timeout = float(os.environ.get("RECALL_BUSY_TIMEOUT", "5.0"))

                _store = MemoryStore(db_path=db_path, pool_size=pool_size, busy_timeout=busy_timeout)
                logger.info(f"Memory store initialized: {db_path}")

    return _store


def _error(e: Exception) -> dict:
    return {"success": False, "error": str(e), "error_type": type(e).__name__}


# ============================================================================
# MCP Tools
# ============================================================================

@mcp.tool()
def memory_store(
    content: str = "",
    embedding: list[float] | None = None,
    items: list[dict[str, Any]] | None = None,
) -> dict:
    """
    Store one or multiple memories.

    Single mode (items is None or empty):
        content   : Text content to store (required)
        embedding : Embedding vector of the content (required)

    Batch mode (items is a non-empty list):
        items : List of dicts, each with content and embedding.
                Stored all-or-nothing.

    Returns:
        Single → {"success": True, "message": ...}
        Batch  → {"success": True, "count": N, "message": ...}
    """
    store = get_memory_store()

    try:
        if items:
            count = store.store_batch(
                (item.get("content", ""), item.get("embedding") or []) for item in items
            )
            return {
                "success": True,
                "count": count,
                "message": f"Stored {count} memories",
            }
        store.store(content, embedding or [])
        return {"success": True, "message": "Memory stored"}
    except Exception as e:
        logger.error(f"Failed to store memory: {e}")
        return _error(e)


@mcp.tool()
def memory_search(
    query: str = "",
    embedding: list[float] | None = None,
    top_k: int = 10,
    mode: str = "hybrid",
    literal: bool = False,
) -> dict:
    """
    Search memories using hybrid, semantic, or keyword search.

    Args:
        query     : Keyword query (FTS5 syntax); required for hybrid/keyword
        embedding : Query embedding; required for hybrid/semantic
        top_k     : Maximum number of results (1-1000, default 10)
        mode      : Search mode — one of:
                      "hybrid" (default) — semantic + keyword merged via RRF
                      "semantic"         — cosine similarity only
                      "keyword"          — FTS5 full-text only
        literal   : Keyword mode only: match each query token literally

    Returns:
        {"success": True, "mode": ..., "count": N,
         "results": [{id, content, score, kind, created_at}]}
        ``kind`` names the metric in ``score``: cosine, text_relevance or rrf.
    """
    store = get_memory_store()

    try:
        if not 1 <= top_k <= 1000:
            return _error(ValidationError("top_k must be between 1 and 1000"))
        if mode not in ("hybrid", "semantic", "keyword"):
            return _error(ValidationError("mode must be 'hybrid', 'semantic', or 'keyword'"))

        if mode == "keyword":
            results = store.keyword_search(query, top_k, literal=literal)
        elif mode == "semantic":
            results = store.search(embedding or [], top_k)
        else:
            results = store.hybrid_search(query, embedding or [], top_k)

        return {
            "success": True,
            "mode": mode,
            "count": len(results),
            "results": [r.to_dict() for r in results],
        }
    except Exception as e:
        logger.error(f"Failed to search: {e}")
        return _error(e)


@mcp.tool()
def memory_similarity(a: list[float], b: list[float]) -> dict:
    """
    Cosine similarity of two vectors.

    Returns 0 for empty, zero, or different-length vectors.
    """
    return {"success": True, "similarity": cosine_similarity(a, b)}


@mcp.tool()
def memory_stats() -> dict:
    """
    Get memory store statistics.

    Returns:
        {"success": True, "total_memories": N, "indexed": N,
         "in_sync": bool, "db_path": ...}
    """
    store = get_memory_store()

    try:
        return {"success": True, **store.get_stats()}
    except Exception as e:
        logger.error(f"Failed to get stats: {e}")
        return _error(e)


# ============================================================================
# Server Entry Point
# ============================================================================

def run_server():
    """Run the MCP server."""
    logging.basicConfig(
        level=os.environ.get("RECALL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting Recall MCP Server...")

    # Open the database early so a bad path fails at startup
    try:
        get_memory_store().count()
    except Exception as e:
        logger.warning(f"Store check failed: {e}")

    # Run server
    mcp.run()


if __name__ == "__main__":
    run_server()
