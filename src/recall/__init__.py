"""
Recall: hybrid memory store.

A small retrieval backbone for agents that need to recall prior context.

Features:
- Text memories stored with float64 embeddings in embedded SQLite
- Cosine similarity search over the stored embeddings
- FTS5 keyword search
- Hybrid search merged with Reciprocal Rank Fusion
- Cancellation tokens for every operation
- MCP tool server
"""

__version__ = "0.1.0"

from .cancel import CancelToken
from .codec import decode_embedding, encode_embedding
from .errors import (
    CorruptEmbeddingError,
    OperationCancelled,
    QuerySyntaxError,
    RecallError,
    StorageError,
    ValidationError,
)
from .fusion import RRF_K, reciprocal_rank_fusion
from .models import ScoreKind, SemanticMemory
from .similarity import cosine_similarity
from .storage import MemoryStore

__all__ = [
    # Version
    "__version__",
    # Storage
    "MemoryStore",
    "SemanticMemory",
    "ScoreKind",
    "CancelToken",
    # Algorithms
    "encode_embedding",
    "decode_embedding",
    "cosine_similarity",
    "reciprocal_rank_fusion",
    "RRF_K",
    # Errors
    "RecallError",
    "ValidationError",
    "OperationCancelled",
    "StorageError",
    "QuerySyntaxError",
    "CorruptEmbeddingError",
]
