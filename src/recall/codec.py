"""
Embedding blob codec.

Embeddings are stored as ``N * 8`` bytes: one IEEE-754 double per component,
little-endian, in original order. The layout is the on-disk format and must
stay bit-exact.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np

from .errors import CorruptEmbeddingError

# Explicit byte order so the blob is identical on every platform
EMBEDDING_DTYPE = np.dtype("<f8")


def encode_embedding(vector: Sequence[float]) -> bytes:
    """Serialize a vector of doubles to a little-endian float64 blob."""
    return np.asarray(vector, dtype=EMBEDDING_DTYPE).tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    """Deserialize a float64 blob back to a list of floats."""
    if len(blob) % EMBEDDING_DTYPE.itemsize:
        raise CorruptEmbeddingError(
            f"embedding blob length {len(blob)} is not a multiple of {EMBEDDING_DTYPE.itemsize}"
        )
    if not blob:
        return []
    return np.frombuffer(blob, dtype=EMBEDDING_DTYPE).tolist()
