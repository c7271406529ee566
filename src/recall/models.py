"""Result types returned by the search operations."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ScoreKind(str, Enum):
    """Which metric a result's ``score`` carries."""
    COSINE = "cosine"
    TEXT_RELEVANCE = "text_relevance"
    RRF = "rrf"


@dataclass(frozen=True)
class SemanticMemory:
    """
    A stored memory returned by a search, plus its score.

    ``score`` is only meaningful together with ``kind``:

    - ``COSINE``: cosine similarity in [-1, 1] (semantic search)
    - ``TEXT_RELEVANCE``: positive BM25-derived relevance, only comparable
      within one keyword query
    - ``RRF``: summed reciprocal-rank-fusion value (hybrid search)
    """
    id: int
    content: str
    score: float
    kind: ScoreKind
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "score": self.score,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat(),
        }
