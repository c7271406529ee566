"""
Reciprocal Rank Fusion.

Merges independently ranked result lists by rank position only, so lists
whose scores live on different scales (cosine similarity, BM25) can be
combined:

    RRF(d) = Σ weight_i / (k + rank_i(d) + 1)     (rank_i is 0-based)
"""
from __future__ import annotations

import dataclasses

from .models import ScoreKind, SemanticMemory

# Standard RRF constant. Larger values flatten the advantage of top ranks.
RRF_K = 60


def reciprocal_rank_fusion(
    vector_results: list[SemanticMemory],
    text_results: list[SemanticMemory],
    top_k: int,
    vector_weight: float = 1.0,
    text_weight: float = 1.0,
    rrf_k: int = RRF_K,
) -> list[SemanticMemory]:
    """
    Combine semantic and keyword results into one ranking.

    An id present in both lists gets the sum of its two partial scores,
    which lifts dual matches above single-list matches. The output never
    repeats an id. Equal scores keep first-seen order (vector list first).

    Args:
        vector_results: Semantic search results, best first
        text_results: Keyword search results, best first
        top_k: Number of results to return
        vector_weight: Weight for vector results
        text_weight: Weight for text results
        rrf_k: RRF constant (typically 60)

    Returns:
        Fused results with ``score`` replaced by the RRF value and
        ``kind`` set to ``ScoreKind.RRF``
    """
    items_by_id: dict[int, SemanticMemory] = {}
    rrf_scores: dict[int, float] = {}

    for rank, item in enumerate(vector_results):
        items_by_id.setdefault(item.id, item)
        rrf_scores[item.id] = rrf_scores.get(item.id, 0.0) + vector_weight / (rrf_k + rank + 1)

    for rank, item in enumerate(text_results):
        items_by_id.setdefault(item.id, item)
        rrf_scores[item.id] = rrf_scores.get(item.id, 0.0) + text_weight / (rrf_k + rank + 1)

    # sorted() is stable, dict order is insertion order
    sorted_ids = sorted(rrf_scores, key=lambda x: rrf_scores[x], reverse=True)

    return [
        dataclasses.replace(items_by_id[item_id], score=rrf_scores[item_id], kind=ScoreKind.RRF)
        for item_id in sorted_ids[:top_k]
    ]
