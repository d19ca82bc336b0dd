"""Graph augmentation: score documents by their edges in the entity graph."""

from __future__ import annotations

import time
from typing import Iterable

from retrievald.core.errors import StoreError
from retrievald.core.logging import get_logger
from retrievald.db.store import RetrievalStore

logger = get_logger(__name__)


class GraphAugmentor:
    """Sum ``confidence * weight`` over the edges touching a set of seed documents."""

    def __init__(self, store: RetrievalStore) -> None:
        self.store = store

    def score(self, seed_document_ids: Iterable[str], typing_mode: bool) -> dict[str, float]:
        seeds = list(dict.fromkeys(seed_document_ids))
        if not seeds:
            return {}
        started = time.perf_counter()
        max_edges = 80 if typing_mode else 400
        budget = 0.03 if typing_mode else 0.15
        try:
            edges = self.store.graph_neighbors(seeds, max_edges)
        except StoreError:
            logger.warning("Graph lookup failed; continuing without graph scores")
            return {}
        scores: dict[str, float] = {}
        for edge in edges:
            if time.perf_counter() - started > budget:
                break
            value = edge.confidence * edge.weight
            scores[edge.source_node] = scores.get(edge.source_node, 0.0) + value
            scores[edge.target_node] = scores.get(edge.target_node, 0.0) + value
        return scores


__all__ = ["GraphAugmentor"]
