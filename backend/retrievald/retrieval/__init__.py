"""Retrieval orchestration components."""

from .graph import GraphAugmentor
from .hybrid import HybridSearchEngine, SearchTuning, compact_retrieval_query, directory_suggestions
from .rerank import LocalReranker

__all__ = [
    "GraphAugmentor",
    "HybridSearchEngine",
    "SearchTuning",
    "LocalReranker",
    "compact_retrieval_query",
    "directory_suggestions",
]
