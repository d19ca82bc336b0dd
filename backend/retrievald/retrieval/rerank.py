"""Reranking helpers."""

from __future__ import annotations

from typing import Sequence

from rapidfuzz import fuzz, utils

from retrievald.models.dto import Suggestion
from retrievald.utils.text import tokenize
from retrievald.utils.time import age_seconds

RERANK_REASON = "reranked-local"
_WEEK_SECONDS = 7 * 24 * 3600


class LocalReranker:
    """Cheap lexical reranker over the head of the candidate list.

    Adds title and snippet token overlap with the query, a small fuzzy
    title match and a one-week recency bonus to the base score.
    """

    def rerank(self, query: str, suggestions: Sequence[Suggestion], typing_mode: bool) -> list[Suggestion]:
        top_k = 24 if typing_mode else 60
        recency_weight = 0.03 if typing_mode else 0.12
        query_tokens = set(tokenize(query))
        reranked: list[Suggestion] = []
        for suggestion in list(suggestions)[:top_k]:
            title_overlap = _overlap(query_tokens, suggestion.title)
            snippet_overlap = _overlap(query_tokens, suggestion.snippet)
            fuzzy = fuzz.token_set_ratio(query, suggestion.title, processor=utils.default_process) / 100.0
            recency = max(0.0, 1.0 - min(1.0, age_seconds(suggestion.timestamp) / _WEEK_SECONDS))
            score = (
                suggestion.relevance_score
                + title_overlap * 0.22
                + snippet_overlap * 0.30
                + fuzzy * 0.05
                + recency * recency_weight
            )
            reranked.append(
                suggestion.model_copy(
                    update={"relevance_score": score, "reasons": [*suggestion.reasons, RERANK_REASON]}
                )
            )
        reranked.sort(key=lambda item: (-item.relevance_score, item.id))
        return reranked


def _overlap(query_tokens: set[str], text: str) -> float:
    if not query_tokens:
        return 0.0
    words = set(tokenize(text))
    return len(query_tokens & words) / len(query_tokens)


__all__ = ["LocalReranker", "RERANK_REASON"]
