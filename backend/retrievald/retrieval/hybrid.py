"""Hybrid search: lexical and vector candidates fused, graph-boosted and reranked."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import numpy as np

from retrievald.core.logging import get_logger
from retrievald.db.store import RetrievalStore
from retrievald.ingest.embeddings import EmbeddingRuntime, cosine_scores
from retrievald.models.dto import Suggestion, SuggestRequest, SuggestResponse
from retrievald.models.entities import ChunkVector, Partition, RiskLabel, SourceType
from retrievald.retrieval.graph import GraphAugmentor
from retrievald.retrieval.rerank import LocalReranker
from retrievald.utils.hashing import sha256_text
from retrievald.utils.time import age_seconds

logger = get_logger(__name__)

COLD_FALLBACK_MIN_RESULTS = 36
GRAPH_BOOST_FACTOR = 0.16
GRAPH_BOOST_MAX_RELATIVE = 0.22
SNIPPET_CHARACTERS = 420
RECENCY_WINDOW_SECONDS = 10 * 24 * 3600
DIRECTORY_ANCESTOR_LEVELS = 3

COMPACT_QUERY_MIN_LENGTH = 180
COMPACT_QUERY_MAX_LENGTH = 260
COMPACT_QUERY_MAX_TERMS = 14
STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "do", "for", "from",
        "how", "i", "if", "in", "into", "is", "it", "me", "my", "of", "on", "or",
        "our", "please", "so", "that", "the", "their", "them", "there", "these",
        "this", "to", "us", "we", "with", "you", "your",
    }
)

_QUERY_STRIP_RE = re.compile(r"[^\w\s-]")
_SPACE_RE = re.compile(r"\s+")
_RISK_ORDER = {RiskLabel.LOW: 0, RiskLabel.MEDIUM: 1, RiskLabel.HIGH: 2}

WARM_PARTITIONS = (Partition.HOT, Partition.WARM)
ALL_PARTITIONS = (Partition.HOT, Partition.WARM, Partition.COLD)


@dataclass(slots=True, frozen=True)
class SearchTuning:
    vector_top_k: int
    lexical_limit: int
    vector_min_similarity: float
    graph_boost_cap: float
    graph_eligible_min_score: float
    graph_seed_count: int
    vector_recency_weight: float

    @classmethod
    def for_mode(cls, typing_mode: bool) -> "SearchTuning":
        if typing_mode:
            return cls(
                vector_top_k=180,
                lexical_limit=64,
                vector_min_similarity=0.20,
                graph_boost_cap=0.06,
                graph_eligible_min_score=0.32,
                graph_seed_count=12,
                vector_recency_weight=0.02,
            )
        return cls(
            vector_top_k=360,
            lexical_limit=128,
            vector_min_similarity=0.14,
            graph_boost_cap=0.10,
            graph_eligible_min_score=0.26,
            graph_seed_count=36,
            vector_recency_weight=0.06,
        )


@dataclass(slots=True)
class _VectorHit:
    chunk: ChunkVector
    similarity: float


class HybridSearchEngine:
    def __init__(
        self,
        store: RetrievalStore,
        embeddings: EmbeddingRuntime,
        graph: GraphAugmentor | None = None,
        reranker: LocalReranker | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.graph = graph or GraphAugmentor(store)
        self.reranker = reranker or LocalReranker()

    def suggest(self, request: SuggestRequest) -> SuggestResponse:
        started = time.perf_counter()
        query = compact_retrieval_query(request.query)
        if not query:
            return SuggestResponse(suggestions=[], partial=request.typing_mode, total_candidate_count=0, latency_ms=0)
        tuning = SearchTuning.for_mode(request.typing_mode)
        filters = request.source_filters
        query_vector = self.embeddings.embed_array(query)

        lexical = self.store.lexical_search(query, filters, WARM_PARTITIONS, tuning.lexical_limit)
        vectors = self._vector_hits(query_vector, filters, WARM_PARTITIONS, tuning)
        used_cold = False
        confident_vectors = sum(1 for hit in vectors if hit.similarity >= tuning.vector_min_similarity)
        if request.include_cold_partition_fallback and (
            len(lexical) < COLD_FALLBACK_MIN_RESULTS or confident_vectors < COLD_FALLBACK_MIN_RESULTS
        ):
            lexical = self.store.lexical_search(query, filters, ALL_PARTITIONS, tuning.lexical_limit)
            vectors = self._vector_hits(query_vector, filters, ALL_PARTITIONS, tuning)
            used_cold = True

        merged: dict[str, Suggestion] = {}
        for hit in lexical:
            score = 0.72 / (hit.rank + 1) + 0.12 * _recency(hit.updated_at)
            merged[hit.document_id] = Suggestion(
                id=hit.document_id,
                source_type=hit.source_type,
                title=hit.title,
                snippet=hit.snippet.strip()[:SNIPPET_CHARACTERS],
                source_id=hit.document_id,
                source_path_or_handle=hit.source_path_or_handle,
                relevance_score=score,
                risk=hit.risk,
                reasons=["lexical", "recency"],
                timestamp=hit.updated_at,
            )

        vector_accepted = 0
        for vector_hit in vectors:
            chunk = vector_hit.chunk
            vector_score = 0.62 * vector_hit.similarity + tuning.vector_recency_weight * _recency(chunk.updated_at)
            existing = merged.get(chunk.document_id)
            if existing is not None:
                high = max(existing.relevance_score, vector_score)
                low = min(existing.relevance_score, vector_score)
                merged[chunk.document_id] = existing.model_copy(
                    update={"relevance_score": high + 0.2 * low, "reasons": _with_reason(existing.reasons, "vector")}
                )
                continue
            if vector_hit.similarity < tuning.vector_min_similarity:
                continue
            vector_accepted += 1
            snippet = chunk.text.strip()
            merged[chunk.document_id] = Suggestion(
                id=chunk.document_id,
                source_type=chunk.source_type,
                title=chunk.title,
                snippet=snippet[:SNIPPET_CHARACTERS] if snippet else chunk.title,
                source_id=chunk.document_id,
                source_path_or_handle=chunk.source_path_or_handle,
                relevance_score=vector_score,
                risk=chunk.risk,
                reasons=["vector"],
                timestamp=chunk.updated_at,
            )

        graph_applied = self._apply_graph_boost(merged, request.typing_mode, tuning)
        ordered = sorted(merged.values(), key=lambda item: (-item.relevance_score, item.id))
        reranked = self.reranker.rerank(request.query, ordered, request.typing_mode)
        with_directories = reranked + directory_suggestions(reranked)
        with_directories.sort(key=lambda item: (-item.relevance_score, item.id))
        final = with_directories[: max(1, request.limit)]
        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(
            "Suggest finished",
            extra={
                "ctx_lexical": len(lexical),
                "ctx_vector_seen": len(vectors),
                "ctx_vector_accepted": vector_accepted,
                "ctx_merged": len(merged),
                "ctx_graph_applied": graph_applied,
                "ctx_cold_fallback": used_cold,
                "ctx_latency_ms": latency_ms,
            },
        )
        return SuggestResponse(
            suggestions=final,
            partial=request.typing_mode,
            total_candidate_count=len(merged),
            latency_ms=latency_ms,
        )

    def _vector_hits(
        self,
        query_vector: np.ndarray,
        filters: Sequence[SourceType] | None,
        partitions: Sequence[Partition],
        tuning: SearchTuning,
    ) -> list[_VectorHit]:
        """Best chunk per document by cosine similarity, top-k documents."""
        rows = [row for row in self.store.chunk_vectors(filters, partitions) if len(row.vector) == query_vector.nbytes]
        if not rows or not query_vector.any():
            return []
        matrix = np.frombuffer(b"".join(row.vector for row in rows), dtype=np.float32).reshape(len(rows), -1)
        similarities = cosine_scores(query_vector, matrix)
        best: dict[str, _VectorHit] = {}
        for index in np.argsort(-similarities, kind="stable"):
            row = rows[int(index)]
            if row.document_id in best:
                continue
            best[row.document_id] = _VectorHit(chunk=row, similarity=float(similarities[int(index)]))
            if len(best) >= tuning.vector_top_k:
                break
        return list(best.values())

    def _apply_graph_boost(self, merged: dict[str, Suggestion], typing_mode: bool, tuning: SearchTuning) -> int:
        eligible = [
            item
            for item in sorted(merged.values(), key=lambda item: (-item.relevance_score, item.id))
            if _graph_eligible(item, tuning)
        ]
        seeds = [item.id for item in eligible[: tuning.graph_seed_count]]
        graph_scores = self.graph.score(seeds, typing_mode)
        applied = 0
        for document_id, graph_score in graph_scores.items():
            suggestion = merged.get(document_id)
            if suggestion is None or not _graph_eligible(suggestion, tuning):
                continue
            boost = min(
                graph_score * GRAPH_BOOST_FACTOR,
                tuning.graph_boost_cap,
                max(0.0, suggestion.relevance_score * GRAPH_BOOST_MAX_RELATIVE),
            )
            if boost <= 0:
                continue
            merged[document_id] = suggestion.model_copy(
                update={
                    "relevance_score": suggestion.relevance_score + boost,
                    "graph_score": graph_score,
                    "reasons": _with_reason(suggestion.reasons, "graph"),
                }
            )
            applied += 1
        return applied


def compact_retrieval_query(text: str) -> str:
    """Strip punctuation; reduce long pasted text to its distinct keywords."""
    cleaned = _SPACE_RE.sub(" ", _QUERY_STRIP_RE.sub(" ", text)).strip()
    if len(cleaned) < COMPACT_QUERY_MIN_LENGTH:
        return cleaned
    keywords: list[str] = []
    for token in cleaned.lower().split(" "):
        if len(token) >= 3 and token not in STOPWORDS and token not in keywords:
            keywords.append(token)
    compact = " ".join(keywords[:COMPACT_QUERY_MAX_TERMS])
    if len(compact) >= 24:
        return compact
    return cleaned[:COMPACT_QUERY_MAX_LENGTH]


def directory_suggestions(suggestions: Sequence[Suggestion]) -> list[Suggestion]:
    """Surface folders that hold several matching files.

    Each file votes for up to three ancestor directories. A directory needs
    two members, and is dropped when a child directory has exactly the same
    members.
    """
    members: dict[str, list[Suggestion]] = {}
    for suggestion in suggestions:
        if suggestion.source_type is not SourceType.FILE or "directory" in suggestion.reasons:
            continue
        directory = os.path.dirname(suggestion.source_path_or_handle.rstrip("/"))
        for _ in range(DIRECTORY_ANCESTOR_LEVELS):
            if not directory or directory == os.path.dirname(directory):
                break
            members.setdefault(directory, []).append(suggestion)
            directory = os.path.dirname(directory)

    member_ids = {directory: frozenset(item.id for item in items) for directory, items in members.items()}
    results: list[Suggestion] = []
    for directory, items in members.items():
        if len(items) < 2:
            continue
        ids = member_ids[directory]
        if any(
            os.path.dirname(other) == directory and other_ids == ids
            for other, other_ids in member_ids.items()
            if other != directory
        ):
            continue
        best = max(items, key=lambda item: item.relevance_score)
        factor = 0.9 + 0.02 * min(len(items) - 1, 4)
        results.append(
            Suggestion(
                id="dir_" + sha256_text(directory)[:24],
                source_type=SourceType.FILE,
                title=os.path.basename(directory) or directory,
                snippet=f"{len(items)} matching files",
                source_id=directory,
                source_path_or_handle=directory,
                relevance_score=best.relevance_score * factor,
                risk=max((item.risk for item in items), key=_RISK_ORDER.__getitem__),
                reasons=["directory"],
                timestamp=max(item.timestamp for item in items),
            )
        )
    return results


def _graph_eligible(suggestion: Suggestion, tuning: SearchTuning) -> bool:
    if "lexical" in suggestion.reasons:
        return True
    return "vector" in suggestion.reasons and suggestion.relevance_score >= tuning.graph_eligible_min_score


def _with_reason(reasons: list[str], reason: str) -> list[str]:
    return reasons if reason in reasons else [*reasons, reason]


def _recency(updated_at: datetime) -> float:
    return max(0.0, 1.0 - min(1.0, age_seconds(updated_at) / RECENCY_WINDOW_SECONDS))


__all__ = [
    "HybridSearchEngine",
    "SearchTuning",
    "compact_retrieval_query",
    "directory_suggestions",
    "COLD_FALLBACK_MIN_RESULTS",
]
