"""Hybrid search: lexical, vector, graph, rerank and directory aggregation."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

import numpy as np
import pytest

from retrievald.db.store import RetrievalStore
from retrievald.ingest.embeddings import EmbeddingRuntime
from retrievald.ingest.pipeline import mention_edges
from retrievald.models.dto import SuggestRequest, Suggestion
from retrievald.models.entities import AttemptOutcome, GraphEdge, Partition, RetrievalChunk, RetrievalDocument, SourceType
from retrievald.retrieval import HybridSearchEngine, SearchTuning, compact_retrieval_query, directory_suggestions
from retrievald.retrieval.rerank import RERANK_REASON
from retrievald.utils.ids import chunk_id, document_id
from retrievald.utils.time import utc_now


@pytest.fixture
def store(tmp_path: Path) -> Iterator[RetrievalStore]:
    retrieval_store = RetrievalStore(tmp_path / "metadata.db")
    retrieval_store.open_and_migrate()
    yield retrieval_store
    retrieval_store.close()


@pytest.fixture
def engine(store: RetrievalStore) -> HybridSearchEngine:
    return HybridSearchEngine(store, EmbeddingRuntime.get())


def _index(
    store: RetrievalStore,
    path: str,
    body: str,
    partition: Partition = Partition.HOT,
    searchable: bool = True,
) -> RetrievalDocument:
    document = RetrievalDocument(
        id=document_id("file", path),
        source_type=SourceType.FILE,
        source_id=path,
        title=Path(path).name,
        body=body,
        source_path_or_handle=path,
        updated_at=utc_now() - timedelta(hours=1),
        partition=partition,
        searchable=searchable,
    )
    embeddings = EmbeddingRuntime.get()
    chunk = RetrievalChunk(
        id=chunk_id(document.id, 0),
        document_id=document.id,
        text=body,
        index=0,
        embedding=embeddings.embed_one(body) if searchable else [],
    )
    store.upsert_document(document, [chunk], attempt_outcome=AttemptOutcome.SUCCESS)
    if searchable:
        store.insert_graph_edges(mention_edges(document))
    return document


def test_lexical_match_ranks_first(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    harbor = _index(store, "/docs/harbor.md", "Harbor expansion budget approved by the council")
    _index(store, "/docs/garden.md", "Tomato seedlings need more compost this spring")

    response = engine.suggest(SuggestRequest(query="harbor budget"))

    assert response.suggestions[0].id == harbor.id
    assert response.suggestions[0].source_id == harbor.id
    reasons = response.suggestions[0].reasons
    assert "lexical" in reasons
    assert RERANK_REASON in reasons
    assert response.partial is False
    assert response.total_candidate_count >= 1


def test_typing_mode_is_partial(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    _index(store, "/docs/harbor.md", "Harbor expansion budget")
    response = engine.suggest(SuggestRequest(query="harbor", typing_mode=True))
    assert response.partial is True
    assert response.suggestions


def test_empty_query_returns_nothing(engine: HybridSearchEngine) -> None:
    response = engine.suggest(SuggestRequest(query="  ?!  "))
    assert response.suggestions == []
    assert response.total_candidate_count == 0


def test_cold_documents_need_the_fallback(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    cold = _index(store, "/docs/archive/minutes.md", "Lighthouse restoration minutes", partition=Partition.COLD)

    without = engine.suggest(SuggestRequest(query="lighthouse", include_cold_partition_fallback=False))
    assert without.suggestions == []

    with_fallback = engine.suggest(SuggestRequest(query="lighthouse"))
    assert [item.id for item in with_fallback.suggestions] == [cold.id]


def test_non_searchable_documents_never_surface(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    _index(store, "/docs/export.json", "lighthouse lighthouse lighthouse", searchable=False)
    assert engine.suggest(SuggestRequest(query="lighthouse")).suggestions == []


def test_source_filters(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    _index(store, "/docs/harbor.md", "Harbor expansion budget")
    assert engine.suggest(SuggestRequest(query="harbor", source_filters=[SourceType.EMAIL])).suggestions == []
    assert engine.suggest(SuggestRequest(query="harbor", source_filters=[SourceType.FILE])).suggestions


def test_graph_boost_marks_connected_documents(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    _index(store, "/docs/harbor.md", "Harbor expansion budget approved")
    top = engine.suggest(SuggestRequest(query="harbor expansion")).suggestions[0]
    assert "graph" in top.reasons
    assert top.graph_score > 0


def test_snippets_are_trimmed(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    _index(store, "/docs/long.md", "harbor " + "word " * 400)
    top = engine.suggest(SuggestRequest(query="harbor")).suggestions[0]
    assert len(top.snippet) <= 420


def test_limit_is_respected(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    for index in range(8):
        _index(store, f"/docs/topic{index}/note.md", f"harbor note number {index}")
    response = engine.suggest(SuggestRequest(query="harbor", limit=3))
    assert len(response.suggestions) == 3


def test_directory_aggregation_surfaces_folder(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    for name in ("plan", "budget", "permits"):
        _index(store, f"/docs/projects/harbor/harbor-{name}.md", f"Harbor {name} draft for the waterfront")

    response = engine.suggest(SuggestRequest(query="harbor waterfront"))

    top_three = response.suggestions[:3]
    directories = [item for item in top_three if "directory" in item.reasons]
    assert len(directories) == 1
    folder = directories[0]
    assert folder.title == "harbor"
    assert folder.source_path_or_handle == "/docs/projects/harbor"
    assert folder.id.startswith("dir_")
    assert folder.snippet == "3 matching files"


def _suggestion(path: str, score: float) -> Suggestion:
    return Suggestion(
        id=document_id("file", path),
        source_type=SourceType.FILE,
        title=Path(path).name,
        snippet="",
        source_id=path,
        source_path_or_handle=path,
        relevance_score=score,
        timestamp=utc_now(),
    )


def test_directory_needs_two_members_and_distinct_children() -> None:
    assert directory_suggestions([_suggestion("/r/a/b/x.md", 1.0)]) == []

    folders = directory_suggestions([_suggestion("/r/a/b/x.md", 1.0), _suggestion("/r/a/b/y.md", 0.5)])
    assert [item.source_path_or_handle for item in folders] == ["/r/a/b"]
    assert folders[0].relevance_score == pytest.approx(1.0 * 0.92)


def test_directory_parent_kept_when_members_differ() -> None:
    folders = directory_suggestions(
        [
            _suggestion("/r/a/b/x.md", 1.0),
            _suggestion("/r/a/b/y.md", 0.8),
            _suggestion("/r/a/z.md", 0.6),
        ]
    )
    paths = sorted(item.source_path_or_handle for item in folders)
    assert paths == ["/r/a", "/r/a/b"]
    parent = next(item for item in folders if item.source_path_or_handle == "/r/a")
    assert parent.relevance_score == pytest.approx(1.0 * 0.94)


def test_compact_retrieval_query() -> None:
    assert compact_retrieval_query("  harbor, budget?! ") == "harbor budget"
    pasted = (
        "Please find attached the revised harbor expansion budget together with the permit timeline, "
        "the environmental review summary and the notes from the council meeting that happened last "
        "Thursday afternoon in the main hall downtown."
    )
    compact = compact_retrieval_query(pasted)
    assert len(compact) < len(pasted)
    assert "harbor" in compact.split()
    assert "the" not in compact.split()


def test_tuning_per_mode() -> None:
    typing = SearchTuning.for_mode(True)
    deep = SearchTuning.for_mode(False)
    assert (typing.vector_top_k, typing.lexical_limit, typing.graph_seed_count) == (180, 64, 12)
    assert (deep.vector_top_k, deep.lexical_limit, deep.graph_seed_count) == (360, 128, 36)
    assert typing.vector_min_similarity > deep.vector_min_similarity


def _vector_at(query: str, similarity: float) -> list[float]:
    """A unit vector with the given cosine to the query embedding."""
    embeddings = EmbeddingRuntime.get()
    target = embeddings.embed_array(query)
    other = embeddings.embed_array("zebra quartz violin moss lantern")
    other = other - float(other @ target) * target
    other = other / np.linalg.norm(other)
    return (similarity * target + math.sqrt(1.0 - similarity**2) * other).tolist()


def _index_vector_only(
    store: RetrievalStore,
    path: str,
    chunk_text: str,
    vector: list[float],
    updated_at: datetime | None = None,
    body: str | None = None,
) -> RetrievalDocument:
    document = RetrievalDocument(
        id=document_id("file", path),
        source_type=SourceType.FILE,
        source_id=path,
        title=Path(path).name,
        body=body if body is not None else chunk_text,
        source_path_or_handle=path,
        updated_at=updated_at or utc_now() - timedelta(hours=1),
    )
    chunk = RetrievalChunk(id=chunk_id(document.id, 0), document_id=document.id, text=chunk_text, index=0, embedding=vector)
    store.upsert_document(document, [chunk], attempt_outcome=AttemptOutcome.SUCCESS)
    return document


@pytest.mark.parametrize("typing_mode", [True, False])
def test_vector_candidate_below_floor_is_dropped(
    store: RetrievalStore, engine: HybridSearchEngine, typing_mode: bool
) -> None:
    _index_vector_only(store, "/docs/ferry.md", "ferry pier maintenance log", _vector_at("harbor budget", 0.02))
    response = engine.suggest(SuggestRequest(query="harbor budget", typing_mode=typing_mode))
    assert response.suggestions == []


def test_graph_edges_cannot_outrank_a_strong_match(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    strong = _index(store, "/docs/harbor.md", "Harbor budget approved")
    weak = _index_vector_only(store, "/other/ferry.md", "ferry pier maintenance log", _vector_at("harbor budget", 0.40))
    now = utc_now()
    store.insert_graph_edges(
        [
            GraphEdge(
                id=f"{weak.id}:related:{index}",
                source_node=weak.id,
                target_node=f"entity:topic{index}",
                edge_type="related",
                confidence=1.0,
                weight=1.0,
                source_type=SourceType.FILE,
                event_time=now,
                updated_at=now,
            )
            for index in range(48)
        ]
    )

    suggestions = engine.suggest(SuggestRequest(query="harbor budget")).suggestions

    assert suggestions[0].id == strong.id
    boosted = next(item for item in suggestions if item.id == weak.id)
    assert "graph" in boosted.reasons


def test_strong_old_match_beats_many_recent_weak_ones(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    old = _index_vector_only(
        store,
        "/archive/ferry.md",
        "ferry pier maintenance log",
        _vector_at("harbor budget", 0.72),
        updated_at=utc_now() - timedelta(days=120),
    )
    weak_vector = _vector_at("harbor budget", 0.19)
    for index in range(260):
        _index_vector_only(store, f"/recent/n{index}/note.md", f"garden compost entry {index}", weak_vector)

    response = engine.suggest(SuggestRequest(query="harbor budget", typing_mode=True))

    assert response.suggestions[0].id == old.id


def test_vector_only_snippet_comes_from_chunk_text(store: RetrievalStore, engine: HybridSearchEngine) -> None:
    document = _index_vector_only(
        store,
        "/docs/ferry.md",
        "ferry pier maintenance log",
        _vector_at("harbor budget", 0.60),
        body="document level summary text",
    )
    top = engine.suggest(SuggestRequest(query="harbor budget")).suggestions[0]
    assert top.id == document.id
    assert top.reasons[0] == "vector"
    assert top.snippet == "ferry pier maintenance log"
