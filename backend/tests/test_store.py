"""RetrievalStore persistence behaviour."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Iterator

import pytest

from retrievald.db.store import QUEUE_SNAPSHOT_CAPACITY, RetrievalStore, build_match_query
from retrievald.ingest.embeddings import EmbeddingRuntime
from retrievald.ingest.pipeline import mention_edges
from retrievald.models.entities import (
    AttemptOutcome,
    BackfillCheckpoint,
    EventOperation,
    IngestionEvent,
    Partition,
    RetrievalChunk,
    RetrievalDocument,
    SourceType,
)
from retrievald.utils.ids import chunk_id, document_id
from retrievald.utils.time import utc_now


@pytest.fixture
def store(tmp_path: Path) -> Iterator[RetrievalStore]:
    retrieval_store = RetrievalStore(tmp_path / "index" / "metadata.db")
    retrieval_store.open_and_migrate()
    yield retrieval_store
    retrieval_store.close()


def _document(path: str, body: str, searchable: bool = True, partition: Partition = Partition.HOT) -> RetrievalDocument:
    return RetrievalDocument(
        id=document_id("file", path),
        source_type=SourceType.FILE,
        source_id=path,
        title=Path(path).name,
        body=body,
        source_path_or_handle=path,
        updated_at=utc_now(),
        partition=partition,
        searchable=searchable,
    )


def _chunks(document: RetrievalDocument) -> list[RetrievalChunk]:
    embeddings = EmbeddingRuntime.get()
    return [
        RetrievalChunk(
            id=chunk_id(document.id, 0),
            document_id=document.id,
            text=document.body,
            index=0,
            embedding=embeddings.embed_one(document.body),
        )
    ]


def _save(store: RetrievalStore, path: str, body: str, **kwargs: object) -> RetrievalDocument:
    document = _document(path, body, **kwargs)
    store.upsert_document(document, _chunks(document), attempt_outcome=AttemptOutcome.SUCCESS)
    return document


def test_upsert_fetch_and_lexical_search(store: RetrievalStore) -> None:
    saved = _save(store, "/docs/harbor.md", "Harbor expansion budget and timeline")
    _save(store, "/docs/garden.md", "Tomato seedlings and compost")

    fetched = store.fetch_document(saved.id)
    assert fetched is not None
    assert fetched.body == saved.body

    hits = store.lexical_search("harbor budget", None, None, 10)
    assert [hit.document_id for hit in hits] == [saved.id]
    assert hits[0].rank == 0


def test_upsert_replaces_chunks(store: RetrievalStore) -> None:
    _save(store, "/docs/note.md", "first version mentions lighthouse")
    updated = _save(store, "/docs/note.md", "second version mentions ferry")
    assert store.document_count() == 1
    assert store.lexical_search("lighthouse", None, None, 10) == []
    assert [hit.document_id for hit in store.lexical_search("ferry", None, None, 10)] == [updated.id]
    assert len(store.chunk_vectors(None, None)) == 1


def test_non_searchable_documents_stay_out_of_ranking(store: RetrievalStore) -> None:
    hidden = _save(store, "/docs/data.json", "harbor harbor harbor", searchable=False)
    assert store.fetch_document(hidden.id) is not None
    assert store.lexical_search("harbor", None, None, 10) == []
    assert store.chunk_vectors(None, None) == []


def test_partition_filter(store: RetrievalStore) -> None:
    _save(store, "/docs/old.md", "archive harbor minutes", partition=Partition.COLD)
    assert store.lexical_search("harbor", None, [Partition.HOT, Partition.WARM], 10) == []
    assert len(store.lexical_search("harbor", None, None, 10)) == 1
    assert store.chunk_vectors(None, [Partition.HOT]) == []


def test_delete_by_path_prefix(store: RetrievalStore) -> None:
    _save(store, "/docs/a/one.md", "one")
    _save(store, "/docs/a/deep/two.md", "two")
    sibling = _save(store, "/docs/ab/three.md", "three")

    assert store.delete_documents_for_path(SourceType.FILE, "/docs/a") == 2
    assert store.document_count() == 1
    assert store.fetch_document(sibling.id) is not None
    assert store.file_source_paths() == {"/docs/ab/three.md"}


def test_purge_by_extension_forgets_attempts(store: RetrievalStore) -> None:
    kept = _save(store, "/docs/keep.md", "keep")
    _save(store, "/docs/drop.csv", "drop", searchable=False)
    store.record_ingestion_attempt(
        SourceType.FILE, "/docs/failed.csv", "/docs/failed.csv", utc_now(), AttemptOutcome.FAILED
    )

    assert store.purge_file_documents_for_extensions([".CSV"]) == 1
    assert store.fetch_document(kept.id) is not None
    assert not store.is_ingestion_attempt_current(SourceType.FILE, "/docs/failed.csv", utc_now() - timedelta(days=1))
    assert store.purge_file_documents_for_extensions([" "]) == 0


def test_attempt_currency(store: RetrievalStore) -> None:
    stamp = utc_now() - timedelta(hours=1)
    store.record_ingestion_attempt(SourceType.FILE, "/docs/a.pdf", "/docs/a.pdf", stamp, AttemptOutcome.UNSUPPORTED)
    assert store.is_ingestion_attempt_current(SourceType.FILE, "/docs/a.pdf", stamp)
    assert not store.is_ingestion_attempt_current(SourceType.FILE, "/docs/a.pdf", stamp + timedelta(seconds=5))

    store.record_ingestion_attempt(SourceType.FILE, "/docs/b.pdf", "/docs/b.pdf", stamp, AttemptOutcome.PARTIAL)
    assert not store.is_ingestion_attempt_current(SourceType.FILE, "/docs/b.pdf", stamp)
    assert not store.is_ingestion_attempt_current(SourceType.FILE, "/docs/never.pdf", stamp)


def test_refresh_searchability_drops_index_rows(store: RetrievalStore) -> None:
    _save(store, "/docs/table.csv", "harbor ledger rows")
    assert len(store.lexical_search("harbor", None, None, 10)) == 1

    assert store.refresh_file_searchability({"csv"}) == 1
    assert store.lexical_search("harbor", None, None, 10) == []
    assert store.chunk_vectors(None, None) == []


def test_graph_edges_follow_documents(store: RetrievalStore) -> None:
    document = _save(store, "/docs/notes.md", "Harbor expansion meeting with Priya about funding")
    store.insert_graph_edges(mention_edges(document))
    neighbors = store.graph_neighbors([document.id], limit=50)
    assert neighbors
    assert all(edge.source_node == document.id for edge in neighbors)
    assert {edge.target_node for edge in neighbors} >= {"entity:harbor", "entity:priya"}

    store.delete_documents_for_path(SourceType.FILE, "/docs/notes.md")
    assert store.graph_neighbors([document.id], limit=50) == []


def test_reupsert_drops_stale_mention_edges(store: RetrievalStore) -> None:
    first = _save(store, "/docs/notes.md", "Lighthouse keeper rota")
    store.insert_graph_edges(mention_edges(first))
    second = _save(store, "/docs/notes.md", "Ferry timetable changes")
    store.insert_graph_edges(mention_edges(second))

    targets = {edge.target_node for edge in store.graph_neighbors([second.id], limit=50)}
    assert targets == {"entity:ferry", "entity:timetable", "entity:changes"}
    assert store.graph_neighbors(["entity:lighthouse"], limit=50) == []



def test_queue_snapshot_round_trip_and_reclaim(store: RetrievalStore) -> None:
    events = [
        IngestionEvent(
            source_type=SourceType.FILE,
            scope_label="docs",
            source_id=f"/docs/{index}.md",
            title=f"{index}.md",
            body="",
            source_path_or_handle=f"/docs/{index}.md",
            occurred_at=utc_now(),
            operation=EventOperation.DELETE if index == 0 else EventOperation.UPSERT,
        )
        for index in range(QUEUE_SNAPSHOT_CAPACITY + 10)
    ]
    store.save_queue_snapshot(events)
    restored = store.load_latest_queue_snapshot()
    assert len(restored) == QUEUE_SNAPSHOT_CAPACITY
    assert restored[-1].source_id == events[-1].source_id
    assert restored[-1].occurred_at == events[-1].occurred_at

    assert store.reclaim_queue_snapshot_storage_if_needed() is True
    assert store.load_latest_queue_snapshot() == []
    assert store.reclaim_queue_snapshot_storage_if_needed() is False


def test_checkpoints_and_progress(store: RetrievalStore) -> None:
    running = BackfillCheckpoint(
        key="file:default",
        source_type=SourceType.FILE,
        scope_label="default",
        items_processed=50,
        estimated_total=200,
        status="running",
    )
    store.save_checkpoint(running)
    store.upsert_backfill_job(running)
    loaded = store.load_checkpoint("file:default")
    assert loaded is not None
    assert loaded.items_processed == 50

    [progress] = store.all_progress_states()
    assert progress.percent_complete == pytest.approx(0.25)
    assert progress.status == "running"

    done = BackfillCheckpoint(
        key="file:default", source_type=SourceType.FILE, scope_label="default", items_processed=10, estimated_total=10
    )
    store.save_checkpoint(done)
    [progress] = store.all_progress_states()
    assert progress.percent_complete == 1.0
    assert progress.eta_seconds is None


def test_index_stats_reports_every_source_type(store: RetrievalStore) -> None:
    _save(store, "/docs/a.md", "alpha")
    stats = store.index_stats()
    assert stats.total_document_count == 1
    by_type = {item.source_type: item.document_count for item in stats.sources}
    assert by_type == {SourceType.FILE: 1, SourceType.EMAIL: 0, SourceType.MESSAGE: 0, SourceType.CALENDAR: 0}


def test_compact_keeps_recent_audit_rows(store: RetrievalStore) -> None:
    store.record_audit_event("extraction", {"path": "/docs/a.md", "outcome": "success"})
    store.compact()
    assert store.db.scalar("SELECT COUNT(*) FROM audit_events") == 1


def test_build_match_query() -> None:
    assert build_match_query("Harbor harbor, budget!") == '"harbor" OR "budget"'
    assert build_match_query("   ") == ""
