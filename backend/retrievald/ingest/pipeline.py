"""Ingest pipeline orchestration: one event in, one persisted document (or attempt) out."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from retrievald.core import metrics
from retrievald.core.errors import StoreError
from retrievald.core.logging import get_logger
from retrievald.core.telemetry import RuntimeTelemetry
from retrievald.db.store import MENTION_EDGE_TYPE, RetrievalStore
from retrievald.ingest.chunker import DEFAULT_CHUNK_CHARACTERS, chunk_text
from retrievald.ingest.embeddings import EmbeddingRuntime
from retrievald.ingest.extraction import ContentExtractionService
from retrievald.ingest.policy import IndexingPolicy
from retrievald.models.entities import (
    AttemptOutcome,
    EventOperation,
    GraphEdge,
    IngestionEvent,
    Partition,
    RetrievalChunk,
    RetrievalDocument,
    RiskLabel,
)
from retrievald.utils.ids import chunk_id, document_id
from retrievald.utils.text import entity_tokens, redact
from retrievald.utils.time import age_seconds, utc_now

logger = get_logger(__name__)

HOT_PARTITION_DAYS = 30
WARM_PARTITION_DAYS = 180
MENTION_EDGE_CONFIDENCE = 0.6
MENTION_EDGE_WEIGHT = 1.0
MAX_MENTION_EDGES = 10

_HIGH_RISK_MARKERS = ("password", "secret", "api key", "api_key", "apikey")
_MEDIUM_RISK_MARKERS = ("ssn", "bank", "private")


class IngestPipeline:
    """Coordinate extraction, chunking, embeddings and persistence for one event."""

    def __init__(
        self,
        store: RetrievalStore,
        extraction: ContentExtractionService,
        policy: IndexingPolicy,
        telemetry: RuntimeTelemetry,
        embeddings: EmbeddingRuntime,
        on_persisted: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.extraction = extraction
        self.policy = policy
        self.telemetry = telemetry
        self.embeddings = embeddings
        self.on_persisted = on_persisted

    def should_process(self, event: IngestionEvent) -> bool:
        """False for events that would be a no-op: ineligible paths and unchanged files."""
        if event.operation is EventOperation.DELETE:
            return True
        if not self.policy.should_attempt_file_ingestion(event.source_path_or_handle):
            return False
        return not self.store.is_ingestion_attempt_current(event.source_type, event.source_id, event.occurred_at)

    def ingest(self, event: IngestionEvent) -> AttemptOutcome | None:
        """Process one event; returns the attempt outcome, or None when nothing was extracted."""
        started = time.perf_counter()
        try:
            if event.operation is EventOperation.DELETE:
                removed = self.store.delete_documents_for_path(event.source_type, event.source_path_or_handle)
                if removed:
                    logger.info("Removed documents for deleted path", extra={"ctx_path": event.source_path_or_handle, "ctx_removed": removed})
                    self._notify_persisted()
                return None
            if not self.should_process(event):
                return None
            return self._ingest_upsert(event)
        except StoreError as exc:
            logger.exception("Ingestion failed for %s", event.source_path_or_handle)
            self.telemetry.record_error(str(exc))
            raise
        finally:
            metrics.INGEST_DURATION.labels(source_type=event.source_type.value).observe(time.perf_counter() - started)

    def _ingest_upsert(self, event: IngestionEvent) -> AttemptOutcome:
        path = Path(event.source_path_or_handle)
        result = self.extraction.extract(path, self.policy)
        telemetry = result.telemetry
        self.telemetry.record_extraction(event.source_type, telemetry)
        self.store.record_audit_event(
            "extraction",
            {
                "path": str(path),
                "outcome": telemetry.outcome.value,
                "detail": telemetry.detail,
                "used_ocr": telemetry.used_ocr,
                "format": telemetry.format,
            },
        )
        content = result.content
        if content is None or not content.has_text:
            self.store.record_ingestion_attempt(
                event.source_type, event.source_id, event.source_path_or_handle, event.occurred_at, telemetry.outcome
            )
            logger.debug("No text extracted", extra={"ctx_path": str(path), "ctx_detail": telemetry.detail})
            return telemetry.outcome

        self.telemetry.mark_ingesting(event.source_type)
        body = redact(content.searchable_body(self.policy.max_extracted_characters_per_document))
        searchable = self.policy.is_searchable(path)
        doc_id = document_id(event.source_type.value, event.source_id)
        document = RetrievalDocument(
            id=doc_id,
            source_type=event.source_type,
            source_id=event.source_id,
            title=path.name,
            body=body,
            source_path_or_handle=event.source_path_or_handle,
            updated_at=event.occurred_at,
            risk=infer_risk(body),
            partition=partition_for(event),
            searchable=searchable,
        )
        texts = chunk_text(body, DEFAULT_CHUNK_CHARACTERS, self.policy.max_chunks_per_document)
        vectors = self.embeddings.embed(texts) if searchable else [[] for _ in texts]
        chunks = [
            RetrievalChunk(id=chunk_id(doc_id, index), document_id=doc_id, text=text, index=index, embedding=vector)
            for index, (text, vector) in enumerate(zip(texts, vectors))
        ]
        self.store.upsert_document(document, chunks, attempt_outcome=telemetry.outcome)
        if searchable:
            self.store.insert_graph_edges(mention_edges(document))
        self.telemetry.record_document_persisted(event.source_type)
        self._notify_persisted()
        logger.debug(
            "Persisted document",
            extra={"ctx_path": str(path), "ctx_chunks": len(chunks), "ctx_outcome": telemetry.outcome.value},
        )
        return telemetry.outcome

    def _notify_persisted(self) -> None:
        if self.on_persisted is not None:
            self.on_persisted()


def infer_risk(text: str) -> RiskLabel:
    lower = text.lower()
    if any(marker in lower for marker in _HIGH_RISK_MARKERS):
        return RiskLabel.HIGH
    if any(marker in lower for marker in _MEDIUM_RISK_MARKERS):
        return RiskLabel.MEDIUM
    return RiskLabel.LOW


def partition_for(event: IngestionEvent) -> Partition:
    days = age_seconds(event.occurred_at) / 86_400
    if days < HOT_PARTITION_DAYS:
        return Partition.HOT
    if days < WARM_PARTITION_DAYS:
        return Partition.WARM
    return Partition.COLD


def mention_edges(document: RetrievalDocument) -> list[GraphEdge]:
    now = utc_now()
    return [
        GraphEdge(
            id=f"{document.id}:mentions:{token}",
            source_node=document.id,
            target_node=f"entity:{token}",
            edge_type=MENTION_EDGE_TYPE,
            confidence=MENTION_EDGE_CONFIDENCE,
            weight=MENTION_EDGE_WEIGHT,
            source_type=document.source_type,
            event_time=document.updated_at,
            updated_at=now,
        )
        for token in entity_tokens(document.body, limit=MAX_MENTION_EDGES, min_length=4)
    ]


__all__ = ["IngestPipeline", "infer_risk", "partition_for", "mention_edges"]
