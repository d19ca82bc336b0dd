"""Pydantic DTOs exposed via the service and the local HTTP surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from retrievald.models.entities import OperationPhase, RiskLabel, SourceType


class SuggestRequest(BaseModel):
    query: str
    source_filters: list[SourceType] | None = None
    limit: int = Field(default=12, ge=1, le=200)
    typing_mode: bool = False
    include_cold_partition_fallback: bool = True


class Suggestion(BaseModel):
    id: str
    source_type: SourceType
    title: str
    snippet: str
    source_id: str
    source_path_or_handle: str
    relevance_score: float
    graph_score: float = 0.0
    risk: RiskLabel = RiskLabel.LOW
    reasons: list[str] = Field(default_factory=list)
    timestamp: datetime


class SuggestResponse(BaseModel):
    suggestions: list[Suggestion]
    partial: bool = False
    total_candidate_count: int = 0
    latency_ms: int = 0


class PreviewResponse(BaseModel):
    id: str
    title: str
    body: str
    source_path_or_handle: str
    reasons: list[str] = Field(default_factory=lambda: ["preview"])


class ProgressState(BaseModel):
    source_type: SourceType
    scope_label: str
    status: str
    items_processed: int
    items_skipped: int
    estimated_total: int
    percent_complete: float
    eta_seconds: int | None = None
    checkpoint_updated_at: datetime


class IndexedSourceStats(BaseModel):
    source_type: SourceType
    document_count: int
    last_document_updated_at: datetime | None = None


class IndexStats(BaseModel):
    total_document_count: int
    sources: list[IndexedSourceStats]


class QueueSourceActivity(BaseModel):
    source_type: SourceType
    queued_item_count: int


class QueueActivity(BaseModel):
    queue_depth: int
    sources: list[QueueSourceActivity]


class Health(BaseModel):
    daemon_version: str
    running: bool
    paused: bool = False
    queue_depth: int
    in_flight_count: int
    last_error: str | None = None
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    current_operation: OperationPhase = OperationPhase.IDLE
    extraction_success_count: int = 0
    extraction_partial_count: int = 0
    extraction_unsupported_count: int = 0
    extraction_failed_count: int = 0
    extraction_ocr_count: int = 0


class SourceRuntimeState(BaseModel):
    source_type: SourceType
    queue_depth: int = 0
    in_flight_count: int = 0
    cumulative_processed_count: int = 0
    extraction_success_count: int = 0
    extraction_partial_count: int = 0
    extraction_unsupported_count: int = 0
    extraction_failed_count: int = 0
    extraction_ocr_count: int = 0
    last_scan_mode: str | None = None
    last_scan_roots: int = 0
    last_scan_candidates_seen: int = 0
    last_scan_candidates_skipped_excluded: int = 0
    last_scan_events_emitted: int = 0
    last_scan_at: datetime | None = None
    current_operation: OperationPhase = OperationPhase.IDLE
    current_item_path: str | None = None
    updated_at: datetime


class RetrievalStateSnapshot(BaseModel):
    health: Health
    progress: list[ProgressState]
    index_stats: IndexStats
    queue_activity: QueueActivity
    source_runtime: list[SourceRuntimeState]
    current_operation: OperationPhase
    current_operation_source_type: SourceType | None = None
    current_item_path: str | None = None


class BackfillRequest(BaseModel):
    limit: int = Field(default=50_000, ge=1)


class CheckpointResponse(BaseModel):
    key: str
    source_type: SourceType
    scope_label: str
    resume_token: str | None = None
    items_processed: int
    items_skipped: int
    estimated_total: int
    status: str
    updated_at: datetime


class BenchmarkRequest(BaseModel):
    queries: list[str] = Field(min_length=1)


class BenchmarkResponse(BaseModel):
    latencies_ms: dict[str, int]


class PurgeRequest(BaseModel):
    extensions: list[str] = Field(min_length=1)


class PurgeResponse(BaseModel):
    removed: int


__all__ = [
    "SuggestRequest",
    "Suggestion",
    "SuggestResponse",
    "PreviewResponse",
    "ProgressState",
    "IndexedSourceStats",
    "IndexStats",
    "QueueSourceActivity",
    "QueueActivity",
    "Health",
    "SourceRuntimeState",
    "RetrievalStateSnapshot",
    "BackfillRequest",
    "CheckpointResponse",
    "BenchmarkRequest",
    "BenchmarkResponse",
    "PurgeRequest",
    "PurgeResponse",
]
