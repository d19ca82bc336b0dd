"""Internal dataclasses representing persisted and in-flight entities."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from retrievald.utils.time import utc_now


class SourceType(str, Enum):
    FILE = "file"
    EMAIL = "email"
    MESSAGE = "message"
    CALENDAR = "calendar"


class RiskLabel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Partition(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class OperationPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    INGESTING = "ingesting"
    BACKFILLING = "backfilling"


class AttemptOutcome(str, Enum):
    """Terminal outcome of one extraction attempt."""

    SUCCESS = "success"
    PARTIAL = "partial"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"

    @property
    def is_cacheable(self) -> bool:
        # partial results are always retried on the next pass
        return self is not AttemptOutcome.PARTIAL


class EventOperation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(slots=True)
class RetrievalDocument:
    id: str
    source_type: SourceType
    source_id: str
    title: str
    body: str
    source_path_or_handle: str
    updated_at: datetime
    risk: RiskLabel = RiskLabel.LOW
    partition: Partition = Partition.HOT
    searchable: bool = True


@dataclass(slots=True)
class RetrievalChunk:
    id: str
    document_id: str
    text: str
    index: int
    embedding: list[float]


@dataclass(slots=True)
class GraphEdge:
    id: str
    source_node: str
    target_node: str
    edge_type: str
    confidence: float
    weight: float
    source_type: SourceType
    event_time: datetime
    updated_at: datetime


@dataclass(slots=True)
class IngestionEvent:
    """A unit of crawl output waiting for extraction and persistence."""

    source_type: SourceType
    scope_label: str
    source_id: str
    title: str
    body: str
    source_path_or_handle: str
    occurred_at: datetime
    operation: EventOperation = EventOperation.UPSERT
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_type": self.source_type.value,
            "scope_label": self.scope_label,
            "source_id": self.source_id,
            "title": self.title,
            "body": self.body,
            "source_path_or_handle": self.source_path_or_handle,
            "occurred_at": self.occurred_at.isoformat(),
            "operation": self.operation.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IngestionEvent":
        return cls(
            id=payload["id"],
            source_type=SourceType(payload["source_type"]),
            scope_label=payload.get("scope_label", ""),
            source_id=payload["source_id"],
            title=payload.get("title", ""),
            body=payload.get("body", ""),
            source_path_or_handle=payload.get("source_path_or_handle", payload["source_id"]),
            occurred_at=datetime.fromisoformat(payload["occurred_at"]),
            operation=EventOperation(payload.get("operation", EventOperation.UPSERT.value)),
        )


@dataclass(slots=True)
class BackfillCheckpoint:
    key: str
    source_type: SourceType
    scope_label: str
    cursor: str | None = None
    last_indexed_path: str | None = None
    last_indexed_at: datetime | None = None
    resume_token: str | None = None
    items_processed: int = 0
    items_skipped: int = 0
    estimated_total: int = 0
    status: str = "idle"
    updated_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "source_type": self.source_type.value,
            "scope_label": self.scope_label,
            "cursor": self.cursor,
            "last_indexed_path": self.last_indexed_path,
            "last_indexed_at": self.last_indexed_at.isoformat() if self.last_indexed_at else None,
            "resume_token": self.resume_token,
            "items_processed": self.items_processed,
            "items_skipped": self.items_skipped,
            "estimated_total": self.estimated_total,
            "status": self.status,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BackfillCheckpoint":
        last_indexed_at = payload.get("last_indexed_at")
        return cls(
            key=payload["key"],
            source_type=SourceType(payload["source_type"]),
            scope_label=payload.get("scope_label", "default"),
            cursor=payload.get("cursor"),
            last_indexed_path=payload.get("last_indexed_path"),
            last_indexed_at=datetime.fromisoformat(last_indexed_at) if last_indexed_at else None,
            resume_token=payload.get("resume_token"),
            items_processed=int(payload.get("items_processed", 0)),
            items_skipped=int(payload.get("items_skipped", 0)),
            estimated_total=int(payload.get("estimated_total", 0)),
            status=payload.get("status", "idle"),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


@dataclass(slots=True)
class LexicalHit:
    document_id: str
    chunk_id: str
    source_type: SourceType
    source_id: str
    title: str
    snippet: str
    source_path_or_handle: str
    updated_at: datetime
    risk: RiskLabel
    rank: int


@dataclass(slots=True)
class ChunkVector:
    chunk_id: str
    document_id: str
    source_type: SourceType
    source_id: str
    title: str
    text: str
    source_path_or_handle: str
    updated_at: datetime
    risk: RiskLabel
    vector: bytes


@dataclass(slots=True)
class ScanBatchStats:
    source_type: SourceType
    mode: str
    roots_scanned: int
    candidates_seen: int
    candidates_skipped_excluded: int
    events_emitted: int
    occurred_at: datetime = field(default_factory=utc_now)


__all__ = [
    "SourceType",
    "RiskLabel",
    "Partition",
    "OperationPhase",
    "AttemptOutcome",
    "EventOperation",
    "RetrievalDocument",
    "RetrievalChunk",
    "GraphEdge",
    "IngestionEvent",
    "BackfillCheckpoint",
    "LexicalHit",
    "ChunkVector",
    "ScanBatchStats",
]
