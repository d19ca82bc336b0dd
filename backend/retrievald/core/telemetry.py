"""In-process runtime telemetry shared by workers, scans and the HTTP surface."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from retrievald.core import metrics
from retrievald.ingest.types import ExtractionTelemetry
from retrievald.models.dto import Health, SourceRuntimeState
from retrievald.models.entities import AttemptOutcome, OperationPhase, ScanBatchStats, SourceType
from retrievald.utils.time import utc_now

LATENCY_WINDOW = 1000


@dataclass(slots=True)
class _SourceCounters:
    queue_depth: int = 0
    in_flight: int = 0
    processed: int = 0
    extraction: dict[AttemptOutcome, int] = field(default_factory=lambda: {outcome: 0 for outcome in AttemptOutcome})
    ocr: int = 0
    last_scan: ScanBatchStats | None = None
    phase: OperationPhase = OperationPhase.IDLE
    current_path: str | None = None
    updated_at: datetime = field(default_factory=utc_now)


class RuntimeTelemetry:
    """Lock-guarded counters; every read returns a consistent copy."""

    def __init__(self, daemon_version: str) -> None:
        self.daemon_version = daemon_version
        self._lock = threading.Lock()
        self._sources: dict[SourceType, _SourceCounters] = {source: _SourceCounters() for source in SourceType}
        self._latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)
        self._last_error: str | None = None
        self._backfilling = 0
        self._scanning = 0

    # Ingestion -----------------------------------------------------------

    def begin_ingestion(self, source_type: SourceType, path: str) -> None:
        with self._lock:
            counters = self._sources[source_type]
            counters.in_flight += 1
            counters.phase = OperationPhase.EXTRACTING
            counters.current_path = path
            counters.updated_at = utc_now()

    def mark_ingesting(self, source_type: SourceType) -> None:
        with self._lock:
            counters = self._sources[source_type]
            if counters.in_flight:
                counters.phase = OperationPhase.INGESTING
                counters.updated_at = utc_now()

    def end_ingestion(self, source_type: SourceType, error: str | None = None) -> None:
        with self._lock:
            counters = self._sources[source_type]
            counters.in_flight = max(0, counters.in_flight - 1)
            counters.processed += 1
            if counters.in_flight == 0:
                counters.phase = OperationPhase.IDLE
                counters.current_path = None
            counters.updated_at = utc_now()
            if error:
                self._last_error = error

    def record_extraction(self, source_type: SourceType, telemetry: ExtractionTelemetry) -> None:
        with self._lock:
            counters = self._sources[source_type]
            counters.extraction[telemetry.outcome] += 1
            if telemetry.used_ocr:
                counters.ocr += 1
            counters.updated_at = utc_now()
        metrics.EXTRACTIONS.labels(outcome=telemetry.outcome.value).inc()

    def record_document_persisted(self, source_type: SourceType) -> None:
        metrics.DOCUMENTS_PERSISTED.labels(source_type=source_type.value).inc()

    def record_scan_batch(self, stats: ScanBatchStats) -> None:
        with self._lock:
            counters = self._sources[stats.source_type]
            counters.last_scan = stats
            counters.updated_at = utc_now()

    def begin_scan(self) -> None:
        with self._lock:
            self._scanning += 1

    def end_scan(self) -> None:
        with self._lock:
            self._scanning = max(0, self._scanning - 1)

    def begin_backfill(self) -> None:
        with self._lock:
            self._backfilling += 1

    def end_backfill(self) -> None:
        with self._lock:
            self._backfilling = max(0, self._backfilling - 1)

    def set_queue_depths(self, depths: dict[SourceType, int]) -> None:
        with self._lock:
            for source_type, counters in self._sources.items():
                counters.queue_depth = depths.get(source_type, 0)
        metrics.QUEUE_DEPTH.set(sum(depths.values()))

    def record_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message

    # Latency -------------------------------------------------------------

    def record_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._latencies.append(latency_ms)

    def latency_percentiles(self) -> tuple[float, float]:
        with self._lock:
            samples = sorted(self._latencies)
        return _percentile(samples, 0.5), _percentile(samples, 0.95)

    # Snapshots -----------------------------------------------------------

    def current_operation(self) -> tuple[OperationPhase, SourceType | None, str | None]:
        with self._lock:
            return self._current_operation_locked()

    def _current_operation_locked(self) -> tuple[OperationPhase, SourceType | None, str | None]:
        for source_type, counters in self._sources.items():
            if counters.in_flight:
                return counters.phase, source_type, counters.current_path
        if self._backfilling:
            return OperationPhase.BACKFILLING, None, None
        if self._scanning:
            return OperationPhase.SCANNING, None, None
        if any(counters.queue_depth for counters in self._sources.values()):
            return OperationPhase.INGESTING, None, None
        return OperationPhase.IDLE, None, None

    def health(self, running: bool, paused: bool) -> Health:
        p50, p95 = self.latency_percentiles()
        with self._lock:
            phase, _, _ = self._current_operation_locked()
            totals = {outcome: sum(c.extraction[outcome] for c in self._sources.values()) for outcome in AttemptOutcome}
            return Health(
                daemon_version=self.daemon_version,
                running=running,
                paused=paused,
                queue_depth=sum(c.queue_depth for c in self._sources.values()),
                in_flight_count=sum(c.in_flight for c in self._sources.values()),
                last_error=self._last_error,
                latency_p50_ms=p50,
                latency_p95_ms=p95,
                current_operation=phase,
                extraction_success_count=totals[AttemptOutcome.SUCCESS],
                extraction_partial_count=totals[AttemptOutcome.PARTIAL],
                extraction_unsupported_count=totals[AttemptOutcome.UNSUPPORTED],
                extraction_failed_count=totals[AttemptOutcome.FAILED],
                extraction_ocr_count=sum(c.ocr for c in self._sources.values()),
            )

    def source_states(self) -> list[SourceRuntimeState]:
        with self._lock:
            states = []
            for source_type, counters in self._sources.items():
                scan = counters.last_scan
                states.append(
                    SourceRuntimeState(
                        source_type=source_type,
                        queue_depth=counters.queue_depth,
                        in_flight_count=counters.in_flight,
                        cumulative_processed_count=counters.processed,
                        extraction_success_count=counters.extraction[AttemptOutcome.SUCCESS],
                        extraction_partial_count=counters.extraction[AttemptOutcome.PARTIAL],
                        extraction_unsupported_count=counters.extraction[AttemptOutcome.UNSUPPORTED],
                        extraction_failed_count=counters.extraction[AttemptOutcome.FAILED],
                        extraction_ocr_count=counters.ocr,
                        last_scan_mode=scan.mode if scan else None,
                        last_scan_roots=scan.roots_scanned if scan else 0,
                        last_scan_candidates_seen=scan.candidates_seen if scan else 0,
                        last_scan_candidates_skipped_excluded=scan.candidates_skipped_excluded if scan else 0,
                        last_scan_events_emitted=scan.events_emitted if scan else 0,
                        last_scan_at=scan.occurred_at if scan else None,
                        current_operation=counters.phase,
                        current_item_path=counters.current_path,
                        updated_at=counters.updated_at,
                    )
                )
            return states


def _percentile(samples: list[float], fraction: float) -> float:
    if not samples:
        return 0.0
    index = min(len(samples) - 1, max(0, int(round(fraction * (len(samples) - 1)))))
    return float(samples[index])


__all__ = ["RuntimeTelemetry"]
