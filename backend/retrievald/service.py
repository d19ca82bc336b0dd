"""Retrieval service: queue, ingestion workers, backfill, live watching and suggest."""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from typing import Iterable, Sequence

from retrievald.core import metrics
from retrievald.core.config import Settings
from retrievald.core.errors import ServiceStateError, StoreError
from retrievald.core.logging import get_logger
from retrievald.core.telemetry import RuntimeTelemetry
from retrievald.db.store import RetrievalStore
from retrievald.ingest.connector import MODE_CHANGES_SINCE, MODE_FULL, MODE_OLDER_THAN, FileConnector
from retrievald.ingest.embeddings import EmbeddingRuntime
from retrievald.ingest.extraction import ContentExtractionService
from retrievald.ingest.ocr import OcrEngine
from retrievald.ingest.pipeline import IngestPipeline
from retrievald.ingest.policy import IndexingPolicy
from retrievald.models.dto import (
    Health,
    IndexStats,
    PreviewResponse,
    QueueActivity,
    QueueSourceActivity,
    RetrievalStateSnapshot,
    SuggestRequest,
    SuggestResponse,
)
from retrievald.models.entities import (
    BackfillCheckpoint,
    EventOperation,
    IngestionEvent,
    OperationPhase,
    SourceType,
)
from retrievald.retrieval.hybrid import HybridSearchEngine
from retrievald.utils.time import utc_now

logger = get_logger(__name__)

DAEMON_VERSION = "0.1.0"
MAX_BACKFILL_PAGES = 64
STARTUP_BACKFILL_ATTEMPTS = 5
STARTUP_BACKFILL_INITIAL_DELAY = 0.5
RECONCILE_MARGIN_SECONDS = 2.0
PREVIEW_CHARACTERS = 1200
SUGGEST_CACHE_MAX_ENTRIES = 256


class RetrievalService:
    """Owns the ingestion queue and every background activity of the daemon.

    Events wait in a deque guarded by a condition variable and are
    deduplicated by source id while pending. Workers pop an event and mark it
    in flight under the same lock, so a state snapshot never sees a gap
    between the two.
    """

    def __init__(
        self,
        settings: Settings,
        ocr: OcrEngine | None = None,
        extraction: ContentExtractionService | None = None,
    ) -> None:
        self.settings = settings
        self.paths = settings.paths
        self.policy = IndexingPolicy.preset(settings.indexing_profile, settings.allowlist_roots)
        self.store = RetrievalStore(self.paths.metadata_db_path)
        self.telemetry = RuntimeTelemetry(DAEMON_VERSION)
        self.embeddings = EmbeddingRuntime.get(settings.embedding_model, settings.embedding_dim)
        self.extraction = extraction or ContentExtractionService(ocr=ocr)
        self.connector = FileConnector(self.policy, batch_size=settings.queue_batch_size)
        self.connector.set_scan_stats_handler(self.telemetry.record_scan_batch)
        self.pipeline = IngestPipeline(
            store=self.store,
            extraction=self.extraction,
            policy=self.policy,
            telemetry=self.telemetry,
            embeddings=self.embeddings,
            on_persisted=self._clear_suggest_cache,
        )
        self.search = HybridSearchEngine(self.store, self.embeddings)

        self._cond = threading.Condition()
        self._order: deque[str] = deque()
        self._pending: dict[str, IngestionEvent] = {}
        self._in_flight = 0
        self._workers: list[threading.Thread] = []
        self._workers_should_run = False
        self._running = False
        self._paused = False
        self._paused_at: float | None = None

        self._startup_backfill_completed = False
        self._startup_thread: threading.Thread | None = None
        self._startup_cancel = threading.Event()
        self._compaction_timer: threading.Timer | None = None

        self._cache_lock = threading.Lock()
        self._suggest_cache: dict[tuple, tuple[float, SuggestResponse]] = {}

    # Lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        with self._cond:
            if self._running:
                resume = self._paused
            else:
                resume = None
        if resume is not None:
            if resume:
                self.resume_after_system_wake()
            return
        self.paths.ensure()
        self.store.open_and_migrate()
        self.store.refresh_file_searchability(self.policy.non_searchable_file_extensions)
        restored = self.store.load_latest_queue_snapshot()
        self.store.reclaim_queue_snapshot_storage_if_needed()
        with self._cond:
            self._running = True
            self._paused = False
        if restored:
            logger.info("Restored queued events from snapshot", extra={"ctx_count": len(restored)})
            self._enqueue(restored)
        self._start_runtime(trigger_startup_backfill=self.settings.startup_backfill)
        logger.info(
            "Retrieval service started",
            extra={"ctx_roots": len(self.policy.allowlist_roots), "ctx_workers": self.settings.worker_count},
        )

    def stop(self) -> None:
        with self._cond:
            if not self._running:
                return
        self._stop_runtime()
        pending = self._pending_events()
        if pending:
            self.store.save_queue_snapshot(pending)
        self.store.close()
        with self._cond:
            self._running = False
            self._paused = False
            self._startup_backfill_completed = False
        logger.info("Retrieval service stopped", extra={"ctx_pending": len(pending)})

    def pause_for_system_sleep(self) -> None:
        with self._cond:
            if not self._running or self._paused:
                return
            self._paused = True
            self._paused_at = time.time()
        self._stop_runtime()
        self.store.save_queue_snapshot(self._pending_events())
        logger.info("Paused for system sleep", extra={"ctx_pending": len(self._pending_events())})

    def resume_after_system_wake(self) -> None:
        with self._cond:
            if not self._running or not self._paused:
                return
            self._paused = False
            paused_at = self._paused_at
            self._paused_at = None
        needs_startup_backfill = self.settings.startup_backfill and not self._startup_backfill_completed
        self._start_runtime(trigger_startup_backfill=needs_startup_backfill)
        if paused_at is not None:
            self._reconcile(paused_at - RECONCILE_MARGIN_SECONDS)
        logger.info("Resumed after system wake")

    def _start_runtime(self, trigger_startup_backfill: bool) -> None:
        with self._cond:
            self._workers_should_run = True
            self._workers = [
                threading.Thread(target=self._worker_loop, name=f"retrievald-ingest-{index}", daemon=True)
                for index in range(self.settings.worker_count)
            ]
            workers = list(self._workers)
        for worker in workers:
            worker.start()
        if self.settings.live_watch and self.policy.allowlist_roots:
            self.connector.start_live(self._enqueue)
        self._schedule_compaction()
        if trigger_startup_backfill:
            self._schedule_startup_backfill()

    def _stop_runtime(self) -> None:
        self._startup_cancel.set()
        if self._compaction_timer is not None:
            self._compaction_timer.cancel()
            self._compaction_timer = None
        self.connector.stop_live()
        with self._cond:
            self._workers_should_run = False
            self._cond.notify_all()
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join()

    # Backfill ------------------------------------------------------------

    def trigger_backfill(self, limit: int = 50_000) -> list[BackfillCheckpoint]:
        """Full file backfill from scratch, paging through resume tokens."""
        self._require_running()
        limit = max(1, limit)
        self.telemetry.begin_backfill()
        try:
            resume_token: str | None = None
            latest: BackfillCheckpoint | None = None
            for _ in range(MAX_BACKFILL_PAGES):
                checkpoint = self.connector.run_backfill(
                    resume_token,
                    MODE_FULL if resume_token is None else MODE_OLDER_THAN,
                    self.policy,
                    limit,
                    on_batch=self._enqueue,
                )
                self.store.save_checkpoint(checkpoint)
                self.store.upsert_backfill_job(checkpoint)
                latest = checkpoint
                resume_token = checkpoint.resume_token
                if checkpoint.items_processed < limit:
                    break
        finally:
            self.telemetry.end_backfill()
        return [latest] if latest is not None else []

    def _schedule_startup_backfill(self) -> None:
        self._startup_cancel = threading.Event()
        self._startup_thread = threading.Thread(
            target=self._startup_backfill_loop,
            args=(self._startup_cancel,),
            name="retrievald-startup-backfill",
            daemon=True,
        )
        self._startup_thread.start()

    def _startup_backfill_loop(self, cancel: threading.Event) -> None:
        delay = STARTUP_BACKFILL_INITIAL_DELAY
        for attempt in range(STARTUP_BACKFILL_ATTEMPTS):
            if cancel.is_set():
                return
            try:
                self.trigger_backfill(self.settings.backfill_limit)
            except (StoreError, ServiceStateError, OSError) as exc:
                logger.exception("Startup backfill attempt %s failed", attempt + 1)
                self.telemetry.record_error(str(exc))
                if attempt == STARTUP_BACKFILL_ATTEMPTS - 1 or cancel.wait(delay):
                    return
                delay *= 2
                continue
            self._startup_backfill_completed = True
            return

    def _reconcile(self, since: float) -> None:
        """Catch up on changes that happened while paused."""
        self.telemetry.begin_scan()
        try:
            self.connector.run_backfill(
                repr(since), MODE_CHANGES_SINCE, self.policy, self.settings.backfill_limit, on_batch=self._enqueue
            )
            vanished = [path for path in self.store.file_source_paths() if not os.path.lexists(path)]
        finally:
            self.telemetry.end_scan()
        if vanished:
            self._enqueue(
                IngestionEvent(
                    source_type=SourceType.FILE,
                    scope_label="default",
                    source_id=path,
                    title=os.path.basename(path),
                    body="",
                    source_path_or_handle=path,
                    occurred_at=utc_now(),
                    operation=EventOperation.DELETE,
                )
                for path in vanished
            )
        logger.info("Reconcile finished", extra={"ctx_vanished": len(vanished)})

    def _schedule_compaction(self) -> None:
        timer = threading.Timer(self.settings.compaction_interval_hours * 3600, self._run_compaction)
        timer.daemon = True
        self._compaction_timer = timer
        timer.start()

    def _run_compaction(self) -> None:
        try:
            self.store.compact()
        except StoreError as exc:
            self.telemetry.record_error(str(exc))
        with self._cond:
            keep_going = self._running and not self._paused
        if keep_going:
            self._schedule_compaction()

    # Queue and workers ---------------------------------------------------

    def _enqueue(self, events: Iterable[IngestionEvent]) -> None:
        with self._cond:
            for event in events:
                if event.source_id not in self._pending:
                    self._order.append(event.source_id)
                self._pending[event.source_id] = event
            self._publish_depths_locked()
            self._cond.notify_all()

    def _pending_events(self) -> list[IngestionEvent]:
        with self._cond:
            return [self._pending[source_id] for source_id in self._order]

    def _publish_depths_locked(self) -> None:
        depths: dict[SourceType, int] = {}
        for event in self._pending.values():
            depths[event.source_type] = depths.get(event.source_type, 0) + 1
        self.telemetry.set_queue_depths(depths)

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while self._workers_should_run and not self._order:
                    self._cond.wait(timeout=0.5)
                if not self._workers_should_run:
                    return
                event = self._pending.pop(self._order.popleft())
                self._in_flight += 1
                self._publish_depths_locked()
            try:
                self._process(event)
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def _process(self, event: IngestionEvent) -> None:
        try:
            if event.operation is EventOperation.UPSERT and not self.pipeline.should_process(event):
                return
            self.telemetry.begin_ingestion(event.source_type, event.source_path_or_handle)
            error: str | None = None
            try:
                self.pipeline.ingest(event)
            except StoreError as exc:
                error = str(exc)
                logger.warning("Moving on after store failure", extra={"ctx_path": event.source_path_or_handle})
            finally:
                self.telemetry.end_ingestion(event.source_type, error)
        except Exception as exc:  # pragma: no cover - keep the worker alive
            logger.exception("Ingestion worker failed on %s", event.source_path_or_handle)
            self.telemetry.record_error(str(exc))

    def wait_until_idle(self, timeout: float = 30.0) -> bool:
        """Block until nothing is queued or in flight; False on timeout."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._order or self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=min(remaining, 0.25))
        return True

    # Queries -------------------------------------------------------------

    def suggest(self, request: SuggestRequest) -> SuggestResponse:
        self._require_running()
        key = (
            request.query,
            request.typing_mode,
            request.limit,
            request.include_cold_partition_fallback,
            tuple(sorted(item.value for item in request.source_filters)) if request.source_filters else None,
        )
        now = time.monotonic()
        with self._cache_lock:
            cached = self._suggest_cache.get(key)
        if cached is not None and cached[0] > now:
            response = cached[1].model_copy(deep=True)
        else:
            response = self.search.suggest(request)
            if self.settings.suggest_cache_seconds > 0:
                with self._cache_lock:
                    if len(self._suggest_cache) >= SUGGEST_CACHE_MAX_ENTRIES:
                        self._suggest_cache = {k: v for k, v in self._suggest_cache.items() if v[0] > now}
                    self._suggest_cache[key] = (now + self.settings.suggest_cache_seconds, response)
        self.telemetry.record_latency(response.latency_ms)
        mode = "typing" if request.typing_mode else "deep"
        metrics.SUGGEST_LATENCY.labels(mode=mode).observe(response.latency_ms / 1000.0)
        return response

    def preview(self, item_id: str) -> PreviewResponse | None:
        self._require_running()
        document = self.store.fetch_document(item_id)
        if document is None:
            return None
        return PreviewResponse(
            id=document.id,
            title=document.title,
            body=document.body[:PREVIEW_CHARACTERS],
            source_path_or_handle=document.source_path_or_handle,
        )

    def index_stats(self) -> IndexStats:
        self._require_running()
        return self.store.index_stats()

    def run_benchmark_sample(self, queries: Sequence[str]) -> dict[str, int]:
        results: dict[str, int] = {}
        for query in queries:
            response = self.suggest(
                SuggestRequest(query=query, limit=12, typing_mode=True, include_cold_partition_fallback=True)
            )
            results[query] = response.latency_ms
        return results

    def purge_file_documents_for_extensions(self, extensions: Iterable[str]) -> int:
        self._require_running()
        removed = self.store.purge_file_documents_for_extensions(extensions)
        self._clear_suggest_cache()
        return removed

    # State ---------------------------------------------------------------

    def health(self) -> Health:
        with self._cond:
            queued = len(self._order)
            in_flight = self._in_flight
        health = self.telemetry.health(running=self._running, paused=self._paused)
        update: dict[str, object] = {"queue_depth": queued, "in_flight_count": in_flight}
        if queued == 0 and in_flight == 0:
            update["current_operation"] = OperationPhase.IDLE
        return health.model_copy(update=update)

    def state_snapshot(self) -> RetrievalStateSnapshot:
        self._require_running()
        with self._cond:
            queued_by_source: dict[SourceType, int] = {}
            for event in self._pending.values():
                queued_by_source[event.source_type] = queued_by_source.get(event.source_type, 0) + 1
            queued = len(self._order)
            in_flight = self._in_flight
        health = self.health()
        progress = self.store.all_progress_states()
        source_runtime = self.telemetry.source_states()
        phase, phase_source, item_path = self.telemetry.current_operation()
        if queued == 0 and in_flight == 0:
            phase, phase_source, item_path = OperationPhase.IDLE, None, None
            progress = [
                item.model_copy(update={"percent_complete": 1.0, "eta_seconds": None}) if item.status == "idle" else item
                for item in progress
            ]
            source_runtime = [
                item.model_copy(update={"current_operation": OperationPhase.IDLE, "current_item_path": None})
                for item in source_runtime
            ]
        return RetrievalStateSnapshot(
            health=health,
            progress=progress,
            index_stats=self.store.index_stats(),
            queue_activity=QueueActivity(
                queue_depth=queued,
                sources=[
                    QueueSourceActivity(source_type=source_type, queued_item_count=queued_by_source.get(source_type, 0))
                    for source_type in SourceType
                ],
            ),
            source_runtime=source_runtime,
            current_operation=phase,
            current_operation_source_type=phase_source,
            current_item_path=item_path,
        )

    # Internal helpers ----------------------------------------------------

    def _clear_suggest_cache(self) -> None:
        with self._cache_lock:
            self._suggest_cache.clear()

    def _require_running(self) -> None:
        if not self._running:
            raise ServiceStateError("retrieval service is not running")


__all__ = ["RetrievalService", "DAEMON_VERSION"]
