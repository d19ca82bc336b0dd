"""HTTP routes for the retrieval daemon."""

from __future__ import annotations

from typing import Callable, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Response

from retrievald.api.dependencies import get_service
from retrievald.core.errors import ServiceStateError
from retrievald.core.metrics import REQUEST_COUNT, metrics_response
from retrievald.models.dto import (
    BackfillRequest,
    BenchmarkRequest,
    BenchmarkResponse,
    CheckpointResponse,
    Health,
    IndexStats,
    PreviewResponse,
    PurgeRequest,
    PurgeResponse,
    RetrievalStateSnapshot,
    SuggestRequest,
    SuggestResponse,
)
from retrievald.models.entities import BackfillCheckpoint
from retrievald.service import RetrievalService

router = APIRouter()

T = TypeVar("T")


def _counted(endpoint: str, method: str, call: Callable[[], T]) -> T:
    try:
        result = call()
    except ServiceStateError as exc:
        REQUEST_COUNT.labels(endpoint=endpoint, method=method, status="409").inc()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    REQUEST_COUNT.labels(endpoint=endpoint, method=method, status="200").inc()
    return result


# Handlers are plain functions so FastAPI runs the blocking service calls in its threadpool.


@router.post("/backfill", response_model=list[CheckpointResponse], summary="Run a full file backfill")
def backfill(
    request: BackfillRequest,
    service: RetrievalService = Depends(get_service),
) -> list[CheckpointResponse]:
    checkpoints = _counted("backfill", "POST", lambda: service.trigger_backfill(request.limit))
    return [_to_checkpoint_response(checkpoint) for checkpoint in checkpoints]


@router.get("/stats", response_model=IndexStats, summary="Indexed document counts per source")
def stats(service: RetrievalService = Depends(get_service)) -> IndexStats:
    return _counted("stats", "GET", service.index_stats)


@router.post("/suggest", response_model=SuggestResponse, summary="Hybrid retrieval suggestions")
def suggest(
    request: SuggestRequest,
    service: RetrievalService = Depends(get_service),
) -> SuggestResponse:
    return _counted("suggest", "POST", lambda: service.suggest(request))


@router.get("/state", response_model=RetrievalStateSnapshot, summary="Daemon state snapshot")
def state(service: RetrievalService = Depends(get_service)) -> RetrievalStateSnapshot:
    return _counted("state", "GET", service.state_snapshot)


@router.post("/benchmark", response_model=BenchmarkResponse, summary="Time a sample of typing-mode suggests")
def benchmark(
    request: BenchmarkRequest,
    service: RetrievalService = Depends(get_service),
) -> BenchmarkResponse:
    latencies = _counted("benchmark", "POST", lambda: service.run_benchmark_sample(request.queries))
    return BenchmarkResponse(latencies_ms=latencies)


@router.get("/health", response_model=Health, summary="Daemon health")
def health(service: RetrievalService = Depends(get_service)) -> Health:
    return _counted("health", "GET", service.health)


@router.get("/metrics", summary="Prometheus metrics")
def metrics() -> Response:
    return metrics_response()


@router.post("/purge", response_model=PurgeResponse, summary="Remove indexed files with the given extensions")
def purge(
    request: PurgeRequest,
    service: RetrievalService = Depends(get_service),
) -> PurgeResponse:
    removed = _counted("purge", "POST", lambda: service.purge_file_documents_for_extensions(request.extensions))
    return PurgeResponse(removed=removed)


@router.get("/preview/{item_id}", response_model=PreviewResponse, summary="Preview an indexed document")
def preview(item_id: str, service: RetrievalService = Depends(get_service)) -> PreviewResponse:
    result = _counted("preview", "GET", lambda: service.preview(item_id))
    if result is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return result


@router.post("/sleep", response_model=Health, summary="Pause background work before system sleep")
def sleep(service: RetrievalService = Depends(get_service)) -> Health:
    _counted("sleep", "POST", service.pause_for_system_sleep)
    return service.health()


@router.post("/wake", response_model=Health, summary="Resume background work after system wake")
def wake(service: RetrievalService = Depends(get_service)) -> Health:
    _counted("wake", "POST", service.resume_after_system_wake)
    return service.health()


def _to_checkpoint_response(checkpoint: BackfillCheckpoint) -> CheckpointResponse:
    return CheckpointResponse(
        key=checkpoint.key,
        source_type=checkpoint.source_type,
        scope_label=checkpoint.scope_label,
        resume_token=checkpoint.resume_token,
        items_processed=checkpoint.items_processed,
        items_skipped=checkpoint.items_skipped,
        estimated_total=checkpoint.estimated_total,
        status=checkpoint.status,
        updated_at=checkpoint.updated_at,
    )


__all__ = ["router"]
