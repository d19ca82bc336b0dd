"""Run extractors with a hard per-file time limit."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from retrievald.core.logging import get_logger
from retrievald.ingest.extractors import ExtractorRegistry
from retrievald.ingest.ocr import OcrEngine
from retrievald.ingest.policy import IndexingPolicy, extension_of
from retrievald.ingest.types import (
    TIMEOUT_DETAIL,
    TIMEOUT_WARNING,
    TRUNCATION_WARNING,
    ExtractedContent,
    ExtractionOutcome,
    ExtractionTelemetry,
    FileExtractionResult,
)

logger = get_logger(__name__)


class _CompletionGate:
    """Lets exactly one of the worker and the watchdog publish a result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._result: FileExtractionResult | None = None

    def complete(self, result: FileExtractionResult) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self._result = result
            self._done.set()
            return True

    def wait(self) -> FileExtractionResult:
        self._done.wait()
        assert self._result is not None
        return self._result


class ContentExtractionService:
    """Extract text from files without letting a slow parser stall ingestion.

    Each call arms its own timer so a wedged extractor cannot delay the
    timeout of another file, even when every pool worker is busy.
    """

    def __init__(
        self,
        registry: ExtractorRegistry | None = None,
        ocr: OcrEngine | None = None,
        max_workers: int = 32,
    ) -> None:
        self.registry = registry or ExtractorRegistry.default(ocr)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="retrievald-extract")

    def extract(self, path: str | Path, policy: IndexingPolicy) -> FileExtractionResult:
        path = Path(path)
        fmt = extension_of(path)
        gate = _CompletionGate()

        def _on_timeout() -> None:
            content = ExtractedContent.metadata_only(path, TIMEOUT_WARNING)
            telemetry = ExtractionTelemetry(ExtractionOutcome.PARTIAL, TIMEOUT_DETAIL, False, fmt)
            if gate.complete(FileExtractionResult(content, telemetry)):
                future.cancel()
                logger.warning(
                    "Extraction timed out",
                    extra={"ctx_path": str(path), "ctx_seconds": policy.max_extraction_seconds_per_file},
                )

        future: Future[None] = self._executor.submit(self._run, path, policy, fmt, gate)
        timer = threading.Timer(policy.max_extraction_seconds_per_file, _on_timeout)
        timer.daemon = True
        timer.start()
        try:
            return gate.wait()
        finally:
            timer.cancel()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, path: Path, policy: IndexingPolicy, fmt: str, gate: _CompletionGate) -> None:
        extractor = self.registry.for_path(path)
        if extractor is None:
            gate.complete(
                FileExtractionResult(None, ExtractionTelemetry(ExtractionOutcome.UNSUPPORTED, "no_extractor", False, fmt))
            )
            return
        try:
            content = extractor.extract(path, policy)
        except Exception as exc:  # noqa: BLE001 - any parser failure becomes a failed outcome
            logger.exception("Extractor %s failed for %s", extractor.name, path)
            gate.complete(
                FileExtractionResult(
                    None, ExtractionTelemetry(ExtractionOutcome.FAILED, f"{type(exc).__name__}: {exc}", False, fmt)
                )
            )
            return
        gate.complete(FileExtractionResult(content, classify(content, fmt)))


def classify(content: ExtractedContent | None, fmt: str = "") -> ExtractionTelemetry:
    """Map an extractor's result onto a telemetry outcome."""
    if content is None:
        return ExtractionTelemetry(ExtractionOutcome.UNSUPPORTED, "no_extractor", False, fmt)
    if not content.has_text:
        detail = content.warnings[0] if content.warnings else "empty_text"
        return ExtractionTelemetry(ExtractionOutcome.UNSUPPORTED, detail, content.was_ocr_used, fmt)
    degraded = [warning for warning in content.warnings if warning != TRUNCATION_WARNING]
    if degraded:
        return ExtractionTelemetry(ExtractionOutcome.PARTIAL, ",".join(degraded), content.was_ocr_used, fmt)
    detail = "ok" if not content.warnings else content.warnings[0]
    return ExtractionTelemetry(ExtractionOutcome.SUCCESS, detail, content.was_ocr_used, fmt)


__all__ = ["ContentExtractionService", "classify"]
