"""File connector: backfill scans and live change events for allowlisted roots."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator
from urllib.parse import quote, unquote

from retrievald.core.logging import get_logger
from retrievald.ingest.policy import (
    PACKAGE_DIRECTORY_EXTENSIONS,
    Index,
    Deferred,
    IndexingPolicy,
    canonical_path,
    extension_of,
)
from retrievald.ingest.watcher import QuietWindowBuffer, Watcher
from retrievald.models.entities import (
    BackfillCheckpoint,
    EventOperation,
    IngestionEvent,
    ScanBatchStats,
    SourceType,
)
from retrievald.utils.time import from_epoch, utc_now

logger = get_logger(__name__)

CHECKPOINT_KEY = "file:default"
DEFAULT_BATCH_SIZE = 24

MODE_FULL = "full"
MODE_CHANGES_SINCE = "changes_since"
MODE_OLDER_THAN = "older_than_resume_token"
SCAN_MODES = (MODE_FULL, MODE_CHANGES_SINCE, MODE_OLDER_THAN)

_CURSOR_EPSILON = 1e-6

BatchHandler = Callable[[list[IngestionEvent]], None]
ScanStatsHandler = Callable[[ScanBatchStats], None]
LiveHandler = Callable[[list[IngestionEvent]], None]


@dataclass(slots=True, frozen=True)
class ResumeCursor:
    timestamp: float
    path: str | None = None

    def encode(self) -> str:
        return f"{self.timestamp!r}|{quote(self.path or '', safe='/')}"

    @classmethod
    def decode(cls, token: str | None) -> "ResumeCursor | None":
        if not token:
            return None
        head, sep, tail = token.partition("|")
        try:
            timestamp = float(head)
        except ValueError:
            return None
        return cls(timestamp=timestamp, path=unquote(tail) if sep and tail else None)


@dataclass(slots=True)
class _Candidate:
    path: str
    modified_at: float
    size: int
    scope: str


@dataclass(slots=True)
class _ScanOutput:
    candidates: list[_Candidate]
    roots_scanned: int
    candidates_seen: int
    candidates_skipped_excluded: int


class FileConnector:
    """Enumerate eligible files under the policy's allowlist roots."""

    source_type = SourceType.FILE

    def __init__(self, policy: IndexingPolicy, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.policy = policy
        self.batch_size = max(1, batch_size)
        self._scan_stats_handler: ScanStatsHandler | None = None
        self._live_handler: LiveHandler | None = None
        self._watcher: Watcher | None = None
        self._buffer: QuietWindowBuffer | None = None
        self._lock = threading.Lock()

    def set_scan_stats_handler(self, handler: ScanStatsHandler | None) -> None:
        self._scan_stats_handler = handler

    # Backfill ------------------------------------------------------------

    def run_backfill(
        self,
        resume_token: str | None,
        mode: str = MODE_FULL,
        policy: IndexingPolicy | None = None,
        limit: int = 50_000,
        on_batch: BatchHandler | None = None,
    ) -> BackfillCheckpoint:
        """Scan once and emit events; the returned checkpoint says where to resume."""
        if mode not in SCAN_MODES:
            raise ValueError(f"unknown scan mode: {mode}")
        policy = policy or self.policy
        limit = max(1, limit)
        cursor = ResumeCursor.decode(resume_token) if mode != MODE_FULL else None
        scan = self._collect_candidates(policy, mode, cursor, limit)
        events = [self._event_for(candidate) for candidate in scan.candidates]
        if on_batch is not None:
            for start in range(0, len(events), self.batch_size):
                on_batch(events[start : start + self.batch_size])
        self._report_scan_stats(
            ScanBatchStats(
                source_type=SourceType.FILE,
                mode=mode,
                roots_scanned=scan.roots_scanned,
                candidates_seen=scan.candidates_seen,
                candidates_skipped_excluded=scan.candidates_skipped_excluded,
                events_emitted=len(events),
            )
        )

        count = len(scan.candidates)
        is_idle = count < limit
        oldest = scan.candidates[-1] if scan.candidates else None
        token = ResumeCursor(oldest.modified_at, oldest.path).encode() if oldest else resume_token
        checkpoint = BackfillCheckpoint(
            key=CHECKPOINT_KEY,
            source_type=SourceType.FILE,
            scope_label="default",
            cursor=resume_token if mode == MODE_CHANGES_SINCE else None,
            last_indexed_path=oldest.path if oldest else None,
            last_indexed_at=from_epoch(oldest.modified_at) if oldest else None,
            resume_token=token,
            items_processed=count,
            items_skipped=count - len(events),
            estimated_total=count if is_idle else max(limit, count),
            status="idle" if is_idle else "running",
        )
        logger.info(
            "File scan finished",
            extra={"ctx_mode": mode, "ctx_emitted": len(events), "ctx_seen": scan.candidates_seen, "ctx_status": checkpoint.status},
        )
        return checkpoint

    def _collect_candidates(
        self,
        policy: IndexingPolicy,
        mode: str,
        cursor: ResumeCursor | None,
        limit: int,
    ) -> _ScanOutput:
        output = _ScanOutput(candidates=[], roots_scanned=0, candidates_seen=0, candidates_skipped_excluded=0)
        for root in policy.allowlist_roots:
            root_path = canonical_path(root)
            if not os.path.isdir(root_path):
                logger.warning("Allowlisted root is not a directory", extra={"ctx_root": root_path})
                continue
            output.roots_scanned += 1
            scope = os.path.basename(root_path.rstrip("/")) or root_path
            for entry, is_package in self._walk(root_path, policy, output):
                try:
                    stat = entry.stat(follow_symlinks=False)
                except OSError:
                    continue
                modified_at = stat.st_mtime
                if not _passes_cursor(mode, cursor, modified_at, entry.path):
                    continue
                size = 0 if is_package else stat.st_size
                decision = policy.evaluate(entry.path, size, from_epoch(modified_at))
                if not isinstance(decision, (Index, Deferred)):
                    continue
                output.candidates.append(_Candidate(entry.path, modified_at, size, scope))
        output.candidates.sort(key=lambda item: (item.modified_at, item.path), reverse=True)
        del output.candidates[limit:]
        return output

    def _walk(self, root: str, policy: IndexingPolicy, output: _ScanOutput) -> Iterator[tuple[os.DirEntry[str], bool]]:
        """Yield files (and package directories) below ``root``, pruning excluded subtrees."""
        stack = [root]
        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as entries:
                    listed = sorted(entries, key=lambda item: item.name)
            except OSError as exc:
                logger.debug("Skipping unreadable directory", extra={"ctx_directory": directory, "ctx_error": str(exc)})
                continue
            for entry in listed:
                if entry.name.startswith("."):
                    continue
                output.candidates_seen += 1
                if policy.should_skip_path(entry.path):
                    output.candidates_skipped_excluded += 1
                    continue
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if extension_of(entry.name) in PACKAGE_DIRECTORY_EXTENSIONS:
                        yield entry, True
                    else:
                        stack.append(entry.path)
                elif entry.is_file(follow_symlinks=False):
                    yield entry, False

    def _event_for(self, candidate: _Candidate) -> IngestionEvent:
        return IngestionEvent(
            source_type=SourceType.FILE,
            scope_label=candidate.scope,
            source_id=candidate.path,
            title=os.path.basename(candidate.path),
            body="",
            source_path_or_handle=candidate.path,
            occurred_at=from_epoch(candidate.modified_at),
        )

    def _report_scan_stats(self, stats: ScanBatchStats) -> None:
        if self._scan_stats_handler is not None:
            self._scan_stats_handler(stats)

    # Live watching -------------------------------------------------------

    def start_live(self, handler: LiveHandler) -> None:
        with self._lock:
            if self._watcher is not None:
                return
            self._live_handler = handler
            self._buffer = QuietWindowBuffer(self.policy.quiet_window_seconds, self._flush_changes)
            watcher = Watcher()
            for root in self.policy.allowlist_roots:
                root_path = Path(canonical_path(root))
                if root_path.is_dir():
                    watcher.add_source(root_path.name or str(root_path), root_path, self._on_path_changed)
            watcher.start()
            self._watcher = watcher
        logger.info("Live file watching started", extra={"ctx_roots": len(self.policy.allowlist_roots)})

    def stop_live(self) -> None:
        with self._lock:
            watcher, self._watcher = self._watcher, None
            buffer, self._buffer = self._buffer, None
            self._live_handler = None
        if buffer is not None:
            buffer.close()
        if watcher is not None:
            watcher.close()
            logger.info("Live file watching stopped")

    @property
    def is_live(self) -> bool:
        return self._watcher is not None

    def _on_path_changed(self, source_id: str, path: Path) -> None:
        buffer = self._buffer
        if buffer is not None:
            buffer.add(source_id, path)

    def _flush_changes(self, changed: list[tuple[str, Path]]) -> None:
        events = self.events_for_changed_paths(path for _, path in changed)
        handler = self._live_handler
        if events and handler is not None:
            handler(events)

    def events_for_changed_paths(self, paths: Iterator[Path] | list[Path]) -> list[IngestionEvent]:
        """Translate changed paths into delete or upsert events."""
        events: list[IngestionEvent] = []
        for raw in paths:
            path = canonical_path(raw)
            scope = self._scope_label(path)
            if not os.path.lexists(path):
                events.append(
                    IngestionEvent(
                        source_type=SourceType.FILE,
                        scope_label=scope,
                        source_id=path,
                        title=os.path.basename(path),
                        body="",
                        source_path_or_handle=path,
                        occurred_at=utc_now(),
                        operation=EventOperation.DELETE,
                    )
                )
                continue
            if self._is_hidden_below_root(path):
                continue
            is_package = os.path.isdir(path) and extension_of(path) in PACKAGE_DIRECTORY_EXTENSIONS
            if not (os.path.isfile(path) or is_package):
                continue
            stat = os.stat(path)
            size = 0 if is_package else stat.st_size
            decision = self.policy.evaluate(path, size, from_epoch(stat.st_mtime))
            if isinstance(decision, (Index, Deferred)):
                events.append(self._event_for(_Candidate(path, stat.st_mtime, size, scope)))
        return events

    def _scope_label(self, path: str) -> str:
        for root in self.policy.allowlist_roots:
            root_path = canonical_path(root)
            if path == root_path or path.startswith(root_path.rstrip("/") + "/"):
                return os.path.basename(root_path.rstrip("/")) or root_path
        return "default"

    def _is_hidden_below_root(self, path: str) -> bool:
        for root in self.policy.allowlist_roots:
            root_path = canonical_path(root).rstrip("/")
            if path.startswith(root_path + "/"):
                relative = path[len(root_path) + 1 :]
                return any(part.startswith(".") for part in relative.split("/"))
        return os.path.basename(path).startswith(".")


def _passes_cursor(mode: str, cursor: ResumeCursor | None, modified_at: float, path: str) -> bool:
    if cursor is None or mode == MODE_FULL:
        return True
    if mode == MODE_CHANGES_SINCE:
        return modified_at > cursor.timestamp
    if modified_at < cursor.timestamp - _CURSOR_EPSILON:
        return True
    if modified_at > cursor.timestamp + _CURSOR_EPSILON:
        return False
    # equal timestamps page by descending path
    return cursor.path is not None and path < cursor.path


__all__ = [
    "FileConnector",
    "ResumeCursor",
    "CHECKPOINT_KEY",
    "MODE_FULL",
    "MODE_CHANGES_SINCE",
    "MODE_OLDER_THAN",
]
