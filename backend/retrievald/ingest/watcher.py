"""Filesystem watcher that emits changed paths after a quiet window."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from retrievald.core.logging import get_logger

logger = get_logger(__name__)

FileEventCallback = Callable[[str, Path], None]
FlushCallback = Callable[[list[tuple[str, Path]]], None]


@dataclass
class WatchedSource:
    id: str
    path: Path
    callback: FileEventCallback


class SourceEventHandler(FileSystemEventHandler):
    """Forward file changes under one root; directories are ignored."""

    def __init__(self, source: WatchedSource) -> None:
        super().__init__()
        self.source = source

    def on_created(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        if not event.is_directory:
            self.source.callback(self.source.id, Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        if not event.is_directory:
            self.source.callback(self.source.id, Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        if not event.is_directory:
            self.source.callback(self.source.id, Path(event.src_path))
            self.source.callback(self.source.id, Path(event.dest_path))

    def on_deleted(self, event: FileSystemEvent) -> None:  # pragma: no cover - requires filesystem
        if not event.is_directory:
            self.source.callback(self.source.id, Path(event.src_path))


class QuietWindowBuffer:
    """Collect changed paths and flush them once nothing changed for ``quiet_seconds``.

    Every ``add`` bumps a generation counter and arms a timer bound to that
    generation; only the timer of the latest generation flushes.
    """

    def __init__(self, quiet_seconds: float, on_flush: FlushCallback) -> None:
        self.quiet_seconds = quiet_seconds
        self._on_flush = on_flush
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[str, Path]] = {}
        self._generation = 0
        self._timer: threading.Timer | None = None
        self._closed = False

    def add(self, source_id: str, path: Path) -> None:
        with self._lock:
            if self._closed:
                return
            self._pending[str(path)] = (source_id, path)
            self._generation += 1
            generation = self._generation
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.quiet_seconds, self._flush_if_quiet, args=(generation,))
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        with self._lock:
            batch = list(self._pending.values())
            self._pending.clear()
        if batch:
            self._on_flush(batch)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _flush_if_quiet(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._closed:
                return
            batch = list(self._pending.values())
            self._pending.clear()
            self._timer = None
        if batch:
            try:
                self._on_flush(batch)
            except Exception:  # noqa: BLE001 - timer thread has no caller to report to
                logger.exception("Live change flush failed")


class Watcher:
    """High-level wrapper around watchdog observers."""

    def __init__(self) -> None:
        self._observer: BaseObserver = Observer()
        self._lock = threading.Lock()
        self._sources: Dict[str, WatchedSource] = {}
        self._started = False

    def add_source(self, source_id: str, path: Path, callback: FileEventCallback, recursive: bool = True) -> None:
        normalized_path = path.expanduser().absolute()
        watched = WatchedSource(id=source_id, path=normalized_path, callback=callback)
        with self._lock:
            self._observer.schedule(event_handler=SourceEventHandler(watched), path=str(normalized_path), recursive=recursive)
            self._sources[source_id] = watched

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._observer.start()
            self._started = True

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            self._observer.stop()
            self._observer.join(timeout=5)
            self._started = False

    def close(self) -> None:
        self.stop()
        with self._lock:
            self._observer.unschedule_all()
            self._sources.clear()


__all__ = ["Watcher", "QuietWindowBuffer", "FileEventCallback"]
