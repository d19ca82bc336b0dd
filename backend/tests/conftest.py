"""Test fixtures for retrievald."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Callable, Iterator

import pytest
from PIL import Image

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from retrievald.core.config import Settings  # noqa: E402
from retrievald.ingest.ocr import OcrEngine  # noqa: E402


class FakeOcrEngine(OcrEngine):
    """OCR stand-in that returns canned text without loading any model."""

    def __init__(self, text: str = "", available: bool = True) -> None:
        super().__init__()
        self.text = text
        self._available = available
        self.calls = 0

    @property
    def available(self) -> bool:
        return self._available

    def recognize(self, image: Image.Image) -> str:
        self.calls += 1
        return self.text


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("RETRIEVALD_DAEMON_DIR", str(tmp_path / "daemon"))
    monkeypatch.delenv("RETRIEVALD_CONFIG", raising=False)
    monkeypatch.delenv("RETRIEVALD_ALLOWLIST_ROOTS", raising=False)
    monkeypatch.delenv("RETRIEVALD_URL", raising=False)

    from retrievald.api import dependencies as deps
    from retrievald.core.config import get_settings
    from retrievald.ingest.embeddings import EmbeddingRuntime

    EmbeddingRuntime._instances.clear()
    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    deps.reset_service()
    yield
    EmbeddingRuntime._instances.clear()
    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    deps.reset_service()


@pytest.fixture
def docs_root(tmp_path: Path) -> Path:
    root = tmp_path / "docs"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(tmp_path: Path, docs_root: Path) -> Callable[..., Settings]:
    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "daemon_dir": tmp_path / "daemon",
            "allowlist_roots": [docs_root],
            "startup_backfill": False,
            "live_watch": False,
            "ingestion_workers": 2,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


def write_file(path: Path, text: str, age_days: float = 0.0) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    if age_days:
        stamp = time.time() - age_days * 86_400
        os.utime(path, (stamp, stamp))
    return path
