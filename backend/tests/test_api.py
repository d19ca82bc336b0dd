"""API integration tests."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import write_file

from retrievald.api import dependencies as deps
from retrievald.app import create_app


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, docs_root: Path) -> Iterator[TestClient]:
    write_file(docs_root / "harbor.md", "# Harbor\n\nMinutes from the harbor budget review.")
    write_file(docs_root / "notes.txt", "Reminder to water the garden.")
    write_file(docs_root / "export.json", '{"harbor": "raw export"}')
    monkeypatch.setenv("RETRIEVALD_ALLOWLIST_ROOTS", str(docs_root))
    monkeypatch.setenv("RETRIEVALD_STARTUP_BACKFILL", "false")
    monkeypatch.setenv("RETRIEVALD_LIVE_WATCH", "false")
    monkeypatch.setenv("RETRIEVALD_INGESTION_WORKERS", "2")
    with TestClient(create_app()) as test_client:
        yield test_client
    deps.get_service().extraction.close()


def _backfill(client: TestClient) -> None:
    resp = client.post("/backfill", json={"limit": 100})
    assert resp.status_code == 200
    checkpoints = resp.json()
    assert checkpoints[0]["source_type"] == "file"
    assert checkpoints[0]["status"] == "idle"
    assert deps.get_service().wait_until_idle(timeout=30)


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["running"] is True
    assert payload["paused"] is False
    assert payload["daemon_version"]


def test_backfill_then_suggest(client: TestClient) -> None:
    _backfill(client)

    resp = client.post("/suggest", json={"query": "harbor budget", "limit": 5})
    assert resp.status_code == 200
    suggestions = resp.json()["suggestions"]
    assert suggestions[0]["title"] == "harbor.md"
    assert "export.json" not in [item["title"] for item in suggestions]
    assert suggestions[0]["source_type"] == "file"

    preview = client.get(f"/preview/{suggestions[0]['id']}")
    assert preview.status_code == 200
    assert "harbor budget" in preview.json()["body"]


def test_stats_and_state(client: TestClient) -> None:
    _backfill(client)

    stats = client.get("/stats").json()
    assert stats["total_document_count"] == 3
    assert {item["source_type"] for item in stats["sources"]} >= {"file"}

    state = client.get("/state")
    assert state.status_code == 200
    payload = state.json()
    assert payload["current_operation"] == "idle"
    assert payload["queue_activity"]["queue_depth"] == 0
    assert payload["health"]["running"] is True


def test_preview_unknown_document(client: TestClient) -> None:
    resp = client.get("/preview/doc_missing")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Document not found"


def test_purge_by_extension(client: TestClient) -> None:
    _backfill(client)

    resp = client.post("/purge", json={"extensions": [".txt"]})
    assert resp.status_code == 200
    assert resp.json() == {"removed": 1}
    assert client.get("/stats").json()["total_document_count"] == 2


def test_benchmark(client: TestClient) -> None:
    _backfill(client)

    resp = client.post("/benchmark", json={"queries": ["harbor", "garden"]})
    assert resp.status_code == 200
    assert set(resp.json()["latencies_ms"]) == {"harbor", "garden"}


def test_metrics_exposes_request_counter(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "retrievald_http_requests_total" in resp.text


def test_sleep_and_wake(client: TestClient) -> None:
    slept = client.post("/sleep")
    assert slept.status_code == 200
    assert slept.json()["paused"] is True

    woke = client.post("/wake")
    assert woke.status_code == 200
    assert woke.json()["paused"] is False


def test_stopped_service_returns_conflict(client: TestClient) -> None:
    deps.get_service().stop()

    resp = client.post("/suggest", json={"query": "harbor"})
    assert resp.status_code == 409
    assert "not running" in resp.json()["detail"]
    assert client.get("/health").json()["running"] is False


def test_invalid_request_is_rejected(client: TestClient) -> None:
    assert client.post("/suggest", json={"query": "harbor", "limit": 0}).status_code == 422
    assert client.post("/purge", json={"extensions": []}).status_code == 422
