"""Tests for log formatting."""

from __future__ import annotations

import logging
from pathlib import Path

import orjson

from retrievald.core.logging import ConsoleFormatter, JsonFormatter, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("retrievald.test", logging.INFO, __file__, 1, "Indexed %s", ("a.md",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_copies_context() -> None:
    payload = orjson.loads(JsonFormatter().format(_record(ctx_path=Path("/docs/a.md"), other="hidden")))
    assert payload["message"] == "Indexed a.md"
    assert payload["level"] == "INFO"
    assert payload["ctx_path"] == "/docs/a.md"
    assert "other" not in payload


def test_console_formatter_appends_context() -> None:
    line = ConsoleFormatter().format(_record(ctx_count=3))
    assert "Indexed a.md" in line
    assert line.endswith("count=3")


def test_configure_logging_writes_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "retrievald.log"
    root = logging.getLogger()
    previous = list(root.handlers)
    try:
        configure_logging("INFO", use_json=True, log_file=log_file)
        logging.getLogger("retrievald.test").info("hello", extra={"ctx_source": "file"})
        for handler in root.handlers:
            handler.flush()
        line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
        assert orjson.loads(line)["ctx_source"] == "file"
        assert logging.getLogger("watchdog").level == logging.WARNING
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = previous
