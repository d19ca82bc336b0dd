"""Content extraction across formats, outcomes and the timeout watchdog."""

from __future__ import annotations

import dataclasses
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterator

import docx
import fitz
import openpyxl
import pptx
import pytest
from PIL import Image
from pptx.util import Inches

from conftest import FakeOcrEngine, write_file

from retrievald.ingest.extraction import ContentExtractionService, classify
from retrievald.ingest.extractors import BaseExtractor, ExtractorRegistry, MetadataFallbackExtractor
from retrievald.ingest.policy import IndexingPolicy
from retrievald.ingest.types import (
    TIMEOUT_DETAIL,
    TIMEOUT_WARNING,
    TRUNCATION_WARNING,
    ExtractedContent,
    ExtractionOutcome,
)


@pytest.fixture
def policy(tmp_path: Path) -> IndexingPolicy:
    return IndexingPolicy.preset("balanced", [tmp_path])


@pytest.fixture
def service() -> Iterator[ContentExtractionService]:
    extraction = ContentExtractionService(ocr=FakeOcrEngine(text=""))
    yield extraction
    extraction.close()


def _docx(path: Path, paragraphs: list[str], title: str | None = None) -> Path:
    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    if title:
        document.core_properties.title = title
        document.core_properties.author = "Robin Ames"
    document.save(str(path))
    return path


def test_docx_paragraphs_and_core_properties(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = _docx(tmp_path / "plan.docx", ["Quarterly roadmap", "Ship the harbor release"], title="Roadmap")
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.content is not None
    assert "Quarterly roadmap" in result.content.text
    assert "Ship the harbor release" in result.content.text
    assert result.content.metadata["title"] == "Roadmap"
    assert result.content.metadata["author"] == "Robin Ames"
    assert "author: Robin Ames" in result.content.searchable_body(10_000)


def test_docx_tables_are_read(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    document = docx.Document()
    document.add_paragraph("Vendor list")
    table = document.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Acme Rigging"
    table.rows[0].cells[1].text = "harbor cranes"
    path = tmp_path / "vendors.docx"
    document.save(str(path))

    result = service.extract(path, policy)
    assert result.content is not None
    assert "Acme Rigging\tharbor cranes" in result.content.text


def test_pptx_slides_in_order(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    presentation = pptx.Presentation()
    blank = presentation.slide_layouts[6]
    for text in ("Opening slide", "Closing slide"):
        slide = presentation.slides.add_slide(blank)
        slide.shapes.add_textbox(Inches(1), Inches(1), Inches(6), Inches(1)).text_frame.text = text
    presentation.slides[0].notes_slide.notes_text_frame.text = "Remember the harbor numbers"
    path = tmp_path / "deck.pptx"
    presentation.save(str(path))

    result = service.extract(path, policy)
    assert result.content is not None
    text = result.content.text
    assert text.index("Opening slide") < text.index("Closing slide")
    assert "Remember the harbor numbers" in text
    assert result.content.metadata["slide_count"] == "2"


def test_xlsx_rows_and_sheet_names(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "Budget"
    sheet.append(["Travel", 1200])
    sheet.append(["Hardware", "pending"])
    workbook.create_sheet("Notes").append(["harbor follow-up"])
    path = tmp_path / "budget.xlsx"
    workbook.save(path)

    result = service.extract(path, policy)
    assert result.content is not None
    assert "Travel\t1200" in result.content.text
    assert "Hardware\tpending" in result.content.text
    assert "harbor follow-up" in result.content.text
    assert result.content.metadata["sheet_names"] == "Budget, Notes"


@pytest.mark.parametrize("name", ["broken.docx", "broken.pptx", "broken.xlsx"])
def test_corrupt_office_archive_is_unsupported(
    name: str, tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService
) -> None:
    path = tmp_path / name
    path.write_bytes(b"definitely not a zip archive")
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "office_archive_unreadable"


def test_legacy_doc_surfaces_text(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "memo.doc"
    sentence = "Legacy budget memo for the quarterly review"
    path.write_bytes(
        b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 504 + sentence.encode("utf-16-le") + b"\x00" * 64
    )
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.content is not None
    assert sentence in result.content.text


def test_legacy_doc_without_text(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "empty.doc"
    path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 512)
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "legacy_doc_no_text"


def test_pdf_text_layer(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "invoice.pdf"
    with fitz.open() as doc:
        page = doc.new_page()
        page.insert_text((72, 72), "Invoice total for the harbor project", fontsize=12)
        doc.save(str(path))
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.telemetry.used_ocr is False
    assert result.content is not None
    assert "harbor project" in result.content.text
    assert result.content.metadata["page_count"] == "1"


def _blank_pdf(path: Path) -> Path:
    with fitz.open() as doc:
        doc.new_page()
        doc.save(str(path))
    return path


def test_scanned_pdf_uses_ocr(tmp_path: Path, policy: IndexingPolicy) -> None:
    ocr = FakeOcrEngine(text="scanned receipt for ferry tickets")
    extraction = ContentExtractionService(ocr=ocr)
    try:
        result = extraction.extract(_blank_pdf(tmp_path / "scan.pdf"), policy)
    finally:
        extraction.close()
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.telemetry.used_ocr is True
    assert result.content is not None
    assert "ferry tickets" in result.content.text
    assert ocr.calls == 1


def test_scanned_pdf_without_ocr_engine(tmp_path: Path, policy: IndexingPolicy) -> None:
    extraction = ContentExtractionService(ocr=FakeOcrEngine(available=False))
    try:
        result = extraction.extract(_blank_pdf(tmp_path / "scan.pdf"), policy)
    finally:
        extraction.close()
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "pdf_ocr_unavailable"


def test_image_with_no_ocr_text(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "blank.png"
    Image.new("RGB", (64, 32), "white").save(path)
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "image_ocr_empty"
    assert result.telemetry.used_ocr is True


def test_image_ocr_text(tmp_path: Path, policy: IndexingPolicy) -> None:
    path = tmp_path / "whiteboard.jpg"
    Image.new("RGB", (640, 480), "white").save(path)
    extraction = ContentExtractionService(ocr=FakeOcrEngine(text="sprint goals on the whiteboard"))
    try:
        result = extraction.extract(path, policy)
    finally:
        extraction.close()
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.content is not None
    assert result.content.metadata["width"] == "640"


def test_undecodable_image(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "broken.png"
    path.write_bytes(b"\x89PNG not really")
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "image_decode_failed"


def test_json_is_flattened(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = write_file(tmp_path / "settings.json", '{"name": "retrievald", "ports": [46299], "nested": {"on": true}}')
    result = service.extract(path, policy)
    assert result.content is not None
    lines = result.content.text.splitlines()
    assert "name: retrievald" in lines
    assert "ports[0]: 46299" in lines
    assert "nested.on: True" in lines


def test_html_title_and_text(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = write_file(
        tmp_path / "page.html",
        "<html><head><title>Trip notes</title><script>var x = 1;</script></head>"
        "<body><p>Lisbon itinerary</p></body></html>",
    )
    result = service.extract(path, policy)
    assert result.content is not None
    assert "Lisbon itinerary" in result.content.text
    assert "var x" not in result.content.text
    assert result.content.metadata["title"] == "Trip notes"


def test_rtf_text(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = write_file(
        tmp_path / "letter.rtf",
        "{\\rtf1\\ansi{\\fonttbl\\f0\\fswiss Helvetica;}\\f0\\pard Dear committee,\\par Caf\\'e9 budget attached.}",
    )
    result = service.extract(path, policy)
    assert result.content is not None
    assert "Dear committee," in result.content.text
    assert "Café budget attached." in result.content.text
    assert "Helvetica" not in result.content.text


def test_markdown_front_matter(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = write_file(
        tmp_path / "post.md",
        "---\ntitle: Garden log\nauthor: Sam\n---\n# Tomatoes\n\nPlanted the **heirloom** seedlings today.\n",
    )
    result = service.extract(path, policy)
    assert result.content is not None
    assert result.content.metadata["title"] == "Garden log"
    assert "Tomatoes" in result.content.text
    assert "#" not in result.content.text
    assert "language" in result.content.metadata


def test_binary_text_file(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = tmp_path / "blob.txt"
    path.write_bytes(b"abc\x00\x01\x02" * 10)
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "binary_content"


def test_truncation_is_still_success(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    small = dataclasses.replace(policy, max_extracted_characters_per_document=100)
    path = write_file(tmp_path / "long.txt", "word " * 200)
    result = service.extract(path, small)
    assert result.telemetry.outcome is ExtractionOutcome.SUCCESS
    assert result.content is not None
    assert len(result.content.text) == 100
    assert TRUNCATION_WARNING in result.content.warnings


def test_unknown_extension_falls_back_to_metadata(tmp_path: Path, policy: IndexingPolicy, service: ContentExtractionService) -> None:
    path = write_file(tmp_path / "thing.xyz", "opaque")
    result = service.extract(path, policy)
    assert result.telemetry.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.telemetry.detail == "metadata_only_fallback"


class _SlowExtractor(BaseExtractor):
    name = "slow"
    extensions = frozenset({"slow"})

    def __init__(self, delay: float, release: threading.Event | None = None) -> None:
        self.delay = delay
        self.release = release

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        if self.release is not None:
            self.release.wait(self.delay)
        else:
            time.sleep(self.delay)
        return ExtractedContent(text=f"slow text for {path.name}", title=path.name)


class _BrokenExtractor(BaseExtractor):
    name = "broken"
    extensions = frozenset({"boom"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        raise ValueError("parser exploded")


def test_timeout_returns_partial_metadata_only(tmp_path: Path, policy: IndexingPolicy) -> None:
    release = threading.Event()
    registry = ExtractorRegistry([_SlowExtractor(delay=10.0, release=release), MetadataFallbackExtractor()])
    extraction = ContentExtractionService(registry=registry)
    quick = dataclasses.replace(policy, max_extraction_seconds_per_file=0.2)
    path = write_file(tmp_path / "stuck.slow", "x")
    started = time.monotonic()
    try:
        result = extraction.extract(path, quick)
    finally:
        release.set()
        extraction.close()
    assert time.monotonic() - started < 2.0
    assert result.telemetry.outcome is ExtractionOutcome.PARTIAL
    assert result.telemetry.detail == TIMEOUT_DETAIL == "timeout"
    assert result.content is not None
    assert TIMEOUT_WARNING in result.content.warnings
    assert not result.content.has_text
    assert result.content.metadata["name"] == "stuck.slow"


def test_concurrent_extractions_do_not_serialize(tmp_path: Path, policy: IndexingPolicy) -> None:
    registry = ExtractorRegistry([_SlowExtractor(delay=0.3), MetadataFallbackExtractor()])
    extraction = ContentExtractionService(registry=registry)
    paths = [write_file(tmp_path / f"file{index}.slow", "x") for index in range(24)]
    started = time.monotonic()
    try:
        with ThreadPoolExecutor(max_workers=24) as pool:
            results = list(pool.map(lambda path: extraction.extract(path, policy), paths))
    finally:
        extraction.close()
    assert time.monotonic() - started < 3.0
    assert all(result.telemetry.outcome is ExtractionOutcome.SUCCESS for result in results)


def _timing_out(tmp_path: Path, policy: IndexingPolicy, count: int) -> tuple[list, float]:
    release = threading.Event()
    registry = ExtractorRegistry([_SlowExtractor(delay=1.5, release=release), MetadataFallbackExtractor()])
    extraction = ContentExtractionService(registry=registry)
    quick = dataclasses.replace(policy, max_extraction_seconds_per_file=0.15)
    paths = [write_file(tmp_path / f"f{index}.slow", "x") for index in range(count)]
    started = time.monotonic()
    try:
        with ThreadPoolExecutor(max_workers=count) as pool:
            results = list(pool.map(lambda path: extraction.extract(path, quick), paths))
        elapsed = time.monotonic() - started
    finally:
        release.set()
        extraction.close()
    return results, elapsed


def test_single_timeout_returns_within_budget(tmp_path: Path, policy: IndexingPolicy) -> None:
    results, elapsed = _timing_out(tmp_path, policy, 1)
    assert elapsed < 0.8
    assert results[0].content.title == "f0.slow"
    assert results[0].telemetry.detail == "timeout"


def test_concurrent_timeouts_fire_independently(tmp_path: Path, policy: IndexingPolicy) -> None:
    results, elapsed = _timing_out(tmp_path, policy, 24)
    assert elapsed < 1.2
    for index, result in enumerate(results):
        assert result.telemetry.outcome is ExtractionOutcome.PARTIAL
        assert result.telemetry.detail == "timeout"
        assert result.content is not None
        assert result.content.title == f"f{index}.slow"
        assert TIMEOUT_WARNING in result.content.warnings



def test_extractor_exception_is_failed(tmp_path: Path, policy: IndexingPolicy) -> None:
    extraction = ContentExtractionService(registry=ExtractorRegistry([_BrokenExtractor()]))
    try:
        result = extraction.extract(write_file(tmp_path / "bad.boom", "x"), policy)
    finally:
        extraction.close()
    assert result.content is None
    assert result.telemetry.outcome is ExtractionOutcome.FAILED
    assert "parser exploded" in result.telemetry.detail


def test_classify_outcomes() -> None:
    assert classify(None).outcome is ExtractionOutcome.UNSUPPORTED
    partial = ExtractedContent(text="some text", title="t", warnings=["pdf_ocr_unavailable"])
    assert classify(partial).outcome is ExtractionOutcome.PARTIAL
    truncated = ExtractedContent(text="some text", title="t", warnings=[TRUNCATION_WARNING])
    assert classify(truncated).outcome is ExtractionOutcome.SUCCESS
    empty = ExtractedContent(text="  ", title="t", warnings=["image_ocr_empty"])
    result = classify(empty)
    assert result.outcome is ExtractionOutcome.UNSUPPORTED
    assert result.detail == "image_ocr_empty"


def test_registered_extractor_runs_before_fallback() -> None:
    class _NotesExtractor(BaseExtractor):
        name = "notes"
        extensions = frozenset({"notes"})

    registry = ExtractorRegistry.default(ocr=FakeOcrEngine())
    notes = _NotesExtractor()
    registry.register(notes)

    assert registry.for_path(Path("/docs/meeting.notes")) is notes
    assert isinstance(registry.extractors[-1], MetadataFallbackExtractor)
