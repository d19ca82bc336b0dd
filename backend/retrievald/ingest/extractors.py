"""Format extractors selected by capability."""

from __future__ import annotations

import io
import re
import zipfile
from email import message_from_bytes, policy as email_policy
from pathlib import Path
from typing import Any, Iterable

import fitz
import langid
import orjson
import yaml
from bs4 import BeautifulSoup
from docx import Document
from docx.opc.exceptions import PackageNotFoundError as DocxPackageNotFoundError
from markdown_it import MarkdownIt
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from PIL import Image, UnidentifiedImageError
from pptx import Presentation
from pptx.exc import PackageNotFoundError as PptxPackageNotFoundError

from retrievald.core.logging import get_logger
from retrievald.ingest.ocr import OcrEngine
from retrievald.ingest.policy import IndexingPolicy, extension_of
from retrievald.ingest.types import TRUNCATION_WARNING, ExtractedContent, file_metadata

logger = get_logger(__name__)

_MD = MarkdownIt()
_MIN_PDF_TEXT_CHARACTERS = 16
_TEXT_READ_FLOOR_BYTES = 512 * 1024
_OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
_OFFICE_OPEN_ERRORS = (
    zipfile.BadZipFile,
    KeyError,
    OSError,
    DocxPackageNotFoundError,
    PptxPackageNotFoundError,
    InvalidFileException,
)
_UTF16_RUN_RE = re.compile(rb"(?:[\x20-\x7e\xa0-\xff]\x00|[\t\r\n]\x00){6,}")
_BYTE_RUN_RE = re.compile(rb"[\x20-\x7e\x91-\x97\xa0-\xff\t\r\n]{8,}")
_OLE_STREAM_NAMES = {
    "root entry",
    "worddocument",
    "1table",
    "0table",
    "data",
    "objectpool",
    "compobj",
    "summaryinformation",
    "documentsummaryinformation",
}
_RTF_DESTINATION_RE = re.compile(r"\{\\\*[^{}]*\}")
_RTF_HEX_RE = re.compile(r"\\'([0-9a-fA-F]{2})")
_RTF_UNICODE_RE = re.compile(r"\\u(-?\d+)\??")
_RTF_CONTROL_RE = re.compile(r"\\([a-zA-Z]+)(-?\d+)? ?")
_RTF_SKIP_GROUPS = ("fonttbl", "colortbl", "stylesheet", "info", "pict", "header", "footer")


class BaseExtractor:
    """Common extractor interface."""

    name: str = "base"
    extensions: frozenset[str] = frozenset()

    def can_handle(self, path: Path) -> bool:
        return extension_of(path) in self.extensions

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:  # pragma: no cover - interface
        raise NotImplementedError


class OfficeOpenXMLExtractor(BaseExtractor):
    """docx through python-docx, pptx through python-pptx and xlsx through openpyxl."""

    name = "office_openxml"
    extensions = frozenset({"docx", "pptx", "xlsx"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        ext = extension_of(path)
        metadata = file_metadata(path)
        metadata["format"] = ext
        limit = policy.max_extracted_characters_per_document
        try:
            if ext == "docx":
                text = _docx_text(path, metadata)
            elif ext == "pptx":
                text = _pptx_text(path, metadata)
            else:
                text = _xlsx_text(path, metadata, limit)
        except _OFFICE_OPEN_ERRORS as exc:
            logger.info("Office archive unreadable", extra={"ctx_path": str(path), "ctx_error": str(exc)})
            return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["office_archive_unreadable"])
        return _bounded_content(text, path.name, metadata, policy)


class LegacyWordExtractor(BaseExtractor):
    """Binary Word 97-2003 documents.

    Text is recovered from printable runs in the compound file, both the
    8-bit and the UTF-16LE encodings Word uses for its piece table.
    """

    name = "legacy_word"
    extensions = frozenset({"doc"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = "doc"
        with path.open("rb") as fh:
            raw = fh.read(policy.hard_file_size_cap_bytes)
        if raw.lstrip().startswith(b"{\\rtf"):
            return _bounded_content(rtf_to_text(raw.decode("latin-1")), path.name, metadata, policy)
        if not raw.startswith(_OLE_MAGIC):
            text = _decode_text(raw)
            if text is None:
                return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["legacy_doc_unreadable"])
            return _bounded_content(text, path.name, metadata, policy)
        runs: list[str] = []
        for match in _UTF16_RUN_RE.finditer(raw):
            runs.append(match.group().decode("utf-16-le", errors="ignore"))
        for match in _BYTE_RUN_RE.finditer(raw):
            runs.append(match.group().decode("cp1252", errors="ignore"))
        text = "\n".join(_dedupe(run.strip() for run in runs if _looks_like_prose(run)))
        if not text:
            return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["legacy_doc_no_text"])
        return _bounded_content(text, path.name, metadata, policy)


class PDFExtractor(BaseExtractor):
    name = "pdf"
    extensions = frozenset({"pdf"})

    def __init__(self, ocr: OcrEngine) -> None:
        self.ocr = ocr

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = "pdf"
        with fitz.open(path) as doc:
            if doc.needs_pass:
                return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["pdf_encrypted"])
            metadata["page_count"] = str(doc.page_count)
            info = doc.metadata or {}
            if info.get("title"):
                metadata["title"] = info["title"]
            if info.get("author"):
                metadata["author"] = info["author"]
            pages = [page.get_text("text", sort=True) for page in doc]
            text = "\n\n".join(pages)
            if len(text.strip()) >= _MIN_PDF_TEXT_CHARACTERS:
                return _bounded_content(text, path.name, metadata, policy)
            if not self.ocr.available:
                return ExtractedContent(
                    text=text, title=path.name, metadata=metadata, warnings=["pdf_ocr_unavailable"]
                )
            lines: list[str] = []
            page_budget = min(doc.page_count, policy.max_pdf_pages_to_ocr)
            for index in range(page_budget):
                pix = doc.load_page(index).get_pixmap(matrix=fitz.Matrix(2, 2))
                with Image.open(io.BytesIO(pix.tobytes("png"))) as image:
                    lines.append(self.ocr.recognize(_fit_for_ocr(image, policy)))
            metadata["ocr_pages"] = str(page_budget)
        ocr_text = "\n\n".join(line for line in lines if line).strip()
        if not ocr_text:
            return ExtractedContent(
                text="", title=path.name, metadata=metadata, warnings=["pdf_ocr_empty"], was_ocr_used=True
            )
        content = _bounded_content(ocr_text, path.name, metadata, policy)
        content.was_ocr_used = True
        return content


class ImageOCRExtractor(BaseExtractor):
    name = "image_ocr"
    extensions = frozenset({"png", "jpg", "jpeg", "heic", "tiff", "tif", "gif", "webp", "bmp"})

    def __init__(self, ocr: OcrEngine) -> None:
        self.ocr = ocr

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = extension_of(path)
        try:
            image = Image.open(path)
        except (UnidentifiedImageError, OSError):
            return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["image_decode_failed"])
        with image:
            metadata["width"], metadata["height"] = str(image.width), str(image.height)
            if not self.ocr.available:
                return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["image_ocr_unavailable"])
            try:
                image.load()
            except OSError:
                return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["image_decode_failed"])
            text = self.ocr.recognize(_fit_for_ocr(image, policy))
        if not text.strip():
            return ExtractedContent(
                text="", title=path.name, metadata=metadata, warnings=["image_ocr_empty"], was_ocr_used=True
            )
        content = _bounded_content(text, path.name, metadata, policy)
        content.was_ocr_used = True
        return content


class JSONExtractor(BaseExtractor):
    """Flatten JSON documents into ``path: value`` lines."""

    name = "json"
    extensions = frozenset({"json"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = "json"
        raw = path.read_bytes()
        try:
            parsed = orjson.loads(raw)
        except orjson.JSONDecodeError:
            metadata["json_valid"] = "false"
            text = _decode_text(raw) or ""
            return _bounded_content(text, path.name, metadata, policy)
        lines = list(_flatten_json(parsed))
        return _bounded_content("\n".join(lines), path.name, metadata, policy)


class EmailExtractor(BaseExtractor):
    name = "email"
    extensions = frozenset({"eml"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = "eml"
        message = message_from_bytes(path.read_bytes(), policy=email_policy.default)
        for header in ("subject", "from", "to"):
            value = message.get(header)
            if value:
                metadata[header] = str(value)
        parts: list[str] = []
        if message.is_multipart():
            for part in message.walk():
                if part.get_content_type() == "text/plain":
                    payload = part.get_payload(decode=True)
                    if payload:
                        parts.append(payload.decode(part.get_content_charset() or "utf-8", errors="ignore"))
                elif part.get_content_type() == "text/html" and not parts:
                    payload = part.get_payload(decode=True)
                    if payload:
                        parts.append(html_to_text(payload.decode(part.get_content_charset() or "utf-8", errors="ignore"))[1])
        else:
            payload = message.get_payload(decode=True) or b""
            parts.append(payload.decode(message.get_content_charset() or "utf-8", errors="ignore"))
        return _bounded_content("\n".join(parts), path.name, metadata, policy)


class RichTextExtractor(BaseExtractor):
    """HTML, RTF and RTFD bundles."""

    name = "rich_text"
    extensions = frozenset({"html", "htm", "rtf", "rtfd", "pages"})

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        ext = extension_of(path)
        metadata = file_metadata(path)
        metadata["format"] = ext
        if ext in {"html", "htm"}:
            title, text = html_to_text(_decode_text(path.read_bytes()) or "")
            if title:
                metadata["title"] = title
            return _bounded_content(text, path.name, metadata, policy)
        if ext == "rtf":
            return _bounded_content(rtf_to_text(path.read_bytes().decode("latin-1")), path.name, metadata, policy)
        if ext == "rtfd" and path.is_dir():
            body = path / "TXT.rtf"
            if body.exists():
                return _bounded_content(rtf_to_text(body.read_bytes().decode("latin-1")), path.name, metadata, policy)
        return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["rich_text_unsupported_container"])


class PlainTextExtractor(BaseExtractor):
    name = "plain_text"
    extensions = frozenset(
        {"txt", "text", "log", "md", "markdown", "yaml", "yml", "toml", "csv", "tsv", "sql", "xml", "ics"}
    )

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        metadata = file_metadata(path)
        metadata["format"] = extension_of(path)
        size = path.stat().st_size
        budget = max(_TEXT_READ_FLOOR_BYTES, min(policy.hard_file_size_cap_bytes, policy.max_extracted_characters_per_document * 4))
        with path.open("rb") as fh:
            raw = fh.read(budget)
        text = _decode_text(raw)
        if text is None:
            return ExtractedContent(text="", title=path.name, metadata=metadata, warnings=["binary_content"])
        if metadata["format"] in {"md", "markdown"}:
            front_matter, body = _split_front_matter(text)
            if front_matter:
                for key in ("title", "author"):
                    if front_matter.get(key):
                        metadata[key] = str(front_matter[key])
            text = _markdown_to_text(body)
        if text.strip():
            metadata["language"] = _detect_lang(text)
        content = _bounded_content(text, path.name, metadata, policy)
        if size > len(raw) and TRUNCATION_WARNING not in content.warnings:
            content.warnings.append(TRUNCATION_WARNING)
        return content


class MetadataFallbackExtractor(BaseExtractor):
    """Last resort: file metadata only, which classifies as unsupported."""

    name = "metadata_fallback"

    def can_handle(self, path: Path) -> bool:
        return True

    def extract(self, path: Path, policy: IndexingPolicy) -> ExtractedContent | None:
        return ExtractedContent.metadata_only(path, "metadata_only_fallback")


class ExtractorRegistry:
    """Ordered extractors; the first one whose ``can_handle`` matches wins."""

    def __init__(self, extractors: Iterable[BaseExtractor]) -> None:
        self._extractors: list[BaseExtractor] = list(extractors)

    @classmethod
    def default(cls, ocr: OcrEngine | None = None) -> "ExtractorRegistry":
        ocr = ocr or OcrEngine()
        return cls(
            [
                OfficeOpenXMLExtractor(),
                LegacyWordExtractor(),
                PDFExtractor(ocr),
                ImageOCRExtractor(ocr),
                JSONExtractor(),
                EmailExtractor(),
                RichTextExtractor(),
                PlainTextExtractor(),
                MetadataFallbackExtractor(),
            ]
        )

    @property
    def extractors(self) -> list[BaseExtractor]:
        return list(self._extractors)

    def register(self, extractor: BaseExtractor) -> None:
        """Add an extractor ahead of the metadata fallback."""
        if self._extractors and isinstance(self._extractors[-1], MetadataFallbackExtractor):
            self._extractors.insert(len(self._extractors) - 1, extractor)
        else:
            self._extractors.append(extractor)

    def for_path(self, path: Path) -> BaseExtractor | None:
        for extractor in self._extractors:
            if extractor.can_handle(path):
                return extractor
        return None


def html_to_text(markup: str) -> tuple[str | None, str]:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    title = soup.title.get_text(strip=True) if soup.title else None
    return title or None, soup.get_text("\n")


def rtf_to_text(source: str) -> str:
    """Strip RTF control words, keeping the visible text."""
    text = _RTF_DESTINATION_RE.sub("", source)
    for group in _RTF_SKIP_GROUPS:
        text = _strip_group(text, "{\\" + group)
    text = _RTF_HEX_RE.sub(lambda match: bytes([int(match.group(1), 16)]).decode("cp1252", errors="ignore"), text)
    text = _RTF_UNICODE_RE.sub(lambda match: chr(int(match.group(1)) % 0x10000), text)

    def _control(match: re.Match[str]) -> str:
        word = match.group(1)
        if word in {"par", "line", "sect", "page", "row"}:
            return "\n"
        if word in {"tab", "cell"}:
            return "\t"
        return ""

    text = _RTF_CONTROL_RE.sub(_control, text)
    text = text.replace("\\{", "{").replace("\\}", "}").replace("\\\\", "\\")
    return text.replace("{", "").replace("}", "")


# Internal helpers -------------------------------------------------


def _bounded_content(text: str, title: str, metadata: dict[str, str], policy: IndexingPolicy) -> ExtractedContent:
    limit = policy.max_extracted_characters_per_document
    warnings: list[str] = []
    if len(text) > limit:
        text = text[:limit]
        warnings.append(TRUNCATION_WARNING)
    return ExtractedContent(text=text, title=title, metadata=metadata, warnings=warnings)


def _decode_text(raw: bytes) -> str | None:
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="replace")
    if b"\x00" in raw[:8192]:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


def _core_properties(title: str | None, author: str | None, subject: str | None) -> dict[str, str]:
    found: dict[str, str] = {}
    for key, value in (("title", title), ("author", author), ("subject", subject)):
        if value and value.strip():
            found[key] = value.strip()
    return found


def _docx_text(path: Path, metadata: dict[str, str]) -> str:
    document = Document(str(path))
    core = document.core_properties
    metadata.update(_core_properties(core.title, core.author, core.subject))
    lines = [para.text for para in document.paragraphs if para.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                lines.append("\t".join(cells))
    for section in document.sections:
        for part in (section.header, section.footer):
            lines.extend(para.text for para in part.paragraphs if para.text.strip())
    return "\n".join(lines)


def _pptx_text(path: Path, metadata: dict[str, str]) -> str:
    presentation = Presentation(str(path))
    core = presentation.core_properties
    metadata.update(_core_properties(core.title, core.author, core.subject))
    slides: list[str] = []
    notes: list[str] = []
    for slide in presentation.slides:
        texts = [shape.text_frame.text for shape in slide.shapes if shape.has_text_frame and shape.text_frame.text.strip()]
        slides.append("\n".join(texts))
        if slide.has_notes_slide:
            note = slide.notes_slide.notes_text_frame.text
            if note.strip():
                notes.append(note)
    metadata["slide_count"] = str(len(slides))
    return "\n\n".join(block for block in slides + notes if block)


def _xlsx_text(path: Path, metadata: dict[str, str], limit: int) -> str:
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        props = workbook.properties
        metadata.update(_core_properties(props.title, props.creator, props.subject))
        metadata["sheet_names"] = ", ".join(workbook.sheetnames)
        blocks: list[str] = []
        size = 0
        for sheet in workbook.worksheets:
            rows: list[str] = []
            for values in sheet.iter_rows(values_only=True):
                cells = [str(value) for value in values if value is not None and str(value).strip()]
                if not cells:
                    continue
                row = "\t".join(cells)
                rows.append(row)
                size += len(row) + 1
                if size > limit:
                    break
            if rows:
                blocks.append("\n".join(rows))
            if size > limit:
                break
    finally:
        workbook.close()
    return "\n\n".join(blocks)


def _flatten_json(value: Any, prefix: str = "") -> Iterable[str]:
    if isinstance(value, dict):
        for key, item in value.items():
            yield from _flatten_json(item, f"{prefix}.{key}" if prefix else str(key))
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from _flatten_json(item, f"{prefix}[{index}]")
    elif value is not None:
        yield f"{prefix}: {value}" if prefix else str(value)


def _looks_like_prose(run: str) -> bool:
    stripped = run.strip()
    if len(stripped) < 4 or stripped.lower() in _OLE_STREAM_NAMES:
        return False
    letters = sum(1 for char in stripped if char.isalpha())
    spaces = stripped.count(" ")
    return spaces >= 1 and letters >= 4 and (letters + spaces) / len(stripped) >= 0.75


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _strip_group(text: str, opener: str) -> str:
    """Remove every balanced group that starts with ``opener``."""
    while True:
        start = text.find(opener)
        if start < 0:
            return text
        depth = 0
        for index in range(start, len(text)):
            char = text[index]
            if char == "\\" and index + 1 < len(text) and text[index + 1] in "{}":
                continue
            if char == "{" and (index == 0 or text[index - 1] != "\\"):
                depth += 1
            elif char == "}" and (index == 0 or text[index - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    text = text[:start] + text[index + 1 :]
                    break
        else:
            return text[:start]


def _fit_for_ocr(image: Image.Image, policy: IndexingPolicy) -> Image.Image:
    width, height = image.size
    longest = max(width, height)
    scale = 1.0
    if longest > policy.max_image_dimension_for_ocr:
        scale = policy.max_image_dimension_for_ocr / longest
    pixels = width * height * scale * scale
    if pixels > policy.max_image_pixel_count_for_ocr:
        scale *= (policy.max_image_pixel_count_for_ocr / pixels) ** 0.5
    if scale >= 1.0:
        return image
    return image.resize((max(1, int(width * scale)), max(1, int(height * scale))))


def _split_front_matter(text: str) -> tuple[dict[str, object] | None, str]:
    if text.startswith("---"):
        parts = text.split("---", 2)
        if len(parts) >= 3:
            try:
                front_matter = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError:
                return None, text
            if isinstance(front_matter, dict):
                return front_matter, parts[2]
    return None, text


def _markdown_to_text(text: str) -> str:
    tokens = _MD.parse(text)
    parts: list[str] = []
    for token in tokens:
        content = token.content.strip()
        if content:
            parts.append(content)
    return "\n".join(parts) if parts else text


def _detect_lang(text: str) -> str:
    lang, _ = langid.classify(text[:2000])
    return lang


__all__ = [
    "BaseExtractor",
    "OfficeOpenXMLExtractor",
    "LegacyWordExtractor",
    "PDFExtractor",
    "ImageOCRExtractor",
    "JSONExtractor",
    "EmailExtractor",
    "RichTextExtractor",
    "PlainTextExtractor",
    "MetadataFallbackExtractor",
    "ExtractorRegistry",
    "html_to_text",
    "rtf_to_text",
]
