"""Common ingestion data structures."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from retrievald.ingest.policy import extension_of
from retrievald.models.entities import AttemptOutcome
from retrievald.utils.time import from_epoch

ExtractionOutcome = AttemptOutcome

TRUNCATION_WARNING = "text_truncated_large_file"
TIMEOUT_WARNING = "extraction_timeout_metadata_only"
TIMEOUT_DETAIL = "timeout"

# Metadata worth matching against; the rest is bookkeeping.
SEARCHABLE_METADATA_KEYS = ("title", "author", "subject", "from", "to", "sheet_names")

_INLINE_SPACE_RE = re.compile(r"[ \t\f\v\u00a0]+")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass(slots=True)
class ExtractedContent:
    """Text pulled out of one file plus what we learned along the way."""

    text: str
    title: str
    metadata: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    was_ocr_used: bool = False

    @classmethod
    def metadata_only(cls, path: Path, warning: str) -> "ExtractedContent":
        return cls(text="", title=path.name, metadata=file_metadata(path), warnings=[warning])

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())

    def searchable_body(self, max_characters: int) -> str:
        body = normalize_block(self.text)[:max_characters]
        extras = [
            f"{key}: {self.metadata[key]}"
            for key in SEARCHABLE_METADATA_KEYS
            if self.metadata.get(key) and self.metadata[key] != self.title
        ]
        if extras:
            body = f"{body}\n\nMetadata\n" + "\n".join(extras)
        return body


@dataclass(slots=True)
class ExtractionTelemetry:
    outcome: ExtractionOutcome
    detail: str
    used_ocr: bool = False
    format: str = ""


@dataclass(slots=True)
class FileExtractionResult:
    content: ExtractedContent | None
    telemetry: ExtractionTelemetry


def file_metadata(path: Path) -> dict[str, str]:
    metadata = {"name": path.name, "extension": extension_of(path), "path": str(path)}
    try:
        stat = path.stat()
    except OSError:
        return metadata
    metadata["size_bytes"] = str(stat.st_size)
    metadata["modified_at"] = from_epoch(stat.st_mtime).isoformat()
    return metadata


def normalize_block(text: str) -> str:
    """Collapse inline whitespace but keep line and paragraph breaks."""
    lines = [_INLINE_SPACE_RE.sub(" ", line).strip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(lines)).strip()


__all__ = [
    "ExtractionOutcome",
    "ExtractedContent",
    "ExtractionTelemetry",
    "FileExtractionResult",
    "TRUNCATION_WARNING",
    "TIMEOUT_DETAIL",
    "TIMEOUT_WARNING",
    "file_metadata",
    "normalize_block",
]
