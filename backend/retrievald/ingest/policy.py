"""Indexing policy: decide whether a path is indexed, deferred or skipped."""

from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Union

COMMON_DOCUMENT_FORMATS = frozenset(
    {
        "md", "markdown", "txt", "rtf", "rtfd", "html", "htm", "pdf",
        "json", "yaml", "yml", "toml", "csv", "tsv", "sql", "xml", "eml", "ics",
        "docx", "pptx", "xlsx", "pages", "doc",
        "png", "jpg", "jpeg", "heic", "tiff", "tif", "gif", "webp", "bmp",
    }
)

CODE_FILE_FORMATS = frozenset(
    {
        "swift", "kt", "js", "ts", "tsx", "jsx", "py", "go", "rs", "rb",
        "java", "c", "cpp", "h", "hpp", "m", "mm", "sh", "zsh", "bash",
        "php", "cs", "scala", "r", "lua", "pl",
    }
)

# Indexed for stats but kept out of ranking.
STRUCTURED_NON_SEARCHABLE_FORMATS = frozenset(
    {
        "json", "jsonl", "ndjson", "yaml", "yml", "toml", "sql", "csv", "tsv",
        "xml", "plist", "pbxproj", "xcconfig", "ini", "conf", "env", "properties",
    }
)

BUILD_OUTPUT_EXCLUDES = (
    ".build", "build", "dist", "out", "target", "coverage",
    ".gradle", ".next", ".nuxt", ".svelte-kit", ".angular", ".turbo", ".parcel-cache", ".vite", ".webpack-cache",
    "cmake-build-*", "bazel-*",
    ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox", ".nox",
)

DEPENDENCY_EXCLUDES = (
    "site-packages", "dist-packages", "__pycache__", ".venv", "venv",
    "Pods", "Carthage", "Frameworks", "checkouts", "vendor", "third_party", "third-party",
    "bower_components", ".pnpm-store", ".yarn", ".m2", ".ivy2",
)

PACKAGE_DIRECTORY_EXTENSIONS = frozenset({"rtfd", "pages", "key", "numbers"})

# Extensions the platform mime table may not know about.
_KNOWN_CONTENT_TYPES = {
    "md": "text/markdown",
    "markdown": "text/markdown",
    "yaml": "application/yaml",
    "yml": "application/yaml",
    "toml": "application/toml",
    "rtf": "application/rtf",
    "rtfd": "application/rtfd",
    "doc": "application/msword",
    "eml": "message/rfc822",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
    "pages": "application/vnd.apple.pages",
    "heic": "image/heic",
    "webp": "image/webp",
    "ics": "text/calendar",
    "tsv": "text/tab-separated-values",
    "sql": "application/sql",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


@dataclass(slots=True, frozen=True)
class Index:
    partition: str


@dataclass(slots=True, frozen=True)
class Deferred:
    reason: str


@dataclass(slots=True, frozen=True)
class Skip:
    reason: str


IndexDecision = Union[Index, Deferred, Skip]


@dataclass(slots=True, frozen=True)
class IndexingPolicy:
    """Immutable indexing configuration built from a named preset."""

    allowlist_roots: tuple[str, ...]
    excludes: tuple[str, ...]
    allowed_file_extensions: frozenset[str]
    non_searchable_file_extensions: frozenset[str] = field(default_factory=frozenset)
    skip_unknown_mime: bool = True
    first_pass_file_size_cap_bytes: int = 1_500_000
    hard_file_size_cap_bytes: int = 20_000_000
    max_chunks_per_document: int = 48
    max_extracted_characters_per_document: int = 180_000
    max_pdf_pages_to_ocr: int = 24
    max_image_pixel_count_for_ocr: int = 24_000_000
    max_image_dimension_for_ocr: int = 6_000
    max_extraction_seconds_per_file: float = 8.0
    stage1_recent_cutoff_days: int = 30
    quiet_window_seconds: float = 20.0

    @classmethod
    def preset(cls, profile: str, allowlist_roots: Iterable[str | Path]) -> "IndexingPolicy":
        roots = tuple(str(root) for root in allowlist_roots if str(root).strip())
        non_searchable = STRUCTURED_NON_SEARCHABLE_FORMATS | CODE_FILE_FORMATS
        base_excludes = (".git", "node_modules", ".cache")
        profile = profile.lower()
        if profile == "developer":
            return cls(
                allowlist_roots=roots,
                excludes=base_excludes
                + ("DerivedData", "Library/Caches", "Library/Developer", ".swiftpm")
                + BUILD_OUTPUT_EXCLUDES
                + DEPENDENCY_EXCLUDES,
                allowed_file_extensions=COMMON_DOCUMENT_FORMATS,
                non_searchable_file_extensions=non_searchable,
                first_pass_file_size_cap_bytes=2_500_000,
                hard_file_size_cap_bytes=30_000_000,
                max_chunks_per_document=80,
                max_extracted_characters_per_document=240_000,
                max_pdf_pages_to_ocr=36,
                max_image_pixel_count_for_ocr=30_000_000,
                max_image_dimension_for_ocr=7_000,
                max_extraction_seconds_per_file=10.0,
                stage1_recent_cutoff_days=45,
            )
        if profile == "personal":
            return cls(
                allowlist_roots=roots,
                excludes=base_excludes + ("Library/Caches", "Movies", "Pictures") + BUILD_OUTPUT_EXCLUDES + DEPENDENCY_EXCLUDES,
                allowed_file_extensions=COMMON_DOCUMENT_FORMATS,
                non_searchable_file_extensions=non_searchable,
                first_pass_file_size_cap_bytes=1_000_000,
                hard_file_size_cap_bytes=10_000_000,
                max_chunks_per_document=36,
                max_extracted_characters_per_document=120_000,
                max_pdf_pages_to_ocr=18,
                max_image_pixel_count_for_ocr=20_000_000,
                max_image_dimension_for_ocr=5_500,
                max_extraction_seconds_per_file=8.0,
                stage1_recent_cutoff_days=21,
            )
        return cls(
            allowlist_roots=roots,
            excludes=base_excludes
            + ("DerivedData", "Library/Caches", "Library/Developer")
            + BUILD_OUTPUT_EXCLUDES
            + DEPENDENCY_EXCLUDES,
            allowed_file_extensions=COMMON_DOCUMENT_FORMATS,
            non_searchable_file_extensions=non_searchable,
        )

    def evaluate(self, path: str | Path, file_size: int, modified_at: datetime) -> IndexDecision:
        """Pure decision for one file given its size and modification time."""
        canonical = canonical_path(path)
        if not any(_is_within(canonical, canonical_path(root)) for root in self.allowlist_roots):
            return Skip("outside_allowlist")
        if self.should_skip_path(canonical):
            return Skip("excluded_path")
        reason = self._file_type_skip_reason(canonical)
        if reason is not None:
            return Skip(reason)
        if file_size > self.hard_file_size_cap_bytes:
            return Skip("hard_size_cap")
        if file_size > self.first_pass_file_size_cap_bytes:
            return Deferred("deferred_large_file")
        if _looks_generated(canonical):
            return Skip("generated_or_minified")
        if self.is_recent(modified_at):
            return Index("hot")
        return Index("warm")

    def should_skip_path(self, path: str | Path) -> bool:
        """True when any path component matches an exclude; works on directories alone."""
        normalized = canonical_path(path).lower()
        components = [part for part in normalized.split("/") if part]
        for excluded in self.excludes:
            token = excluded.lower()
            if "/" in token:
                if f"/{token}/" in normalized or normalized.endswith(f"/{token}"):
                    return True
                continue
            if "*" in token:
                prefix, _, suffix = token.partition("*")
                if any(
                    (not prefix or component.startswith(prefix)) and (not suffix or component.endswith(suffix))
                    for component in components
                ):
                    return True
                continue
            if token in components:
                return True
            # build systems create directories like "Configuration.build"
            if token == ".build" and any(component.endswith(".build") for component in components):
                return True
        return False

    def should_attempt_file_ingestion(self, path: str | Path) -> bool:
        if self.should_skip_path(path):
            return False
        return self._file_type_skip_reason(canonical_path(path)) is None

    def is_searchable(self, path: str | Path) -> bool:
        return extension_of(path) not in self.non_searchable_file_extensions

    def is_recent(self, modified_at: datetime, now: datetime | None = None) -> bool:
        now = now or datetime.now(tz=timezone.utc)
        if modified_at.tzinfo is None:
            modified_at = modified_at.replace(tzinfo=timezone.utc)
        return modified_at >= now - timedelta(days=self.stage1_recent_cutoff_days)

    def _file_type_skip_reason(self, path: str) -> str | None:
        ext = extension_of(path)
        if not ext or ext not in self.allowed_file_extensions:
            return "unsupported_file_type"
        if self.skip_unknown_mime and content_type_for(ext) is None:
            return "unknown_content_type"
        return None


def canonical_path(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def extension_of(path: str | Path) -> str:
    name = os.path.basename(str(path).rstrip("/"))
    _, dot, ext = name.rpartition(".")
    return ext.lower() if dot and _ else ""


def content_type_for(ext: str) -> str | None:
    if ext in _KNOWN_CONTENT_TYPES:
        return _KNOWN_CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(f"file.{ext}", strict=False)
    return guessed


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def _looks_generated(path: str) -> bool:
    lower = path.lower()
    return ".min." in lower or "generated" in lower or "bundle.js" in lower


__all__ = [
    "IndexingPolicy",
    "IndexDecision",
    "Index",
    "Deferred",
    "Skip",
    "PACKAGE_DIRECTORY_EXTENSIONS",
    "canonical_path",
    "extension_of",
]
