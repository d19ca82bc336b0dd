"""ID helpers."""

from __future__ import annotations

from retrievald.utils.hashing import sha256_text


def document_id(source_type: str, source_id: str) -> str:
    """Stable document id derived from the source identity."""
    return "doc_" + sha256_text(f"{source_type}|{source_id}")[:24]


def chunk_id(doc_id: str, index: int) -> str:
    return f"{doc_id}:{index}"
