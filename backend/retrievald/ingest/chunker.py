"""Chunking utilities."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterator

_SEGMENT_RE = re.compile(r"\n\s*\n", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?\n]+[.!?]?", re.MULTILINE)

DEFAULT_CHUNK_CHARACTERS = 1000


@dataclass(slots=True)
class Segment:
    text: str
    start: int
    end: int


def chunk_text(text: str, max_chars: int = DEFAULT_CHUNK_CHARACTERS, max_chunks: int | None = None) -> list[str]:
    """Split text into windows of at most ``max_chars`` characters.

    Paragraph breaks are preferred, then sentence ends, then a hard split.
    At most ``max_chunks`` windows are returned when a cap is given.
    """
    if not text.strip():
        return []

    segments: list[Segment] = []
    for segment in _iter_segments(text):
        segments.extend(_shrink_segment(segment, max_chars))

    chunks: list[str] = []
    current: list[Segment] = []
    for segment in segments:
        if current and segment.end - current[0].start > max_chars:
            chunks.append(_finalize_chunk(text, current))
            if max_chunks is not None and len(chunks) >= max_chunks:
                return chunks
            current = []
        current.append(segment)
    if current:
        chunks.append(_finalize_chunk(text, current))
    if max_chunks is not None:
        chunks = chunks[:max_chunks]
    return chunks


def _iter_segments(text: str) -> Iterator[Segment]:
    last_index = 0
    for match in _SEGMENT_RE.finditer(text):
        segment = _trim_segment(text, last_index, match.start())
        if segment:
            yield segment
        last_index = match.end()
    if last_index < len(text):
        segment = _trim_segment(text, last_index, len(text))
        if segment:
            yield segment


def _trim_segment(text: str, start: int, end: int) -> Segment | None:
    seg_start = start
    seg_end = end
    while seg_start < seg_end and text[seg_start].isspace():
        seg_start += 1
    while seg_end > seg_start and text[seg_end - 1].isspace():
        seg_end -= 1
    if seg_start >= seg_end:
        return None
    return Segment(text=text[seg_start:seg_end], start=seg_start, end=seg_end)


def _shrink_segment(segment: Segment, max_chars: int) -> list[Segment]:
    if len(segment.text) <= max_chars:
        return [segment]
    sentences = list(_sentence_segments(segment))
    if len(sentences) > 1:
        shrunk: list[Segment] = []
        for sentence in sentences:
            shrunk.extend(_shrink_segment(sentence, max_chars))
        return shrunk
    return _split_segment(segment, max_chars)


def _sentence_segments(segment: Segment) -> Iterator[Segment]:
    for match in _SENTENCE_RE.finditer(segment.text):
        sentence = match.group().strip()
        if not sentence:
            continue
        rel_start = match.start() + match.group().find(sentence)
        start = segment.start + rel_start
        yield Segment(text=sentence, start=start, end=start + len(sentence))


def _split_segment(segment: Segment, max_chars: int) -> list[Segment]:
    length = len(segment.text)
    pieces = max(1, math.ceil(length / max_chars))
    step = math.ceil(length / pieces)
    segments: list[Segment] = []
    for cursor in range(0, length, step):
        end = min(length, cursor + step)
        segments.append(Segment(text=segment.text[cursor:end], start=segment.start + cursor, end=segment.start + end))
    return segments


def _finalize_chunk(text: str, segments: list[Segment]) -> str:
    return text[segments[0].start : segments[-1].end]


__all__ = ["chunk_text", "DEFAULT_CHUNK_CHARACTERS"]
