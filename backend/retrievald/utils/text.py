"""Text processing helpers."""

from __future__ import annotations

import re

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)
_ENTITY_SPLIT_RE = re.compile(r"[^\w@.]+", re.UNICODE)

_REDACTION_PATTERNS = (
    re.compile(r"(?i)api[_-]?key\s*[:=]\s*[A-Za-z0-9_\-]{16,}"),
    re.compile(r"(?i)secret\s*[:=]\s*[A-Za-z0-9_\-]{10,}"),
    re.compile(r"(?i)password\s*[:=]\s*[^\s]{6,}"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9_\-.]{16,}"),
)
REDACTED = "[REDACTED]"


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens."""
    return _WORD_RE.findall(text.lower())


def entity_tokens(text: str, limit: int = 10, min_length: int = 4) -> list[str]:
    """First distinct lowercase tokens usable as graph entity nodes."""
    seen: list[str] = []
    for raw in _ENTITY_SPLIT_RE.split(text.lower()):
        token = raw.strip(".")
        if len(token) < min_length or token in seen:
            continue
        seen.append(token)
        if len(seen) >= limit:
            break
    return seen


def redact(text: str) -> str:
    """Replace credentials and tokens with a placeholder."""
    redacted = text
    for pattern in _REDACTION_PATTERNS:
        redacted = pattern.sub(REDACTED, redacted)
    return redacted
