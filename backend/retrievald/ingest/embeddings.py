"""Embedding utilities."""

from __future__ import annotations

import hashlib
import threading
from typing import Iterable

import numpy as np

from retrievald.core.logging import get_logger
from retrievald.utils.text import tokenize

logger = get_logger(__name__)


class EmbeddingRuntime:
    """Hashed bag-of-words embedding with deterministic, L2-normalized output."""

    _instances: dict[tuple[str, int], "EmbeddingRuntime"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, model_name: str = "hashed-v1", dim: int = 256) -> None:
        if dim <= 0:
            raise ValueError("embedding dimension must be positive")
        self.model_name = model_name
        self._dim = dim

    @classmethod
    def get(cls, model_name: str = "hashed-v1", dim: int = 256) -> "EmbeddingRuntime":
        key = (model_name or "hashed-v1", dim)
        with cls._instances_lock:
            if key not in cls._instances:
                logger.debug("Creating embedding runtime", extra={"ctx_model": key[0], "ctx_dim": dim})
                cls._instances[key] = cls(model_name=key[0], dim=dim)
            return cls._instances[key]

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, texts: Iterable[str]) -> list[list[float]]:
        return [self.embed_array(text).tolist() for text in texts]

    def embed_one(self, text: str) -> list[float]:
        return self.embed_array(text).tolist()

    def embed_array(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dim, dtype=np.float32)
        for token in tokenize(text):
            vector[_hash_token(token, self._dim)] += 1.0
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % dim


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float32)
    norms[norms == 0] = 1.0
    return (matrix @ query) / (norms * query_norm)


__all__ = ["EmbeddingRuntime", "cosine_scores"]
