"""OCR wrapper around RapidOCR (ONNX Runtime)."""

from __future__ import annotations

import threading
from typing import Any

import numpy as np
from PIL import Image

from retrievald.core.logging import get_logger

logger = get_logger(__name__)


class OcrEngine:
    """Recognize text in images.

    The ONNX models are loaded on first use. When ``rapidocr_onnxruntime`` is
    not installed the engine reports itself unavailable and extractors record
    an ``*_ocr_unavailable`` warning instead of text.
    """

    def __init__(self) -> None:
        self._engine: Any = None
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._load() is not None

    def recognize(self, image: Image.Image) -> str:
        engine = self._load()
        if engine is None:
            return ""
        # RapidOCR returns (result, elapsed); result rows are [box, text, score]
        result, _ = engine(np.asarray(image.convert("RGB")))
        if not result:
            return ""
        lines = [str(item[1]) for item in result if item and len(item) >= 2 and item[1]]
        return "\n".join(lines).strip()

    def _load(self) -> Any:
        with self._lock:
            if self._loaded:
                return self._engine
            self._loaded = True
            try:
                from rapidocr_onnxruntime import RapidOCR

                self._engine = RapidOCR()
            except Exception as exc:  # noqa: BLE001 - optional OCR extra
                logger.warning("OCR engine unavailable: %s", exc)
                self._engine = None
            return self._engine


__all__ = ["OcrEngine"]
