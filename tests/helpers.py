"""Test doubles and image encoders shared by the test modules."""

from __future__ import annotations

import io
import threading
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image

from scenecaption.ml.image_classifier import Classification

if TYPE_CHECKING:
    from scenecaption.ml.preprocessing import PixelBuffer


class StaticClassifier:
    """Returns canned results, or raises a canned error, and records calls."""

    def __init__(
        self,
        results: list[tuple[str, float]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._results = [Classification(label=label, confidence=conf) for label, conf in results or []]
        self._error = error
        self.calls: list[PixelBuffer] = []
        self.thread_ids: list[int] = []

    @property
    def model_name(self) -> str:
        return "static"

    def predict(self, buffer: PixelBuffer) -> list[Classification]:
        self.calls.append(buffer)
        self.thread_ids.append(threading.get_ident())
        if self._error is not None:
            raise self._error
        return list(self._results)


def make_pixels(height: int = 4, width: int = 6, value: int = 128) -> np.ndarray:
    return np.full((height, width, 3), value, dtype=np.uint8)


def encode_png(pixels: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


def encode_jpeg_with_orientation(pixels: np.ndarray, orientation: int) -> bytes:
    exif = Image.Exif()
    exif[0x0112] = orientation
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="JPEG", exif=exif.tobytes())
    return buf.getvalue()


class GatedClassifier:
    """Holds predictions for images whose first pixel is 0 until `gate` is set."""

    def __init__(self) -> None:
        self.gate = threading.Event()

    @property
    def model_name(self) -> str:
        return "gated"

    def predict(self, buffer: PixelBuffer) -> list[Classification]:
        if buffer.pixels[0, 0, 0] == 0:
            self.gate.wait(timeout=5)
            return [Classification(label="slow", confidence=0.5)]
        return [Classification(label="fast", confidence=0.9)]
