"""Image classification models.

`ImageClassifier` is the contract the pipeline consumes; `OnnxImageClassifier`
runs a registry model through ONNX Runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from scenecaption.ml.model_manager import get_spec
from scenecaption.ml.preprocessing import prepare_input

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from scenecaption.ml.model_manager import ModelManager
    from scenecaption.ml.preprocessing import PixelBuffer


class ModelUnavailableError(RuntimeError):
    """Raised when a model cannot be downloaded or loaded."""


class InferenceError(RuntimeError):
    """Raised when the inference engine fails on an input."""


@dataclass(frozen=True)
class Classification:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, buffer: PixelBuffer) -> list[Classification]:
        """Classify an image and return ranked labels.

        Args:
            buffer: Pixels tagged with their orientation.

        Returns:
            List of classifications sorted by confidence (descending).

        Raises:
            ModelUnavailableError: If the model cannot be loaded.
            InferenceError: If inference fails.
        """
        ...


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - logits.max()
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxImageClassifier:
    """Classifies images with an ONNX model managed by a ModelManager."""

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._manager = manager
        self._spec = get_spec(model_name)

    @property
    def model_name(self) -> str:
        return self._spec.name

    def predict(self, buffer: PixelBuffer) -> list[Classification]:
        try:
            session = self._manager.get_session(self._spec.name)
            labels = self._manager.get_labels(self._spec.name)
        except Exception as exc:
            raise ModelUnavailableError(f"Model '{self._spec.name}' is unavailable: {exc}") from exc

        tensor = prepare_input(buffer.upright(), self._spec.input_size, self._spec.mean, self._spec.std)
        input_name = session.get_inputs()[0].name
        try:
            outputs = session.run(None, {input_name: tensor})
        except Exception as exc:
            raise InferenceError(str(exc) or type(exc).__name__) from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape[0] != len(labels):
            raise InferenceError(f"Model produced {scores.shape[0]} scores for {len(labels)} labels")
        if self._spec.outputs_logits:
            scores = _softmax(scores)

        order = np.argsort(-scores, kind="stable")
        return [Classification(label=labels[i], confidence=float(np.clip(scores[i], 0.0, 1.0))) for i in order]
