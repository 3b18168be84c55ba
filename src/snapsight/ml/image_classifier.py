"""Image classification model.

MobileNet-style ONNX classifier producing ranked whole-image labels.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from snapsight.ml.preprocessing import prepare_classifier_input

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by probability (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs a 1000-class ImageNet classifier exported to ONNX."""

    def __init__(
        self,
        name: str,
        session: InferenceSession,
        labels: Sequence[str],
        top_k: int = 3,
    ) -> None:
        self._name = name
        self._session = session
        self._labels = list(labels)
        self._top_k = top_k
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        batch = prepare_classifier_input(image)
        (logits,) = self._session.run(None, {self._input_name: batch})[:1]
        probabilities = softmax(np.asarray(logits, dtype=np.float32).reshape(-1))

        k = min(self._top_k, probabilities.shape[0])
        # Stable sort keeps the lower class index first on ties.
        order = np.argsort(-probabilities, kind="stable")[:k]
        return [
            ClassificationResult(label=self._label_for(int(idx)), probability=float(probabilities[idx]))
            for idx in order
        ]

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"class_{index}"
