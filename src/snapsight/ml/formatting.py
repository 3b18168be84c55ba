"""Display strings for raw inference output."""

from __future__ import annotations

from typing import TYPE_CHECKING

from snapsight.ml.model_manager import ModelKind

if TYPE_CHECKING:
    from collections.abc import Iterable

    from snapsight.ml.image_classifier import ClassificationResult
    from snapsight.ml.inference import InferenceOutput
    from snapsight.ml.object_detector import Detection

NO_OBJECTS_DETECTED = "no objects detected"


def format_classification(predictions: Iterable[ClassificationResult]) -> list[str]:
    """``"cat (0.823)"`` per prediction, in the given order. Empty in, empty out."""
    return [f"{p.label} ({p.probability:.3f})" for p in predictions]


def format_detections(detections: Iterable[Detection]) -> list[str]:
    """``"dog: (1.00, 2.01) - (3.02, 4.00): (0.500)"`` per detection.

    An empty input yields a single :data:`NO_OBJECTS_DETECTED` line.
    """
    lines = []
    for d in detections:
        x1, y1, x2, y2 = d.bbox
        lines.append(f"{d.label}: ({x1:.2f}, {y1:.2f}) - ({x2:.2f}, {y2:.2f}): ({d.confidence:.3f})")
    return lines or [NO_OBJECTS_DETECTED]


def format_results(output: InferenceOutput) -> list[str]:
    if output.kind is ModelKind.DETECTOR:
        return format_detections(output.detections)  # type: ignore[union-attr]
    return format_classification(output.predictions)  # type: ignore[union-attr]
