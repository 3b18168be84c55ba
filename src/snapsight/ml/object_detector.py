"""Object detection model.

SSD-style ONNX detector returning raw box/score grids; class selection and
non-maximum suppression happen here in numpy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from snapsight.ml.preprocessing import prepare_detector_input

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)

BBox = tuple[float, float, float, float]


@dataclass(frozen=True)
class Detection:
    """A labeled region.

    ``bbox`` is ``(x1, y1, x2, y2)`` in pixel space of the model input image.
    """

    label: str
    confidence: float
    bbox: BBox


class ObjectDetector(Protocol):
    """Protocol for object detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        """Detect objects in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of detections; order is not significant.
        """
        ...


def box_iou(box: NDArray[np.float32], others: NDArray[np.float32]) -> NDArray[np.float32]:
    """IoU of one ``(y1, x1, y2, x2)`` box against an (N, 4) array of boxes."""
    y1 = np.maximum(box[0], others[:, 0])
    x1 = np.maximum(box[1], others[:, 1])
    y2 = np.minimum(box[2], others[:, 2])
    x2 = np.minimum(box[3], others[:, 3])
    intersection = np.clip(y2 - y1, 0.0, None) * np.clip(x2 - x1, 0.0, None)

    area = (box[2] - box[0]) * (box[3] - box[1])
    areas = (others[:, 2] - others[:, 0]) * (others[:, 3] - others[:, 1])
    # Zero-area boxes divide by zero here and yield NaN, which never suppresses.
    return intersection / (area + areas - intersection)


def non_max_suppression(
    boxes: NDArray[np.float32],
    scores: NDArray[np.float32],
    max_output: int,
    iou_threshold: float,
    score_threshold: float,
) -> list[int]:
    """Greedy NMS. Returns kept indices in descending score order."""
    candidates = np.flatnonzero(scores >= score_threshold)
    if candidates.size == 0:
        return []

    widths = boxes[candidates, 3] - boxes[candidates, 1]
    heights = boxes[candidates, 2] - boxes[candidates, 0]
    degenerate = int(np.count_nonzero((widths <= 0) | (heights <= 0)))
    if degenerate:
        logger.warning("NMS received %d degenerate boxes above the score threshold", degenerate)

    order = candidates[np.argsort(-scores[candidates], kind="stable")]
    keep: list[int] = []
    while order.size > 0 and len(keep) < max_output:
        best = int(order[0])
        keep.append(best)
        rest = order[1:]
        if rest.size == 0:
            break
        overlaps = box_iou(boxes[best], boxes[rest])
        order = rest[~(overlaps > iou_threshold)]
    return keep


class OnnxObjectDetector:
    """Runs an SSD detector whose graph stops before postprocessing.

    Expected outputs: ``boxes`` (1, N, 4) normalized ``(ymin, xmin, ymax, xmax)``
    and ``scores`` (1, N, C) where column 0 is the background class.
    """

    def __init__(
        self,
        name: str,
        session: InferenceSession,
        labels: Sequence[str],
        max_detections: int = 20,
        iou_threshold: float = 0.5,
        score_threshold: float = 0.5,
    ) -> None:
        self._name = name
        self._session = session
        self._labels = list(labels)
        self._max_detections = max_detections
        self._iou_threshold = iou_threshold
        self._score_threshold = score_threshold
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._name

    def detect(self, image: NDArray[np.uint8]) -> list[Detection]:
        batch = prepare_detector_input(image)
        raw_boxes, raw_scores = self._session.run(None, {self._input_name: batch})[:2]
        boxes = np.asarray(raw_boxes, dtype=np.float32).reshape(-1, 4)
        scores = np.asarray(raw_scores, dtype=np.float32).reshape(boxes.shape[0], -1)

        if scores.shape[1] < 2:
            return []
        # Skip the background column.
        class_ids = np.argmax(scores[:, 1:], axis=1) + 1
        best_scores = scores[np.arange(scores.shape[0]), class_ids]

        keep = non_max_suppression(
            boxes,
            best_scores,
            max_output=self._max_detections,
            iou_threshold=self._iou_threshold,
            score_threshold=self._score_threshold,
        )

        height, width = image.shape[:2]
        detections: list[Detection] = []
        for idx in keep:
            y1, x1, y2, x2 = np.clip(boxes[idx], 0.0, 1.0)
            detections.append(
                Detection(
                    label=self._label_for(int(class_ids[idx])),
                    confidence=float(best_scores[idx]),
                    bbox=(float(x1 * width), float(y1 * height), float(x2 * width), float(y2 * height)),
                )
            )
        return detections

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"class_{index}"
