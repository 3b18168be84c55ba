"""Inference execution layer.

Architecture:
    pipeline (asyncio) -> InferencePool (1 worker thread) -> ONNX model

Every blocking step (image transform, backend init, model load, inference)
goes through the same single worker, so the event loop keeps running while
backend work never overlaps. There is no timeout and no cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar, cast

from snapsight.exceptions import InferenceError
from snapsight.ml.diagnostics import suppressed_diagnostics
from snapsight.ml.model_manager import ModelKind

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from snapsight.ml.image_classifier import ClassificationResult, ImageClassifier
    from snapsight.ml.model_manager import ModelHandle, ModelLifecycle
    from snapsight.ml.object_detector import Detection, ObjectDetector

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Loggers that emit NMS / runtime chatter during detection.
DETECTION_NOISE_LOGGERS: tuple[str, ...] = ("snapsight.ml.object_detector", "onnxruntime")


class InferencePool:
    """Runs blocking backend calls on a dedicated worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="onnx-inference")

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the worker and await its result."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def shutdown(self) -> None:
        """Shut down the worker thread."""
        self._executor.shutdown(wait=True)


# ---------------------------------------------------------------------------
# Raw outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationOutput:
    """Ranked predictions, most probable first."""

    predictions: tuple[ClassificationResult, ...]
    kind: ModelKind = field(default=ModelKind.CLASSIFIER, init=False)


@dataclass(frozen=True)
class DetectionOutput:
    """Detected regions in no particular order."""

    detections: tuple[Detection, ...]
    kind: ModelKind = field(default=ModelKind.DETECTOR, init=False)


InferenceOutput = ClassificationOutput | DetectionOutput


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class InferenceRunner:
    """Runs the lifecycle's model against a decoded pixel tensor."""

    def __init__(self, lifecycle: ModelLifecycle, pool: InferencePool) -> None:
        self._lifecycle = lifecycle
        self._pool = pool

    async def run(self, tensor: NDArray[np.uint8]) -> InferenceOutput | None:
        """Run inference on ``tensor``.

        Returns ``None`` without touching the backend if the model is not
        ready. An output with no predictions/detections means the model ran
        and found nothing.

        Raises:
            InferenceError: If the model raised while running.
        """
        model = self._lifecycle.model
        if model is None or not self._lifecycle.is_ready:
            logger.warning("Model not loaded (stage=%s); skipping inference", self._lifecycle.stage)
            return None

        if self._lifecycle.kind is ModelKind.DETECTOR:
            return await self._pool.run(self._detect, model, tensor)
        return await self._pool.run(self._classify, model, tensor)

    @staticmethod
    def _classify(model: ModelHandle, tensor: NDArray[np.uint8]) -> ClassificationOutput:
        classifier = cast("ImageClassifier", model)
        try:
            predictions = classifier.classify(tensor)
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(classifier.model_name, str(exc)) from exc
        logger.debug("Classified with %s: %d predictions", classifier.model_name, len(predictions))
        return ClassificationOutput(predictions=tuple(predictions))

    @staticmethod
    def _detect(model: ModelHandle, tensor: NDArray[np.uint8]) -> DetectionOutput:
        detector = cast("ObjectDetector", model)
        try:
            with suppressed_diagnostics(*DETECTION_NOISE_LOGGERS):
                detections = detector.detect(tensor)
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(detector.model_name, str(exc)) from exc
        logger.debug("Detected with %s: %d objects", detector.model_name, len(detections))
        return DetectionOutput(detections=tuple(detections))
