"""Tests for the inference runner, worker pool, and scoped diagnostics."""

from __future__ import annotations

import logging
import threading
import warnings
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

if TYPE_CHECKING:
    from collections.abc import Iterator

import numpy as np
import pytest

from snapsight.exceptions import InferenceError
from snapsight.ml.diagnostics import suppressed_diagnostics
from snapsight.ml.image_classifier import ClassificationResult
from snapsight.ml.inference import (
    ClassificationOutput,
    DetectionOutput,
    InferencePool,
    InferenceRunner,
)
from snapsight.ml.model_manager import LoadStage, ModelKind
from snapsight.ml.object_detector import Detection

NMS_LOGGER = "snapsight.ml.object_detector"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_lifecycle(model: object | None, kind: ModelKind = ModelKind.CLASSIFIER) -> MagicMock:
    lifecycle = MagicMock()
    lifecycle.model = model
    lifecycle.is_ready = model is not None
    lifecycle.kind = kind
    lifecycle.stage = LoadStage.MODEL_READY if model is not None else LoadStage.BACKEND_READY
    return lifecycle


def _tensor() -> np.ndarray:
    return np.zeros((224, 224, 3), dtype=np.uint8)


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool()
    yield inference_pool
    inference_pool.shutdown()


# ---------------------------------------------------------------------------
# Scoped diagnostics
# ---------------------------------------------------------------------------


class TestSuppressedDiagnostics:
    def test_raises_and_restores_logger_level(self) -> None:
        target = logging.getLogger(NMS_LOGGER)
        target.setLevel(logging.DEBUG)
        try:
            with suppressed_diagnostics(NMS_LOGGER):
                assert target.level == logging.ERROR
            assert target.level == logging.DEBUG
        finally:
            target.setLevel(logging.NOTSET)

    def test_silences_warnings_inside_only(self) -> None:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with suppressed_diagnostics():
                warnings.warn("hidden", RuntimeWarning, stacklevel=1)
            warnings.warn("visible", RuntimeWarning, stacklevel=1)

        assert [str(w.message) for w in caught] == ["visible"]

    def test_restores_after_exception(self) -> None:
        target = logging.getLogger(NMS_LOGGER)
        before = target.level
        filters_before = list(warnings.filters)

        with pytest.raises(ValueError, match="boom"), suppressed_diagnostics(NMS_LOGGER):
            raise ValueError("boom")

        assert target.level == before
        assert warnings.filters == filters_before


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class TestInferencePool:
    async def test_runs_off_the_event_loop_thread(self, pool: InferencePool) -> None:
        name = await pool.run(lambda: threading.current_thread().name)
        assert name.startswith("onnx-inference")

    async def test_passes_arguments(self, pool: InferencePool) -> None:
        assert await pool.run(pow, 2, 5) == 32

    async def test_propagates_exceptions(self, pool: InferencePool) -> None:
        def fail() -> None:
            raise RuntimeError("backend exploded")

        with pytest.raises(RuntimeError, match="backend exploded"):
            await pool.run(fail)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestInferenceRunnerReadiness:
    async def test_not_ready_returns_none(self, pool: InferencePool, caplog: pytest.LogCaptureFixture) -> None:
        runner = InferenceRunner(_make_lifecycle(None), pool)

        with caplog.at_level(logging.WARNING, logger="snapsight.ml.inference"):
            assert await runner.run(_tensor()) is None
        assert "Model not loaded" in caplog.text


class TestInferenceRunnerClassifier:
    async def test_passes_model_order_through(self, pool: InferencePool) -> None:
        predictions = [
            ClassificationResult("tabby", 0.2),
            ClassificationResult("tiger cat", 0.7),
        ]
        model = MagicMock()
        model.classify.return_value = predictions
        runner = InferenceRunner(_make_lifecycle(model), pool)

        output = await runner.run(_tensor())

        assert isinstance(output, ClassificationOutput)
        assert output.kind is ModelKind.CLASSIFIER
        assert list(output.predictions) == predictions

    async def test_empty_result_is_not_none(self, pool: InferencePool) -> None:
        model = MagicMock()
        model.classify.return_value = []
        output = await InferenceRunner(_make_lifecycle(model), pool).run(_tensor())
        assert output is not None
        assert output.predictions == ()

    async def test_model_failure_wrapped(self, pool: InferencePool) -> None:
        model = MagicMock()
        model.model_name = "mobilenet_v2_1.0"
        model.classify.side_effect = RuntimeError("bad input shape")
        runner = InferenceRunner(_make_lifecycle(model), pool)

        with pytest.raises(InferenceError, match="mobilenet_v2_1.0"):
            await runner.run(_tensor())


class TestInferenceRunnerDetector:
    async def test_diagnostics_suppressed_during_detect(self, pool: InferencePool) -> None:
        seen_levels: list[int] = []

        def detect(_: np.ndarray) -> list[Detection]:
            seen_levels.append(logging.getLogger(NMS_LOGGER).level)
            warnings.warn("nms is slow", RuntimeWarning, stacklevel=1)
            return [Detection("dog", 0.5, (1.0, 2.0, 3.0, 4.0))]

        model = MagicMock()
        model.detect.side_effect = detect
        runner = InferenceRunner(_make_lifecycle(model, ModelKind.DETECTOR), pool)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            output = await runner.run(_tensor())

        assert isinstance(output, DetectionOutput)
        assert output.kind is ModelKind.DETECTOR
        assert output.detections[0].label == "dog"
        assert seen_levels == [logging.ERROR]
        assert not [w for w in caught if "nms is slow" in str(w.message)]
        assert logging.getLogger(NMS_LOGGER).level == logging.NOTSET

    async def test_diagnostics_restored_after_failure(self, pool: InferencePool) -> None:
        model = MagicMock()
        model.model_name = "ssdlite_mobilenet_v2_coco"
        model.detect.side_effect = RuntimeError("nms failed")
        runner = InferenceRunner(_make_lifecycle(model, ModelKind.DETECTOR), pool)

        with pytest.raises(InferenceError, match="nms failed"):
            await runner.run(_tensor())

        assert logging.getLogger(NMS_LOGGER).level == logging.NOTSET
        assert logging.getLogger("onnxruntime").level == logging.NOTSET

    async def test_no_detections_is_empty_output(self, pool: InferencePool) -> None:
        model = MagicMock()
        model.detect.return_value = []
        output = await InferenceRunner(_make_lifecycle(model, ModelKind.DETECTOR), pool).run(_tensor())
        assert output is not None
        assert output.detections == ()
