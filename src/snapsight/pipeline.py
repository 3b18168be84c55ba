"""Capture-to-inference pipeline.

Coordinates the capture boundary, normalization, tensor decoding, inference
and formatting, and publishes every state change as a whole new
:class:`PipelineSnapshot`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from snapsight.exceptions import DecodeError, InferenceError, TransformError
from snapsight.ml.formatting import format_results
from snapsight.ml.inference import InferencePool, InferenceRunner
from snapsight.ml.model_manager import LoadStage, ModelLifecycle, OnnxModelManager
from snapsight.ml.normalizer import ImageNormalizer
from snapsight.ml.preprocessing import decode_tensor
from snapsight.schemas import AnalysisState, ModelState, PipelineSnapshot

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapsight.config import Settings
    from snapsight.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

_MODEL_STATES: dict[LoadStage, ModelState] = {
    LoadStage.UNINITIALIZED: ModelState.LOADING,
    LoadStage.BACKEND_READY: ModelState.LOADING,
    LoadStage.MODEL_READY: ModelState.READY,
    LoadStage.LOAD_FAILED: ModelState.LOAD_FAILED,
}


class CameraPipeline:
    """Owns the captured image, the model lifecycle, and the published state."""

    def __init__(
        self,
        settings: Settings,
        *,
        pool: InferencePool | None = None,
        manager: ModelManager | None = None,
        normalizer: ImageNormalizer | None = None,
    ) -> None:
        self._pool = pool or InferencePool()
        self._lifecycle = ModelLifecycle(settings, manager or OnnxModelManager(settings), self._pool)
        self._normalizer = normalizer or ImageNormalizer(settings)
        self._runner = InferenceRunner(self._lifecycle, self._pool)

        self._captured: Path | None = None
        self._analyzing = False
        self._listeners: list[Callable[[PipelineSnapshot], None]] = []
        self._snapshot = PipelineSnapshot(stage_message=self._lifecycle.stage_message)
        self._lifecycle.subscribe(self._on_stage)

    @property
    def snapshot(self) -> PipelineSnapshot:
        return self._snapshot

    @property
    def lifecycle(self) -> ModelLifecycle:
        return self._lifecycle

    @property
    def captured_image(self) -> Path | None:
        return self._captured

    def subscribe(self, listener: Callable[[PipelineSnapshot], None]) -> None:
        """Register a callback receiving each new snapshot."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Load the model. Only the first call has any effect."""
        await self._lifecycle.load()

    def capture(self, path: Path | str) -> None:
        """Accept a new captured image from the camera subsystem.

        Replaces (and deletes) any capture that was never analyzed, so at most
        one raw image is alive at a time.
        """
        path = Path(path)
        previous = self._captured
        if previous is not None and previous != path:
            try:
                previous.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not delete replaced capture %s: %s", previous, exc)
        self._captured = path
        logger.info("Captured %s", path)
        self._publish(analysis_state=AnalysisState.IMAGE_CAPTURED, image_uri=path.as_uri())

    async def analyze(self) -> list[str] | None:
        """Normalize, decode, and run the current image through the model.

        Returns the formatted results, or ``None`` when the request was
        rejected or failed. Failures are logged and never raised. A request
        made while another analysis is running is rejected.
        """
        if self._analyzing:
            logger.warning("Analysis already in progress; ignoring request")
            return None
        if not self._lifecycle.is_ready:
            logger.warning("Model not loaded (stage=%s); ignoring analyze request", self._lifecycle.stage)
            return None
        source = self._captured
        if source is None:
            logger.warning("No image to analyze")
            return None

        self._analyzing = True
        self._captured = None
        self._publish(analysis_state=AnalysisState.ANALYZING)
        try:
            return await self._analyze(source)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected failure while analyzing %s", source)
            if self._captured is None and source.exists():
                self._captured = source
            self._publish(analysis_state=AnalysisState.ANALYSIS_FAILED)
            return None
        finally:
            self._analyzing = False

    def close(self) -> None:
        self._pool.shutdown()

    # -- Internal -----------------------------------------------------------

    async def _analyze(self, source: Path) -> list[str] | None:
        try:
            normalized = await self._pool.run(self._normalizer.normalize, source)
        except TransformError as exc:
            logger.warning("Could not normalize %s: %s", source, exc.message)
            if source.exists():
                self._captured = source
            self._publish(analysis_state=AnalysisState.ANALYSIS_FAILED)
            return None

        # The normalized image is now the current image; analyzing again reuses it.
        self._captured = normalized.path
        self._publish(image_uri=normalized.uri)

        try:
            tensor = await self._pool.run(decode_tensor, normalized.base64)
            output = await self._runner.run(tensor)
        except (DecodeError, InferenceError) as exc:
            logger.warning("Analysis of %s failed: %s", normalized.path, exc.message)
            self._publish(analysis_state=AnalysisState.ANALYSIS_FAILED)
            return None

        if output is None:
            self._publish(analysis_state=AnalysisState.IMAGE_CAPTURED)
            return None

        results = format_results(output)
        logger.info("Analysis produced %d result(s)", len(results))
        self._publish(analysis_state=AnalysisState.RESULT_READY, results=results)
        return results

    def _on_stage(self, stage: LoadStage, message: str) -> None:
        self._publish(model_state=_MODEL_STATES[stage], stage_message=message)

    def _publish(self, **changes: Any) -> None:
        self._snapshot = self._snapshot.model_copy(update=changes)
        for listener in self._listeners:
            listener(self._snapshot)
