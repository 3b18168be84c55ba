"""Model manager: backend setup, model download, session creation, lifecycle.

Handles initializing ONNX Runtime, downloading models and their label files
from HuggingFace, creating cached InferenceSessions, and the one-shot
asynchronous load that publishes model readiness to the pipeline.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snapsight.exceptions import BackendInitError, ModelLoadError, ModelNotReady
from snapsight.ml.image_classifier import ImageClassifier, OnnxImageClassifier
from snapsight.ml.object_detector import ObjectDetector, OnnxObjectDetector

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapsight.config import Settings
    from snapsight.ml.inference import InferencePool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model download and session management."""

    def initialize_backend(self) -> None:
        """Prepare the inference runtime; must run before any session is created."""
        ...

    def get_spec(self, model_name: str) -> ModelSpec:
        """Return registry metadata for a model."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def load_labels(self, model_name: str) -> list[str]:
        """Return the class labels shipped with a model."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelKind(StrEnum):
    CLASSIFIER = "classifier"
    DETECTOR = "detector"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    display_name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    kind: ModelKind
    version: int | None = None
    alpha: float | None = None


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v1_1.0": ModelSpec(
        name="mobilenet_v1_1.0",
        display_name="MobileNet v1",
        repo_id="snapsight/snapsight-models",
        filename="mobilenet_v1_1.0_224.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder="classification",
        kind=ModelKind.CLASSIFIER,
        version=1,
        alpha=1.0,
    ),
    "mobilenet_v2_1.0": ModelSpec(
        name="mobilenet_v2_1.0",
        display_name="MobileNet v2",
        repo_id="snapsight/snapsight-models",
        filename="mobilenet_v2_1.0_224.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder="classification",
        kind=ModelKind.CLASSIFIER,
        version=2,
        alpha=1.0,
    ),
    "mobilenet_v2_0.5": ModelSpec(
        name="mobilenet_v2_0.5",
        display_name="MobileNet v2 (0.5)",
        repo_id="snapsight/snapsight-models",
        filename="mobilenet_v2_0.5_224.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder="classification",
        kind=ModelKind.CLASSIFIER,
        version=2,
        alpha=0.5,
    ),
    "ssdlite_mobilenet_v2_coco": ModelSpec(
        name="ssdlite_mobilenet_v2_coco",
        display_name="COCO-SSD (lite MobileNet v2)",
        repo_id="snapsight/snapsight-models",
        filename="ssdlite_mobilenet_v2_coco_raw.onnx",
        labels_filename="coco_labels.txt",
        subfolder="detection",
        kind=ModelKind.DETECTOR,
    ),
    "ssd_mobilenet_v1_coco": ModelSpec(
        name="ssd_mobilenet_v1_coco",
        display_name="COCO-SSD (MobileNet v1)",
        repo_id="snapsight/snapsight-models",
        filename="ssd_mobilenet_v1_coco_raw.onnx",
        labels_filename="coco_labels.txt",
        subfolder="detection",
        kind=ModelKind.DETECTOR,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Initializes ONNX Runtime, downloads models, and caches sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options: SessionOptions | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def backend_ready(self) -> bool:
        return self._session_options is not None

    def initialize_backend(self) -> None:
        """Check the configured execution provider and build session options.

        Raises:
            BackendInitError: If the provider is unavailable or the runtime
                cannot be configured.
        """
        device = self._settings.device
        try:
            available = onnxruntime.get_available_providers()
        except RuntimeError as exc:
            raise BackendInitError(device, str(exc)) from exc

        primary = self._providers[0]
        provider_name = primary if isinstance(primary, str) else primary[0]
        if provider_name not in available:
            raise BackendInitError(device, f"{provider_name} not available (have: {', '.join(available)})")

        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendInitError(device, f"cannot create models dir {self._models_dir}: {exc}") from exc

        self._session_options = self._build_session_options()
        logger.info("ONNX Runtime %s ready with %s", onnxruntime.__version__, provider_name)

    def get_spec(self, model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def ensure_downloaded(self, model_name: str) -> Path:
        """Download a model from HuggingFace if not already present locally."""
        spec = self.get_spec(model_name)

        if model_name in self._model_paths:
            path = self._model_paths[model_name]
            if path.exists():
                return path

        downloaded = self._download(spec, spec.filename)
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def load_labels(self, model_name: str) -> list[str]:
        """Download (if needed) and read the label file for a model."""
        spec = self.get_spec(model_name)
        path = self._download(spec, spec.labels_filename)
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise ValueError(f"Label file for {model_name} is empty")
        return labels

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        if self._session_options is None:
            raise RuntimeError("Inference backend not initialized")

        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            existing = self._sessions.setdefault(model_name, session)
            if existing is session:
                logger.info("Loaded session for %s", model_name)
            return existing

    # -- Internal -----------------------------------------------------------

    def _download(self, spec: ModelSpec, filename: str) -> Path:
        return Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

ModelHandle = ImageClassifier | ObjectDetector


class LoadStage(StrEnum):
    UNINITIALIZED = "uninitialized"
    BACKEND_READY = "backend_ready"
    MODEL_READY = "model_ready"
    LOAD_FAILED = "load_failed"


class ModelLifecycle:
    """One-shot asynchronous load of the backend and the configured model.

    ``uninitialized -> backend_ready -> model_ready`` on success, or
    ``-> load_failed`` permanently. Callers check :attr:`is_ready` before
    running inference; nothing is queued while loading.
    """

    def __init__(self, settings: Settings, manager: ModelManager, pool: InferencePool) -> None:
        self._settings = settings
        self._manager = manager
        self._pool = pool
        self._kind = ModelKind(settings.model_kind)
        self._model_name = settings.active_model

        self._stage = LoadStage.UNINITIALIZED
        self._stage_message = "Model not loaded"
        self._model: ModelHandle | None = None
        self._error: BackendInitError | ModelLoadError | None = None
        self._started = False
        self._listeners: list[Callable[[LoadStage, str], None]] = []

    @property
    def kind(self) -> ModelKind:
        return self._kind

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def stage(self) -> LoadStage:
        return self._stage

    @property
    def stage_message(self) -> str:
        return self._stage_message

    @property
    def is_ready(self) -> bool:
        return self._stage is LoadStage.MODEL_READY

    @property
    def model(self) -> ModelHandle | None:
        return self._model

    @property
    def error(self) -> BackendInitError | ModelLoadError | None:
        return self._error

    def subscribe(self, listener: Callable[[LoadStage, str], None]) -> None:
        """Register a callback invoked with ``(stage, message)`` on every transition."""
        self._listeners.append(listener)

    def require_model(self) -> ModelHandle:
        if self._model is None:
            raise ModelNotReady(self._stage)
        return self._model

    async def load(self) -> None:
        """Initialize the backend, then load the model. Runs at most once.

        Failures are logged and leave the lifecycle in ``load_failed``;
        they are never raised to the caller and never retried.
        """
        if self._started:
            logger.warning("Model load already triggered (stage=%s); ignoring", self._stage)
            return
        self._started = True

        self._set_stage(LoadStage.UNINITIALIZED, "Initializing inference backend...")
        try:
            await self._pool.run(self._initialize_backend)
        except BackendInitError as exc:
            self._fail(exc)
            return
        self._set_stage(LoadStage.BACKEND_READY, "Inference backend ready")

        spec = MODEL_REGISTRY.get(self._model_name)
        display_name = spec.display_name if spec else self._model_name
        self._set_stage(LoadStage.BACKEND_READY, f"Loading {display_name}...")
        try:
            model = await self._pool.run(self._build_model)
        except ModelLoadError as exc:
            self._fail(exc)
            return

        self._model = model
        self._set_stage(LoadStage.MODEL_READY, f"{display_name} ready")

    # -- Internal -----------------------------------------------------------

    def _initialize_backend(self) -> None:
        try:
            self._manager.initialize_backend()
        except BackendInitError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendInitError(self._settings.device, str(exc)) from exc

    def _build_model(self) -> ModelHandle:
        name = self._model_name
        try:
            spec = self._manager.get_spec(name)
            if spec.kind != self._kind:
                raise ModelLoadError(name, f"registered as {spec.kind}, configured as {self._kind}")
            session = self._manager.get_session(name)
            labels = self._manager.load_labels(name)
            if self._kind is ModelKind.DETECTOR:
                return OnnxObjectDetector(
                    name,
                    session,
                    labels,
                    max_detections=self._settings.max_detections,
                    iou_threshold=self._settings.iou_threshold,
                    score_threshold=self._settings.score_threshold,
                )
            return OnnxImageClassifier(name, session, labels, top_k=self._settings.top_k)
        except ModelLoadError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadError(name, str(exc)) from exc

    def _fail(self, exc: BackendInitError | ModelLoadError) -> None:
        self._error = exc
        logger.error("Model load failed: %s", exc.message, exc_info=exc)
        self._set_stage(LoadStage.LOAD_FAILED, f"Model load failed: {exc.message}")

    def _set_stage(self, stage: LoadStage, message: str) -> None:
        self._stage = stage
        self._stage_message = message
        logger.info("Model lifecycle: %s (%s)", message, stage)
        for listener in self._listeners:
            listener(stage, message)
