"""Environment-based configuration for SnapSight."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPSIGHT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPSIGHT_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Model selection (fixed per application instance)
    model_kind: Literal["classifier", "detector"] = "classifier"
    classifier_model: str = "mobilenet_v2_1.0"
    detector_model: str = "ssdlite_mobilenet_v2_coco"
    models_dir: str = str(Path.home() / ".cache" / "snapsight" / "models")

    # Image normalization
    image_cache_dir: str = str(Path(tempfile.gettempdir()) / "snapsight")
    image_size: int = Field(default=224, ge=1)
    jpeg_quality: float = Field(default=0.6, gt=0.0, le=1.0)

    # Result shaping
    top_k: int = Field(default=3, ge=1)
    max_detections: int = Field(default=20, ge=1)
    iou_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @property
    def active_model(self) -> str:
        """Registry name of the model selected by ``model_kind``."""
        if self.model_kind == "detector":
            return self.detector_model
        return self.classifier_model


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
