"""Pydantic state models published to the presentation layer."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ModelState(StrEnum):
    LOADING = "loading"
    READY = "ready"
    LOAD_FAILED = "load_failed"


class AnalysisState(StrEnum):
    IDLE = "idle"
    IMAGE_CAPTURED = "image_captured"
    ANALYZING = "analyzing"
    RESULT_READY = "result_ready"
    ANALYSIS_FAILED = "analysis_failed"


class PipelineSnapshot(BaseModel):
    """Complete, immutable view of the pipeline at one point in time."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_state: ModelState = ModelState.LOADING
    stage_message: str = Field(default="", description="Human-readable model loading stage")
    analysis_state: AnalysisState = AnalysisState.IDLE
    image_uri: str | None = Field(default=None, description="URI of the image currently shown")
    results: list[str] | None = Field(
        default=None,
        description="Formatted results of the last successful analysis; None if none has run",
    )
