"""
Custom exceptions for the SnapSight capture-to-inference pipeline.

Every pipeline stage raises one of these; the pipeline catches them per
stage, logs, and degrades instead of propagating to the presentation layer.
"""

from __future__ import annotations


class SnapSightError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class TransformError(SnapSightError):
    """Raised when a captured image cannot be normalized."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to normalize '{source}': {reason}")


class ImageNotFound(TransformError):
    """Raised when the captured image is missing or unreadable."""


class EncodeError(TransformError):
    """Raised when the normalized image produced no encoded payload."""


class DecodeError(SnapSightError):
    """Raised when a normalized payload cannot be decoded into a tensor."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to decode image payload: {reason}")


class ModelNotReady(SnapSightError):
    """Raised when a model is requested before it finished loading."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Model not loaded (stage: {stage})")


class BackendInitError(SnapSightError):
    """Raised when the inference backend cannot be initialized."""

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Failed to initialize inference backend for '{device}': {reason}")


class ModelLoadError(SnapSightError):
    """Raised when the selected model cannot be downloaded or loaded."""

    def __init__(self, model_name: str, reason: str):
        self.model_name = model_name
        self.reason = reason
        super().__init__(f"Failed to load model '{model_name}': {reason}")


class InferenceError(SnapSightError):
    """Raised when the model fails while running on a tensor."""

    def __init__(self, model_name: str, reason: str):
        self.model_name = model_name
        self.reason = reason
        super().__init__(f"Inference failed for '{model_name}': {reason}")
