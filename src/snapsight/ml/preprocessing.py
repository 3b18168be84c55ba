"""Tensor decoding and model input preparation.

Decodes the normalizer's base64 JPEG payload into an HxWx3 RGB uint8 array
and reshapes that array into the layouts the ONNX models consume.
"""

from __future__ import annotations

import base64
import binascii
import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from snapsight.exceptions import DecodeError
from snapsight.ml.normalizer import NORMALIZED_FORMAT

if TYPE_CHECKING:
    from numpy.typing import NDArray

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def decode_tensor(payload: str, expected_format: str = NORMALIZED_FORMAT) -> NDArray[np.uint8]:
    """Decode a base64 image payload into a pixel tensor.

    Args:
        payload: Base64 text of an encoded image.
        expected_format: Pillow format name the payload must be encoded in.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        DecodeError: If the payload is not valid base64, not an image, or not
            encoded in ``expected_format``.
    """
    if not payload:
        raise DecodeError("empty payload")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid base64: {exc}") from exc

    try:
        with Image.open(io.BytesIO(raw)) as img:
            if img.format != expected_format:
                raise DecodeError(f"expected {expected_format} bitstream, got {img.format}")
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise DecodeError(str(exc)) from exc

    return np.ascontiguousarray(np.asarray(rgb, dtype=np.uint8))


def prepare_classifier_input(tensor: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Scale, ImageNet-normalize, and transpose to a (1, 3, H, W) batch."""
    scaled = tensor.astype(np.float32) / 255.0
    normalized = (scaled - IMAGENET_MEAN) / IMAGENET_STD
    return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...])


def prepare_detector_input(tensor: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Add a batch dimension, keeping uint8 NHWC layout."""
    return np.ascontiguousarray(tensor[np.newaxis, ...])
