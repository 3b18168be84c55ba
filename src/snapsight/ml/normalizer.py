"""Captured image normalization.

Turns a device-native capture into the fixed-size JPEG (plus base64 payload)
the tensor decoder expects, and releases the capture's backing file.
"""

from __future__ import annotations

import base64
import io
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image, ImageOps, UnidentifiedImageError

from snapsight.exceptions import EncodeError, ImageNotFound, TransformError

if TYPE_CHECKING:
    from snapsight.config import Settings

logger = logging.getLogger(__name__)

NORMALIZED_FORMAT = "JPEG"


@dataclass(frozen=True)
class NormalizedImage:
    """A resized, re-encoded capture ready for tensor decoding."""

    path: Path
    base64: str
    width: int
    height: int

    @property
    def uri(self) -> str:
        return self.path.as_uri()


class ImageNormalizer:
    """Resizes captures to a square JPEG and deletes the original."""

    def __init__(self, settings: Settings) -> None:
        self._size = settings.image_size
        self._quality = round(settings.jpeg_quality * 100)
        self._cache_dir = Path(settings.image_cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    def normalize(self, source: Path | str) -> NormalizedImage:
        """Normalize a captured image and delete its backing file.

        The image is stretched (not cropped) to ``image_size`` x ``image_size``
        and saved as JPEG. The source is deleted only once the transform has
        fully succeeded; a failed delete is logged and ignored.

        Raises:
            ImageNotFound: If the source is missing or not a decodable image.
            TransformError: If resizing fails.
            EncodeError: If the JPEG payload could not be produced.
        """
        source = Path(source)
        resized = self._resize(source)
        normalized = self._encode(source, resized)
        self._release(source)
        logger.debug("Normalized %s -> %s", source, normalized.path)
        return normalized

    # -- Internal -----------------------------------------------------------

    def _resize(self, source: Path) -> Image.Image:
        if not source.is_file():
            raise ImageNotFound(str(source), "file does not exist")
        try:
            with Image.open(source) as img:
                img.load()
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
        except Image.DecompressionBombError as exc:
            raise TransformError(str(source), f"image too large: {exc}") from exc
        except (UnidentifiedImageError, OSError) as exc:
            raise ImageNotFound(str(source), str(exc)) from exc

        try:
            return rgb.resize((self._size, self._size), Image.Resampling.BILINEAR)
        except (ValueError, OSError) as exc:
            raise TransformError(str(source), f"resize failed: {exc}") from exc

    def _encode(self, source: Path, image: Image.Image) -> NormalizedImage:
        buffer = io.BytesIO()
        try:
            image.save(buffer, format=NORMALIZED_FORMAT, quality=self._quality)
        except (ValueError, OSError) as exc:
            raise EncodeError(str(source), f"JPEG encoding failed: {exc}") from exc

        data = buffer.getvalue()
        payload = base64.b64encode(data).decode("ascii")
        if not payload:
            raise EncodeError(str(source), "encoded payload is empty")

        target = self._cache_dir / f"{uuid.uuid4().hex}.jpg"
        try:
            target.write_bytes(data)
        except OSError as exc:
            raise EncodeError(str(source), f"could not write {target}: {exc}") from exc

        return NormalizedImage(path=target, base64=payload, width=image.width, height=image.height)

    @staticmethod
    def _release(source: Path) -> None:
        try:
            source.unlink()
        except OSError as exc:
            logger.warning("Could not delete captured image %s: %s", source, exc)
