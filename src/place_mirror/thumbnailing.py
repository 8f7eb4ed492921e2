"""Pillow resize and encode helpers used by the variant pipeline."""

from __future__ import annotations

import io

from PIL import Image
from PIL.Image import Resampling

from place_mirror.models import ENCODING_JPEG, ENCODING_WEBP
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})

_PIL_FORMATS = {ENCODING_WEBP: "WEBP", ENCODING_JPEG: "JPEG"}


def _get_resample_filter() -> Resampling:
    """Return the preferred resample filter compatible with the current Pillow."""

    return Resampling.LANCZOS


def scaled_size(width: int, height: int, max_side: int) -> tuple[int, int]:
    """Return the size whose longer side fits ``max_side`` with the same aspect ratio.

    Images already within bounds keep their size; nothing is upscaled.
    """

    safe_side = max(1, int(max_side))
    longer = max(width, height)
    if longer <= safe_side:
        return width, height
    scale = safe_side / longer
    if width >= height:
        return safe_side, max(1, round(height * scale))
    return max(1, round(width * scale)), safe_side


def build_thumbnail_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce a resized copy of an image constrained to ``max_side`` pixels."""

    target = scaled_size(image.width, image.height, max_side)
    if target == image.size:
        return image.copy()
    return image.resize(target, resample=_get_resample_filter())


def encode_image(image: Image.Image, encoding: str, quality: int) -> bytes:
    """Encode ``image`` as ``encoding`` (``webp`` or ``jpeg``) and return the bytes."""

    pil_format = _PIL_FORMATS.get(encoding)
    if pil_format is None:
        raise ValueError(f"Unsupported encoding: {encoding!r}")

    buffer = io.BytesIO()
    try:
        if pil_format == "JPEG":
            image.save(buffer, format=pil_format, quality=quality, optimize=True, progressive=True)
        else:
            image.save(buffer, format=pil_format, quality=quality, method=4)
    except (OSError, ValueError) as exc:
        LOGGER.error(
            "thumbnail_encode_error",
            extra={"encoding": encoding, "quality": quality, "size": image.size, "error": str(exc)},
        )
        raise
    return buffer.getvalue()


__all__ = ["build_thumbnail_image", "encode_image", "scaled_size"]
