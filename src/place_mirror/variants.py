"""Generate the fixed set of resized WebP/JPEG renditions for a photo."""

from __future__ import annotations

import io
from collections.abc import Sequence

from PIL import Image, ImageOps, UnidentifiedImageError

from place_mirror.config import VariantConfig
from place_mirror.errors import DecodeError
from place_mirror.models import ENCODING_JPEG, ENCODING_WEBP, ENCODINGS, PhotoAssetSet, Variant
from place_mirror.thumbnailing import build_thumbnail_image, encode_image
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "variants"})


def _prepare_source(raw: bytes) -> Image.Image:
    """Decode ``raw`` into an upright RGB image or raise :class:`DecodeError`."""

    if not raw:
        raise DecodeError("empty photo payload")

    try:
        with Image.open(io.BytesIO(raw)) as opened:
            opened.load()
            upright = ImageOps.exif_transpose(opened)
            if upright.mode in ("RGBA", "LA") or (upright.mode == "P" and "transparency" in upright.info):
                rgba = upright.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.getchannel("A"))
                return background
            return upright.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"cannot decode photo: {exc}") from exc


class VariantPipeline:
    """Produce every ``(width, encoding)`` rendition for a photo, all or nothing."""

    def __init__(
        self,
        widths: Sequence[int],
        webp_quality: int = 75,
        jpeg_quality: int = 85,
    ) -> None:
        ordered = sorted({int(width) for width in widths})
        if not ordered or ordered[0] <= 0:
            raise ValueError("variant widths must be positive integers")
        self.widths: tuple[int, ...] = tuple(ordered)
        self.qualities: dict[str, int] = {ENCODING_WEBP: webp_quality, ENCODING_JPEG: jpeg_quality}

    @classmethod
    def from_config(cls, config: VariantConfig) -> "VariantPipeline":
        return cls(config.sorted_widths(), webp_quality=config.webp_quality, jpeg_quality=config.jpeg_quality)

    def generate(self, raw: bytes, photo_ref: str = "") -> PhotoAssetSet:
        """Decode ``raw`` and return a complete :class:`PhotoAssetSet`.

        Raises :class:`DecodeError` if the source cannot be decoded or any
        rendition fails; partial sets are never returned.
        """

        source = _prepare_source(raw)
        asset_set = PhotoAssetSet(photo_ref=photo_ref, source_width=source.width, source_height=source.height)

        try:
            for width in self.widths:
                resized = build_thumbnail_image(source, width)
                for encoding in ENCODINGS:
                    data = encode_image(resized, encoding, self.qualities[encoding])
                    if not data:
                        raise DecodeError(f"empty {encoding} output at width {width}")
                    asset_set.variants[(width, encoding)] = Variant(
                        width=width,
                        encoding=encoding,
                        data=data,
                        pixel_width=resized.width,
                        pixel_height=resized.height,
                    )
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "variant_generation_discarded",
                extra={"photo_ref": photo_ref, "produced": len(asset_set.variants), "error": str(exc)},
            )
            raise DecodeError(f"cannot encode photo: {exc}") from exc

        missing = asset_set.missing(self.widths)
        if missing:
            raise DecodeError(f"incomplete variant set, missing {missing}")

        return asset_set


__all__ = ["VariantPipeline"]
