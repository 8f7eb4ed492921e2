"""Tests for WebP/JPEG variant generation."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from place_mirror.errors import DecodeError
from place_mirror.models import ENCODING_JPEG, ENCODING_WEBP
from place_mirror.thumbnailing import scaled_size
from place_mirror.variants import VariantPipeline


def test_generate_produces_every_width_and_encoding(image_bytes) -> None:
    pipeline = VariantPipeline([400, 200, 800], webp_quality=70, jpeg_quality=80)

    asset_set = pipeline.generate(image_bytes(1000, 600), "ref-1")

    assert asset_set.is_complete(pipeline.widths)
    assert sorted(asset_set.variants) == [
        (200, ENCODING_JPEG),
        (200, ENCODING_WEBP),
        (400, ENCODING_JPEG),
        (400, ENCODING_WEBP),
        (800, ENCODING_JPEG),
        (800, ENCODING_WEBP),
    ]
    for (width, encoding), variant in asset_set.variants.items():
        decoded = Image.open(io.BytesIO(variant.data))
        assert decoded.format == ("WEBP" if encoding == ENCODING_WEBP else "JPEG")
        assert decoded.size == (variant.pixel_width, variant.pixel_height)
        assert max(decoded.size) == width
        assert abs(decoded.width / decoded.height - 1000 / 600) < 0.02


def test_portrait_images_bound_the_longer_side(image_bytes) -> None:
    pipeline = VariantPipeline([200])

    asset_set = pipeline.generate(image_bytes(300, 900), "tall")

    variant = asset_set.variants[(200, ENCODING_JPEG)]
    assert (variant.pixel_width, variant.pixel_height) == (67, 200)


def test_small_sources_are_never_upscaled(image_bytes) -> None:
    pipeline = VariantPipeline([200, 1600])

    asset_set = pipeline.generate(image_bytes(150, 100), "small")

    for variant in asset_set.variants.values():
        assert (variant.pixel_width, variant.pixel_height) == (150, 100)


def test_transparent_png_is_flattened(image_bytes) -> None:
    pipeline = VariantPipeline([64])

    asset_set = pipeline.generate(image_bytes(100, 100, fmt="PNG", mode="RGBA", color=(0, 0, 0, 0)), "png")

    decoded = Image.open(io.BytesIO(asset_set.variants[(64, ENCODING_JPEG)].data)).convert("RGB")
    assert decoded.getpixel((32, 32))[0] > 240


@pytest.mark.parametrize("payload", [b"", b"not an image", b"\xff\xd8\xff\xe0truncated"])
def test_undecodable_payload_raises_decode_error(payload: bytes) -> None:
    with pytest.raises(DecodeError):
        VariantPipeline([64]).generate(payload, "broken")


def test_encode_failure_discards_whole_set(image_bytes, monkeypatch) -> None:
    calls: list[str] = []

    def _flaky_encode(image, encoding, quality):
        calls.append(encoding)
        if len(calls) == 3:
            raise OSError("encoder crashed")
        return b"data"

    monkeypatch.setattr("place_mirror.variants.encode_image", _flaky_encode)

    with pytest.raises(DecodeError):
        VariantPipeline([64, 128]).generate(image_bytes(300, 200), "ref")


def test_scaled_size_preserves_ratio() -> None:
    assert scaled_size(4000, 3000, 800) == (800, 600)
    assert scaled_size(3000, 4000, 800) == (600, 800)
    assert scaled_size(500, 300, 800) == (500, 300)
    assert scaled_size(10000, 1, 100) == (100, 1)
