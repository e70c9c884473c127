"""Pillow helpers: normalization, mask and locked preview."""

from __future__ import annotations

import io

import pytest
from PIL import Image

from animify.services import image_service
from animify.services.image_service import InvalidImageError

from .conftest import make_image


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


class TestNormalize:
    def test_jpeg_becomes_png(self):
        png, width, height = image_service.normalize_to_png(make_image(120, 80, fmt="JPEG"))
        assert (width, height) == (120, 80)
        assert _open(png).format == "PNG"

    def test_downscales_to_max_dimension(self):
        _, width, height = image_service.normalize_to_png(make_image(400, 200), max_dimension=100)
        assert (width, height) == (100, 50)

    def test_palette_image_is_converted(self):
        buf = io.BytesIO()
        Image.new("P", (10, 10)).save(buf, format="PNG")
        png, _, _ = image_service.normalize_to_png(buf.getvalue())
        assert _open(png).mode == "RGBA"

    def test_garbage_is_rejected(self):
        with pytest.raises(InvalidImageError) as exc_info:
            image_service.normalize_to_png(b"not an image")
        assert exc_info.value.status_code == 400


def test_mask_is_fully_transparent():
    mask = _open(image_service.build_transparent_mask(32, 16))
    assert mask.size == (32, 16)
    assert mask.mode == "RGBA"
    assert mask.getextrema()[3] == (0, 0)


class TestLockedPreview:
    def test_preview_is_darker_png(self):
        source = make_image(300, 200, color=(250, 250, 250))
        preview = _open(image_service.build_locked_preview(source))

        assert preview.format == "PNG"
        assert preview.size == (300, 200)
        # Corners are only veiled, not covered by the padlock
        assert preview.getpixel((0, 0))[0] < 200

    def test_preview_is_downscaled(self):
        preview = _open(image_service.build_locked_preview(make_image(2000, 1000), max_dimension=768))
        assert preview.size == (768, 384)

    def test_padlock_is_drawn_in_the_centre(self):
        source = make_image(600, 600, color=(0, 0, 0))
        preview = _open(image_service.build_locked_preview(source)).convert("RGB")
        # Padlock body sits just below the centre and is near-white
        assert preview.getpixel((300 - 40, 330))[0] > 150
