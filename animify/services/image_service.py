"""
Pillow helpers for the image pipeline.

- normalize_to_png: decode any supported upload, apply EXIF orientation, re-encode as PNG
- build_transparent_mask: full-frame transparent mask (the whole image is editable)
- build_locked_preview: downscaled copy under a dark veil with a padlock in the middle
"""

from __future__ import annotations

import io

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from animify.utils.error_handlers import ValidationError

# Padlock is 20% of the preview width, clamped to this range (px)
PADLOCK_MIN_SIZE = 100
PADLOCK_MAX_SIZE = 200
VEIL_OPACITY = 0.5


class InvalidImageError(ValidationError):
    code = "INVALID_IMAGE"


def open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError(f"Could not decode image: {e}") from e
    return ImageOps.exif_transpose(img)


def image_dimensions(data: bytes) -> tuple[int, int]:
    return open_image(data).size


def _to_png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def normalize_to_png(data: bytes, max_dimension: int | None = None) -> tuple[bytes, int, int]:
    """Return (png_bytes, width, height) with orientation baked in."""
    img = open_image(data)
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    if max_dimension and max(img.size) > max_dimension:
        img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    width, height = img.size
    return _to_png_bytes(img), width, height


def build_transparent_mask(width: int, height: int) -> bytes:
    mask = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    return _to_png_bytes(mask)


def _draw_padlock(draw: ImageDraw.ImageDraw, cx: int, cy: int, size: int) -> None:
    body_w = int(size * 0.8)
    body_h = int(size * 0.55)
    body_left = cx - body_w // 2
    body_top = cy - body_h // 2 + int(size * 0.15)
    stroke = max(4, size // 12)
    white = (255, 255, 255, 235)

    shackle_w = int(body_w * 0.6)
    shackle_h = int(size * 0.6)
    shackle_box = [
        cx - shackle_w // 2,
        body_top - shackle_h // 2,
        cx + shackle_w // 2,
        body_top + shackle_h // 2,
    ]
    draw.arc(shackle_box, start=180, end=360, fill=white, width=stroke)
    draw.rounded_rectangle(
        [body_left, body_top, body_left + body_w, body_top + body_h],
        radius=max(4, size // 10),
        fill=white,
    )
    hole_r = max(3, size // 14)
    hole_cy = body_top + body_h // 2
    draw.ellipse([cx - hole_r, hole_cy - hole_r, cx + hole_r, hole_cy + hole_r], fill=(0, 0, 0, 200))


def build_locked_preview(data: bytes, max_dimension: int = 768) -> bytes:
    """Degraded, watermarked preview of a result image (PNG bytes)."""
    img = open_image(data).convert("RGBA")
    if max_dimension and max(img.size) > max_dimension:
        img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    width, height = img.size
    veil = Image.new("RGBA", img.size, (0, 0, 0, int(255 * VEIL_OPACITY)))
    img = Image.alpha_composite(img, veil)

    size = max(PADLOCK_MIN_SIZE, min(PADLOCK_MAX_SIZE, int(width * 0.2)))
    overlay = Image.new("RGBA", img.size, (0, 0, 0, 0))
    _draw_padlock(ImageDraw.Draw(overlay), width // 2, height // 2, size)
    img = Image.alpha_composite(img, overlay)

    return _to_png_bytes(img.convert("RGB"))
