"""
Output size selection for the image edit API.

The edit endpoint only renders 1024x1024, 1536x1024 and 1024x1536. The input's
aspect ratio is matched to the nearest of those; ratios past 2:1 are treated as
extreme and mapped with reduced confidence. Any analysis failure falls back to
square so a bad header never blocks processing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

SIZE_SQUARE = "1024x1024"
SIZE_LANDSCAPE = "1536x1024"
SIZE_PORTRAIT = "1024x1536"

RATIO_SQUARE = 1.0
RATIO_LANDSCAPE = 1536 / 1024
RATIO_PORTRAIT = 1024 / 1536

DEFAULT_TOLERANCE = 0.1
EXTREME_RATIO_THRESHOLD = 2.0
MIN_VALID_DIMENSION = 1
MAX_REASONABLE_DIMENSION = 10000


class InvalidDimensionsError(ValueError):
    pass


@dataclass(frozen=True)
class AspectRatioInfo:
    ratio: float
    category: str  # square | landscape | portrait
    is_extreme: bool
    confidence: float


@dataclass(frozen=True)
class SizeDecision:
    size: str
    reasoning: str
    input_ratio: float
    target_ratio: float
    confidence: float


def validate_dimensions(width, height) -> None:
    try:
        w = float(width)
        h = float(height)
    except (TypeError, ValueError):
        raise InvalidDimensionsError(f"Invalid dimensions: width={width}, height={height}")

    if not math.isfinite(w) or not math.isfinite(h):
        raise InvalidDimensionsError(f"Invalid dimensions: width={width}, height={height}. Must be finite numbers.")
    if w <= 0 or h <= 0:
        raise InvalidDimensionsError(f"Invalid dimensions: width={width}, height={height}. Must be positive.")
    if w > MAX_REASONABLE_DIMENSION or h > MAX_REASONABLE_DIMENSION:
        raise InvalidDimensionsError(
            f"Dimensions too large: {width}x{height}. "
            f"Maximum supported: {MAX_REASONABLE_DIMENSION}x{MAX_REASONABLE_DIMENSION}."
        )
    if w < MIN_VALID_DIMENSION or h < MIN_VALID_DIMENSION:
        raise InvalidDimensionsError(f"Dimensions too small: {width}x{height}.")


def calculate_aspect_ratio(width, height, tolerance: float = DEFAULT_TOLERANCE) -> AspectRatioInfo:
    validate_dimensions(width, height)
    ratio = float(width) / float(height)

    distances = [
        ("square", abs(ratio - RATIO_SQUARE)),
        ("landscape", abs(ratio - RATIO_LANDSCAPE)),
        ("portrait", abs(ratio - RATIO_PORTRAIT)),
    ]
    # min() keeps the first on ties: square, then landscape
    category, distance = min(distances, key=lambda item: item[1])
    confidence = max(0.0, 1 - distance / tolerance)

    is_extreme = ratio > EXTREME_RATIO_THRESHOLD or ratio < 1 / EXTREME_RATIO_THRESHOLD
    if is_extreme:
        confidence *= 0.7

    return AspectRatioInfo(
        ratio=ratio,
        category=category,
        is_extreme=is_extreme,
        confidence=min(1.0, max(0.0, confidence)),
    )


def handle_extreme_ratio(width, height) -> SizeDecision:
    ratio = float(width) / float(height)

    if ratio > 2.5:
        return SizeDecision(SIZE_LANDSCAPE, f"Ultra-wide ratio {ratio:.2f}:1 mapped to landscape", ratio, RATIO_LANDSCAPE, 0.6)
    if ratio < 0.4:
        return SizeDecision(SIZE_PORTRAIT, f"Ultra-tall ratio {ratio:.2f}:1 mapped to portrait", ratio, RATIO_PORTRAIT, 0.6)
    if ratio > 2.0:
        return SizeDecision(SIZE_LANDSCAPE, f"Wide ratio {ratio:.2f}:1 mapped to landscape", ratio, RATIO_LANDSCAPE, 0.8)
    if ratio < 0.5:
        return SizeDecision(SIZE_PORTRAIT, f"Tall ratio {ratio:.2f}:1 mapped to portrait", ratio, RATIO_PORTRAIT, 0.8)
    return SizeDecision(SIZE_SQUARE, f"Extreme ratio {ratio:.2f}:1 defaulted to square", ratio, RATIO_SQUARE, 0.3)


_SIZE_BY_CATEGORY = {
    "square": (SIZE_SQUARE, RATIO_SQUARE, "Square-like"),
    "landscape": (SIZE_LANDSCAPE, RATIO_LANDSCAPE, "Landscape"),
    "portrait": (SIZE_PORTRAIT, RATIO_PORTRAIT, "Portrait"),
}


def determine_output_size(width, height, tolerance: float = DEFAULT_TOLERANCE) -> SizeDecision:
    """Pick the edit API size for an input of width x height. Never raises."""
    try:
        info = calculate_aspect_ratio(width, height, tolerance)
        if info.is_extreme:
            decision = handle_extreme_ratio(width, height)
        else:
            size, target, label = _SIZE_BY_CATEGORY[info.category]
            decision = SizeDecision(
                size=size,
                reasoning=f"{label} ratio {info.ratio:.2f}:1 (confidence: {info.confidence * 100:.0f}%)",
                input_ratio=info.ratio,
                target_ratio=target,
                confidence=info.confidence,
            )
        print(
            f"[DIMENSION] input={width}x{height} ratio={info.ratio:.3f} category={info.category} "
            f"extreme={info.is_extreme} size={decision.size}"
        )
        return decision
    except InvalidDimensionsError as e:
        print(f"[DIMENSION] Analysis failed, defaulting to square: {e}")
        return SizeDecision(SIZE_SQUARE, f"Error in dimension analysis, defaulting to square. Error: {e}", 1.0, RATIO_SQUARE, 0.0)
