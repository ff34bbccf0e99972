"""Shared utility functions for SpriteGate.

Contains numeric and image helpers used across multiple modules.
"""

from __future__ import annotations

import io
import math

from PIL import Image


def js_round(value: float) -> int:
    """Round half up (towards positive infinity), unlike banker's ``round``.

    ``js_round(2.5) == 3`` and ``js_round(-2.5) == -2``.  Threshold
    derivation and percentage strings rely on this rule.
    """
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    """Constrain *value* to ``[low, high]``."""
    return max(low, min(high, value))


def percent(ratio: float) -> int:
    """Express a ratio as a whole-number percentage."""
    return js_round(ratio * 100)


def format_number(value: float) -> str:
    """Render a number without a trailing ``.0`` (``3.0 -> "3"``, ``2.5 -> "2.5"``)."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def median(values: list[float]) -> float:
    """Median of *values*; 0 for an empty list."""
    if not values:
        return 0.0
    ordered = sorted(values)
    middle = len(ordered) // 2
    if len(ordered) % 2 == 1:
        return ordered[middle]
    return (ordered[middle - 1] + ordered[middle]) / 2


def frame_origin(frame_index: int, columns: int, sprite_size: int) -> tuple[int, int]:
    """Top-left pixel of a frame slot in row-major order."""
    return (frame_index % columns) * sprite_size, (frame_index // columns) * sprite_size


def ensure_rgba(image: Image.Image) -> Image.Image:
    """Return *image* in RGBA mode, converting only when necessary."""
    if image.mode == "RGBA":
        return image
    return image.convert("RGBA")


def transparent_canvas(width: int, height: int) -> Image.Image:
    """Create a fully transparent RGBA image."""
    return Image.new("RGBA", (max(1, width), max(1, height)), (0, 0, 0, 0))


def image_to_png_bytes(image: Image.Image) -> bytes:
    """Encode a PIL Image as PNG bytes."""
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def png_bytes_to_image(data: bytes) -> Image.Image:
    """Decode image bytes into a loaded RGBA PIL Image.

    Raises:
        ValueError: If the bytes are not a decodable image.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Could not decode image payload: {exc}") from exc
    return ensure_rgba(image)
