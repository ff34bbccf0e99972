"""Pixel-art clarity pass: hard alpha and 16-level color channels."""

from __future__ import annotations

from PIL import Image

from spritegate.constants import VISIBLE_ALPHA_MIN
from spritegate.utils import ensure_rgba


def clarify_pixel_art(image: Image.Image) -> Image.Image:
    """Snap every pixel to fully transparent or fully opaque.

    Pixels with alpha at or below the visibility cutoff become
    ``(0, 0, 0, 0)``.  All others keep only the upper four bits of each
    color channel and get alpha 255.  Output size equals input size.
    """
    source = ensure_rgba(image)
    data = bytearray(source.tobytes())
    mask = 0xF0
    for i in range(0, len(data), 4):
        if data[i + 3] <= VISIBLE_ALPHA_MIN:
            data[i] = 0
            data[i + 1] = 0
            data[i + 2] = 0
            data[i + 3] = 0
            continue
        data[i] &= mask
        data[i + 1] &= mask
        data[i + 2] &= mask
        data[i + 3] = 255
    return Image.frombytes("RGBA", source.size, bytes(data))
