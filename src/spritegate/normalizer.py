"""Geometry normalization of raw backend output to the requested grid.

Image backends return fixed canvas sizes (e.g. 1536x1024).  This module
slices the raw image into the requested ``columns x rows`` cells and
resizes each into an exact ``sprite_size`` square so that every later
stage can rely on the sheet geometry.
"""

from __future__ import annotations

from PIL import Image

from spritegate.logging import get_logger
from spritegate.utils import ensure_rgba, transparent_canvas

logger = get_logger("normalizer")


def contain_resize(image: Image.Image, size: int) -> Image.Image:
    """Fit *image* inside a ``size`` square with nearest sampling.

    Aspect ratio is preserved; the result is centered on a transparent
    square canvas.
    """
    width, height = image.size
    scale = min(size / width, size / height)
    new_w = max(1, min(size, int(round(width * scale))))
    new_h = max(1, min(size, int(round(height * scale))))
    resized = image.resize((new_w, new_h), Image.Resampling.NEAREST)
    cell = transparent_canvas(size, size)
    cell.paste(resized, ((size - new_w) // 2, (size - new_h) // 2))
    return cell


def normalize_sprite_sheet(
    image: Image.Image,
    sprite_size: int,
    columns: int,
    rows: int,
) -> Image.Image:
    """Produce an exact ``(sprite_size*columns) x (sprite_size*rows)`` RGBA sheet.

    When the source is smaller than the grid (fewer pixels than cells on
    either axis) it is stretched with nearest sampling.  Otherwise each
    source cell is extracted, with the last column and row absorbing any
    remainder, contain-resized into its target cell and composited onto
    a transparent canvas.

    Args:
        image: Raw backend image in any mode.
        sprite_size: Target frame edge in pixels.
        columns: Grid columns.
        rows: Grid rows.

    Returns:
        A new RGBA image of the exact target size.
    """
    source = ensure_rgba(image)
    source_w, source_h = source.size
    target_w = sprite_size * columns
    target_h = sprite_size * rows

    if not source_w or not source_h or source_w < columns or source_h < rows:
        logger.debug(
            "Source %dx%d smaller than %dx%d grid; stretching to %dx%d",
            source_w,
            source_h,
            columns,
            rows,
            target_w,
            target_h,
        )
        return source.resize((target_w, target_h), Image.Resampling.NEAREST)

    cell_w = max(1, source_w // columns)
    cell_h = max(1, source_h // rows)
    canvas = transparent_canvas(target_w, target_h)

    for slot in range(columns * rows):
        col = slot % columns
        row = slot // columns
        left = col * cell_w
        top = row * cell_h
        if left >= source_w or top >= source_h:
            continue

        right = source_w if col == columns - 1 else left + cell_w
        bottom = source_h if row == rows - 1 else top + cell_h
        right = min(max(left + 1, right), source_w)
        bottom = min(max(top + 1, bottom), source_h)

        cell = contain_resize(source.crop((left, top, right, bottom)), sprite_size)
        canvas.alpha_composite(cell, (col * sprite_size, row * sprite_size))

    logger.debug(
        "Normalized %dx%d source into %dx%d sheet (%dx%d grid)",
        source_w,
        source_h,
        target_w,
        target_h,
        columns,
        rows,
    )
    return canvas
