"""Frame stabilization: shared anchor, shared scale, inset clamp.

Every active frame's opaque bounding box is measured, a single
downscale is chosen so the largest box fits inside the frame inset,
and each box is re-placed around the median center.  Running the pass
on its own output is a no-op.
"""

from __future__ import annotations

import math

from PIL import Image

from spritegate.constants import VISIBLE_ALPHA_MIN
from spritegate.logging import get_logger
from spritegate.utils import clamp, ensure_rgba, frame_origin, js_round, median

logger = get_logger("stabilizer")


def _frame_box(
    data: bytes,
    width: int,
    height: int,
    origin: tuple[int, int],
    sprite_size: int,
) -> tuple[int, int, int, int] | None:
    """Bounding box ``(min_x, min_y, max_x, max_y)`` of visible pixels, frame-local."""
    ox, oy = origin
    min_x = min_y = sprite_size
    max_x = max_y = -1
    for local_y in range(sprite_size):
        y = oy + local_y
        if y >= height:
            break
        row = y * width
        for local_x in range(sprite_size):
            x = ox + local_x
            if x >= width:
                break
            if data[(row + x) * 4 + 3] <= VISIBLE_ALPHA_MIN:
                continue
            if local_x < min_x:
                min_x = local_x
            if local_x > max_x:
                max_x = local_x
            if local_y < min_y:
                min_y = local_y
            if local_y > max_y:
                max_y = local_y
    if max_x < min_x or max_y < min_y:
        return None
    return min_x, min_y, max_x, max_y


def stabilize_sprite_sheet(
    image: Image.Image,
    sprite_size: int,
    columns: int,
    rows: int,
    frame_count: int,
) -> Image.Image:
    """Re-anchor every active frame around the median content center.

    Args:
        image: Normalized RGBA sheet.
        sprite_size: Frame edge in pixels.
        columns: Grid columns.
        rows: Grid rows.
        frame_count: Requested frames; slots past it are cleared.

    Returns:
        A new image of the same size, or *image* unchanged when no frame
        has visible content.
    """
    source = ensure_rgba(image)
    width, height = source.size
    data = source.tobytes()
    active = int(clamp(frame_count, 1, columns * rows))
    inner_inset = max(2, math.floor(sprite_size * 0.06))
    frame_inset = max(inner_inset, math.floor(sprite_size * 0.01))
    max_content = max(2, sprite_size - 2 * frame_inset)

    boxes: list[tuple[int, int, int, int] | None] = []
    centers_x: list[float] = []
    centers_y: list[float] = []
    max_dimension = 0
    for index in range(active):
        box = _frame_box(
            data, width, height, frame_origin(index, columns, sprite_size), sprite_size
        )
        boxes.append(box)
        if box is None:
            continue
        min_x, min_y, max_x, max_y = box
        max_dimension = max(max_dimension, max_x - min_x + 1, max_y - min_y + 1)
        centers_x.append((min_x + max_x) / 2)
        centers_y.append((min_y + max_y) / 2)

    if not centers_x:
        return source

    scale = min(1.0, max_content / max(1, max_dimension))
    half = clamp(math.floor(max_dimension * scale / 2), 0, sprite_size / 2)
    low = inner_inset + half
    high = max(low, sprite_size - inner_inset - half)
    safe_x = clamp(median(centers_x), low, high)
    safe_y = clamp(median(centers_y), low, high)
    step = max(scale, 0.001)

    output = bytearray(len(data))
    for index, box in enumerate(boxes):
        if box is None:
            continue
        ox, oy = frame_origin(index, columns, sprite_size)
        min_x, min_y, max_x, max_y = box
        box_w = max_x - min_x + 1
        box_h = max_y - min_y + 1
        scaled_w = max(1, math.floor(box_w * scale))
        scaled_h = max(1, math.floor(box_h * scale))

        free_x = sprite_size - scaled_w
        inset_x = min(inner_inset, math.floor(max(0, free_x) / 2))
        dest_min_x = int(clamp(js_round(safe_x - scaled_w / 2), inset_x, max(0, free_x - inset_x)))
        free_y = sprite_size - scaled_h
        inset_y = min(inner_inset, math.floor(max(0, free_y) / 2))
        dest_min_y = int(clamp(js_round(safe_y - scaled_h / 2), inset_y, max(0, free_y - inset_y)))

        for local_y in range(scaled_h):
            src_y = oy + min_y + min(box_h - 1, math.floor(local_y / step))
            dest_y = oy + dest_min_y + local_y
            if dest_y >= height or src_y >= height:
                continue
            for local_x in range(scaled_w):
                src_x = ox + min_x + min(box_w - 1, math.floor(local_x / step))
                dest_x = ox + dest_min_x + local_x
                if dest_x >= width or src_x >= width:
                    continue
                src = (src_y * width + src_x) * 4
                if data[src + 3] <= VISIBLE_ALPHA_MIN:
                    continue
                dest = (dest_y * width + dest_x) * 4
                output[dest : dest + 4] = data[src : src + 4]

    logger.debug(
        "Stabilized %d frames (scale=%.3f, center=(%.1f, %.1f))",
        len(centers_x),
        scale,
        safe_x,
        safe_y,
    )
    return Image.frombytes("RGBA", (width, height), bytes(output))
