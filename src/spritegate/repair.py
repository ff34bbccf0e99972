"""Repair of nearly empty frames by copying from the nearest filled frame.

A frame whose visible pixel count is below the minimum fill gets a
slightly cropped copy of the closest non-empty frame, offset by a small
deterministic jitter and color shift so the copy is not a pixel-exact
duplicate.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from PIL import Image

from spritegate.constants import VISIBLE_ALPHA_MIN
from spritegate.logging import get_logger
from spritegate.utils import clamp, ensure_rgba, frame_origin

logger = get_logger("repair")

MIN_FRAME_FILL_RATIO = 0.015


@dataclass
class FrameOccupancy:
    """Visible-pixel statistics for one frame slot (frame-local bounds)."""

    frame_index: int
    origin_x: int
    origin_y: int
    pixel_count: int
    min_x: int
    min_y: int
    max_x: int
    max_y: int


@dataclass
class RepairResult:
    """Output of :func:`repair_empty_frames`.

    Attributes:
        image: Repaired sheet, or the input image when nothing changed.
        repaired_frames: Indices of frames that received donor pixels.
    """

    image: Image.Image
    repaired_frames: list[int] = field(default_factory=list)

    @property
    def repaired_slots(self) -> int:
        return len(self.repaired_frames)


def find_frame_occupancy(
    data: bytes,
    width: int,
    height: int,
    sprite_size: int,
    columns: int,
    rows: int,
    frame_count: int,
) -> list[FrameOccupancy]:
    """Measure every active frame's visible pixel count and bounds."""
    active = int(clamp(frame_count, 1, columns * rows))
    summaries: list[FrameOccupancy] = []
    for index in range(active):
        ox, oy = frame_origin(index, columns, sprite_size)
        count = 0
        min_x = min_y = sprite_size
        max_x = max_y = -1
        for local_y in range(sprite_size):
            y = oy + local_y
            if y >= height:
                break
            for local_x in range(sprite_size):
                x = ox + local_x
                if x >= width:
                    break
                if data[(y * width + x) * 4 + 3] <= VISIBLE_ALPHA_MIN:
                    continue
                count += 1
                min_x = min(min_x, local_x)
                min_y = min(min_y, local_y)
                max_x = max(max_x, local_x)
                max_y = max(max_y, local_y)
        summaries.append(
            FrameOccupancy(
                frame_index=index,
                origin_x=ox,
                origin_y=oy,
                pixel_count=count,
                min_x=max(0, min_x),
                min_y=max(0, min_y),
                max_x=max(0, max_x),
                max_y=max(0, max_y),
            )
        )
    return summaries


def select_nearest_donor(target: int, candidates: list[FrameOccupancy]) -> FrameOccupancy:
    """Closest candidate by index distance; the earliest wins ties."""
    best = candidates[0]
    for candidate in candidates[1:]:
        if abs(candidate.frame_index - target) < abs(best.frame_index - target):
            best = candidate
    return best


def _to_byte(value: int) -> int:
    return min(255, max(0, value))


def repair_empty_frames(
    image: Image.Image,
    sprite_size: int,
    columns: int,
    rows: int,
    frame_count: int,
) -> RepairResult:
    """Fill nearly empty frames with a jittered copy of the nearest filled frame.

    Nothing is changed when there are no near-empty frames or no donor
    frames.  Donor pixels are always read from the input, so a repaired
    frame never acts as a donor for another.

    Args:
        image: Stabilized RGBA sheet.
        sprite_size: Frame edge in pixels.
        columns: Grid columns.
        rows: Grid rows.
        frame_count: Requested frames.

    Returns:
        A :class:`RepairResult`.
    """
    source = ensure_rgba(image)
    width, height = source.size
    data = source.tobytes()
    target_min = max(1, math.floor(sprite_size * sprite_size * MIN_FRAME_FILL_RATIO))
    frames = find_frame_occupancy(
        data, width, height, sprite_size, columns, rows, frame_count
    )

    donors = [f for f in frames if f.pixel_count >= target_min]
    near_empty = [f for f in frames if f.pixel_count < target_min]
    if not near_empty or not donors:
        return RepairResult(image=source)

    output = bytearray(data)
    repaired: list[int] = []

    for empty in near_empty:
        donor = select_nearest_donor(empty.frame_index, donors)
        if donor.pixel_count == 0:
            continue

        inset_x = min(1, max(0, math.floor((donor.max_x - donor.min_x + 1) * 0.08)))
        inset_y = min(1, max(0, math.floor((donor.max_y - donor.min_y + 1) * 0.08)))
        src_min_x = donor.min_x + inset_x
        src_min_y = donor.min_y + inset_y
        src_max_x = max(donor.min_x, donor.max_x - inset_x)
        src_max_y = max(donor.min_y, donor.max_y - inset_y)
        donor_w = src_max_x - src_min_x + 1
        donor_h = src_max_y - src_min_y + 1
        if donor_w <= 0 or donor_h <= 0:
            continue

        jitter_x = empty.frame_index % 3 - 1
        jitter_y = (empty.frame_index // 3) % 3 - 1
        center_x = sprite_size // 2 + jitter_x
        center_y = sprite_size // 2 + jitter_y
        dest_x0 = max(
            empty.origin_x,
            min(
                empty.origin_x + sprite_size - donor_w,
                empty.origin_x + center_x - donor_w // 2,
            ),
        )
        dest_y0 = max(
            empty.origin_y,
            min(
                empty.origin_y + sprite_size - donor_h,
                empty.origin_y + center_y - donor_h // 2,
            ),
        )
        shift = (empty.frame_index + donor.frame_index) % 3 - 1

        copied = 0
        for local_y in range(donor_h):
            src_y = donor.origin_y + src_min_y + local_y
            dest_y = dest_y0 + local_y
            if src_y < 0 or src_y >= height:
                continue
            if dest_y < empty.origin_y or dest_y >= min(height, empty.origin_y + sprite_size):
                continue
            for local_x in range(donor_w):
                src_x = donor.origin_x + src_min_x + local_x
                dest_x = dest_x0 + local_x
                if src_x < 0 or src_x >= width:
                    continue
                if dest_x < empty.origin_x or dest_x >= min(width, empty.origin_x + sprite_size):
                    continue
                src = (src_y * width + src_x) * 4
                alpha = data[src + 3]
                if alpha <= VISIBLE_ALPHA_MIN:
                    continue
                dest = (dest_y * width + dest_x) * 4
                output[dest] = _to_byte(data[src] + shift)
                output[dest + 1] = _to_byte(data[src + 1] + shift)
                output[dest + 2] = _to_byte(data[src + 2] + shift)
                output[dest + 3] = alpha
                copied += 1

        if copied > 0:
            repaired.append(empty.frame_index)
            logger.debug(
                "Repaired frame %d from donor %d (%d pixels)",
                empty.frame_index,
                donor.frame_index,
                copied,
            )

    if not repaired:
        return RepairResult(image=source)

    return RepairResult(
        image=Image.frombytes("RGBA", (width, height), bytes(output)),
        repaired_frames=repaired,
    )
