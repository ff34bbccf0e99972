"""Hard pass/fail check of a sheet against the requested geometry."""

from __future__ import annotations

from PIL import Image

from spritegate.constants import VISIBLE_ALPHA_MIN
from spritegate.logging import get_logger
from spritegate.models import (
    SettingsVerification,
    VerificationActual,
    VerificationChecks,
    VerificationExpected,
)
from spritegate.utils import ensure_rgba, frame_origin

logger = get_logger("verification")

PASSED_SUMMARY = "Image meets or exceeds requested settings."
FAILED_SUMMARY = "Image does not meet requested settings."


def _slot_has_content(
    data: bytes,
    width: int,
    height: int,
    origin: tuple[int, int],
    sprite_size: int,
) -> bool:
    ox, oy = origin
    for local_y in range(sprite_size):
        y = oy + local_y
        if y >= height:
            return False
        for local_x in range(sprite_size):
            x = ox + local_x
            if x >= width:
                break
            if data[(y * width + x) * 4 + 3] > VISIBLE_ALPHA_MIN:
                return True
    return False


def verify_requested_settings(
    image: Image.Image,
    sprite_size: int,
    frame_count: int,
    columns: int,
    rows: int,
) -> SettingsVerification:
    """Check sheet size, frame size, capacity, fill and transparency.

    Every slot is inspected, including slots past ``frame_count``; those
    must be empty.

    Args:
        image: Candidate sheet.
        sprite_size: Requested frame edge in pixels.
        frame_count: Requested frames.
        columns: Grid columns.
        rows: Grid rows.

    Returns:
        A :class:`SettingsVerification` with ordered failures and the
        expected/actual check values.
    """
    source = ensure_rgba(image)
    sheet_w, sheet_h = source.size
    data = source.tobytes()
    expected_w = sprite_size * columns
    expected_h = sprite_size * rows
    slots = columns * rows

    has_transparency = any(data[i] < 255 for i in range(3, len(data), 4))
    frame_w = sheet_w // max(1, columns)
    frame_h = sheet_h // max(1, rows)

    non_empty = 0
    unused_with_content = 0
    for index in range(slots):
        if _slot_has_content(
            data, sheet_w, sheet_h, frame_origin(index, columns, sprite_size), sprite_size
        ):
            non_empty += 1
            if index >= frame_count:
                unused_with_content += 1

    failures: list[str] = []
    if sheet_w != expected_w:
        failures.append(f"sheet width {sheet_w}px does not match requested {expected_w}px")
    if sheet_h != expected_h:
        failures.append(f"sheet height {sheet_h}px does not match requested {expected_h}px")
    if sheet_w % columns != 0:
        failures.append(f"sheet width {sheet_w}px is not divisible by columns {columns}")
    if sheet_h % rows != 0:
        failures.append(f"sheet height {sheet_h}px is not divisible by rows {rows}")
    if frame_w != sprite_size:
        failures.append(f"frame width {frame_w}px does not match requested {sprite_size}px")
    if frame_h != sprite_size:
        failures.append(f"frame height {frame_h}px does not match requested {sprite_size}px")
    if slots < frame_count:
        failures.append(
            f"layout capacity {slots} is below requested frame count {frame_count}"
        )
    if non_empty < frame_count:
        failures.append(
            f"only {non_empty} non-empty frames detected for requested "
            f"{frame_count} frames"
        )
    if unused_with_content > 0:
        failures.append(f"{unused_with_content} unused frame slots contain sprite content")
    if not has_transparency:
        failures.append("image is not RGBA transparent as requested")

    passed = not failures
    logger.debug(
        "Settings verification %s (%d failures, %d/%d non-empty)",
        "PASSED" if passed else "FAILED",
        len(failures),
        non_empty,
        frame_count,
    )
    return SettingsVerification(
        passed=passed,
        summary=PASSED_SUMMARY if passed else FAILED_SUMMARY,
        failures=failures,
        checks=VerificationChecks(
            expected=VerificationExpected(
                frame_width=sprite_size,
                frame_height=sprite_size,
                frame_count=frame_count,
                columns=columns,
                rows=rows,
                sheet_width=expected_w,
                sheet_height=expected_h,
            ),
            actual=VerificationActual(
                frame_width=frame_w,
                frame_height=frame_h,
                frame_slots=slots,
                sheet_width=sheet_w,
                sheet_height=sheet_h,
                has_transparency=has_transparency,
                non_empty_frame_count=non_empty,
                unused_slots_with_content=unused_with_content,
            ),
        ),
    )


def placeholder_verification(
    sprite_size: int, frame_count: int, columns: int, rows: int
) -> SettingsVerification:
    """Failed verification used when no attempt produced a candidate."""
    return SettingsVerification(
        passed=False,
        summary=FAILED_SUMMARY,
        failures=["No valid candidate produced by quality gate."],
        checks=VerificationChecks(
            expected=VerificationExpected(
                frame_width=sprite_size,
                frame_height=sprite_size,
                frame_count=frame_count,
                columns=columns,
                rows=rows,
                sheet_width=sprite_size * columns,
                sheet_height=sprite_size * rows,
            ),
            actual=VerificationActual(
                frame_width=0,
                frame_height=0,
                frame_slots=columns * rows,
                sheet_width=0,
                sheet_height=0,
                has_transparency=False,
                non_empty_frame_count=0,
                unused_slots_with_content=0,
            ),
        ),
    )
