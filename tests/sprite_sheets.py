"""Synthetic sprite sheets for pixel-pipeline and controller tests.

The "walker" is a striped 12x20 torso with a 3x4 leg underneath that
steps one leg-width to the right every frame (cycling every 4 frames).
All channel values are multiples of 16 and fully opaque, so the clarity
pass leaves the sheet untouched, and the figure is already centered, so
stabilization is a no-op.  At 32px a walker sheet of 1-12 frames scores
100 and passes settings verification.

A "static" sheet repeats frame 0 everywhere: it passes verification but
fails the motion checks with a score of exactly 74.0.
"""

from __future__ import annotations

from PIL import Image

from spritegate.utils import image_to_png_bytes

DEFAULT_SIZE = 32
DEFAULT_FRAMES = 4

BODY_LEFT = 10
BODY_RIGHT = 21
BODY_TOP = 6
BODY_BOTTOM = 25
LEG_TOP = 26
LEG_BOTTOM = 29
LEG_WIDTH = 3
LEG_COLOR = (240, 240, 48, 255)


def _body_color(row: int, x: int) -> tuple[int, int, int, int]:
    k = row - BODY_TOP
    return (16 * (k % 16), 32 + 64 * (k // 16), 160 if x < 16 else 224, 255)


def draw_frame(
    sheet: Image.Image,
    origin: tuple[int, int],
    step: int,
    dx: int = 0,
) -> None:
    """Draw one walker pose with its leg at *step* (0-3), shifted by *dx*."""
    ox, oy = origin
    for y in range(BODY_TOP, BODY_BOTTOM + 1):
        for x in range(BODY_LEFT, BODY_RIGHT + 1):
            sheet.putpixel((ox + x + dx, oy + y), _body_color(y, x))
    leg_left = BODY_LEFT + LEG_WIDTH * (step % 4)
    for y in range(LEG_TOP, LEG_BOTTOM + 1):
        for x in range(leg_left, leg_left + LEG_WIDTH):
            sheet.putpixel((ox + x + dx, oy + y), LEG_COLOR)


def walker_sheet(
    frames: int = DEFAULT_FRAMES,
    sprite_size: int = DEFAULT_SIZE,
    columns: int | None = None,
    rows: int = 1,
    empty: tuple[int, ...] = (),
    static: bool = False,
    shifts: dict[int, int] | None = None,
) -> Image.Image:
    """Build a walker sheet.

    Args:
        frames: Frames to draw (slots past this stay transparent).
        sprite_size: Frame edge; must be at least 32.
        columns: Grid columns; defaults to *frames* (one row).
        rows: Grid rows.
        empty: Frame indices left blank.
        static: Draw every frame in the step-0 pose.
        shifts: Horizontal offset per frame index.
    """
    columns = columns or frames
    sheet = Image.new("RGBA", (sprite_size * columns, sprite_size * rows), (0, 0, 0, 0))
    shifts = shifts or {}
    for index in range(frames):
        if index in empty:
            continue
        origin = ((index % columns) * sprite_size, (index // columns) * sprite_size)
        draw_frame(sheet, origin, 0 if static else index, shifts.get(index, 0))
    return sheet


def sheet_png(image: Image.Image) -> bytes:
    return image_to_png_bytes(image)


def walker_png(**kwargs: object) -> bytes:
    return sheet_png(walker_sheet(**kwargs))  # type: ignore[arg-type]


def static_png(**kwargs: object) -> bytes:
    return sheet_png(walker_sheet(static=True, **kwargs))  # type: ignore[arg-type]
