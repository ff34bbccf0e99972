"""Prompt builder for the initial sprite-sheet generation request.

Prompts are line-structured so later stages can rewrite individual
lines (the seed line) or take the leading lines as a summary (the
correction prompt).  Two phrasings exist: a compact one for models with
small context budgets and a verbose one.
"""

from __future__ import annotations

import re

from spritegate.models import normalize_whitespace

# Explicit per-frame pixel boxes listed before the remainder is summarized.
MAX_LISTED_FRAME_BOXES = 16

FILL_REQUIREMENT = (
    "All frame slots must contain the character with visible non-empty "
    "silhouette and no blank frame substitutions."
)
WALK_SEQUENCE_HINT = (
    "Walk cycle sequence: every frame should show a leg and arm progression "
    "from left to right in time."
)
DEFAULT_SEQUENCE_HINT = (
    "Animation sequence: each frame should be a smooth progression from the "
    "previous frame."
)

_SEED_LINE = re.compile(r"^\s*seed=", re.IGNORECASE)


def style_description(style_intensity: int, compact: bool) -> str:
    """Describe the stylization band for a 0-100 intensity."""
    if style_intensity >= 85:
        return (
            "highly stylized, bold contrast"
            if compact
            else "highly stylized silhouette, bold shape language, strong contrast"
        )
    if style_intensity >= 65:
        return (
            "stylized, readable forms"
            if compact
            else "stylized but readable forms, clear silhouette, punchy color separation"
        )
    if style_intensity >= 45:
        return (
            "balanced stylization, readable"
            if compact
            else "balanced stylization with clear readability"
        )
    if style_intensity >= 25:
        return (
            "subtle stylization"
            if compact
            else "subtle stylization with restrained details"
        )
    return (
        "minimal stylization"
        if compact
        else "minimal stylization and conservative detail"
    )


def truncate(text: str, max_length: int) -> str:
    """Cut *text* to *max_length* characters, ending with an ellipsis when cut."""
    if len(text) <= max_length:
        return text
    return f"{text[:max_length].rstrip()}…"


def normalize_theme_prompt(theme: str, compact: bool) -> str:
    """Collapse whitespace and cap the theme at 150 (compact) or 180 characters."""
    return truncate(normalize_whitespace(theme), 150 if compact else 180)


def build_frame_coverage_guidance(
    frame_count: int,
    sprite_size: int,
    columns: int,
    animation_type: str,
    compact: bool,
) -> str:
    """Tell the model which pixel box every frame occupies.

    Up to 16 frames are listed explicitly as ``frame i: x x0-x1, y y0-y1``.
    """
    hint = (
        WALK_SEQUENCE_HINT
        if "walk" in animation_type.lower()
        else DEFAULT_SEQUENCE_HINT
    )

    if frame_count <= 1:
        if compact:
            return f"{FILL_REQUIREMENT} Populate every frame slot."
        return f"Populate the only frame with the full character. {FILL_REQUIREMENT}"

    boxes: list[str] = []
    for index in range(min(frame_count, MAX_LISTED_FRAME_BOXES)):
        col = index % columns
        row = index // columns
        x0 = col * sprite_size
        x1 = (col + 1) * sprite_size - 1
        y0 = row * sprite_size
        y1 = (row + 1) * sprite_size - 1
        boxes.append(f"frame {index}: x {x0}-{x1}, y {y0}-{y1}")

    if compact:
        return f"{FILL_REQUIREMENT} Use every frame slot: {', '.join(boxes)}."

    extras = (
        "; ... additional frames continue sequentially"
        if frame_count > MAX_LISTED_FRAME_BOXES
        else ""
    )
    return (
        f"Populate every one of the {frame_count} frame slots, keep a consistent "
        f"pose progression, and avoid blank frames. {hint} "
        f"{'; '.join(boxes)}{extras}."
    )


def build_sprite_prompt(
    theme_prompt: str,
    sprite_size: int,
    frame_count: int,
    projection: str,
    animation_type: str,
    style_intensity: int,
    columns: int,
    rows: int,
    seed: int | None = None,
    compact: bool = False,
) -> str:
    """Build the line-structured generation prompt.

    Args:
        theme_prompt: Character/theme description from the request.
        sprite_size: Frame edge in pixels.
        frame_count: Number of frames.
        projection: Projection label as it should read in the prompt
            (``"2D"`` or ``"isometric"``).
        animation_type: Animation label.
        style_intensity: 0-100 stylization dial.
        columns: Grid columns.
        rows: Grid rows.
        seed: Seed rendered on the last line; ``auto`` when None.
        compact: Use the compact phrasing.

    Returns:
        Newline-joined prompt whose last line is ``seed=<value|auto>``.
    """
    sheet_w = sprite_size * columns
    sheet_h = sprite_size * rows
    notes = style_description(style_intensity, compact)
    theme = normalize_theme_prompt(theme_prompt, compact)
    seed_line = f"seed={seed if seed is not None else 'auto'}"
    coverage = build_frame_coverage_guidance(
        frame_count, sprite_size, columns, animation_type, compact
    )

    if compact:
        lines = [
            f"Pixel-art sprite-sheet PNG with transparent background "
            f"({sheet_w}x{sheet_h}px, {columns}x{rows} grid, "
            f"{sprite_size}x{sprite_size} frames, {frame_count} frames).",
            "Use true pixel art only: hard 1px edges, no antialiasing, blur, "
            "gradients, interpolation, text, border, guides, UI, or watermark.",
            f"Projection {projection}. Animation {animation_type}. "
            f"Style {style_intensity}/100 ({notes}).",
            "Lock torso/hips to frame center and keep feet on a stable baseline "
            "in every frame. No camera pan, zoom, or pose translation.",
            "Populate every frame with the character and ensure each frame is "
            "different enough from the previous one.",
            "Use a coherent limited palette (roughly 16-48 colors for the "
            "character) and clean pixel clusters.",
            coverage,
            f"Theme: {theme}",
            seed_line,
        ]
    else:
        lines = [
            "Task: create one transparent pixel-art sprite-sheet PNG.",
            f"Canvas: {sheet_w}x{sheet_h}px, {columns}x{rows} grid, "
            f"{sprite_size}x{sprite_size} frames, {frame_count} total frames.",
            "Use true pixel-art rendering only: hard 1px pixel edges, no "
            "antialiasing, blur, gradients, interpolation, text, guides, borders, "
            "UI, or watermark.",
            "Character consistency: same character identity, proportions, facing, "
            "and silhouette across all frames.",
            "Anchor lock: keep torso/hips centered in each frame, keep feet on a "
            "stable baseline, and animate mainly limbs/secondary motion.",
            "Every frame in the sheet must contain the character; avoid any nearly "
            "empty or blank frames.",
            coverage,
            "Character and motion must stay within each frame cell; maintain at "
            "least a small inset so no opaque pixels touch any frame border.",
            "Keep fixed camera and fixed scale; avoid clipping and out-of-bounds "
            "movement.",
            f"Projection:{projection}. Animation:{animation_type}. "
            f"Style:{style_intensity}/100 ({notes}).",
            "Palette/style target: coherent limited palette (about 16-48 colors), "
            "clean pixel clusters, readable silhouette, no painterly texture.",
            "Frame budget: obey exact geometry first if conflicts occur.",
            f"Theme:{theme}",
            seed_line,
        ]

    return "\n".join(lines)


def replace_seed_line(prompt: str, seed: int) -> str:
    """Rewrite every ``seed=`` line to ``seed=<seed>``, appending one if absent.

    The seed is reduced to an unsigned 32-bit value.
    """
    seed_line = f"seed={abs(int(seed)) & 0xFFFFFFFF}"
    lines = re.split(r"\r?\n", prompt)
    replaced = False
    out: list[str] = []
    for line in lines:
        if _SEED_LINE.match(line.strip()):
            out.append(seed_line)
            replaced = True
        else:
            out.append(line)
    if not replaced:
        out.append(seed_line)
    return "\n".join(out)
