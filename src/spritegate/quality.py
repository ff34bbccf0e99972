"""Deterministic quality scoring of a normalized sprite sheet.

The scorer measures transparency, edge clipping, frame bleed, fill,
anchor drift, scale variance, motion and color diversity, derives
thresholds from the animation type and style intensity, and turns the
measurements into a 0-100 score by subtracting capped penalties.

Scoring is pure: the same pixels and parameters always produce the
same diagnostics.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from PIL import Image

from spritegate.constants import EDGE_ALPHA_MIN, OPAQUE_ALPHA_MIN, VISIBLE_ALPHA_MIN
from spritegate.logging import get_logger
from spritegate.models import (
    FrameBounds,
    FrameSummary,
    QualityDiagnostics,
    QualityMetrics,
    QualityReport,
    QualityThresholds,
)
from spritegate.prompts.correction import compact_issue
from spritegate.utils import (
    clamp,
    ensure_rgba,
    format_number,
    frame_origin,
    js_round,
    median,
    percent,
    transparent_canvas,
)

logger = get_logger("quality")

DEFAULT_STYLE_INTENSITY = 70
DEFAULT_MIN_SCORE = 82.0

# Per-edge occupancy above which a frame counts as clipped.
SIDE_EDGE_THRESHOLD = 0.08
BOTTOM_EDGE_THRESHOLD = 0.22

# Summed absolute RGBA difference at which a pixel counts as changed.
PIXEL_CHANGE_THRESHOLD = 40

# Frame indices listed in a reason before truncation.
MAX_LISTED_FRAMES = 8


# ---------------------------------------------------------------------------
# Threshold derivation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MotionClass:
    """Motion expectations for a family of animation types."""

    min_mean_consecutive_delta: float
    min_distinct_pair_ratio: float
    drift_tolerance_multiplier: float


IDLE_MOTION = MotionClass(0.003, 0.2, 1.0)
WALK_MOTION = MotionClass(0.01, 0.4, 1.4)
ACTION_MOTION = MotionClass(0.012, 0.45, 1.5)
DEFAULT_MOTION = MotionClass(0.008, 0.35, 1.0)

_ACTION_KEYWORDS = ("run", "attack", "jump", "dash", "sprint")


def motion_class_for(animation_type: str | None) -> MotionClass:
    """Pick motion expectations by substring match on the animation type."""
    normalized = (animation_type or "").strip().lower()
    if "idle" in normalized:
        return IDLE_MOTION
    if "walk" in normalized:
        return WALK_MOTION
    if any(keyword in normalized for keyword in _ACTION_KEYWORDS):
        return ACTION_MOTION
    return DEFAULT_MOTION


def derive_thresholds(
    sprite_size: int,
    analyzed_frames: int,
    animation_type: str | None,
    style_intensity: int,
    min_score: float,
) -> QualityThresholds:
    """Thresholds for one scoring call."""
    motion = motion_class_for(animation_type)
    base_anchor = max(3, js_round(sprite_size * 0.16))
    base_horizontal = max(2, js_round(sprite_size * 0.16))
    multiplier = motion.drift_tolerance_multiplier
    color_budget = int(clamp(js_round(20 + style_intensity * 0.2), 24, 44))
    return QualityThresholds(
        min_score=min_score,
        min_transparent_ratio=0.15,
        max_translucent_ratio=0.03,
        max_outer_edge_opaque_ratio=0.16,
        max_boundary_bleed_ratio=0.82,
        min_frame_fill_ratio=0.015,
        max_frame_fill_ratio=0.72,
        max_anchor_drift_px=max(base_anchor, js_round(base_anchor * multiplier)),
        max_horizontal_drift_px=max(
            base_horizontal, js_round(base_horizontal * multiplier)
        ),
        max_scale_variance_ratio=0.45,
        min_mean_consecutive_delta=motion.min_mean_consecutive_delta,
        min_distinct_pair_ratio=motion.min_distinct_pair_ratio,
        min_quantized_color_count=max(20, js_round(analyzed_frames * 3)),
        max_quantized_color_count=int(
            clamp(analyzed_frames * color_budget, 120, 1600)
        ),
    )


# ---------------------------------------------------------------------------
# Pixel helpers
# ---------------------------------------------------------------------------


def _quantized_color_key(r: int, g: int, b: int) -> int:
    return ((r >> 3) << 10) | ((g >> 3) << 5) | (b >> 3)


def _column_opaque_ratio(data: bytes, width: int, height: int, column: int) -> float:
    opaque = 0
    for y in range(height):
        if data[(y * width + column) * 4 + 3] > EDGE_ALPHA_MIN:
            opaque += 1
    return opaque / max(1, height)


def _row_opaque_ratio(data: bytes, width: int, row: int) -> float:
    opaque = 0
    base = row * width * 4
    for x in range(width):
        if data[base + x * 4 + 3] > EDGE_ALPHA_MIN:
            opaque += 1
    return opaque / max(1, width)


def _frame_delta(
    data: bytes,
    width: int,
    columns: int,
    sprite_size: int,
    first: int,
    second: int,
) -> float:
    """Share of pixels that differ noticeably between two frames."""
    ax, ay = frame_origin(first, columns, sprite_size)
    bx, by = frame_origin(second, columns, sprite_size)
    changed = 0
    for y in range(sprite_size):
        row_a = ((ay + y) * width + ax) * 4
        row_b = ((by + y) * width + bx) * 4
        for x in range(sprite_size):
            a = row_a + x * 4
            b = row_b + x * 4
            diff = (
                abs(data[a] - data[b])
                + abs(data[a + 1] - data[b + 1])
                + abs(data[a + 2] - data[b + 2])
                + abs(data[a + 3] - data[b + 3])
            )
            if diff >= PIXEL_CHANGE_THRESHOLD:
                changed += 1
    return changed / max(1, sprite_size * sprite_size)


def _listed(frames: list[FrameSummary]) -> str:
    return ", ".join(str(f.frame_index) for f in frames[:MAX_LISTED_FRAMES])


# ---------------------------------------------------------------------------
# Per-frame measurement
# ---------------------------------------------------------------------------


@dataclass
class _FrameScan:
    summary: FrameSummary
    transparent: int
    translucent: int


def _scan_frame(
    data: bytes,
    width: int,
    origin: tuple[int, int],
    sprite_size: int,
    frame_index: int,
    colors: set[int],
) -> _FrameScan:
    ox, oy = origin
    area = sprite_size * sprite_size
    transparent = 0
    visible = 0
    translucent = 0
    weight_total = 0.0
    weighted_x = 0.0
    weighted_y = 0.0
    min_x = min_y = sprite_size
    max_x = max_y = -1
    edge_left = edge_right = edge_top = edge_bottom = 0
    last = sprite_size - 1

    for local_y in range(sprite_size):
        row = ((oy + local_y) * width + ox) * 4
        for local_x in range(sprite_size):
            offset = row + local_x * 4
            alpha = data[offset + 3]
            if alpha <= VISIBLE_ALPHA_MIN:
                transparent += 1
                continue

            visible += 1
            if alpha < OPAQUE_ALPHA_MIN:
                translucent += 1

            weight = alpha / 255
            weight_total += weight
            weighted_x += local_x * weight
            weighted_y += local_y * weight

            min_x = min(min_x, local_x)
            min_y = min(min_y, local_y)
            max_x = max(max_x, local_x)
            max_y = max(max_y, local_y)

            if local_x == 0:
                edge_left += 1
            if local_x == last:
                edge_right += 1
            if local_y == 0:
                edge_top += 1
            if local_y == last:
                edge_bottom += 1

            colors.add(
                _quantized_color_key(data[offset], data[offset + 1], data[offset + 2])
            )

    bounds = None
    if max_x >= min_x and max_y >= min_y:
        box_w = max_x - min_x + 1
        box_h = max_y - min_y + 1
        bounds = FrameBounds(
            min_x=min_x,
            min_y=min_y,
            max_x=max_x,
            max_y=max_y,
            width=box_w,
            height=box_h,
            area=box_w * box_h,
        )

    clipped: list[str] = []
    if edge_left / sprite_size > SIDE_EDGE_THRESHOLD:
        clipped.append("left")
    if edge_right / sprite_size > SIDE_EDGE_THRESHOLD:
        clipped.append("right")
    if edge_top / sprite_size > SIDE_EDGE_THRESHOLD:
        clipped.append("top")
    if edge_bottom / sprite_size > BOTTOM_EDGE_THRESHOLD:
        clipped.append("bottom")

    summary = FrameSummary(
        frame_index=frame_index,
        fill_ratio=round(visible / max(1, area), 4),
        translucent_ratio=round(translucent / max(1, area), 4),
        centroid_x=round(weighted_x / weight_total, 4) if weight_total > 0 else None,
        centroid_y=round(weighted_y / weight_total, 4) if weight_total > 0 else None,
        clipped_edges=clipped,
        bounds=bounds,
    )
    return _FrameScan(summary=summary, transparent=transparent, translucent=translucent)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_from_penalties(
    reasons: list[str],
    thresholds: QualityThresholds,
    metrics: QualityMetrics,
    has_dimension_mismatch: bool,
    has_transparency: bool,
) -> float:
    """Subtract capped penalties from 100.

    When there are no reasons the score is floored at ``min_score``.
    The result is clamped to [0, 100] and rounded to one decimal.
    """
    t = thresholds
    m = metrics
    score = 100.0

    if has_dimension_mismatch:
        score -= 28
    if not has_transparency:
        score -= 24

    if m.transparent_pixel_ratio < t.min_transparent_ratio:
        deficit = (t.min_transparent_ratio - m.transparent_pixel_ratio) / t.min_transparent_ratio
        score -= clamp(deficit * 20, 0, 20)

    if m.translucent_pixel_ratio > t.max_translucent_ratio:
        excess = (m.translucent_pixel_ratio - t.max_translucent_ratio) / max(
            0.001, t.max_translucent_ratio
        )
        score -= clamp(excess * 18, 0, 18)

    score -= clamp(m.outer_edge_opaque_ratio * 90, 0, 18)

    if m.max_boundary_bleed_ratio > t.max_boundary_bleed_ratio:
        excess = m.max_boundary_bleed_ratio - t.max_boundary_bleed_ratio
        score -= clamp(excess / max(0.01, 1 - t.max_boundary_bleed_ratio) * 14, 0, 14)

    score -= min(30, m.empty_frame_count * 6)
    score -= min(20, m.overcrowded_frame_count * 4)
    score -= min(30, m.clipped_frame_count * 5)

    if m.max_anchor_drift_px > t.max_anchor_drift_px:
        excess = m.max_anchor_drift_px - t.max_anchor_drift_px
        score -= clamp(excess / max(1, t.max_anchor_drift_px) * 16, 0, 16)

    if m.max_horizontal_drift_px > t.max_horizontal_drift_px:
        excess = m.max_horizontal_drift_px - t.max_horizontal_drift_px
        score -= clamp(excess / max(1, t.max_horizontal_drift_px) * 10, 0, 10)

    if m.scale_variance_ratio > t.max_scale_variance_ratio:
        excess = m.scale_variance_ratio - t.max_scale_variance_ratio
        score -= clamp(excess / max(0.01, t.max_scale_variance_ratio) * 12, 0, 12)

    if m.mean_consecutive_frame_delta < t.min_mean_consecutive_delta:
        deficit = (t.min_mean_consecutive_delta - m.mean_consecutive_frame_delta) / max(
            0.001, t.min_mean_consecutive_delta
        )
        score -= clamp(deficit * 14, 0, 14)

    if m.distinct_pair_ratio < t.min_distinct_pair_ratio:
        deficit = (t.min_distinct_pair_ratio - m.distinct_pair_ratio) / max(
            0.001, t.min_distinct_pair_ratio
        )
        score -= clamp(deficit * 12, 0, 12)

    if m.quantized_color_count < t.min_quantized_color_count:
        deficit = (t.min_quantized_color_count - m.quantized_color_count) / max(
            1, t.min_quantized_color_count
        )
        score -= clamp(deficit * 8, 0, 8)

    if m.quantized_color_count > t.max_quantized_color_count:
        excess = (m.quantized_color_count - t.max_quantized_color_count) / max(
            1, t.max_quantized_color_count
        )
        score -= clamp(excess * 8, 0, 8)

    if not reasons:
        score = max(score, t.min_score)

    return round(clamp(score, 0, 100), 1)


def evaluate_sprite_quality(
    image: Image.Image,
    sprite_size: int,
    columns: int,
    rows: int,
    frame_count: int,
    animation_type: str | None = None,
    style_intensity: int = DEFAULT_STYLE_INTENSITY,
    min_score: float = DEFAULT_MIN_SCORE,
) -> QualityReport:
    """Score a sprite sheet and explain every deduction.

    Args:
        image: RGBA sheet, normally the stabilized output.
        sprite_size: Frame edge in pixels.
        columns: Grid columns.
        rows: Grid rows.
        frame_count: Requested frames; analysis covers
            ``clamp(frame_count, 1, columns*rows)`` frames.
        animation_type: Animation label used to pick motion thresholds.
        style_intensity: 0-100 style dial; widens the color budget.
        min_score: Score below which the sheet is rejected.

    Returns:
        A :class:`QualityReport`.  ``ok`` is True iff there are no
        reasons and the score is at least ``min_score``.
    """
    source = ensure_rgba(image)
    width, height = source.size
    expected_w = sprite_size * columns
    expected_h = sprite_size * rows
    analyzed = int(clamp(frame_count, 1, columns * rows))
    frame_area = sprite_size * sprite_size
    reasons: list[str] = []

    has_dimension_mismatch = width != expected_w or height != expected_h
    if has_dimension_mismatch:
        reasons.append(
            f"Image dimensions mismatch: expected {expected_w}x{expected_h}, "
            f"got {width}x{height}"
        )
        # Frame scans read from an expected-size view; missing pixels are transparent.
        framed = transparent_canvas(expected_w, expected_h)
        framed.paste(source, (0, 0))
    else:
        framed = source

    data = source.tobytes()
    frame_data = framed.tobytes() if framed is not source else data
    thresholds = derive_thresholds(
        sprite_size, analyzed, animation_type, style_intensity, min_score
    )

    # --- per-frame scan ---
    colors: set[int] = set()
    summaries: list[FrameSummary] = []
    transparent_pixels = 0
    translucent_pixels = 0
    for index in range(analyzed):
        scan = _scan_frame(
            frame_data,
            expected_w,
            frame_origin(index, columns, sprite_size),
            sprite_size,
            index,
            colors,
        )
        summaries.append(scan.summary)
        transparent_pixels += scan.transparent
        translucent_pixels += scan.translucent

    # --- sheet-level transparency ---
    total_pixels = analyzed * frame_area
    transparent_ratio = transparent_pixels / max(1, total_pixels)
    translucent_ratio = translucent_pixels / max(1, total_pixels)
    has_transparency = transparent_pixels > 0
    if not has_transparency:
        reasons.append("Missing transparent background")

    if transparent_ratio < thresholds.min_transparent_ratio:
        reasons.append(
            f"Transparent coverage too low: {percent(transparent_ratio)}% "
            f"(expected >= {percent(thresholds.min_transparent_ratio)}%)"
        )
    if translucent_ratio > thresholds.max_translucent_ratio:
        reasons.append(
            f"Too many semi-transparent pixels: {percent(translucent_ratio)}% "
            f"(expected <= {percent(thresholds.max_translucent_ratio)}%)"
        )

    # --- outer edges and internal boundaries ---
    outer_edge = max(
        _column_opaque_ratio(data, width, height, 0),
        _column_opaque_ratio(data, width, height, max(0, width - 1)),
        _row_opaque_ratio(data, width, 0),
        _row_opaque_ratio(data, width, max(0, height - 1)),
    )
    if outer_edge > thresholds.max_outer_edge_opaque_ratio:
        reasons.append(
            f"Possible clipping on outer sheet edges (edge occupancy "
            f"{percent(outer_edge)}%, max "
            f"{percent(thresholds.max_outer_edge_opaque_ratio)}%)"
        )

    bleed = 0.0
    for c in range(1, columns):
        boundary = c * sprite_size
        if 0 < boundary < width:
            bleed = max(
                bleed,
                _column_opaque_ratio(data, width, height, boundary - 1),
                _column_opaque_ratio(data, width, height, boundary),
            )
    for r in range(1, rows):
        boundary = r * sprite_size
        if 0 < boundary < height:
            bleed = max(
                bleed,
                _row_opaque_ratio(data, width, boundary - 1),
                _row_opaque_ratio(data, width, boundary),
            )
    if bleed > thresholds.max_boundary_bleed_ratio:
        reasons.append(
            f"Possible frame bleed at internal boundaries ({percent(bleed)}%, "
            f"max {percent(thresholds.max_boundary_bleed_ratio)}%)"
        )

    # --- fill and clipping ---
    empty = [f for f in summaries if f.fill_ratio < thresholds.min_frame_fill_ratio]
    overcrowded = [f for f in summaries if f.fill_ratio > thresholds.max_frame_fill_ratio]
    clipped = [f for f in summaries if f.clipped_edges]
    if empty:
        reasons.append(f"Detected {len(empty)} nearly empty frames ({_listed(empty)})")
    if overcrowded:
        reasons.append(
            f"Detected {len(overcrowded)} overcrowded frames that likely violate "
            f"margins ({_listed(overcrowded)})"
        )
    if clipped:
        reasons.append(
            f"Detected {len(clipped)} frames touching frame edges ({_listed(clipped)})"
        )

    # --- anchor drift around the median centroid ---
    anchor_drift = horizontal_drift = vertical_drift = 0.0
    centroids = [
        (f.centroid_x, f.centroid_y)
        for f in summaries
        if f.centroid_x is not None and f.centroid_y is not None
    ]
    if len(centroids) > 1:
        base_x = median([c[0] for c in centroids])
        base_y = median([c[1] for c in centroids])
        for cx, cy in centroids:
            dx = cx - base_x
            dy = cy - base_y
            horizontal_drift = max(horizontal_drift, abs(dx))
            vertical_drift = max(vertical_drift, abs(dy))
            anchor_drift = max(anchor_drift, math.hypot(dx, dy))

    if anchor_drift > thresholds.max_anchor_drift_px:
        reasons.append(
            f"Anchor drift too high ({format_number(round(anchor_drift, 2))}px, "
            f"max {thresholds.max_anchor_drift_px}px). Keep character centered."
        )
    if horizontal_drift > thresholds.max_horizontal_drift_px:
        reasons.append(
            f"Horizontal drift too high ({format_number(round(horizontal_drift, 2))}px, "
            f"max {thresholds.max_horizontal_drift_px}px)."
        )

    # --- scale variance ---
    areas = [f.bounds.area for f in summaries if f.bounds is not None and f.bounds.area > 0]
    scale_variance = 0.0
    if len(areas) > 1:
        scale_variance = (max(areas) - min(areas)) / max(1, max(areas))
    if scale_variance > thresholds.max_scale_variance_ratio:
        reasons.append(
            f"Scale variation too high across frames ({percent(scale_variance)}%, "
            f"max {percent(thresholds.max_scale_variance_ratio)}%)"
        )

    # --- motion between consecutive frames ---
    deltas = [
        _frame_delta(frame_data, expected_w, columns, sprite_size, i, i + 1)
        for i in range(analyzed - 1)
    ]
    mean_delta = sum(deltas) / len(deltas) if deltas else 0.0
    min_delta = min(deltas) if deltas else 0.0
    max_delta = max(deltas) if deltas else 0.0
    distinct_threshold = max(0.006, thresholds.min_mean_consecutive_delta * 0.75)
    distinct_ratio = (
        sum(1 for d in deltas if d >= distinct_threshold) / len(deltas) if deltas else 1.0
    )

    if deltas and mean_delta < thresholds.min_mean_consecutive_delta:
        reasons.append(
            f"Animation motion is too low "
            f"({format_number(js_round(mean_delta * 1000) / 10)}% mean frame delta, "
            f"min {format_number(js_round(thresholds.min_mean_consecutive_delta * 1000) / 10)}%)"
        )
    if deltas and distinct_ratio < thresholds.min_distinct_pair_ratio:
        reasons.append(
            f"Too many near-duplicate consecutive frames ({percent(distinct_ratio)}% "
            f"distinct pairs, min {percent(thresholds.min_distinct_pair_ratio)}%)"
        )

    # --- color diversity ---
    color_count = len(colors)
    if color_count < thresholds.min_quantized_color_count:
        reasons.append(
            f"Color diversity too low ({color_count} quantized colors, "
            f"min {thresholds.min_quantized_color_count})"
        )
    if color_count > thresholds.max_quantized_color_count:
        reasons.append(
            f"Color diversity too high for crisp pixel art ({color_count} quantized "
            f"colors, max {thresholds.max_quantized_color_count})"
        )

    metrics = QualityMetrics(
        analyzed_frame_count=analyzed,
        expected_frame_count=frame_count,
        transparent_pixel_ratio=round(transparent_ratio, 4),
        translucent_pixel_ratio=round(translucent_ratio, 4),
        quantized_color_count=color_count,
        outer_edge_opaque_ratio=round(outer_edge, 4),
        max_boundary_bleed_ratio=round(bleed, 4),
        empty_frame_count=len(empty),
        overcrowded_frame_count=len(overcrowded),
        clipped_frame_count=len(clipped),
        max_anchor_drift_px=round(anchor_drift, 4),
        max_horizontal_drift_px=round(horizontal_drift, 4),
        max_vertical_drift_px=round(vertical_drift, 4),
        scale_variance_ratio=round(scale_variance, 4),
        mean_consecutive_frame_delta=round(mean_delta, 4),
        min_consecutive_frame_delta=round(min_delta, 4),
        max_consecutive_frame_delta=round(max_delta, 4),
        distinct_pair_ratio=round(distinct_ratio, 4),
    )

    score = score_from_penalties(
        reasons, thresholds, metrics, has_dimension_mismatch, has_transparency
    )
    if score < min_score:
        reasons.append(f"Quality score {score:.1f} is below minimum {min_score:.1f}")

    ok = not reasons and score >= min_score
    logger.debug(
        "Quality %s: score=%.1f reasons=%d frames=%d colors=%d",
        "PASSED" if ok else "FAILED",
        score,
        len(reasons),
        analyzed,
        color_count,
    )

    compact: list[str] = []
    for reason in reasons:
        phrase = compact_issue(reason)
        if phrase not in compact:
            compact.append(phrase)

    return QualityReport(
        ok=ok,
        reasons=reasons,
        compact_reasons=compact,
        width=width,
        height=height,
        diagnostics=QualityDiagnostics(
            score=score,
            thresholds=thresholds,
            metrics=metrics,
            frame_summaries=summaries,
        ),
    )
