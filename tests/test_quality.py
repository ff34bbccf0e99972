"""Tests for spritegate.quality — deterministic sprite-sheet scoring."""

from __future__ import annotations

import pytest
from PIL import Image

from spritegate.models import QualityMetrics
from spritegate.quality import (
    ACTION_MOTION,
    DEFAULT_MOTION,
    IDLE_MOTION,
    WALK_MOTION,
    derive_thresholds,
    evaluate_sprite_quality,
    motion_class_for,
    score_from_penalties,
)

from sprite_sheets import DEFAULT_FRAMES, DEFAULT_SIZE, walker_sheet


def _evaluate(image: Image.Image, **overrides: object):  # type: ignore[no-untyped-def]
    params: dict[str, object] = {
        "sprite_size": DEFAULT_SIZE,
        "columns": DEFAULT_FRAMES,
        "rows": 1,
        "frame_count": DEFAULT_FRAMES,
        "animation_type": "walk",
        "style_intensity": 70,
        "min_score": 85.0,
    }
    params.update(overrides)
    return evaluate_sprite_quality(image, **params)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class TestThresholds:
    @pytest.mark.parametrize(
        ("label", "motion"),
        [
            ("Idle Breathing", IDLE_MOTION),
            ("walk", WALK_MOTION),
            ("sprint", ACTION_MOTION),
            ("heavy attack", ACTION_MOTION),
            ("cast spell", DEFAULT_MOTION),
            (None, DEFAULT_MOTION),
        ],
    )
    def test_motion_class(self, label: str | None, motion: object) -> None:
        assert motion_class_for(label) is motion

    def test_walk_thresholds_at_32px(self) -> None:
        t = derive_thresholds(32, 4, "walk", 70, 85.0)
        assert t.max_anchor_drift_px == 7
        assert t.max_horizontal_drift_px == 7
        assert t.min_quantized_color_count == 20
        assert t.max_quantized_color_count == 136
        assert t.min_mean_consecutive_delta == 0.01

    def test_color_budget_clamped(self) -> None:
        low = derive_thresholds(64, 1, "idle", 0, 85.0)
        high = derive_thresholds(64, 64, "idle", 100, 85.0)
        assert low.max_quantized_color_count == 120
        assert high.max_quantized_color_count == 1600


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestEvaluate:
    def test_clean_walker_passes(self) -> None:
        report = _evaluate(walker_sheet())
        assert report.ok
        assert report.reasons == []
        assert report.diagnostics.score == 100.0
        assert report.width == 128 and report.height == 32
        metrics = report.diagnostics.metrics
        assert metrics.empty_frame_count == 0
        assert metrics.quantized_color_count == 41
        assert metrics.distinct_pair_ratio == 1.0

    def test_deterministic(self) -> None:
        sheet = walker_sheet(shifts={1: 3})
        assert _evaluate(sheet) == _evaluate(sheet)

    def test_static_sheet_fails_motion(self) -> None:
        report = _evaluate(walker_sheet(static=True))
        assert not report.ok
        assert report.diagnostics.score == 74.0
        assert any(r.startswith("Animation motion is too low") for r in report.reasons)
        assert any(r.startswith("Too many near-duplicate") for r in report.reasons)
        assert report.reasons[-1] == "Quality score 74.0 is below minimum 85.0"
        assert "Animation motion quality too weak." in report.compact_reasons

    def test_empty_frame_reported(self) -> None:
        report = _evaluate(walker_sheet(empty=(2,)))
        assert not report.ok
        assert report.diagnostics.metrics.empty_frame_count == 1
        assert any("nearly empty frames (2)" in r for r in report.reasons)

    def test_missing_transparency(self) -> None:
        opaque = Image.new("RGBA", (128, 32), (128, 64, 32, 255))
        report = _evaluate(opaque)
        assert "Missing transparent background" in report.reasons
        assert report.diagnostics.score < 50

    def test_dimension_mismatch(self) -> None:
        report = _evaluate(walker_sheet().crop((0, 0, 120, 32)))
        assert report.reasons[0] == "Image dimensions mismatch: expected 128x32, got 120x32"
        assert report.width == 120

    def test_clipped_frame_detected(self) -> None:
        sheet = walker_sheet()
        for y in range(4, 28):
            sheet.putpixel((0, y), (240, 0, 0, 255))
        report = _evaluate(sheet)
        assert report.diagnostics.frame_summaries[0].clipped_edges == ["left"]
        assert report.diagnostics.metrics.clipped_frame_count == 1

    def test_more_defects_never_score_higher(self) -> None:
        clean = _evaluate(walker_sheet()).diagnostics.score
        one_empty = _evaluate(walker_sheet(empty=(2,))).diagnostics.score
        two_empty = _evaluate(walker_sheet(empty=(1, 2))).diagnostics.score
        assert clean >= one_empty >= two_empty

    def test_score_floor_without_reasons(self) -> None:
        t = derive_thresholds(32, 4, "walk", 70, 85.0)
        metrics = QualityMetrics(
            analyzed_frame_count=4,
            expected_frame_count=4,
            transparent_pixel_ratio=0.5,
            translucent_pixel_ratio=0.0,
            quantized_color_count=40,
            outer_edge_opaque_ratio=0.15,
            max_boundary_bleed_ratio=0.0,
            empty_frame_count=0,
            overcrowded_frame_count=0,
            clipped_frame_count=0,
            max_anchor_drift_px=0.0,
            max_horizontal_drift_px=0.0,
            max_vertical_drift_px=0.0,
            scale_variance_ratio=0.0,
            mean_consecutive_frame_delta=0.05,
            min_consecutive_frame_delta=0.05,
            max_consecutive_frame_delta=0.05,
            distinct_pair_ratio=1.0,
        )
        # 100 - 0.15 * 90 = 86.5, already above the floor.
        assert score_from_penalties([], t, metrics, False, True) == 86.5
        strict = t.model_copy(update={"min_score": 95.0})
        assert score_from_penalties([], strict, metrics, False, True) == 95.0
        assert score_from_penalties(["x"], strict, metrics, False, True) == 86.5
