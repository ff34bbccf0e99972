"""Pydantic data models for requests, generation records, and diagnostics.

Diagnostic models (quality, verification, token usage) use camelCase
aliases so they serialize straight into the persisted sprite-sheet JSON
export via ``model_dump(by_alias=True)``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

_WHITESPACE = re.compile(r"\s+")

# Alias config shared by every model that ends up in the JSON export.
_EXPORT_CONFIG = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}


def normalize_whitespace(value: str) -> str:
    """Trim a string and collapse internal whitespace runs to single spaces."""
    return _WHITESPACE.sub(" ", value.strip())


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Projection(str, Enum):
    """Camera projection requested for the sprite."""

    PLANAR = "planar"
    ISOMETRIC = "isometric"

    @property
    def prompt_label(self) -> str:
        """Label used inside generation prompts."""
        return "2D" if self is Projection.PLANAR else "isometric"


class LayoutMode(str, Enum):
    """How frames are arranged on the sheet."""

    ROW = "row"
    GRID = "grid"


class GenerationStatus(str, Enum):
    """Lifecycle status of a generation record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)


# ---------------------------------------------------------------------------
# Requests and layout
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """A structured sprite-sheet request. Immutable once accepted.

    Attributes:
        user_id: Owning user identifier.
        prompt: Theme text describing the character (4-500 characters).
        sprite_size: Square frame edge in pixels (32-128).
        frame_count: Number of animation frames (1-64).
        projection: Planar or isometric camera.
        animation_type: Free-form animation label (e.g. ``"walk"``).
        style_intensity: 0-100 stylization dial.
        layout: ``row`` (single strip) or ``grid``.
        columns: Optional explicit grid column count.
        seed: Optional base seed; a random one is assigned when omitted.
        model: Optional model identifier; the configured default otherwise.
    """

    user_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=4, max_length=500)
    sprite_size: int = Field(..., ge=32, le=128)
    frame_count: int = Field(..., ge=1, le=64)
    projection: Projection = Projection.PLANAR
    animation_type: str = Field(..., min_length=2, max_length=40)
    style_intensity: int = Field(default=70, ge=0, le=100)
    layout: LayoutMode = LayoutMode.ROW
    columns: int | None = Field(default=None, ge=1, le=64)
    seed: int | None = Field(default=None, ge=0, le=2_147_483_647)
    model: str | None = None

    model_config = {"frozen": True}

    @field_validator("projection", mode="before")
    @classmethod
    def _accept_2d_alias(cls, v: object) -> object:
        if isinstance(v, str) and v.strip().upper() == "2D":
            return Projection.PLANAR
        return v

    @field_validator("prompt")
    @classmethod
    def _prompt_structure(cls, v: str) -> str:
        normalized = normalize_whitespace(v)
        if len(normalized) < 4:
            raise ValueError("Prompt is too short")
        if "<" in normalized or ">" in normalized:
            raise ValueError("Prompt contains disallowed characters")
        return normalized


class SpriteLayout(BaseModel):
    """Resolved grid geometry for a sheet."""

    columns: int = Field(..., ge=1)
    rows: int = Field(..., ge=1)

    model_config = {"frozen": True}

    @property
    def capacity(self) -> int:
        """Number of frame slots on the sheet."""
        return self.columns * self.rows


# ---------------------------------------------------------------------------
# Model rate card
# ---------------------------------------------------------------------------


class ModelProfile(BaseModel):
    """Per-model pricing and controller tuning.

    Attributes:
        input_per_m_tokens: USD per million prompt tokens.
        output_per_m_tokens: USD per million output tokens.
        max_attempts: Attempt ceiling for this model.
        compact_prompt: Use compact prompt phrasing.
        correction_issue_limit: Max defects listed in a correction prompt.
    """

    input_per_m_tokens: float = Field(..., ge=0)
    output_per_m_tokens: float = Field(..., ge=0)
    max_attempts: int = Field(..., ge=1)
    compact_prompt: bool = False
    correction_issue_limit: int = Field(default=2, ge=1)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Quality diagnostics
# ---------------------------------------------------------------------------


class FrameBounds(BaseModel):
    """Opaque bounding box of one frame, in frame-local pixels."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int
    width: int
    height: int
    area: int

    model_config = _EXPORT_CONFIG


class FrameSummary(BaseModel):
    """Per-frame measurements collected by the quality scorer."""

    frame_index: int
    fill_ratio: float
    translucent_ratio: float
    centroid_x: float | None = None
    centroid_y: float | None = None
    clipped_edges: list[str] = []
    bounds: FrameBounds | None = None

    model_config = _EXPORT_CONFIG


class QualityThresholds(BaseModel):
    """Thresholds derived for one scoring call."""

    min_score: float
    min_transparent_ratio: float
    max_translucent_ratio: float
    max_outer_edge_opaque_ratio: float
    max_boundary_bleed_ratio: float
    min_frame_fill_ratio: float
    max_frame_fill_ratio: float
    max_anchor_drift_px: int
    max_horizontal_drift_px: int
    max_scale_variance_ratio: float
    min_mean_consecutive_delta: float
    min_distinct_pair_ratio: float
    min_quantized_color_count: int
    max_quantized_color_count: int

    model_config = _EXPORT_CONFIG


class QualityMetrics(BaseModel):
    """Measured sheet-level metrics, rounded to four decimals."""

    analyzed_frame_count: int
    expected_frame_count: int
    transparent_pixel_ratio: float
    translucent_pixel_ratio: float
    quantized_color_count: int
    outer_edge_opaque_ratio: float
    max_boundary_bleed_ratio: float
    empty_frame_count: int
    overcrowded_frame_count: int
    clipped_frame_count: int
    max_anchor_drift_px: float
    max_horizontal_drift_px: float
    max_vertical_drift_px: float
    scale_variance_ratio: float
    mean_consecutive_frame_delta: float
    min_consecutive_frame_delta: float
    max_consecutive_frame_delta: float
    distinct_pair_ratio: float

    model_config = _EXPORT_CONFIG


class QualityDiagnostics(BaseModel):
    """Score plus the thresholds and metrics it was derived from."""

    score: float = Field(..., ge=0, le=100)
    thresholds: QualityThresholds
    metrics: QualityMetrics
    frame_summaries: list[FrameSummary] = []

    model_config = _EXPORT_CONFIG


class QualityReport(BaseModel):
    """Outcome of scoring one sheet.

    Attributes:
        ok: True iff there are no reasons and the score meets the minimum.
        reasons: Verbose human-readable defect strings.
        compact_reasons: Canonical short phrases for prompt reuse.
        width: Measured sheet width.
        height: Measured sheet height.
        diagnostics: Score, thresholds, metrics, frame summaries.
    """

    ok: bool
    reasons: list[str] = []
    compact_reasons: list[str] = []
    width: int
    height: int
    diagnostics: QualityDiagnostics

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Settings verification
# ---------------------------------------------------------------------------


class VerificationExpected(BaseModel):
    frame_width: int
    frame_height: int
    frame_count: int
    columns: int
    rows: int
    sheet_width: int
    sheet_height: int

    model_config = _EXPORT_CONFIG


class VerificationActual(BaseModel):
    frame_width: int
    frame_height: int
    frame_slots: int
    sheet_width: int
    sheet_height: int
    has_transparency: bool
    non_empty_frame_count: int
    unused_slots_with_content: int

    model_config = _EXPORT_CONFIG


class VerificationChecks(BaseModel):
    expected: VerificationExpected
    actual: VerificationActual

    model_config = _EXPORT_CONFIG


class SettingsVerification(BaseModel):
    """Hard pass/fail contract check result."""

    passed: bool
    summary: str
    failures: list[str] = []
    checks: VerificationChecks

    model_config = _EXPORT_CONFIG


# ---------------------------------------------------------------------------
# Token usage and generation records
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """Token accounting for an attempt or a whole generation."""

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    estimated_output_tokens: int = Field(default=0, ge=0)

    model_config = _EXPORT_CONFIG


class GenerationRecord(BaseModel):
    """Persisted state of one generation.

    Created Pending, moved to Processing when the controller starts and
    terminal at Completed or Failed.  Use :meth:`transition` to change
    status so terminal records stay immutable.
    """

    id: str
    user_id: str
    theme_prompt: str
    prompt: str
    sprite_size: int
    frame_count: int
    projection: Projection
    animation_type: str
    style_intensity: int
    columns: int
    rows: int
    seed: int | None = None
    model: str
    fingerprint: str = ""
    status: GenerationStatus = GenerationStatus.PENDING
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    quality_warnings: list[str] = []
    error_reason: str | None = None
    image_key: str | None = None
    sprite_json: dict | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @property
    def layout(self) -> SpriteLayout:
        return SpriteLayout(columns=self.columns, rows=self.rows)

    def transition(self, status: GenerationStatus, **changes: object) -> GenerationRecord:
        """Return a copy moved to *status* with *changes* applied.

        Raises:
            InvalidTransitionError: If the record is already terminal.
        """
        from spritegate.errors import InvalidTransitionError

        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"Generation {self.id} is already {self.status.value}; "
                f"cannot move to {status.value}"
            )
        return self.model_copy(
            update={**changes, "status": status, "updated_at": utcnow()}
        )

    def updated(self, **changes: object) -> GenerationRecord:
        """Return a copy with non-status *changes* applied."""
        return self.model_copy(update={**changes, "updated_at": utcnow()})
