"""Sprite-sheet JSON export: building and tolerant parsing.

The export is the persisted metadata document that accompanies every
finished (or failed) generation.  Keys are camelCase so the document can
be consumed directly by game engines and web clients.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from spritegate.logging import get_logger
from spritegate.models import QualityDiagnostics, SettingsVerification, TokenUsage

logger = get_logger("export")

SPRITE_SHEET_KIND = "sprite-sheet"

_M = TypeVar("_M", bound=BaseModel)


def build_token_usage(
    input_tokens: int, output_tokens: int, estimated_output_tokens: int
) -> TokenUsage:
    """Token usage for the export; total is always ``input + output``."""
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        estimated_output_tokens=estimated_output_tokens,
    )


def build_sprite_json(
    frame_width: int,
    frame_height: int,
    columns: int,
    rows: int,
    frame_count: int,
    animation_type: str,
    token_usage: TokenUsage | None = None,
    verification: SettingsVerification | None = None,
    quality: QualityDiagnostics | None = None,
) -> dict[str, Any]:
    """Build the camelCase export document.

    Optional sections are omitted entirely when not provided.
    """
    doc: dict[str, Any] = {
        "kind": SPRITE_SHEET_KIND,
        "frameWidth": frame_width,
        "frameHeight": frame_height,
        "columns": columns,
        "rows": rows,
        "animations": {
            animation_type: {
                "start": 0,
                "end": max(0, frame_count - 1),
                "loop": True,
            }
        },
    }
    if verification is not None:
        doc["verification"] = verification.model_dump(by_alias=True, mode="json")
    if quality is not None:
        doc["quality"] = quality.model_dump(by_alias=True, mode="json")
    if token_usage is not None:
        doc["tokenUsage"] = token_usage.model_dump(by_alias=True, mode="json")
    return doc


# ---------------------------------------------------------------------------
# Tolerant parsing
# ---------------------------------------------------------------------------


class _AnimationRange(BaseModel):
    start: int = 0
    end: int = 0
    loop: bool = True

    model_config = {"extra": "ignore"}


class _LegacyTokenUsage(BaseModel):
    inputTokens: float
    outputTokens: float
    totalTokens: float
    estimatedOutputTokens: float | None = None

    model_config = {"extra": "ignore"}


class ParsedSpriteJson(BaseModel):
    """Validated view of a stored export document.

    ``verification`` and ``quality`` are the same typed models the
    controller exports, read back from their camelCase form.
    """

    kind: str = SPRITE_SHEET_KIND
    frame_width: int | None = None
    frame_height: int | None = None
    columns: int | None = None
    rows: int | None = None
    animations: dict[str, _AnimationRange] = {}
    verification: SettingsVerification | None = None
    quality: QualityDiagnostics | None = None
    token_usage: TokenUsage | None = None


def _section(model: type[_M], raw: Any) -> _M | None:
    if not isinstance(raw, dict):
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.debug("Ignoring malformed %s section: %s", model.__name__, exc)
        return None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def parse_sprite_json(data: Any) -> ParsedSpriteJson | None:
    """Read a stored export, tolerating missing or legacy sections.

    Unknown keys are ignored.  A malformed optional section is dropped
    rather than failing the whole document.  Token counts are rounded
    and floored at zero; ``estimatedOutputTokens`` defaults to 0.

    Returns:
        The parsed document, or None when *data* is not a mapping.
    """
    if not isinstance(data, dict):
        return None

    animations: dict[str, _AnimationRange] = {}
    raw_animations = data.get("animations")
    if isinstance(raw_animations, dict):
        for name, raw in raw_animations.items():
            parsed = _section(_AnimationRange, raw)
            if parsed is not None:
                animations[str(name)] = parsed

    token_usage = None
    usage = _section(_LegacyTokenUsage, data.get("tokenUsage"))
    if usage is not None:
        token_usage = TokenUsage(
            input_tokens=max(0, round(usage.inputTokens)),
            output_tokens=max(0, round(usage.outputTokens)),
            total_tokens=max(0, round(usage.totalTokens)),
            estimated_output_tokens=max(0, round(usage.estimatedOutputTokens or 0)),
        )

    verification = _section(SettingsVerification, data.get("verification"))
    quality = _section(QualityDiagnostics, data.get("quality"))

    return ParsedSpriteJson(
        kind=str(data.get("kind", SPRITE_SHEET_KIND)),
        frame_width=_int_or_none(data.get("frameWidth")),
        frame_height=_int_or_none(data.get("frameHeight")),
        columns=_int_or_none(data.get("columns")),
        rows=_int_or_none(data.get("rows")),
        animations=animations,
        verification=verification,
        quality=quality,
        token_usage=token_usage,
    )
