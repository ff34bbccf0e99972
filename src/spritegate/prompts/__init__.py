"""Prompt builders for sprite-sheet generation and correction passes.

All prompts are plain f-string builders; no template engine is used.
"""

from __future__ import annotations

from spritegate.prompts.correction import (
    build_quality_correction_prompt,
    compact_issue,
    parse_flagged_frame_indices,
)
from spritegate.prompts.sprite import (
    build_frame_coverage_guidance,
    build_sprite_prompt,
    normalize_theme_prompt,
    replace_seed_line,
    style_description,
)

__all__ = [
    "build_frame_coverage_guidance",
    "build_quality_correction_prompt",
    "build_sprite_prompt",
    "compact_issue",
    "normalize_theme_prompt",
    "parse_flagged_frame_indices",
    "replace_seed_line",
    "style_description",
]
