"""Correction prompts built from the defects of a rejected attempt."""

from __future__ import annotations

import re

from spritegate.models import normalize_whitespace
from spritegate.prompts.sprite import truncate

GENERIC_ISSUE = "General quality did not pass automated checks."
EMPTY_ISSUE = "Quality mismatch on generated output."

_ANCHOR_ISSUE = re.compile(
    r"(anchor drift|horizontal drift|anchor stability|keep character centered)",
    re.IGNORECASE,
)
_EMPTY_FRAME_ISSUE = re.compile(
    r"(empty frame|blank frame|nearly empty|only \d+ non-empty frames)",
    re.IGNORECASE,
)
_CLIPPING_ISSUE = re.compile(
    r"(clipping|bleed|touching frame edges|frame edges|outer sheet edges|frame bleed)",
    re.IGNORECASE,
)
_FLAGGED_FRAMES = re.compile(r"detected .*?frames .*?\(([^)]+)\)", re.IGNORECASE)

# (keywords, canonical phrase), first match wins.
_COMPACT_TABLE: list[tuple[tuple[str, ...], str]] = [
    (("frame width", "frame height"), "Frame geometry mismatch."),
    (("frame count",), "Frame count mismatch."),
    (("capacity",), "Layout capacity mismatch."),
    (("sheet width", "sheet height"), "Sheet dimension mismatch."),
    (("transparent",), "Transparency requirement not met."),
    (("clipping", "bleed"), "Boundary clipping or bleed detected."),
    (("anchor drift", "horizontal drift"), "Anchor stability issue."),
    (("motion",), "Animation motion quality too weak."),
    (("color", "palette", "quantized"), "Color complexity outside target range."),
]


def compact_issue(issue: str) -> str:
    """Map a verbose defect to a short canonical phrase.

    Unmatched defects are truncated to 90 characters.
    """
    normalized = normalize_whitespace(issue)
    if not normalized:
        return EMPTY_ISSUE
    lower = normalized.lower()
    for keywords, phrase in _COMPACT_TABLE:
        if any(keyword in lower for keyword in keywords):
            return phrase
    return truncate(normalized, 90)


def parse_flagged_frame_indices(issues: list[str]) -> list[int] | None:
    """Collect frame indices from ``Detected N ... frames (i, j, ...)`` reasons.

    Returns:
        Sorted unique indices in ``[0, 1000)``, or None when none were found.
    """
    found: set[int] = set()
    for issue in issues:
        match = _FLAGGED_FRAMES.search(issue)
        if not match:
            continue
        for raw in match.group(1).split(","):
            digits = re.match(r"\s*(-?\d+)", raw)
            if digits is None:
                continue
            index = int(digits.group(1))
            if 0 <= index < 1000:
                found.add(index)
    return sorted(found) or None


def build_quality_correction_prompt(
    base_prompt: str,
    issues: list[str],
    attempt: int,
    max_attempts: int,
    compact: bool = False,
    issue_limit: int | None = None,
) -> str:
    """Build the retry prompt for the next attempt.

    The base prompt is reduced to its first two (compact) or four lines,
    joined with `` | `` and capped at 170/250 characters.  Empty-frame,
    clipping and anchor directives are added only when the defects call
    for them.

    Args:
        base_prompt: The generation's original prompt.
        issues: Defects of the previous attempt, most important first.
        attempt: Number of the attempt this prompt is for.
        max_attempts: Attempt ceiling.
        compact: Use compact limits.
        issue_limit: Max defects listed; defaults to 2 (compact) or 4.

    Returns:
        The newline-joined correction prompt.
    """
    has_anchor = any(_ANCHOR_ISSUE.search(issue) for issue in issues)
    has_empty = any(_EMPTY_FRAME_ISSUE.search(issue) for issue in issues)
    has_clipping = any(_CLIPPING_ISSUE.search(issue) for issue in issues)
    flagged = parse_flagged_frame_indices(issues) if has_empty else None

    if issue_limit is not None:
        limit = max(1, int(issue_limit))
    else:
        limit = 2 if compact else 4
    listed = [compact_issue(issue) for issue in issues[:limit]] if issues else [GENERIC_ISSUE]

    head = re.split(r"\r?\n", base_prompt)[: 2 if compact else 4]
    summary = " | ".join(line for line in head if line).strip()
    summary = truncate(summary, 170 if compact else 250)

    lines = [
        summary,
        "",
        f"Correction pass {attempt}/{max_attempts}: keep character and layout "
        "identical, then address listed defects.",
        "Prioritize exact frame count/size, clipping cleanup, anchor stability, "
        "and transparent background.",
    ]
    if has_empty:
        lines.append(
            "Every frame must be visibly non-empty; regenerate all frames, not "
            "only a subset."
        )
        if flagged:
            lines.append(
                f"Empty/blank frames to fix: {', '.join(str(i) for i in flagged)}. "
                "Fill each flagged slot with a distinct pose in the same animation "
                "continuity."
            )
    if has_clipping:
        lines.append(
            "Leave a visible inset from frame edges in all frames; redraw with no "
            "character pixels touching any frame boundary."
        )
    lines.append(
        "Render correction as crisp pixel clusters with limited palette; avoid "
        "painterly or airbrushed shading."
    )
    if has_anchor:
        lines.append(
            "Anchor lock: keep torso/pelvis at the same frame center in every "
            "frame; only limbs should move around it."
        )
    lines.extend(["", "Fix:"])
    lines.extend(f"- {issue}" for issue in listed)
    lines.extend(["", "Regenerate one full sprite sheet with the same constraints."])
    return "\n".join(lines)
