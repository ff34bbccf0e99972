"""Attempt controller: the bounded, budgeted, quality-gated generation loop.

Each attempt calls the image backend once, pushes the raw sheet through
normalize -> clarify -> stabilize, scores and verifies it, optionally
repairs empty frames, and feeds the outcome to :func:`reduce_attempt`.
The reducer is pure; everything with side effects (backend calls,
record updates, uploads, cache writes) lives in :class:`AttemptController`.

Loop termination:

* an attempt passes both the quality gate and settings verification;
* the USD budget is exhausted or cannot cover the next attempt
  (``token_budget``);
* two consecutive failing attempts repeat the same defect signature
  without meaningful score gain (``quality_stagnation``);
* the per-model attempt ceiling is reached.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field, replace
from enum import Enum

from PIL import Image

from spritegate.budget import (
    CostBudget,
    effective_max_attempts,
    estimate_cost_usd,
    estimate_output_tokens,
    estimate_tokens,
    get_model_profile,
)
from spritegate.clarifier import clarify_pixel_art
from spritegate.config import Settings
from spritegate.constants import MAX_ERROR_REASON_LENGTH
from spritegate.errors import GenerationNotFoundError, InvalidTransitionError
from spritegate.export import build_sprite_json, build_token_usage
from spritegate.fingerprint import FingerprintCache
from spritegate.logging import generation_logger, get_logger
from spritegate.models import (
    GenerationRecord,
    GenerationStatus,
    QualityReport,
    SettingsVerification,
    TokenUsage,
)
from spritegate.normalizer import normalize_sprite_sheet
from spritegate.observability import RunMetricsCollector
from spritegate.prompts import build_quality_correction_prompt, replace_seed_line
from spritegate.providers import ImageBackend, output_size_for_layout
from spritegate.quality import evaluate_sprite_quality
from spritegate.repair import repair_empty_frames
from spritegate.stabilizer import stabilize_sprite_sheet
from spritegate.storage import GenerationStore, ObjectStorage, image_key
from spritegate.utils import image_to_png_bytes, png_bytes_to_image
from spritegate.verification import placeholder_verification, verify_requested_settings

logger = get_logger("controller")

STOP_TOKEN_BUDGET = "token_budget"
STOP_QUALITY_STAGNATION = "quality_stagnation"

# Quality points deducted from an attempt whose settings verification failed.
SETTINGS_FAILURE_PENALTY = 18.0
SETTINGS_PASSED_RANK_BONUS = 1000.0
WARNING_RANK_PENALTY = 0.5

# A failing attempt with the previous signature stalls unless it gains more than this.
STALL_SCORE_TOLERANCE = 0.75
STALL_LIMIT = 2

BUDGET_STOP_WARNING = (
    "Stopped early due to token budget limit. Lowering prompt complexity "
    "or choosing a cheaper model may help."
)
STAGNATION_STOP_WARNING = (
    "Stopped early due to no quality signal improvement across attempts."
)


class Outcome(str, Enum):
    """Terminal outcome of one controller run."""

    SUCCEEDED = "succeeded"
    FAILED_BUDGET = "failed_budget"
    FAILED_STAGNATION = "failed_stagnation"
    FAILED_QUALITY = "failed_quality"
    FAILED_VERIFICATION = "failed_verification"
    FAILED_ERROR = "failed_error"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def attempt_seed(generation_id: str, base_seed: int | None, attempt: int) -> int:
    """Deterministic per-attempt seed.

    The first four bytes of ``sha256("<id>:<seed or 0>:<attempt>")`` read
    as an unsigned little-endian integer.
    """
    hashed = f"{generation_id}:{base_seed if base_seed is not None else 0}:{attempt}"
    digest = hashlib.sha256(hashed.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "little")


def dedupe_warnings(warnings: list[str]) -> list[str]:
    """Trim, drop blanks and de-duplicate while keeping first-seen order."""
    seen: dict[str, None] = {}
    for warning in warnings:
        trimmed = warning.strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return list(seen)


def warning_signature(reasons: list[str]) -> str:
    """Order-insensitive defect signature used for stagnation detection."""
    normalized = {r.lower().strip() for r in reasons}
    normalized.discard("")
    return "|".join(sorted(normalized))


def penalized_score(quality_score: float, settings_passed: bool) -> float:
    return quality_score - (0.0 if settings_passed else SETTINGS_FAILURE_PENALTY)


# ---------------------------------------------------------------------------
# Attempt state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attempt:
    """Measured outcome of one backend call after the pixel pipeline.

    Attributes:
        index: 1-based attempt number.
        image: Final RGBA sheet for this attempt (repaired if adopted).
        quality: Quality report of *image*.
        verification: Settings verification of *image*.
        warnings: Deduped quality reasons followed by settings failures.
        token_usage: Tokens reported for this backend call.
        model_used: Model that produced the raw image.
        repaired_frames: Frames filled by the repair pass, if adopted.
    """

    index: int
    image: Image.Image = field(compare=False, repr=False)
    quality: QualityReport
    verification: SettingsVerification
    warnings: tuple[str, ...]
    token_usage: TokenUsage
    model_used: str
    repaired_frames: tuple[int, ...] = ()

    @property
    def quality_score(self) -> float:
        return self.quality.diagnostics.score

    @property
    def attempt_score(self) -> float:
        return penalized_score(self.quality_score, self.verification.passed)

    @property
    def rank(self) -> float:
        """Candidate rank; settings-passing attempts always outrank failing ones."""
        bonus = SETTINGS_PASSED_RANK_BONUS if self.verification.passed else 0.0
        return bonus + self.attempt_score - WARNING_RANK_PENALTY * len(self.warnings)

    @property
    def passed(self) -> bool:
        return self.quality.ok and self.verification.passed

    @property
    def signature(self) -> str:
        return warning_signature(list(self.warnings))


@dataclass(frozen=True)
class ControllerState:
    """Immutable loop state threaded through :func:`reduce_attempt`."""

    best: Attempt | None = None
    successful: Attempt | None = None
    stall_count: int = 0
    last_failure_signature: str | None = None
    last_failure_score: float = -math.inf
    stop_reason: str | None = None
    attempts_executed: int = 0

    @property
    def finished(self) -> bool:
        return self.successful is not None or self.stop_reason is not None


def reduce_attempt(state: ControllerState, attempt: Attempt) -> ControllerState:
    """Fold one attempt into the loop state.

    The best candidate only changes on a strictly higher rank, so ties
    keep the earlier attempt.  A failing attempt stalls when it repeats
    the previous failing signature and gains at most
    ``STALL_SCORE_TOLERANCE`` points; two stalls in a row stop the loop.
    """
    best = state.best
    if best is None or attempt.rank > best.rank:
        best = attempt

    failed = not attempt.passed
    stalled = (
        failed
        and attempt.index > 1
        and state.last_failure_signature == attempt.signature
        and attempt.quality_score <= state.last_failure_score + STALL_SCORE_TOLERANCE
    )
    if failed:
        stall_count = state.stall_count + 1 if stalled else 0
        last_signature: str | None = attempt.signature
        last_score = attempt.quality_score
    else:
        stall_count = 0
        last_signature = None
        last_score = -math.inf

    stop_reason = state.stop_reason
    successful = state.successful
    if stop_reason is None and stalled and stall_count >= STALL_LIMIT:
        stop_reason = STOP_QUALITY_STAGNATION
    elif attempt.passed:
        successful = attempt

    return replace(
        state,
        best=best,
        successful=successful,
        stall_count=stall_count,
        last_failure_signature=last_signature,
        last_failure_score=last_score,
        stop_reason=stop_reason,
        attempts_executed=max(state.attempts_executed, attempt.index),
    )


@dataclass
class ControllerResult:
    """What a finished run produced."""

    record: GenerationRecord
    outcome: Outcome
    stop_reason: str | None
    attempts_executed: int
    max_attempts: int
    best_attempt: int | None
    spent_usd: float
    image_bytes: bytes | None = None


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class AttemptController:
    """Runs the attempt loop for one generation record at a time.

    The controller holds no per-generation state between runs, so one
    instance can serve concurrent jobs.
    """

    def __init__(
        self,
        backend: ImageBackend,
        store: GenerationStore,
        object_storage: ObjectStorage,
        cache: FingerprintCache,
        settings: Settings,
        metrics: RunMetricsCollector | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.object_storage = object_storage
        self.cache = cache
        self.settings = settings
        self.metrics = metrics

    # -- pixel pipeline ------------------------------------------------------

    def _score(
        self, record: GenerationRecord, image: Image.Image
    ) -> tuple[QualityReport, SettingsVerification]:
        quality = evaluate_sprite_quality(
            image,
            sprite_size=record.sprite_size,
            columns=record.columns,
            rows=record.rows,
            frame_count=record.frame_count,
            animation_type=record.animation_type,
            style_intensity=record.style_intensity,
            min_score=self.settings.quality_min_score,
        )
        verification = verify_requested_settings(
            image,
            sprite_size=record.sprite_size,
            frame_count=record.frame_count,
            columns=record.columns,
            rows=record.rows,
        )
        return quality, verification

    def _stabilize(self, record: GenerationRecord, image: Image.Image) -> Image.Image:
        return stabilize_sprite_sheet(
            image,
            sprite_size=record.sprite_size,
            columns=record.columns,
            rows=record.rows,
            frame_count=record.frame_count,
        )

    def process_image(
        self,
        record: GenerationRecord,
        image_bytes: bytes,
        index: int,
        token_usage: TokenUsage,
        model_used: str,
    ) -> Attempt:
        """Run the pixel pipeline on one raw backend image.

        Repair runs only when a frame is empty or verification reports
        missing frames, and its output is adopted only when it raises the
        penalized score, newly passes verification, or empties fewer frames.
        """
        log = generation_logger(logger, record.id)
        raw = png_bytes_to_image(image_bytes)
        normalized = normalize_sprite_sheet(
            raw, record.sprite_size, record.columns, record.rows
        )
        stabilized = self._stabilize(record, clarify_pixel_art(normalized))
        quality, verification = self._score(record, stabilized)

        image = stabilized
        repaired_frames: tuple[int, ...] = ()
        original_empty = quality.diagnostics.metrics.empty_frame_count
        missing_frames = original_empty > 0 or any(
            "non-empty frames" in failure for failure in verification.failures
        )
        if missing_frames:
            repaired = repair_empty_frames(
                stabilized,
                sprite_size=record.sprite_size,
                columns=record.columns,
                rows=record.rows,
                frame_count=record.frame_count,
            )
            if repaired.repaired_slots > 0:
                repaired_image = self._stabilize(record, repaired.image)
                repaired_quality, repaired_verification = self._score(record, repaired_image)
                original_score = penalized_score(
                    quality.diagnostics.score, verification.passed
                )
                repaired_score = penalized_score(
                    repaired_quality.diagnostics.score, repaired_verification.passed
                )
                adopt = (
                    repaired_score > original_score
                    or (repaired_verification.passed and not verification.passed)
                    or repaired_quality.diagnostics.metrics.empty_frame_count < original_empty
                )
                if adopt:
                    log.info(
                        "Attempt %d: frame repair adopted (%d slots, score %.1f -> %.1f)",
                        index,
                        repaired.repaired_slots,
                        quality.diagnostics.score,
                        repaired_quality.diagnostics.score,
                    )
                    image = repaired_image
                    quality = repaired_quality
                    verification = repaired_verification
                    repaired_frames = tuple(repaired.repaired_frames)
                    if self.metrics is not None:
                        self.metrics.record_repair(repaired.repaired_slots)
                else:
                    log.info(
                        "Attempt %d: frame repair skipped (score %.1f -> %.1f, "
                        "empty frames %d -> %d)",
                        index,
                        original_score,
                        repaired_score,
                        original_empty,
                        repaired_quality.diagnostics.metrics.empty_frame_count,
                    )

        warnings = dedupe_warnings([*quality.reasons, *verification.failures])
        return Attempt(
            index=index,
            image=image,
            quality=quality,
            verification=verification,
            warnings=tuple(warnings),
            token_usage=token_usage,
            model_used=model_used,
            repaired_frames=repaired_frames,
        )

    # -- main loop -------------------------------------------------------------

    def _reload(self, record: GenerationRecord) -> GenerationRecord:
        """Latest stored copy of *record*.

        Raises:
            GenerationNotFoundError: If the record was deleted.
            InvalidTransitionError: If another writer already made it terminal.
        """
        current = self.store.get(record.id)
        if current is None:
            raise GenerationNotFoundError(f"Generation {record.id} not found")
        if current.status.is_terminal:
            raise InvalidTransitionError(
                f"Generation {record.id} was marked {current.status.value} "
                "while processing"
            )
        return current

    async def run(
        self, record: GenerationRecord, *, record_failure: bool = True
    ) -> ControllerResult:
        """Drive *record* from Pending/Processing to Completed or Failed.

        The stored record is re-read before every attempt and every write.
        If another writer (the stale watchdog, say) has made it terminal in
        the meantime, the loop stops and the stored record is returned
        untouched.

        Args:
            record: The generation to process.
            record_failure: When False, an unexpected exception leaves the
                record in Processing so a queue redelivery can restart it.

        Raises:
            InvalidTransitionError: If *record* is already terminal.
            Exception: Any unexpected error, after the record has been
                marked Failed (when *record_failure* is set).
        """
        log = generation_logger(logger, record.id)
        current = self._reload(record)
        record = self.store.update(
            current.transition(GenerationStatus.PROCESSING, error_reason=None)
        )
        settings = self.settings
        overrides = settings.models
        active_model = record.model
        profile = get_model_profile(active_model, overrides)
        max_attempts = effective_max_attempts(profile, settings.quality_max_attempts)
        output_estimate = estimate_output_tokens(record.sprite_size, record.columns, record.rows)
        budget = CostBudget(settings.max_estimated_generation_cost_usd)
        size = output_size_for_layout(record.columns, record.rows)

        state = ControllerState()
        prompt = record.prompt
        input_tokens = output_tokens = total_tokens = 0

        log.info(
            "Generation %s started: %d frames @ %dpx (%dx%d), model=%s, "
            "max_attempts=%d, budget=$%.2f, strict=%s",
            record.id,
            record.frame_count,
            record.sprite_size,
            record.columns,
            record.rows,
            active_model,
            max_attempts,
            budget.limit,
            settings.strict_quality_gate,
        )

        try:
            attempt_index = 1
            while attempt_index <= max_attempts:
                self._reload(record)
                prompt = replace_seed_line(
                    prompt, attempt_seed(record.id, record.seed, attempt_index)
                )
                if budget.exhausted:
                    log.warning(
                        "Generation %s: budget exhausted before attempt %d",
                        record.id,
                        attempt_index,
                    )
                    state = replace(state, stop_reason=STOP_TOKEN_BUDGET)
                    break

                attempt_cost = estimate_cost_usd(
                    active_model, estimate_tokens(prompt), output_estimate, overrides
                )
                log.debug(
                    "Generation %s attempt %d/%d: model=%s est_cost=$%.6f remaining=$%.6f",
                    record.id,
                    attempt_index,
                    max_attempts,
                    active_model,
                    attempt_cost,
                    budget.remaining,
                )
                if not budget.can_afford(attempt_cost):
                    log.warning(
                        "Generation %s: attempt %d blocked, estimated $%.6f exceeds "
                        "remaining $%.6f",
                        record.id,
                        attempt_index,
                        attempt_cost,
                        budget.remaining,
                    )
                    state = replace(state, stop_reason=STOP_TOKEN_BUDGET)
                    break

                result = await self.backend.generate(
                    prompt=prompt, model=active_model, size=size, user=record.user_id
                )

                if result.model_used != active_model:
                    requested = active_model
                    active_model = result.model_used
                    profile = get_model_profile(active_model, overrides)
                    adjusted = effective_max_attempts(profile, settings.quality_max_attempts)
                    if adjusted != max_attempts:
                        log.info(
                            "Generation %s: max attempts %d -> %d after switch to %s",
                            record.id,
                            max_attempts,
                            adjusted,
                            active_model,
                        )
                        max_attempts = adjusted
                    log.warning(
                        "Generation %s: model switched %s -> %s",
                        record.id,
                        requested,
                        active_model,
                    )
                    record = self.store.update(
                        self._reload(record).updated(model=active_model)
                    )
                    if self.metrics is not None:
                        self.metrics.record_model_switch(requested, active_model)

                usage = result.token_usage
                input_tokens += usage.input_tokens
                output_tokens += usage.output_tokens
                total_tokens += usage.total_tokens
                spent = estimate_cost_usd(
                    result.model_used, usage.input_tokens, usage.output_tokens, overrides
                )
                budget.consume(spent)
                if self.metrics is not None:
                    self.metrics.record_tokens(usage.input_tokens, usage.output_tokens, spent)

                attempt = self.process_image(
                    record, result.image_bytes, attempt_index, usage, result.model_used
                )
                state = reduce_attempt(state, attempt)
                if self.metrics is not None:
                    self.metrics.record_attempt(attempt.passed)

                log.info(
                    "Generation %s attempt %d/%d: quality %s (score %.1f), settings %s, "
                    "%d warnings",
                    record.id,
                    attempt_index,
                    max_attempts,
                    "PASSED" if attempt.quality.ok else "FAILED",
                    attempt.quality_score,
                    "PASSED" if attempt.verification.passed else "FAILED",
                    len(attempt.warnings),
                )
                if state.stop_reason == STOP_QUALITY_STAGNATION:
                    log.info(
                        "Generation %s: quality stagnated after attempt %d (%s)",
                        record.id,
                        attempt_index,
                        attempt.signature,
                    )
                if state.finished:
                    break

                if attempt_index < max_attempts:
                    prompt = build_quality_correction_prompt(
                        record.prompt,
                        list(attempt.warnings),
                        attempt=attempt_index + 1,
                        max_attempts=max_attempts,
                        compact=profile.compact_prompt,
                        issue_limit=profile.correction_issue_limit,
                    )
                attempt_index += 1

            token_usage = build_token_usage(
                input_tokens, output_tokens, output_estimate * state.attempts_executed
            )
            record = record.updated(total_tokens=total_tokens)
            return self._finalize(record, state, token_usage, max_attempts, budget)
        except InvalidTransitionError as exc:
            stored = self.store.get(record.id) or record
            log.warning(
                "Generation %s: stopping after %d attempts, record already %s (%s)",
                record.id,
                state.attempts_executed,
                stored.status.value,
                exc,
            )
            outcome = (
                Outcome.SUCCEEDED
                if stored.status is GenerationStatus.COMPLETED
                else Outcome.FAILED_ERROR
            )
            if self.metrics is not None:
                self.metrics.record_stop(state.stop_reason, outcome.value)
            return ControllerResult(
                record=stored,
                outcome=outcome,
                stop_reason=state.stop_reason,
                attempts_executed=state.attempts_executed,
                max_attempts=max_attempts,
                best_attempt=None,
                spent_usd=budget.spent,
            )
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            log.error(
                "Generation %s failed with unhandled error after %d attempts: %s",
                record.id,
                state.attempts_executed,
                reason,
            )
            if self.metrics is not None:
                self.metrics.record_stop(state.stop_reason, Outcome.FAILED_ERROR.value)
            if record_failure:
                self._record_error(record, reason, input_tokens, output_tokens, total_tokens)
            raise

    def _record_error(
        self,
        record: GenerationRecord,
        reason: str,
        input_tokens: int,
        output_tokens: int,
        total_tokens: int,
    ) -> None:
        log = generation_logger(logger, record.id)
        current = self.store.get(record.id)
        if current is None or current.status.is_terminal:
            return
        try:
            self.store.update(
                current.transition(
                    GenerationStatus.FAILED,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    total_tokens=total_tokens,
                    error_reason=reason[:MAX_ERROR_REASON_LENGTH],
                )
            )
        except InvalidTransitionError:
            log.warning(
                "Generation %s finished elsewhere before its error was recorded",
                record.id,
            )

    # -- finalization --------------------------------------------------------

    def _finalize(
        self,
        record: GenerationRecord,
        state: ControllerState,
        token_usage: TokenUsage,
        max_attempts: int,
        budget: CostBudget,
    ) -> ControllerResult:
        settings = self.settings
        log = generation_logger(logger, record.id)
        best = state.best
        chosen = state.successful
        warnings: list[str] = list(chosen.warnings) if chosen is not None else []

        if chosen is None:
            if (
                settings.strict_quality_gate
                or best is None
                or not best.verification.passed
                or best.quality_score < settings.quality_min_score
            ):
                return self._fail(record, state, token_usage, max_attempts, budget)
            chosen = best
            warnings = dedupe_warnings(
                [
                    *best.warnings,
                    f"Accepted best attempt {best.index} at quality score "
                    f"{best.quality_score:.1f} with strict gate disabled",
                ]
            )
            log.warning(
                "Generation %s: non-strict fallback accepted attempt %d (score %.1f)",
                record.id,
                best.index,
                best.quality_score,
            )

        current = self._reload(record)
        key = image_key(record.user_id, record.id)
        png = image_to_png_bytes(chosen.image)
        self.object_storage.put(key, png, "image/png")

        sprite_json = build_sprite_json(
            frame_width=record.sprite_size,
            frame_height=record.sprite_size,
            columns=record.columns,
            rows=record.rows,
            frame_count=record.frame_count,
            animation_type=record.animation_type,
            token_usage=token_usage,
            verification=chosen.verification,
            quality=chosen.quality.diagnostics,
        )
        try:
            completed = self.store.update(
                current.transition(
                    GenerationStatus.COMPLETED,
                    image_key=key,
                    sprite_json=sprite_json,
                    quality_warnings=warnings,
                    input_tokens=token_usage.input_tokens,
                    output_tokens=token_usage.output_tokens,
                    total_tokens=record.total_tokens,
                    error_reason=None,
                )
            )
        except InvalidTransitionError:
            self.object_storage.delete(key)
            raise
        if completed.fingerprint:
            self.cache.set(completed.fingerprint, completed.id)

        log.info(
            "Generation %s PASSED on attempt %d/%d (score %.1f, %d input tokens, "
            "spent $%.6f)",
            completed.id,
            chosen.index,
            state.attempts_executed,
            chosen.quality_score,
            token_usage.input_tokens,
            budget.spent,
        )
        if self.metrics is not None:
            self.metrics.record_stop(state.stop_reason, Outcome.SUCCEEDED.value)
        return ControllerResult(
            record=completed,
            outcome=Outcome.SUCCEEDED,
            stop_reason=state.stop_reason,
            attempts_executed=state.attempts_executed,
            max_attempts=max_attempts,
            best_attempt=chosen.index,
            spent_usd=budget.spent,
            image_bytes=png,
        )

    def _fail(
        self,
        record: GenerationRecord,
        state: ControllerState,
        token_usage: TokenUsage,
        max_attempts: int,
        budget: CostBudget,
    ) -> ControllerResult:
        best = state.best
        log = generation_logger(logger, record.id)
        if best is not None:
            warnings = dedupe_warnings(list(best.warnings))
            verification = best.verification
        else:
            warnings = [
                f"Generation stopped after {state.attempts_executed}/{max_attempts} attempts"
            ]
            verification = placeholder_verification(
                record.sprite_size, record.frame_count, record.columns, record.rows
            )

        if state.stop_reason == STOP_TOKEN_BUDGET:
            warnings.insert(0, BUDGET_STOP_WARNING)
            outcome = Outcome.FAILED_BUDGET
        elif state.stop_reason == STOP_QUALITY_STAGNATION:
            warnings.insert(0, STAGNATION_STOP_WARNING)
            outcome = Outcome.FAILED_STAGNATION
        elif verification.passed:
            outcome = Outcome.FAILED_QUALITY
        else:
            outcome = Outcome.FAILED_VERIFICATION

        if verification.passed and warnings:
            error_reason = (
                f"Quality gate rejected output after {state.attempts_executed} attempts"
            )
        else:
            error_reason = verification.summary

        sprite_json = build_sprite_json(
            frame_width=record.sprite_size,
            frame_height=record.sprite_size,
            columns=record.columns,
            rows=record.rows,
            frame_count=record.frame_count,
            animation_type=record.animation_type,
            token_usage=token_usage,
            verification=verification,
            quality=best.quality.diagnostics if best is not None else None,
        )
        failed = self.store.update(
            self._reload(record).transition(
                GenerationStatus.FAILED,
                input_tokens=token_usage.input_tokens,
                output_tokens=token_usage.output_tokens,
                total_tokens=record.total_tokens,
                quality_warnings=warnings,
                error_reason=error_reason[:MAX_ERROR_REASON_LENGTH],
                sprite_json=sprite_json,
            )
        )
        log.warning(
            "Generation %s FAILED (%s) after %d/%d attempts, best=%s: %s",
            failed.id,
            outcome.value,
            state.attempts_executed,
            max_attempts,
            best.index if best is not None else None,
            "; ".join(warnings),
        )
        if self.metrics is not None:
            self.metrics.record_stop(state.stop_reason, outcome.value)
        return ControllerResult(
            record=failed,
            outcome=outcome,
            stop_reason=state.stop_reason,
            attempts_executed=state.attempts_executed,
            max_attempts=max_attempts,
            best_attempt=best.index if best is not None else None,
            spent_usd=budget.spent,
        )
