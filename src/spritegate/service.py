"""Generation service: request intake, deduplication and record lifecycle.

:class:`SpriteService` is the entry point used by the CLI and by any
outer transport.  It validates requests, resolves the grid layout,
rejects requests whose worst-case spend exceeds the budget, deduplicates
through the fingerprint cache, and either runs the attempt controller
inline or hands the generation to the queue worker.
"""

from __future__ import annotations

import math
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Mapping

from pydantic import ValidationError

from spritegate.budget import (
    CostEstimate,
    estimate_generation_cost,
    get_model_profile,
    precheck_generation_cost,
)
from spritegate.config import Settings
from spritegate.constants import (
    LIST_GENERATIONS_LIMIT,
    MAX_ERROR_REASON_LENGTH,
    SEED_LIMIT,
    STALE_GENERATION_SECONDS,
)
from spritegate.controller import AttemptController, ControllerResult
from spritegate.errors import (
    GenerationNotFoundError,
    InvalidTransitionError,
    RequestValidationError,
)
from spritegate.fingerprint import FingerprintCache, build_fingerprint
from spritegate.logging import get_logger
from spritegate.models import (
    GenerationRecord,
    GenerationRequest,
    GenerationStatus,
    LayoutMode,
    SpriteLayout,
    utcnow,
)
from spritegate.observability import RunMetricsCollector
from spritegate.prompts import build_sprite_prompt
from spritegate.providers import ImageBackend
from spritegate.storage import GenerationStore, InMemoryGenerationStore, ObjectStorage

if TYPE_CHECKING:
    from spritegate.worker import GenerationWorker

logger = get_logger("service")

STALE_GENERATION_REASON = "Generation did not complete and timed out. Please regenerate."


def resolve_layout(
    frame_count: int, layout: LayoutMode | str, columns: int | None = None
) -> SpriteLayout:
    """Grid geometry for a request.

    ``row`` puts every frame in one strip.  ``grid`` uses *columns* (or
    ``ceil(sqrt(frame_count))``) and as many rows as needed.

    Raises:
        RequestValidationError: If the frames do not fit the grid.
    """
    if LayoutMode(layout) is LayoutMode.ROW:
        resolved = SpriteLayout(columns=frame_count, rows=1)
    else:
        final_columns = columns or max(1, math.ceil(math.sqrt(frame_count)))
        resolved = SpriteLayout(
            columns=final_columns, rows=math.ceil(frame_count / final_columns)
        )
    if frame_count > resolved.capacity:
        raise RequestValidationError(
            f"Frame count {frame_count} exceeds grid capacity "
            f"{resolved.columns}x{resolved.rows}"
        )
    return resolved


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid generation request"


def validate_request(request: GenerationRequest | Mapping[str, Any]) -> GenerationRequest:
    """Coerce *request* into a :class:`GenerationRequest`.

    Raises:
        RequestValidationError: If any field is missing or invalid.
    """
    if isinstance(request, GenerationRequest):
        return request
    try:
        return GenerationRequest.model_validate(dict(request))
    except ValidationError as exc:
        raise RequestValidationError(_format_validation_error(exc)) from exc


def build_generation_prompt(
    request: GenerationRequest,
    layout: SpriteLayout,
    model: str,
    seed: int | None,
    settings: Settings,
) -> str:
    """Full generation prompt for *request*, phrased for *model*'s profile."""
    profile = get_model_profile(model, settings.models)
    return build_sprite_prompt(
        theme_prompt=request.prompt,
        sprite_size=request.sprite_size,
        frame_count=request.frame_count,
        projection=request.projection.prompt_label,
        animation_type=request.animation_type,
        style_intensity=request.style_intensity,
        columns=layout.columns,
        rows=layout.rows,
        seed=seed,
        compact=profile.compact_prompt,
    )


def estimate_request(
    request: GenerationRequest | Mapping[str, Any],
    settings: Settings,
    prompt: str | None = None,
) -> CostEstimate:
    """Worst-case cost of *request* without creating anything.

    Raises:
        RequestValidationError: If the request is malformed.
    """
    request = validate_request(request)
    layout = resolve_layout(request.frame_count, request.layout, request.columns)
    model = request.model or settings.openai_image_model
    if prompt is None:
        prompt = build_generation_prompt(request, layout, model, request.seed, settings)
    return estimate_generation_cost(
        model=model,
        prompt=prompt,
        sprite_size=request.sprite_size,
        frame_count=request.frame_count,
        columns=layout.columns,
        rows=layout.rows,
        configured_max_attempts=settings.quality_max_attempts,
        budget_usd=settings.max_estimated_generation_cost_usd,
        overrides=settings.models,
    )


@dataclass
class CreateGenerationResult:
    """Result of :meth:`SpriteService.create_generation`.

    Attributes:
        generation: The new record, the cached one on a cache hit, or the
            finished record when processed inline.
        cache_hit: True when an identical earlier request was reused.
        queued: True when the generation was handed to the worker.
        estimate: Worst-case cost estimate computed for the request.
    """

    generation: GenerationRecord
    cache_hit: bool
    queued: bool
    estimate: CostEstimate | None = None


class SpriteService:
    """Coordinates requests, records, the controller and the worker."""

    def __init__(
        self,
        settings: Settings,
        backend: ImageBackend,
        object_storage: ObjectStorage,
        store: GenerationStore | None = None,
        cache: FingerprintCache | None = None,
        metrics: RunMetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.object_storage = object_storage
        self.store = store if store is not None else InMemoryGenerationStore()
        self.cache = cache if cache is not None else FingerprintCache()
        self.metrics = metrics
        self.worker: GenerationWorker | None = None
        self._clock = clock
        self._rng = rng or random.Random()
        self.controller = AttemptController(
            backend=backend,
            store=self.store,
            object_storage=object_storage,
            cache=self.cache,
            settings=settings,
            metrics=metrics,
        )

    def attach_worker(self, worker: GenerationWorker) -> None:
        """Route heavy requests through *worker* instead of processing inline."""
        self.worker = worker

    # -- intake ----------------------------------------------------------------

    def _reusable(self, generation_id: str, user_id: str) -> GenerationRecord | None:
        cached = self.store.get(generation_id)
        if cached is None or cached.user_id != user_id:
            return None
        if cached.status is GenerationStatus.FAILED:
            return None
        return cached

    async def create_generation(
        self,
        request: GenerationRequest | Mapping[str, Any],
        *,
        use_cache: bool = True,
    ) -> CreateGenerationResult:
        """Accept a request and start (or reuse) its generation.

        Args:
            request: The request, as a model or a plain mapping.
            use_cache: When False, an existing fingerprint entry is
                replaced rather than reused.

        Raises:
            RequestValidationError: If the request is malformed.
            BudgetExceededError: If the worst-case spend exceeds the budget.
        """
        request = validate_request(request)
        layout = resolve_layout(request.frame_count, request.layout, request.columns)
        model = request.model or self.settings.openai_image_model
        seed = request.seed if request.seed is not None else self._rng.randrange(SEED_LIMIT)
        prompt = build_generation_prompt(request, layout, model, seed, self.settings)

        estimate = estimate_request(request, self.settings, prompt=prompt)
        precheck_generation_cost(estimate)

        fingerprint = build_fingerprint(request, layout, model)
        generation_id = uuid.uuid4().hex
        if use_cache:
            existing_id = self.cache.set_if_absent(fingerprint, generation_id)
            if existing_id != generation_id:
                cached = self._reusable(existing_id, request.user_id)
                if cached is not None:
                    logger.info(
                        "Cache hit for %s: reusing generation %s (%s)",
                        request.user_id,
                        cached.id,
                        cached.status.value,
                    )
                    return CreateGenerationResult(
                        generation=cached, cache_hit=True, queued=False, estimate=estimate
                    )
                self.cache.set(fingerprint, generation_id)
        else:
            self.cache.set(fingerprint, generation_id)

        record = self.store.create(
            GenerationRecord(
                id=generation_id,
                user_id=request.user_id,
                theme_prompt=request.prompt,
                prompt=prompt,
                sprite_size=request.sprite_size,
                frame_count=request.frame_count,
                projection=request.projection,
                animation_type=request.animation_type,
                style_intensity=request.style_intensity,
                columns=layout.columns,
                rows=layout.rows,
                seed=seed,
                model=model,
                fingerprint=fingerprint,
            )
        )
        logger.info(
            "Created generation %s for %s (%d frames, %dx%d, model=%s, est $%.4f)",
            record.id,
            record.user_id,
            record.frame_count,
            record.columns,
            record.rows,
            model,
            estimate.estimated_cost_usd,
        )

        if estimate.queued and self.worker is not None:
            await self.worker.enqueue(record.id)
            return CreateGenerationResult(
                generation=record, cache_hit=False, queued=True, estimate=estimate
            )

        result = await self.process_generation(record.id)
        return CreateGenerationResult(
            generation=result.record, cache_hit=False, queued=False, estimate=estimate
        )

    async def process_generation(
        self, generation_id: str, *, record_failure: bool = True
    ) -> ControllerResult:
        """Run the attempt controller for *generation_id*.

        An unexpected error marks the record Failed with a truncated
        reason and is then re-raised.

        Raises:
            GenerationNotFoundError: If the id is unknown.
        """
        record = self.store.get(generation_id)
        if record is None:
            raise GenerationNotFoundError("Generation record not found")
        return await self.controller.run(record, record_failure=record_failure)

    # -- reads -----------------------------------------------------------------

    def _expire_if_stale(self, record: GenerationRecord) -> GenerationRecord:
        if record.status.is_terminal:
            return record
        age = self._clock() - record.updated_at
        if age <= timedelta(seconds=STALE_GENERATION_SECONDS):
            return record
        logger.warning(
            "Generation %s stale in %s for %ds; marking failed",
            record.id,
            record.status.value,
            int(age.total_seconds()),
        )
        try:
            return self.store.update(
                record.transition(
                    GenerationStatus.FAILED,
                    error_reason=STALE_GENERATION_REASON[:MAX_ERROR_REASON_LENGTH],
                )
            )
        except InvalidTransitionError:
            # Finished between the read and the write.
            return self.store.get(record.id) or record

    def _owned(self, generation_id: str, user_id: str) -> GenerationRecord:
        record = self.store.get(generation_id)
        if record is None or record.user_id != user_id:
            raise GenerationNotFoundError("Generation not found")
        return record

    def get_generation(self, generation_id: str, user_id: str) -> GenerationRecord:
        """Fetch one of *user_id*'s generations, expiring it if stale.

        Raises:
            GenerationNotFoundError: If missing or owned by someone else.
        """
        return self._expire_if_stale(self._owned(generation_id, user_id))

    def list_generations(
        self, user_id: str, limit: int = LIST_GENERATIONS_LIMIT
    ) -> list[GenerationRecord]:
        """Newest-first generations of *user_id*, stale ones expired."""
        return [
            self._expire_if_stale(record)
            for record in self.store.list_for_user(user_id, limit=limit)
        ]

    def delete_generation(self, generation_id: str, user_id: str) -> None:
        """Remove a generation, its stored image and its cache entry.

        Raises:
            GenerationNotFoundError: If missing or owned by someone else.
        """
        record = self._owned(generation_id, user_id)
        if record.image_key:
            self.object_storage.delete(record.image_key)
        if record.fingerprint and self.cache.get(record.fingerprint) == record.id:
            self.cache.delete(record.fingerprint)
        self.store.delete(record.id)
        logger.info("Deleted generation %s", record.id)

    def build_regeneration_request(
        self, generation_id: str, user_id: str
    ) -> GenerationRequest:
        """Rebuild the request that produced *generation_id*.

        Raises:
            GenerationNotFoundError: If missing or owned by someone else.
        """
        record = self._owned(generation_id, user_id)
        return GenerationRequest(
            user_id=record.user_id,
            prompt=record.theme_prompt,
            sprite_size=record.sprite_size,
            frame_count=record.frame_count,
            projection=record.projection,
            animation_type=record.animation_type,
            style_intensity=record.style_intensity,
            layout=LayoutMode.ROW if record.rows == 1 else LayoutMode.GRID,
            columns=record.columns,
            seed=record.seed,
            model=record.model,
        )

    async def regenerate(self, generation_id: str, user_id: str) -> CreateGenerationResult:
        """Start a fresh generation with the same parameters, bypassing the cache."""
        request = self.build_regeneration_request(generation_id, user_id)
        return await self.create_generation(request, use_cache=False)
