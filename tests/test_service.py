"""Tests for spritegate.service — intake, dedup, lifecycle and ownership."""

from __future__ import annotations

import random
from datetime import timedelta
from typing import Any

import pytest

from spritegate.config import Settings
from spritegate.controller import Outcome
from spritegate.errors import (
    BudgetExceededError,
    GenerationNotFoundError,
    RequestValidationError,
)
from spritegate.fingerprint import FingerprintCache
from spritegate.models import (
    GenerationRecord,
    GenerationStatus,
    LayoutMode,
    SpriteLayout,
    utcnow,
)
from spritegate.service import (
    STALE_GENERATION_REASON,
    SpriteService,
    estimate_request,
    resolve_layout,
    validate_request,
)
from spritegate.storage import InMemoryGenerationStore, LocalObjectStorage
from spritegate.worker import GenerationWorker

from mock_image_backend import MockImageBackend
from sprite_sheets import static_png, walker_png


def _service(
    backend: MockImageBackend,
    settings: Settings,
    store: InMemoryGenerationStore,
    object_storage: LocalObjectStorage,
    cache: FingerprintCache,
    **kwargs: Any,
) -> SpriteService:
    return SpriteService(
        settings,
        backend,
        object_storage,
        store=store,
        cache=cache,
        rng=random.Random(1234),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestResolveLayout:
    def test_row(self) -> None:
        assert resolve_layout(6, "row") == SpriteLayout(columns=6, rows=1)

    def test_grid_defaults_to_square(self) -> None:
        assert resolve_layout(5, LayoutMode.GRID) == SpriteLayout(columns=3, rows=2)
        assert resolve_layout(9, "grid") == SpriteLayout(columns=3, rows=3)
        assert resolve_layout(10, "grid") == SpriteLayout(columns=4, rows=3)

    def test_grid_with_columns(self) -> None:
        assert resolve_layout(5, "grid", columns=2) == SpriteLayout(columns=2, rows=3)
        assert resolve_layout(3, "grid", columns=8) == SpriteLayout(columns=8, rows=1)


class TestValidateRequest:
    def test_mapping_accepted(self, request_payload: dict[str, object]) -> None:
        request = validate_request(request_payload)
        assert request.sprite_size == 32
        assert request.projection.value == "planar"

    def test_invalid_fields_reported(self, request_payload: dict[str, object]) -> None:
        with pytest.raises(RequestValidationError, match="sprite_size") as exc_info:
            validate_request({**request_payload, "sprite_size": 16})
        assert exc_info.value.status_code == 400

    def test_markup_prompt_rejected(self, request_payload: dict[str, object]) -> None:
        with pytest.raises(RequestValidationError, match="disallowed characters"):
            validate_request({**request_payload, "prompt": "<script>knight</script>"})


def test_estimate_request(
    request_payload: dict[str, object], settings: Settings
) -> None:
    estimate = estimate_request(request_payload, settings)
    assert estimate.model == "gpt-image-1"
    assert estimate.max_attempts == 4
    assert estimate.output_tokens_per_attempt == 512
    assert estimate.within_budget
    assert not estimate.queued


# ---------------------------------------------------------------------------
# create_generation
# ---------------------------------------------------------------------------


class TestCreateGeneration:
    @pytest.mark.asyncio
    async def test_inline_success(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        service = _service(backend, settings, store, object_storage, cache)

        result = await service.create_generation(request_payload)

        record = result.generation
        assert not result.cache_hit
        assert not result.queued
        assert result.estimate is not None
        assert record.status is GenerationStatus.COMPLETED
        assert (record.columns, record.rows) == (4, 1)
        assert record.seed is not None
        assert record.theme_prompt == "knight in silver armor"
        assert backend.call_count == 1
        assert backend._call_history[0]["size"] == "1536x1024"
        assert backend._call_history[0]["user"] == "user-1"
        assert object_storage.exists(f"sprites/user-1/{record.id}.png")
        assert cache.get(record.fingerprint) == record.id

    @pytest.mark.asyncio
    async def test_identical_request_hits_cache(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        service = _service(backend, settings, store, object_storage, cache)

        first = await service.create_generation(request_payload)
        second = await service.create_generation(request_payload)

        assert second.cache_hit
        assert second.generation.id == first.generation.id
        assert backend.call_count == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_distinct_seeds_generate_separately(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png(), walker_png()])
        service = _service(backend, settings, store, object_storage, cache)

        first = await service.create_generation({**request_payload, "seed": 1})
        second = await service.create_generation({**request_payload, "seed": 2})

        assert not second.cache_hit
        assert first.generation.id != second.generation.id
        assert (first.generation.seed, second.generation.seed) == (1, 2)
        assert backend.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_generation_not_reused(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[static_png()] * 3 + [walker_png()])
        service = _service(backend, settings, store, object_storage, cache)

        failed = await service.create_generation(request_payload)
        assert failed.generation.status is GenerationStatus.FAILED

        retried = await service.create_generation(request_payload)

        assert not retried.cache_hit
        assert retried.generation.id != failed.generation.id
        assert retried.generation.status is GenerationStatus.COMPLETED
        assert cache.get(retried.generation.fingerprint) == retried.generation.id
        assert backend.call_count == 4

    @pytest.mark.asyncio
    async def test_budget_precheck_rejects_before_backend(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        tight = settings.model_copy(update={"max_estimated_generation_cost_usd": 1e-6})
        backend = MockImageBackend(responses=[walker_png()])
        service = _service(backend, tight, store, object_storage, cache)

        with pytest.raises(BudgetExceededError, match="exceeds configured budget") as exc_info:
            await service.create_generation(request_payload)

        assert exc_info.value.status_code == 402
        assert backend.call_count == 0
        assert len(store) == 0
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalid_request_rejected(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend()
        service = _service(backend, settings, store, object_storage, cache)

        with pytest.raises(RequestValidationError):
            await service.create_generation({**request_payload, "frame_count": 0})
        assert backend.call_count == 0

    @pytest.mark.asyncio
    async def test_heavy_request_queued_with_worker(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png(frames=12)])
        service = _service(backend, settings, store, object_storage, cache)
        worker = GenerationWorker(service, concurrency=1, backoff_seconds=0.01)
        service.attach_worker(worker)

        result = await service.create_generation({**request_payload, "frame_count": 12})

        assert result.queued
        assert result.generation.status is GenerationStatus.PENDING
        assert backend.call_count == 0

        await worker.start()
        try:
            await worker.join()
        finally:
            await worker.stop()

        record = service.get_generation(result.generation.id, "user-1")
        assert record.status is GenerationStatus.COMPLETED
        assert (record.columns, record.rows) == (12, 1)
        assert worker.completed == [record.id]

    @pytest.mark.asyncio
    async def test_heavy_request_inline_without_worker(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png(frames=12)])
        service = _service(backend, settings, store, object_storage, cache)

        result = await service.create_generation({**request_payload, "frame_count": 12})

        assert not result.queued
        assert result.estimate is not None and result.estimate.queued
        assert result.generation.status is GenerationStatus.COMPLETED


# ---------------------------------------------------------------------------
# Reads, deletes and regeneration
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_process_unknown_generation(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
    ) -> None:
        service = _service(MockImageBackend(), settings, store, object_storage, cache)
        with pytest.raises(GenerationNotFoundError, match="Generation record not found"):
            await service.process_generation("missing")

    def test_stale_generation_expires(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
    ) -> None:
        store.create(pending_record)
        later = pending_record.updated_at + timedelta(seconds=301)
        service = _service(
            MockImageBackend(), settings, store, object_storage, cache, clock=lambda: later
        )

        record = service.get_generation("gen-1", "user-1")

        assert record.status is GenerationStatus.FAILED
        assert record.error_reason == STALE_GENERATION_REASON
        stored = store.get("gen-1")
        assert stored is not None and stored.status is GenerationStatus.FAILED

    def test_recent_generation_not_expired(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
    ) -> None:
        store.create(pending_record)
        later = pending_record.updated_at + timedelta(seconds=299)
        service = _service(
            MockImageBackend(), settings, store, object_storage, cache, clock=lambda: later
        )

        listed = service.list_generations("user-1")

        assert [r.status for r in listed] == [GenerationStatus.PENDING]

    def test_list_expires_stale_records(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
    ) -> None:
        store.create(pending_record)
        service = _service(
            MockImageBackend(),
            settings,
            store,
            object_storage,
            cache,
            clock=lambda: utcnow() + timedelta(hours=1),
        )

        listed = service.list_generations("user-1")

        assert listed[0].status is GenerationStatus.FAILED
        assert service.list_generations("user-2") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "responses",
        [[walker_png()], [static_png()] * 4],
        ids=["passing-sheet", "failing-sheets"],
    )
    async def test_expired_while_processing_stays_failed(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
        responses: list[bytes],
    ) -> None:
        """A watchdog expiry during a backend call is not overwritten afterwards."""
        store.create(pending_record)
        services: list[SpriteService] = []

        def read_ten_minutes_later(call: int) -> None:
            services[0].get_generation("gen-1", "user-1")

        backend = MockImageBackend(responses=responses, on_generate=read_ten_minutes_later)
        service = _service(
            backend,
            settings,
            store,
            object_storage,
            cache,
            clock=lambda: utcnow() + timedelta(minutes=10),
        )
        services.append(service)

        result = await service.process_generation("gen-1")

        assert backend.call_count == 1
        assert result.outcome is Outcome.FAILED_ERROR
        assert result.record.status is GenerationStatus.FAILED
        final = store.get("gen-1")
        assert final is not None
        assert final.status is GenerationStatus.FAILED
        assert final.error_reason == STALE_GENERATION_REASON
        assert final.image_key is None
        assert not object_storage.exists("sprites/user-1/gen-1.png")
        assert cache.get("f" * 64) is None

    def test_watchdog_yields_to_finished_record(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
    ) -> None:
        store.create(pending_record)
        processing = store.update(pending_record.transition(GenerationStatus.PROCESSING))
        store.update(processing.transition(GenerationStatus.COMPLETED, image_key="k.png"))
        service = _service(
            MockImageBackend(),
            settings,
            store,
            object_storage,
            cache,
            clock=lambda: utcnow() + timedelta(hours=1),
        )

        record = service._expire_if_stale(processing)

        assert record.status is GenerationStatus.COMPLETED
        assert record.image_key == "k.png"

    def test_other_users_generation_hidden(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        pending_record: GenerationRecord,
    ) -> None:
        store.create(pending_record)
        service = _service(MockImageBackend(), settings, store, object_storage, cache)

        with pytest.raises(GenerationNotFoundError) as exc_info:
            service.get_generation("gen-1", "user-2")
        assert exc_info.value.status_code == 404
        with pytest.raises(GenerationNotFoundError):
            service.delete_generation("gen-1", "user-2")
        assert store.get("gen-1") is not None

    @pytest.mark.asyncio
    async def test_delete_removes_image_and_cache(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        service = _service(backend, settings, store, object_storage, cache)
        record = (await service.create_generation(request_payload)).generation
        assert record.image_key is not None

        service.delete_generation(record.id, "user-1")

        assert store.get(record.id) is None
        assert not object_storage.exists(record.image_key)
        assert cache.get(record.fingerprint) is None
        with pytest.raises(GenerationNotFoundError):
            service.get_generation(record.id, "user-1")

    @pytest.mark.asyncio
    async def test_regeneration_request_round_trips_parameters(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        service = _service(backend, settings, store, object_storage, cache)
        record = (
            await service.create_generation({**request_payload, "style_intensity": 40})
        ).generation

        request = service.build_regeneration_request(record.id, "user-1")

        assert request.prompt == "knight in silver armor"
        assert request.style_intensity == 40
        assert request.layout is LayoutMode.ROW
        assert request.columns == 4
        assert request.seed == record.seed
        assert request.model == "gpt-image-1"

    @pytest.mark.asyncio
    async def test_regenerate_bypasses_cache(
        self,
        settings: Settings,
        store: InMemoryGenerationStore,
        object_storage: LocalObjectStorage,
        cache: FingerprintCache,
        request_payload: dict[str, object],
    ) -> None:
        backend = MockImageBackend(responses=[walker_png(), walker_png()])
        service = _service(backend, settings, store, object_storage, cache)
        original = (await service.create_generation(request_payload)).generation

        result = await service.regenerate(original.id, "user-1")

        assert not result.cache_hit
        assert result.generation.id != original.id
        assert result.generation.status is GenerationStatus.COMPLETED
        assert backend.call_count == 2
        assert len(store) == 2
