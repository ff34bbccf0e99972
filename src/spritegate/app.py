"""Programmatic API entry point for SpriteGate."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from spritegate.config import Settings, load_settings
from spritegate.fingerprint import FingerprintCache
from spritegate.logging import get_logger
from spritegate.models import GenerationRequest, GenerationStatus
from spritegate.observability import RunMetricsCollector
from spritegate.providers import ImageBackend
from spritegate.service import CreateGenerationResult, SpriteService
from spritegate.storage import GenerationStore, LocalObjectStorage, ObjectStorage
from spritegate.worker import GenerationWorker

logger = get_logger("app")


def create_backend(settings: Settings) -> ImageBackend:
    """Build the OpenAI backend from *settings*.

    Raises:
        BackendAuthError: If no credentials are configured.
    """
    from spritegate.providers.openai_image import OpenAIImageBackend

    return OpenAIImageBackend(
        api_key=settings.openai_api_key or None,
        azure_endpoint=settings.azure_openai_endpoint or None,
        api_version=settings.azure_openai_api_version,
    )


def create_service(
    settings: Settings | None = None,
    backend: ImageBackend | None = None,
    *,
    store: GenerationStore | None = None,
    object_storage: ObjectStorage | None = None,
    cache: FingerprintCache | None = None,
    metrics: RunMetricsCollector | None = None,
    with_worker: bool = False,
) -> SpriteService:
    """Create a fully wired :class:`SpriteService`.

    Args:
        settings: Runtime settings; loaded from the environment if None.
        backend: Image backend; an :class:`OpenAIImageBackend` is built
            from *settings* if None.
        store: Record store; in-memory if None.
        object_storage: Image storage; a :class:`LocalObjectStorage`
            rooted at ``settings.storage_dir`` if None.
        cache: Fingerprint cache; a fresh 24 h cache if None.
        metrics: Optional metrics collector shared by every run.
        with_worker: Attach a :class:`GenerationWorker` so heavy requests
            are queued.  The caller must ``await service.worker.start()``.
    """
    settings = settings or load_settings()
    backend = backend or create_backend(settings)
    object_storage = object_storage or LocalObjectStorage(settings.storage_dir)
    service = SpriteService(
        settings=settings,
        backend=backend,
        object_storage=object_storage,
        store=store,
        cache=cache,
        metrics=metrics,
    )
    if with_worker:
        service.attach_worker(GenerationWorker(service))
    logger.debug(
        "Service ready (model=%s, strict=%s, storage=%s, worker=%s)",
        settings.openai_image_model,
        settings.strict_quality_gate,
        settings.storage_dir,
        with_worker,
    )
    return service


@dataclass
class GenerationOutput:
    """Files written by :func:`run_spritegate`."""

    result: CreateGenerationResult
    image_path: Path | None
    json_path: Path | None


async def run_spritegate(
    request: GenerationRequest | Mapping[str, Any],
    output_dir: Path,
    settings: Settings | None = None,
    backend: ImageBackend | None = None,
    metrics: RunMetricsCollector | None = None,
) -> GenerationOutput:
    """Run one generation inline and write its PNG and JSON export.

    The files are named after the generation id.  No PNG is written for
    a failed generation; its JSON export (with diagnostics) still is.
    """
    settings = settings or load_settings()
    owns_backend = backend is None
    backend = backend or create_backend(settings)
    try:
        service = create_service(settings, backend, metrics=metrics)
        result = await service.create_generation(request)
    finally:
        if owns_backend:
            await backend.close()

    record = result.generation
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    image_path: Path | None = None
    if record.status is GenerationStatus.COMPLETED and record.image_key:
        data = service.object_storage.get(record.image_key)
        if data is not None:
            image_path = output_dir / f"{record.id}.png"
            image_path.write_bytes(data)

    json_path: Path | None = None
    if record.sprite_json is not None:
        json_path = output_dir / f"{record.id}.json"
        json_path.write_text(json.dumps(record.sprite_json, indent=2) + "\n")

    return GenerationOutput(result=result, image_path=image_path, json_path=json_path)
