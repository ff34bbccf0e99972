"""Tests for the programmatic API in spritegate.app."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from spritegate.app import create_backend, create_service, run_spritegate
from spritegate.config import Settings
from spritegate.errors import BudgetExceededError
from spritegate.models import GenerationStatus
from spritegate.observability import RunMetricsCollector
from spritegate.providers.openai_image import OpenAIImageBackend
from spritegate.storage import LocalObjectStorage
from spritegate.worker import GenerationWorker

from mock_image_backend import MockImageBackend
from sprite_sheets import static_png, walker_png


class TestCreateService:
    def test_defaults(self, settings: Settings) -> None:
        backend = MockImageBackend()
        service = create_service(settings, backend)

        assert service.backend is backend
        assert isinstance(service.object_storage, LocalObjectStorage)
        assert service.object_storage.root == Path(settings.storage_dir)
        assert service.worker is None

    def test_with_worker(self, settings: Settings) -> None:
        service = create_service(settings, MockImageBackend(), with_worker=True)
        assert isinstance(service.worker, GenerationWorker)
        assert service.worker.service is service

    def test_create_backend_uses_settings_key(self, settings: Settings) -> None:
        backend = create_backend(settings)
        assert isinstance(backend, OpenAIImageBackend)


class TestRunSpriteGate:
    @pytest.mark.asyncio
    async def test_writes_png_and_json(
        self,
        settings: Settings,
        request_payload: dict[str, object],
        tmp_path: Path,
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        metrics = RunMetricsCollector()

        output = await run_spritegate(
            request_payload, tmp_path / "out", settings=settings, backend=backend, metrics=metrics
        )

        record = output.result.generation
        assert record.status is GenerationStatus.COMPLETED
        assert output.image_path == tmp_path / "out" / f"{record.id}.png"
        assert output.image_path.read_bytes()[:8] == b"\x89PNG\r\n\x1a\n"
        assert output.json_path is not None
        exported = json.loads(output.json_path.read_text())
        assert exported["kind"] == "sprite-sheet"
        assert exported["columns"] == 4
        assert metrics.snapshot()["attempts_total"] == 1
        assert not backend.closed

    @pytest.mark.asyncio
    async def test_failed_generation_writes_only_json(
        self,
        settings: Settings,
        request_payload: dict[str, object],
        tmp_path: Path,
    ) -> None:
        backend = MockImageBackend(responses=[static_png()] * 4)

        output = await run_spritegate(
            request_payload, tmp_path / "out", settings=settings, backend=backend
        )

        assert output.result.generation.status is GenerationStatus.FAILED
        assert output.image_path is None
        assert output.json_path is not None
        exported = json.loads(output.json_path.read_text())
        assert exported["quality"]["score"] == 74.0
        assert list((tmp_path / "out").glob("*.png")) == []

    @pytest.mark.asyncio
    async def test_owned_backend_closed(
        self,
        settings: Settings,
        request_payload: dict[str, object],
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        backend = MockImageBackend(responses=[walker_png()])
        monkeypatch.setattr("spritegate.app.create_backend", lambda _settings: backend)

        await run_spritegate(request_payload, tmp_path / "out", settings=settings)

        assert backend.closed

    @pytest.mark.asyncio
    async def test_owned_backend_closed_on_error(
        self,
        settings: Settings,
        request_payload: dict[str, object],
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        tight = settings.model_copy(update={"max_estimated_generation_cost_usd": 1e-6})
        backend = MockImageBackend()
        monkeypatch.setattr("spritegate.app.create_backend", lambda _settings: backend)

        with pytest.raises(BudgetExceededError):
            await run_spritegate(request_payload, tmp_path / "out", settings=tight)

        assert backend.closed
        assert not (tmp_path / "out").exists()
