"""Shared fixtures for spritegate tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

# Auto-load .env from project root (gitignored).
# This provides OPENAI_API_KEY and other env vars for integration tests.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env", override=False)

from spritegate.config import Settings
from spritegate.fingerprint import FingerprintCache
from spritegate.models import GenerationRecord, GenerationRequest
from spritegate.storage import InMemoryGenerationStore, LocalObjectStorage

from sprite_sheets import DEFAULT_FRAMES, DEFAULT_SIZE

# ---------------------------------------------------------------------------
# Auto-skip integration tests when OpenAI credentials are unavailable
# ---------------------------------------------------------------------------


def _openai_credentials_available() -> bool:
    """Check whether the real image API may be called.

    Returns True when:
    0. Integration tests are explicitly enabled, AND
    1. The OPENAI_API_KEY env var is set.
    """
    if os.environ.get("SPRITEGATE_RUN_INTEGRATION", "").strip().lower() not in (
        "1",
        "true",
        "yes",
        "on",
    ):
        return False
    return bool(os.environ.get("OPENAI_API_KEY", ""))


# Cache the check once per session.
_OPENAI_AVAILABLE: bool | None = None


def _is_openai_available() -> bool:
    global _OPENAI_AVAILABLE  # noqa: PLW0603
    if _OPENAI_AVAILABLE is None:
        _OPENAI_AVAILABLE = _openai_credentials_available()
    return _OPENAI_AVAILABLE


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Auto-skip integration tests when OpenAI is not available."""
    if _is_openai_available():
        return
    skip_marker = pytest.mark.skip(
        reason=(
            "Integration test skipped: set SPRITEGATE_RUN_INTEGRATION=1 and "
            "ensure OPENAI_API_KEY is set."
        )
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

_SETTINGS_ENV = (
    "OPENAI_IMAGE_MODEL",
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_API_VERSION",
    "STRICT_QUALITY_GATE",
    "QUALITY_MIN_SCORE",
    "QUALITY_MAX_ATTEMPTS",
    "MAX_ESTIMATED_GENERATION_COST_USD",
    "WORKER_CONCURRENCY",
    "LOG_LEVEL",
    "LOG_DIRECTORY",
    "LOG_JSON",
    "STORAGE_DIR",
)


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove settings variables so defaults and YAML values are observable.

    Each variable is registered with monkeypatch first, so values a test
    loads from a ``.env`` file are also undone at teardown.
    """
    for name in _SETTINGS_ENV:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


# ---------------------------------------------------------------------------
# Service fixtures (used by unit tests)
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Strict-gate settings with a generous budget and local storage."""
    return Settings(
        openai_api_key="sk-test",
        openai_image_model="gpt-image-1",
        strict_quality_gate=True,
        quality_min_score=85,
        quality_max_attempts=4,
        max_estimated_generation_cost_usd=100.0,
        storage_dir=str(tmp_path / "storage"),
    )


@pytest.fixture()
def store() -> InMemoryGenerationStore:
    return InMemoryGenerationStore()


@pytest.fixture()
def object_storage(tmp_path: Path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "objects")


@pytest.fixture()
def cache() -> FingerprintCache:
    return FingerprintCache()


@pytest.fixture()
def request_payload() -> dict[str, object]:
    """A light request that runs inline: 4 walk frames at 32px in one row."""
    return {
        "user_id": "user-1",
        "prompt": "knight in silver armor",
        "sprite_size": DEFAULT_SIZE,
        "frame_count": DEFAULT_FRAMES,
        "projection": "2D",
        "animation_type": "walk",
        "style_intensity": 70,
        "layout": "row",
    }


@pytest.fixture()
def generation_request(request_payload: dict[str, object]) -> GenerationRequest:
    return GenerationRequest.model_validate(request_payload)


@pytest.fixture()
def pending_record() -> GenerationRecord:
    """A Pending record matching ``request_payload``."""
    return GenerationRecord(
        id="gen-1",
        user_id="user-1",
        theme_prompt="knight in silver armor",
        prompt="Task: create one transparent pixel-art sprite-sheet PNG.\nseed=7",
        sprite_size=DEFAULT_SIZE,
        frame_count=DEFAULT_FRAMES,
        projection="planar",
        animation_type="walk",
        style_intensity=70,
        columns=DEFAULT_FRAMES,
        rows=1,
        seed=7,
        model="gpt-image-1",
        fingerprint="f" * 64,
    )
