"""SpriteGate — quality-gated pixel-art sprite-sheet generation."""

from typing import Any

from spritegate.app import create_service, run_spritegate
from spritegate.budget import (
    CostBudget,
    CostEstimate,
    estimate_cost_usd,
    estimate_generation_cost,
    estimate_output_tokens,
    estimate_tokens,
    get_model_profile,
    precheck_generation_cost,
    should_queue,
)
from spritegate.clarifier import clarify_pixel_art
from spritegate.config import Settings, load_settings, validate_config
from spritegate.controller import (
    Attempt,
    AttemptController,
    ControllerResult,
    ControllerState,
    Outcome,
    attempt_seed,
    reduce_attempt,
    warning_signature,
)
from spritegate.errors import (
    BackendAuthError,
    BackendBillingLimitError,
    BackendError,
    BackendRateLimitedError,
    BackendServerError,
    BackendVerificationPendingError,
    BudgetExceededError,
    ConfigError,
    GenerationNotFoundError,
    InvalidTransitionError,
    RequestValidationError,
    SpriteGateError,
)
from spritegate.export import build_sprite_json, parse_sprite_json
from spritegate.fingerprint import FingerprintCache, build_fingerprint
from spritegate.logging import get_logger, setup_logging
from spritegate.models import (
    GenerationRecord,
    GenerationRequest,
    GenerationStatus,
    LayoutMode,
    ModelProfile,
    Projection,
    QualityDiagnostics,
    QualityReport,
    SettingsVerification,
    SpriteLayout,
    TokenUsage,
)
from spritegate.normalizer import normalize_sprite_sheet
from spritegate.observability import RunMetricsCollector, write_run_summary
from spritegate.providers import BackendResult, ImageBackend
from spritegate.quality import evaluate_sprite_quality
from spritegate.repair import RepairResult, repair_empty_frames
from spritegate.service import CreateGenerationResult, SpriteService, resolve_layout
from spritegate.stabilizer import stabilize_sprite_sheet
from spritegate.storage import (
    GenerationStore,
    InMemoryGenerationStore,
    LocalObjectStorage,
    ObjectStorage,
)
from spritegate.verification import verify_requested_settings
from spritegate.worker import GenerationWorker


def __getattr__(name: str) -> Any:
    """Lazy loading for the OpenAI-dependent backend."""
    if name == "OpenAIImageBackend":
        from spritegate.providers import OpenAIImageBackend

        return OpenAIImageBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Attempt",
    "AttemptController",
    "BackendAuthError",
    "BackendBillingLimitError",
    "BackendError",
    "BackendRateLimitedError",
    "BackendResult",
    "BackendServerError",
    "BackendVerificationPendingError",
    "BudgetExceededError",
    "ConfigError",
    "ControllerResult",
    "ControllerState",
    "CostBudget",
    "CostEstimate",
    "CreateGenerationResult",
    "FingerprintCache",
    "GenerationNotFoundError",
    "GenerationRecord",
    "GenerationRequest",
    "GenerationStatus",
    "GenerationStore",
    "GenerationWorker",
    "ImageBackend",
    "InMemoryGenerationStore",
    "InvalidTransitionError",
    "LayoutMode",
    "LocalObjectStorage",
    "ModelProfile",
    "ObjectStorage",
    "OpenAIImageBackend",
    "Outcome",
    "Projection",
    "QualityDiagnostics",
    "QualityReport",
    "RepairResult",
    "RequestValidationError",
    "RunMetricsCollector",
    "Settings",
    "SettingsVerification",
    "SpriteGateError",
    "SpriteLayout",
    "SpriteService",
    "TokenUsage",
    "attempt_seed",
    "build_fingerprint",
    "build_sprite_json",
    "clarify_pixel_art",
    "create_service",
    "estimate_cost_usd",
    "estimate_generation_cost",
    "estimate_output_tokens",
    "estimate_tokens",
    "evaluate_sprite_quality",
    "get_logger",
    "get_model_profile",
    "load_settings",
    "normalize_sprite_sheet",
    "parse_sprite_json",
    "precheck_generation_cost",
    "reduce_attempt",
    "repair_empty_frames",
    "resolve_layout",
    "run_spritegate",
    "setup_logging",
    "should_queue",
    "stabilize_sprite_sheet",
    "validate_config",
    "verify_requested_settings",
    "warning_signature",
    "write_run_summary",
]
