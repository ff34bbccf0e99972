"""Runtime settings: defaults, optional YAML file, then environment.

Precedence (lowest to highest): field defaults, a YAML settings file,
environment variables.  A ``.env`` file in the working directory is
loaded with python-dotenv before the environment is read; variables
already present in the process environment win.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from spritegate.errors import ConfigError
from spritegate.logging import get_logger
from spritegate.models import ModelProfile

logger = get_logger("config")

_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off")

# Environment variable -> Settings field.
ENV_FIELDS: dict[str, str] = {
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_IMAGE_MODEL": "openai_image_model",
    "AZURE_OPENAI_ENDPOINT": "azure_openai_endpoint",
    "AZURE_OPENAI_API_VERSION": "azure_openai_api_version",
    "STRICT_QUALITY_GATE": "strict_quality_gate",
    "QUALITY_MIN_SCORE": "quality_min_score",
    "QUALITY_MAX_ATTEMPTS": "quality_max_attempts",
    "MAX_ESTIMATED_GENERATION_COST_USD": "max_estimated_generation_cost_usd",
    "WORKER_CONCURRENCY": "worker_concurrency",
    "LOG_LEVEL": "log_level",
    "LOG_DIRECTORY": "log_directory",
    "LOG_JSON": "json_logs",
    "STORAGE_DIR": "storage_dir",
}

_BOOL_FIELDS = {"strict_quality_gate", "json_logs"}


class Settings(BaseModel):
    """Validated runtime settings.

    Attributes:
        openai_api_key: API key for the public OpenAI endpoint.
        openai_image_model: Default image model when a request names none.
        azure_openai_endpoint: When set, the backend talks to Azure OpenAI
            with Entra ID credentials instead of an API key.
        azure_openai_api_version: API version for Azure OpenAI.
        strict_quality_gate: When False, the best passing-settings attempt
            may be accepted even if the quality gate never passed.
        quality_min_score: Minimum quality score (50-100).
        quality_max_attempts: Attempt ceiling (1-8), further capped per model.
        max_estimated_generation_cost_usd: USD ceiling for one generation.
        worker_concurrency: Parallel jobs processed by the queue worker.
        log_level: Logging level name.
        log_directory: Directory for ``spritegate.log``; empty disables it.
        json_logs: Emit JSON log lines.
        storage_dir: Root directory for stored sprite images.
        models: Rate-card overrides keyed by model id.
    """

    openai_api_key: str = ""
    openai_image_model: str = Field(default="gpt-image-1", min_length=1)
    azure_openai_endpoint: str = ""
    azure_openai_api_version: str = "2025-04-01-preview"
    strict_quality_gate: bool = True
    quality_min_score: float = Field(default=85, ge=50, le=100)
    quality_max_attempts: int = Field(default=4, ge=1, le=8)
    max_estimated_generation_cost_usd: float = Field(default=100.0, gt=0)
    worker_concurrency: int = Field(default=2, ge=1, le=32)
    log_level: str = "INFO"
    log_directory: str = ""
    json_logs: bool = False
    storage_dir: str = ".spritegate/storage"
    models: dict[str, ModelProfile] = {}

    model_config = {"frozen": True}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ConfigError(f"{name} must be a boolean flag, got {raw!r}")


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML settings file into a flat dict keyed by field name."""
    if not path.is_file():
        raise ConfigError(f"Settings file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Malformed YAML in {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping at top level, got {type(data).__name__}"
        )

    # Accept both field names and their environment-style spellings.
    merged: dict[str, Any] = {}
    for key, value in data.items():
        field = ENV_FIELDS.get(str(key).upper(), str(key).lower())
        merged[field] = value

    models = merged.get("models")
    if models is not None and not isinstance(models, dict):
        raise ConfigError("'models' section must be a YAML mapping")
    return merged


def _read_environment() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for env_name, field in ENV_FIELDS.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        if field in _BOOL_FIELDS:
            values[field] = _parse_bool(env_name, raw)
        else:
            values[field] = raw
    return values


def load_settings(
    path: str | Path | None = None,
    *,
    use_env: bool = True,
    dotenv_path: str | Path | None = None,
) -> Settings:
    """Load settings from defaults, an optional YAML file and the environment.

    Args:
        path: Optional YAML settings file.
        use_env: Read environment variables (and ``.env``) when True.
        dotenv_path: Explicit ``.env`` location; python-dotenv searches
            upward from the working directory when omitted.

    Returns:
        A frozen :class:`Settings` instance.

    Raises:
        ConfigError: If the file is missing or malformed, or a value fails
            validation.
    """
    values: dict[str, Any] = {}
    if path is not None:
        values.update(_read_yaml(Path(path)))

    if use_env:
        load_dotenv(dotenv_path, override=False)
        values.update(_read_environment())

    try:
        settings = Settings(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc

    logger.debug(
        "Loaded settings (model=%s, min_score=%.1f, max_attempts=%d, strict=%s)",
        settings.openai_image_model,
        settings.quality_min_score,
        settings.quality_max_attempts,
        settings.strict_quality_gate,
    )
    return settings


def validate_config(path: str | Path) -> list[str]:
    """Validate a YAML settings file without touching the environment.

    Performs everything :func:`load_settings` does for the file, plus
    semantic checks that are legal but probably unintended.

    Args:
        path: Path to the YAML settings file.

    Returns:
        List of warning strings (empty if no warnings).

    Raises:
        ConfigError: If the file cannot be loaded or validated.
    """
    settings = load_settings(path, use_env=False)
    warnings: list[str] = []

    if not settings.openai_api_key and not settings.azure_openai_endpoint:
        warnings.append(
            "Neither openai_api_key nor azure_openai_endpoint is set; "
            "credentials must come from the environment"
        )

    if not settings.strict_quality_gate:
        warnings.append(
            "strict_quality_gate is disabled; sheets below the quality gate "
            "may be accepted as fallbacks"
        )

    for model_id, profile in settings.models.items():
        if profile.input_per_m_tokens == 0 and profile.output_per_m_tokens == 0:
            warnings.append(
                f"Model '{model_id}' has zero token rates; the cost ceiling "
                f"cannot stop it"
            )
        if profile.max_attempts > settings.quality_max_attempts:
            warnings.append(
                f"Model '{model_id}' allows {profile.max_attempts} attempts but "
                f"quality_max_attempts caps it at {settings.quality_max_attempts}"
            )

    return warnings
