"""OpenAI image backend (public API or Azure OpenAI).

Uses ``AsyncOpenAI`` with an API key, or ``AsyncAzureOpenAI`` with
Entra ID (``DefaultAzureCredential``) bearer tokens when an Azure
endpoint is configured.  A request that fails because organization
verification is still propagating, or with a 5xx, is retried once on
``gpt-image-1``.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

import httpx

from spritegate.budget import estimate_tokens
from spritegate.constants import FALLBACK_IMAGE_MODEL
from spritegate.errors import (
    BackendAuthError,
    BackendBillingLimitError,
    BackendError,
    BackendRateLimitedError,
    BackendServerError,
    BackendVerificationPendingError,
)
from spritegate.logging import get_logger
from spritegate.models import TokenUsage
from spritegate.providers._base import BackendResult, ImageBackend

logger = get_logger("providers")

_AZURE_SCOPE = "https://cognitiveservices.azure.com/.default"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _error_status(error: BaseException) -> int:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return 0


def is_verification_pending(message: str) -> bool:
    """Whether *message* says model access awaits organization verification."""
    normalized = message.lower()
    return "organization must be verified to use the model" in normalized or (
        "just verified" in normalized and "15 minutes" in normalized
    )


def should_fallback(error: BaseException, model: str) -> bool:
    """Whether a failed request on *model* deserves one retry on the fallback model."""
    if model == FALLBACK_IMAGE_MODEL:
        return False
    status = _error_status(error)
    if status == 403 and is_verification_pending(str(error)):
        return True
    return 500 <= status < 600


def map_backend_error(error: BaseException) -> BackendError:
    """Translate an SDK/transport exception into the backend error taxonomy."""
    if isinstance(error, BackendError):
        return error
    message = str(error) or "OpenAI request failed"
    normalized = message.lower()
    status = _error_status(error)

    if "billing hard limit" in normalized or "insufficient_quota" in normalized:
        return BackendBillingLimitError(
            "OpenAI billing limit reached. Add credits and retry."
        )
    if status == 403 and is_verification_pending(normalized):
        return BackendVerificationPendingError(
            "Model access is pending organization verification propagation. "
            f"Wait up to 15 minutes or choose {FALLBACK_IMAGE_MODEL}."
        )
    if status == 401:
        return BackendAuthError("OpenAI authentication failed. Check OPENAI_API_KEY.")
    if status == 429:
        return BackendRateLimitedError("OpenAI rate limit reached. Please retry shortly.")
    if 500 <= status < 600:
        return BackendServerError(f"OpenAI image generation failed: {message}")
    return BackendError(f"OpenAI image generation failed: {message}")


# ---------------------------------------------------------------------------
# Usage accounting
# ---------------------------------------------------------------------------


def _usage_value(usage: Any, *names: str) -> int | None:
    for name in names:
        value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def token_usage_from_response(usage: Any, prompt: str) -> TokenUsage:
    """Reported token counts, estimated from the prompt where missing.

    Input falls back to ~1 token per 4 prompt characters.  Output falls
    back to ``total - input`` when the total covers the input.
    """
    fallback_input = estimate_tokens(prompt)
    reported_input = _usage_value(usage, "prompt_tokens", "input_tokens") if usage else None
    reported_output = (
        _usage_value(usage, "completion_tokens", "output_tokens") if usage else None
    )
    reported_total = _usage_value(usage, "total_tokens") if usage else None

    input_tokens = reported_input if reported_input and reported_input > 0 else fallback_input
    if reported_output and reported_output > 0:
        output_tokens = reported_output
    elif reported_total is not None and reported_total >= input_tokens:
        output_tokens = reported_total - input_tokens
    else:
        output_tokens = 0
    total = reported_total if reported_total is not None else input_tokens + output_tokens
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=max(0, output_tokens),
        total_tokens=max(0, total),
    )


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class OpenAIImageBackend(ImageBackend):
    """Sprite-sheet generation through the OpenAI Images API.

    Implements the :class:`~spritegate.providers.ImageBackend` interface.
    """

    def __init__(
        self,
        api_key: str | None = None,
        azure_endpoint: str | None = None,
        credential: Any | None = None,
        api_version: str = "2025-04-01-preview",
        http_timeout: float = 60.0,
    ) -> None:
        """Initialize the backend.

        Args:
            api_key: OpenAI API key (public endpoint).
            azure_endpoint: Azure OpenAI resource endpoint.  When set,
                Entra ID authentication is used and *api_key* is ignored.
            credential: Azure credential instance.  If ``None`` and an
                Azure endpoint is set, a ``DefaultAzureCredential`` is
                created and owned by this backend.
            api_version: Azure OpenAI API version.
            http_timeout: Timeout in seconds for image URL downloads.

        Raises:
            BackendAuthError: If neither an API key nor an Azure endpoint
                is provided.
        """
        self._api_key = api_key or ""
        self._endpoint = azure_endpoint or ""
        if not self._api_key and not self._endpoint:
            raise BackendAuthError(
                "OpenAI credentials are required. "
                "Set OPENAI_API_KEY or AZURE_OPENAI_ENDPOINT."
            )
        self._user_credential = credential
        self._owns_credential = credential is None
        self._credential: Any | None = None
        self._api_version = api_version
        self._http_timeout = http_timeout
        self._client: Any | None = None

    def _get_client(self) -> Any:
        """Lazily create and return the OpenAI client."""
        if self._client is not None:
            return self._client

        if not self._endpoint:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key)
            return self._client

        from azure.identity.aio import DefaultAzureCredential, get_bearer_token_provider
        from openai import AsyncAzureOpenAI

        if self._user_credential is not None:
            self._credential = self._user_credential
        else:
            self._credential = DefaultAzureCredential()
        token_provider = get_bearer_token_provider(self._credential, _AZURE_SCOPE)
        self._client = AsyncAzureOpenAI(
            azure_ad_token_provider=token_provider,
            azure_endpoint=self._endpoint,
            api_version=self._api_version,
        )
        return self._client

    async def _request(self, prompt: str, model: str, size: str, user: str) -> Any:
        client = self._get_client()
        return await client.images.generate(
            model=model,
            prompt=prompt,
            background="transparent",
            output_format="png",
            quality="high",
            size=size,
            user=user,
        )

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as http:
                response = await http.get(url)
        except httpx.HTTPError as exc:
            raise BackendError("Failed to download generated image") from exc
        if response.status_code >= 400:
            raise BackendError("Failed to download generated image")
        return response.content

    async def generate(
        self,
        prompt: str,
        model: str,
        size: str,
        user: str,
    ) -> BackendResult:
        """Generate one transparent PNG, falling back to gpt-image-1 once.

        Raises:
            BackendError: Or a subclass, mapped from the SDK failure.
        """
        model_used = model
        logger.info("Requesting sheet from %s (%s)", model, size)
        try:
            response = await self._request(prompt, model_used, size, user)
        except Exception as exc:
            if not should_fallback(exc, model_used):
                mapped = map_backend_error(exc)
                logger.error("Image generation failed: %s", mapped)
                raise mapped from exc
            model_used = FALLBACK_IMAGE_MODEL
            logger.warning(
                "Model %s unavailable (%s); falling back to %s",
                model,
                "verification pending"
                if _error_status(exc) == 403
                else "server error",
                model_used,
            )
            try:
                response = await self._request(prompt, model_used, size, user)
            except Exception as fallback_exc:
                mapped = map_backend_error(fallback_exc)
                logger.error("Fallback image generation failed: %s", mapped)
                raise mapped from fallback_exc

        usage = token_usage_from_response(getattr(response, "usage", None), prompt)
        data = getattr(response, "data", None) or []
        first = data[0] if data else None
        b64 = getattr(first, "b64_json", None) if first is not None else None
        if b64:
            try:
                image_bytes = base64.b64decode(b64)
            except (binascii.Error, ValueError) as exc:
                raise BackendError(f"Failed to decode generated image: {exc}") from exc
        else:
            url = getattr(first, "url", None) if first is not None else None
            if not url:
                raise BackendError("Image generation returned no image payload")
            image_bytes = await self._download(url)

        logger.info(
            "Sheet received from %s (%d bytes, %d input / %d output tokens)",
            model_used,
            len(image_bytes),
            usage.input_tokens,
            usage.output_tokens,
        )
        return BackendResult(
            image_bytes=image_bytes,
            model_used=model_used,
            requested_model=model,
            token_usage=usage,
        )

    async def close(self) -> None:
        """Close the OpenAI client and any owned credential.

        User-supplied credentials are NOT closed.
        """
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring error while closing OpenAI client: %s", exc)
            self._client = None

        if self._owns_credential and self._credential is not None:
            try:
                await self._credential.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring error while closing credential: %s", exc)
            self._credential = None
