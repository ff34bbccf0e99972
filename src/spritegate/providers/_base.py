"""Base class and result type for image-generation backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from spritegate.models import TokenUsage


@dataclass
class BackendResult:
    """Raw output of one backend call.

    Attributes:
        image_bytes: Encoded image exactly as returned (normally PNG).
        model_used: Model that produced the image; differs from the
            requested model after a fallback.
        requested_model: Model the caller asked for.
        token_usage: Reported (or estimated) token counts.
    """

    image_bytes: bytes
    model_used: str
    requested_model: str
    token_usage: TokenUsage

    @property
    def switched_model(self) -> bool:
        return self.model_used != self.requested_model


def output_size_for_layout(columns: int, rows: int) -> str:
    """Pick the backend canvas closest to the grid's aspect ratio."""
    if columns > rows:
        return "1536x1024"
    if rows > columns:
        return "1024x1536"
    return "1024x1024"


class ImageBackend(ABC):
    """Abstract base for sprite-sheet image generation backends."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: str,
        size: str,
        user: str,
    ) -> BackendResult:
        """Generate one transparent PNG for *prompt*.

        Args:
            prompt: Full generation prompt.
            model: Requested model id.
            size: Backend canvas size such as ``"1536x1024"``.
            user: End-user identifier forwarded for abuse tracking.

        Returns:
            A :class:`BackendResult`.

        Raises:
            BackendError: Or one of its subclasses on failure.
        """

    @abstractmethod
    async def close(self) -> None:
        """Clean up backend resources."""

    async def __aenter__(self) -> ImageBackend:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
