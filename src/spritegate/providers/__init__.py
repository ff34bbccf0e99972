"""Image-generation backends.

Contains the abstract :class:`ImageBackend` and the OpenAI implementation.
The OpenAI backend is imported lazily so that the SDK is only needed
when it is actually used.
"""

from __future__ import annotations

from typing import Any

from spritegate.providers._base import BackendResult, ImageBackend, output_size_for_layout


def __getattr__(name: str) -> Any:
    if name == "OpenAIImageBackend":
        from spritegate.providers.openai_image import OpenAIImageBackend

        return OpenAIImageBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BackendResult",
    "ImageBackend",
    "OpenAIImageBackend",
    "output_size_for_layout",
]
