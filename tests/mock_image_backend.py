"""Mock image backend for unit testing."""

from __future__ import annotations

from typing import Any, Callable, Union

from spritegate.models import TokenUsage
from spritegate.providers import BackendResult, ImageBackend

MockResponse = Union[bytes, BackendResult, BaseException]

DEFAULT_USAGE = TokenUsage(input_tokens=120, output_tokens=0, total_tokens=120)


class MockImageBackend(ImageBackend):
    """A mock image backend that returns pre-configured responses.

    Each response is PNG bytes (wrapped in a :class:`BackendResult` for
    the requested model), a ready-made :class:`BackendResult`, or an
    exception instance that is raised.

    *on_generate*, if given, runs with the 1-based call number before the
    response is produced.

    Usage::

        mock = MockImageBackend(responses=[png_a, BackendServerError("down"), png_b])
        result = await mock.generate(prompt="...", model="gpt-image-1", size="1536x1024", user="u")
        assert result.image_bytes == png_a
    """

    def __init__(
        self,
        responses: list[MockResponse] | None = None,
        usage: TokenUsage = DEFAULT_USAGE,
        on_generate: Callable[[int], None] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._usage = usage
        self._call_history: list[dict[str, Any]] = []
        self._call_index = 0
        self._on_generate = on_generate
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self._call_history)

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self._call_history]

    async def generate(
        self,
        prompt: str,
        model: str,
        size: str,
        user: str,
    ) -> BackendResult:
        """Return (or raise) the next pre-configured response.

        Raises:
            ValueError: If no more responses are configured.
        """
        self._call_history.append(
            {"prompt": prompt, "model": model, "size": size, "user": user}
        )
        if self._on_generate is not None:
            self._on_generate(len(self._call_history))
        if self._call_index >= len(self._responses):
            raise ValueError("MockImageBackend has no more responses configured")
        response = self._responses[self._call_index]
        self._call_index += 1
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, BackendResult):
            return response
        return BackendResult(
            image_bytes=response,
            model_used=model,
            requested_model=model,
            token_usage=self._usage,
        )

    async def close(self) -> None:
        self.closed = True
