"""Shared base class for OpenAI-compatible chat providers.

Handles parameter building, model listing and streaming. OpenAIProvider,
OpenRouterProvider and LlamaCppProvider are thin subclasses that differ
only in client configuration.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from canopy.providers.base import AbortSignal, ChatProvider, ModelInfo, ProviderError

logger = logging.getLogger(__name__)

# Options forwarded as top-level create() kwargs; anything else goes to extra_body.
_NATIVE_OPTIONS = (
    "temperature",
    "top_p",
    "max_tokens",
    "stop",
    "frequency_penalty",
    "presence_penalty",
    "seed",
)


class OpenAICompatibleProvider(ChatProvider):
    """Base provider for any API that speaks the OpenAI chat completions protocol."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def get_models(self) -> list[ModelInfo]:
        try:
            page = await self._client.models.list()
        except OpenAIError as e:
            raise ProviderError(f"{self.name}: failed to list models: {e}") from e
        return [
            ModelInfo(id=m.id, name=m.id, created=getattr(m, "created", None))
            for m in page.data
        ]

    async def post_chat_completions(
        self,
        model: str | None,
        messages: list[dict[str, Any]],
        abort_signal: AbortSignal,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        params = self._build_params(model, messages, options)
        abort_signal.raise_if_aborted()

        try:
            stream = await self._client.chat.completions.create(**params)
        except OpenAIError as e:
            raise ProviderError(f"{self.name}: {e}") from e

        try:
            async for chunk in stream:
                abort_signal.raise_if_aborted()
                yield chunk.model_dump(exclude_none=True)
        except OpenAIError as e:
            raise ProviderError(f"{self.name}: {e}") from e
        finally:
            await stream.close()

    @staticmethod
    def _build_params(
        model: str | None,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Build kwargs dict for client.chat.completions.create()."""
        params: dict[str, Any] = {
            # Single-model local servers accept an empty model name
            "model": model or "",
            "messages": messages,
            "stream": True,
        }

        extra_body: dict[str, Any] = {}
        for key, value in (options or {}).items():
            if value is None:
                continue
            if key in _NATIVE_OPTIONS:
                params[key] = value
            else:
                extra_body[key] = value
        if extra_body:
            params["extra_body"] = extra_body
        return params
