"""Abstract chat provider interface and shared data types.

A provider streams chat completion chunks as plain dicts in the OpenAI
streaming shape:

    {
        "error": {"message": str},            # optional, aborts the stream
        "model": str,                         # optional
        "choices": [{"delta": {"content": str, "reasoning_content": str, "reasoning": str}}],
        "timings": {"prompt_n": int, "prompt_ms": float, "predicted_n": int, "predicted_ms": float},
    }

Every key is optional. The generation service consumes only this shape.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel


class ModelInfo(BaseModel):
    """A model a provider can serve."""

    id: str
    name: str
    description: str | None = None
    created: int | None = None


class AbortSignal:
    """Read side of an abort handle. Providers check it between chunks."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise AbortError(self.reason or "Generation aborted")


class AbortController:
    """Write side of an abort handle, owned by whoever started the generation."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str | None = None) -> None:
        if self.signal.aborted:
            return
        self.signal.reason = reason
        self.signal._event.set()


class ChatProvider(ABC):
    """Abstract interface for chat completion providers."""

    suggested_models: list[str] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'openai')."""
        ...

    @abstractmethod
    async def get_models(self) -> list[ModelInfo]:
        """Models available from this provider."""
        ...

    @abstractmethod
    def post_chat_completions(
        self,
        model: str | None,
        messages: list[dict[str, Any]],
        abort_signal: AbortSignal,
        options: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Start a streaming completion. Yields chunks until the stream ends.

        Raises AbortError once abort_signal fires (observed at the next chunk
        boundary) and ProviderError if the transport fails.
        """
        ...


class AbortError(Exception):
    """The generation was cancelled by its caller."""


class ProviderError(Exception):
    """The provider reported an error or its transport failed."""
