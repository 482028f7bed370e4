"""Anthropic (Claude) chat provider.

The Messages API streams typed events rather than OpenAI chunks, so this
provider translates them: text deltas become ``content`` deltas, thinking
deltas become ``reasoning_content`` deltas, and the final usage report
becomes ``timings``.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from anthropic import AnthropicError, AsyncAnthropic

from canopy.providers.base import AbortSignal, ChatProvider, ModelInfo, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(ChatProvider):
    """Chat provider backed by Anthropic's Messages API."""

    suggested_models = [
        "claude-sonnet-4-5",
        "claude-opus-4-1",
        "claude-haiku-4-5",
    ]

    def __init__(self, client: AsyncAnthropic) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    async def get_models(self) -> list[ModelInfo]:
        try:
            page = await self._client.models.list()
        except AnthropicError as e:
            raise ProviderError(f"anthropic: failed to list models: {e}") from e
        return [
            ModelInfo(
                id=m.id,
                name=getattr(m, "display_name", None) or m.id,
                created=int(m.created_at.timestamp()) if getattr(m, "created_at", None) else None,
            )
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

        start = time.monotonic()
        input_tokens: int | None = None
        try:
            stream = await self._client.messages.create(**params, stream=True)
        except AnthropicError as e:
            raise ProviderError(f"anthropic: {e}") from e

        try:
            async for event in stream:
                abort_signal.raise_if_aborted()
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                    yield {"model": event.message.model, "choices": [{"delta": {}}]}
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield {"choices": [{"delta": {"content": delta.text}}]}
                    elif delta.type == "thinking_delta":
                        yield {"choices": [{"delta": {"reasoning_content": delta.thinking}}]}
                elif event.type == "message_delta":
                    timings: dict[str, Any] = {
                        "predicted_n": event.usage.output_tokens,
                        "predicted_ms": (time.monotonic() - start) * 1000,
                    }
                    if input_tokens is not None:
                        timings["prompt_n"] = input_tokens
                    yield {"choices": [{"delta": {}}], "timings": timings}
        except AnthropicError as e:
            raise ProviderError(f"anthropic: {e}") from e
        finally:
            await stream.close()

    @classmethod
    def _build_params(
        cls,
        model: str | None,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Build kwargs dict for client.messages.create()."""
        opts = dict(options or {})
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(cls._flatten_text(m["content"]))
            else:
                converted.append({"role": m["role"], "content": cls._convert_content(m["content"])})

        params: dict[str, Any] = {
            "model": model or cls.suggested_models[0],
            "max_tokens": opts.pop("max_tokens", None) or DEFAULT_MAX_TOKENS,
            "messages": converted,
        }
        if system_parts:
            params["system"] = "\n\n".join(system_parts)
        if opts.get("temperature") is not None:
            params["temperature"] = opts["temperature"]
        if opts.get("top_p") is not None:
            params["top_p"] = opts["top_p"]
        if opts.get("top_k") is not None:
            params["top_k"] = opts["top_k"]
        if opts.get("stop"):
            stop = opts["stop"]
            params["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        return params

    @staticmethod
    def _flatten_text(content: str | list[dict[str, Any]]) -> str:
        if isinstance(content, str):
            return content
        return "\n".join(p["text"] for p in content if p.get("type") == "text")

    @staticmethod
    def _convert_content(content: str | list[dict[str, Any]]) -> str | list[dict[str, Any]]:
        """OpenAI content parts to Anthropic content blocks."""
        if isinstance(content, str):
            return content
        blocks: list[dict[str, Any]] = []
        for part in content:
            kind = part.get("type")
            if kind == "text":
                blocks.append({"type": "text", "text": part["text"]})
            elif kind == "image_url":
                url: str = part["image_url"]["url"]
                if url.startswith("data:") and ";base64," in url:
                    header, data = url.split(",", 1)
                    media_type = header[len("data:"):].split(";", 1)[0]
                    blocks.append({
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": data},
                    })
                else:
                    blocks.append({"type": "image", "source": {"type": "url", "url": url}})
            else:
                logger.warning("Anthropic does not accept %r content parts; dropped", kind)
        return blocks
