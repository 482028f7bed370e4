"""llama.cpp server chat provider.

Connects to a local llama.cpp ``llama-server`` (or any other server that
speaks the OpenAI chat completions protocol). llama.cpp adds a ``timings``
object to its stream chunks and reports thinking tokens under
``delta.reasoning_content``; both pass through unchanged.
"""

from openai import AsyncOpenAI

from canopy.providers.openai_compat import OpenAICompatibleProvider

DEFAULT_LLAMACPP_BASE_URL = "http://localhost:8080/v1"


class LlamaCppProvider(OpenAICompatibleProvider):
    """Chat provider for a local OpenAI-compatible inference server."""

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        base_url: str = DEFAULT_LLAMACPP_BASE_URL,
        api_key: str = "",
        provider_name: str = "llamacpp",
    ) -> None:
        self._provider_name = provider_name
        if client is not None:
            super().__init__(client)
        else:
            super().__init__(
                AsyncOpenAI(
                    api_key=api_key or "not-needed",
                    base_url=base_url,
                )
            )

    @property
    def name(self) -> str:
        return self._provider_name
