"""OpenRouter chat provider: a thin subclass of OpenAICompatibleProvider.

OpenRouter routes to many hosted models through one OpenAI-compatible API.
Its streams report thinking tokens under ``delta.reasoning``.
"""

from openai import AsyncOpenAI

from canopy.providers.openai_compat import OpenAICompatibleProvider

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterProvider(OpenAICompatibleProvider):
    """Chat provider backed by OpenRouter's API."""

    suggested_models = [
        "anthropic/claude-sonnet-4-5",
        "openai/gpt-4o",
        "deepseek/deepseek-r1",
        "meta-llama/llama-4-maverick",
        "qwen/qwen3-235b-a22b",
    ]

    def __init__(self, *, client: AsyncOpenAI | None = None, api_key: str | None = None) -> None:
        if client is not None:
            super().__init__(client)
        else:
            super().__init__(
                AsyncOpenAI(
                    api_key=api_key,
                    base_url=OPENROUTER_BASE_URL,
                    default_headers={"X-Title": "Canopy"},
                )
            )

    @property
    def name(self) -> str:
        return "openrouter"
