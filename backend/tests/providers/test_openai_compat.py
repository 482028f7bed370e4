"""Contract tests for the OpenAI-compatible providers with a mocked AsyncOpenAI client."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from canopy.providers.base import AbortController, AbortError, ProviderError
from canopy.providers.llamacpp import LlamaCppProvider
from canopy.providers.openai import OpenAIProvider
from canopy.providers.openrouter import OpenRouterProvider


class _MockStream:
    """Async-iterable stand-in for openai.AsyncStream."""

    def __init__(self, chunks: list[MagicMock], fail_with: Exception | None = None) -> None:
        self._chunks = chunks
        self._fail_with = fail_with
        self.close = AsyncMock()

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._fail_with is not None:
            raise self._fail_with


def _make_chunk(data: dict) -> MagicMock:
    chunk = MagicMock()
    chunk.model_dump.return_value = data
    return chunk


def _make_stream_chunks() -> list[MagicMock]:
    return [
        _make_chunk({"model": "qwen3", "choices": [{"delta": {"role": "assistant"}}]}),
        _make_chunk({"choices": [{"delta": {"reasoning_content": "hmm"}}]}),
        _make_chunk({"choices": [{"delta": {"content": "Hello"}}]}),
        _make_chunk({
            "choices": [{"delta": {}, "finish_reason": "stop"}],
            "timings": {"prompt_n": 4, "predicted_n": 2},
        }),
    ]


def _make_mock_client(stream: _MockStream | None = None) -> AsyncMock:
    client = AsyncMock()
    client.chat = MagicMock()
    client.chat.completions = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=stream or _MockStream(_make_stream_chunks())
    )
    return client


async def _collect(provider, options=None, controller=None) -> list[dict]:
    controller = controller or AbortController()
    return [
        chunk async for chunk in provider.post_chat_completions(
            "qwen3", [{"role": "user", "content": "Hi"}], controller.signal, options,
        )
    ]


class TestProviderNames:
    def test_names(self):
        client = _make_mock_client()
        assert OpenAIProvider(client=client).name == "openai"
        assert OpenRouterProvider(client=client).name == "openrouter"
        assert LlamaCppProvider(client=client).name == "llamacpp"
        assert LlamaCppProvider(client=client, provider_name="lmstudio").name == "lmstudio"

    def test_default_clients_are_built(self):
        assert OpenRouterProvider(api_key="sk-or-test")._client.base_url.host == "openrouter.ai"
        local = LlamaCppProvider(base_url="http://127.0.0.1:9000/v1")
        assert local._client.base_url.port == 9000


class TestStreaming:
    async def test_yields_chunk_dicts(self):
        provider = LlamaCppProvider(client=_make_mock_client())
        chunks = await _collect(provider)
        assert chunks[0]["model"] == "qwen3"
        assert chunks[1]["choices"][0]["delta"]["reasoning_content"] == "hmm"
        assert chunks[2]["choices"][0]["delta"]["content"] == "Hello"
        assert chunks[3]["timings"] == {"prompt_n": 4, "predicted_n": 2}

    async def test_request_params(self):
        client = _make_mock_client()
        provider = OpenAIProvider(client=client)
        await _collect(provider, {
            "temperature": 0.7, "max_tokens": 256, "top_k": 40, "min_p": 0.05, "seed": None,
        })
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "qwen3"
        assert kwargs["stream"] is True
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
        assert kwargs["temperature"] == 0.7
        assert kwargs["max_tokens"] == 256
        assert kwargs["extra_body"] == {"top_k": 40, "min_p": 0.05}
        assert "seed" not in kwargs

    async def test_no_extra_body_without_extra_options(self):
        client = _make_mock_client()
        await _collect(OpenAIProvider(client=client), {"temperature": 1.0})
        assert "extra_body" not in client.chat.completions.create.call_args.kwargs

    async def test_missing_model_sends_empty_name(self):
        client = _make_mock_client()
        provider = LlamaCppProvider(client=client)
        async for _ in provider.post_chat_completions(None, [], AbortController().signal):
            pass
        assert client.chat.completions.create.call_args.kwargs["model"] == ""

    async def test_stream_is_closed(self):
        stream = _MockStream(_make_stream_chunks())
        await _collect(LlamaCppProvider(client=_make_mock_client(stream)))
        stream.close.assert_awaited_once()


class TestAbort:
    async def test_abort_before_request(self):
        client = _make_mock_client()
        controller = AbortController()
        controller.abort("stop")
        with pytest.raises(AbortError):
            await _collect(LlamaCppProvider(client=client), controller=controller)
        client.chat.completions.create.assert_not_called()

    async def test_abort_mid_stream_closes_stream(self):
        stream = _MockStream(_make_stream_chunks())
        provider = LlamaCppProvider(client=_make_mock_client(stream))
        controller = AbortController()
        received = []
        with pytest.raises(AbortError, match="Stopped"):
            async for chunk in provider.post_chat_completions(
                "qwen3", [], controller.signal,
            ):
                received.append(chunk)
                controller.abort("Stopped by user")
        assert len(received) == 1
        stream.close.assert_awaited_once()


class TestErrors:
    async def test_request_failure(self):
        client = _make_mock_client()
        client.chat.completions.create = AsyncMock(side_effect=OpenAIError("connection refused"))
        with pytest.raises(ProviderError, match="llamacpp: connection refused"):
            await _collect(LlamaCppProvider(client=client))

    async def test_failure_mid_stream(self):
        stream = _MockStream(_make_stream_chunks()[:1], fail_with=OpenAIError("reset"))
        with pytest.raises(ProviderError, match="reset"):
            await _collect(OpenRouterProvider(client=_make_mock_client(stream)))
        stream.close.assert_awaited_once()


class TestGetModels:
    async def test_lists_models(self):
        client = _make_mock_client()
        model = MagicMock()
        model.id = "gpt-4o"
        model.created = 1700000000
        page = MagicMock()
        page.data = [model]
        client.models = MagicMock()
        client.models.list = AsyncMock(return_value=page)

        models = await OpenAIProvider(client=client).get_models()
        assert [(m.id, m.name, m.created) for m in models] == [("gpt-4o", "gpt-4o", 1700000000)]

    async def test_list_failure(self):
        client = _make_mock_client()
        client.models = MagicMock()
        client.models.list = AsyncMock(side_effect=OpenAIError("unauthorized"))
        with pytest.raises(ProviderError, match="failed to list models"):
            await OpenAIProvider(client=client).get_models()
