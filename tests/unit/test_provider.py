"""
Unit tests for the completion provider adapter.
"""

import asyncio
from contextlib import aclosing

import httpx
import pytest
from groq import APIConnectionError, APITimeoutError, AuthenticationError, RateLimitError

from services.api.src.llm import CompletionProvider, translate_provider_error
from shared.utils import (
    InvalidInputError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)

GROQ_URL = "https://api.groq.com/openai/v1/chat/completions"


def _response(status_code: int) -> httpx.Response:
    return httpx.Response(status_code, request=httpx.Request("POST", GROQ_URL))


class TestProviderInitialization:
    """Tests for provider construction."""

    def test_requires_api_key_without_client(self):
        with pytest.raises(ValueError):
            CompletionProvider(api_key="")

    def test_builds_real_client(self):
        provider = CompletionProvider(api_key="test_key", model="llama-3.1-8b-instant")

        assert provider.model == "llama-3.1-8b-instant"
        assert provider.client is not None

    def test_fixed_generation_policy(self):
        assert CompletionProvider.MAX_TOKENS == 1000
        assert CompletionProvider.TEMPERATURE == 0.7


class TestComplete:
    """Tests for single-shot completions."""

    @pytest.mark.asyncio
    async def test_complete_returns_text(self, provider, mock_groq_client):
        messages = [
            {"role": "system", "content": "No documents uploaded."},
            {"role": "user", "content": "Hello"},
        ]

        completion = await provider.complete(messages)

        assert completion.text == "Sure, here is what the documents say."
        assert completion.finish_reason == "stop"
        assert completion.usage["total_tokens"] == 49
        mock_groq_client.chat.completions.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_applies_fixed_policy(self, provider, mock_groq_client):
        messages = [{"role": "user", "content": "Hello"}]

        await provider.complete(messages)

        kwargs = mock_groq_client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == messages
        assert kwargs["max_tokens"] == CompletionProvider.MAX_TOKENS
        assert kwargs["temperature"] == CompletionProvider.TEMPERATURE
        assert kwargs["model"] == provider.model

    @pytest.mark.asyncio
    async def test_complete_rejects_empty_messages(self, provider, mock_groq_client):
        with pytest.raises(InvalidInputError):
            await provider.complete([])

        mock_groq_client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [None, "", "   "])
    async def test_complete_empty_content(self, provider, mock_groq_client, completion_response, content):
        mock_groq_client.chat.completions.create.return_value = completion_response(content)

        with pytest.raises(ProviderResponseError):
            await provider.complete([{"role": "user", "content": "Hello"}])

    @pytest.mark.asyncio
    async def test_complete_no_choices(self, provider, mock_groq_client, completion_response):
        response = completion_response("unused")
        response.choices = []
        mock_groq_client.chat.completions.create.return_value = response

        with pytest.raises(ProviderResponseError):
            await provider.complete([{"role": "user", "content": "Hello"}])

    @pytest.mark.asyncio
    async def test_complete_rate_limit(self, provider, mock_groq_client):
        mock_groq_client.chat.completions.create.side_effect = RateLimitError(
            "Too many requests", response=_response(429), body=None
        )

        with pytest.raises(ProviderRateLimitError):
            await provider.complete([{"role": "user", "content": "Hello"}])

    @pytest.mark.asyncio
    async def test_complete_auth_failure(self, provider, mock_groq_client):
        mock_groq_client.chat.completions.create.side_effect = AuthenticationError(
            "Invalid API Key", response=_response(401), body=None
        )

        with pytest.raises(ProviderAuthError):
            await provider.complete([{"role": "user", "content": "Hello"}])

    @pytest.mark.asyncio
    async def test_complete_deadline(self, provider, mock_groq_client):
        async def slow_create(**kwargs):
            await asyncio.sleep(1)

        mock_groq_client.chat.completions.create.side_effect = slow_create

        with pytest.raises(ProviderTimeoutError):
            await provider.complete([{"role": "user", "content": "Hello"}], timeout=0.01)


class TestErrorTranslation:
    """Tests for mapping SDK errors onto the ProviderError taxonomy."""

    def test_sdk_timeout(self):
        error = translate_provider_error(APITimeoutError(request=httpx.Request("POST", GROQ_URL)))

        assert isinstance(error, ProviderTimeoutError)

    def test_connection_error(self):
        error = translate_provider_error(
            APIConnectionError(request=httpx.Request("POST", GROQ_URL))
        )

        assert type(error) is ProviderError

    def test_unknown_error(self):
        error = translate_provider_error(RuntimeError("boom"))

        assert type(error) is ProviderError
        assert "boom" in str(error)

    def test_provider_error_passthrough(self):
        original = ProviderResponseError("empty")

        assert translate_provider_error(original) is original


class TestStream:
    """Tests for streaming completions."""

    @pytest.mark.asyncio
    async def test_stream_yields_fragments_in_order(self, provider, mock_groq_client, fake_stream):
        upstream = fake_stream(["Hel", None, "lo", "", " world"])
        mock_groq_client.chat.completions.create.return_value = upstream

        fragments = [f async for f in provider.stream("Say hello")]

        assert fragments == ["Hel", "lo", " world"]
        assert upstream.closed is True
        kwargs = mock_groq_client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["messages"] == [{"role": "user", "content": "Say hello"}]

    @pytest.mark.asyncio
    async def test_stream_rejects_blank_prompt(self, provider, mock_groq_client):
        with pytest.raises(InvalidInputError):
            async for _ in provider.stream("  "):
                pass

        mock_groq_client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_early_close_releases_upstream(self, provider, mock_groq_client, fake_stream):
        upstream = fake_stream(["one", "two", "three", "four"])
        mock_groq_client.chat.completions.create.return_value = upstream

        fragments = provider.stream("Count")
        first = await fragments.__anext__()
        await fragments.aclose()

        assert first == "one"
        assert upstream.consumed == 1
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_cancelled_consumer_releases_upstream(self, provider, mock_groq_client, fake_stream):
        upstream = fake_stream(["one", "two"])
        mock_groq_client.chat.completions.create.return_value = upstream
        received = []

        async def consume():
            async with aclosing(provider.stream("Count")) as fragments:
                async for fragment in fragments:
                    received.append(fragment)
                    await asyncio.sleep(10)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received == ["one"]
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_stream_open_failure(self, provider, mock_groq_client):
        mock_groq_client.chat.completions.create.side_effect = RateLimitError(
            "Too many requests", response=_response(429), body=None
        )

        with pytest.raises(ProviderRateLimitError):
            async for _ in provider.stream("Hello"):
                pass

    @pytest.mark.asyncio
    async def test_stream_breaks_midway(self, provider, mock_groq_client, fake_stream):
        upstream = fake_stream(
            ["partial"],
            error=APIConnectionError(request=httpx.Request("POST", GROQ_URL)),
        )
        mock_groq_client.chat.completions.create.return_value = upstream
        received = []

        with pytest.raises(ProviderError):
            async for fragment in provider.stream("Hello"):
                received.append(fragment)

        assert received == ["partial"]
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_open_stream_fails_before_iteration(self, provider, mock_groq_client):
        mock_groq_client.chat.completions.create.side_effect = AuthenticationError(
            "Invalid API Key", response=_response(401), body=None
        )

        with pytest.raises(ProviderAuthError):
            await provider.open_stream("Hello")

    @pytest.mark.asyncio
    async def test_open_stream_blank_prompt(self, provider, mock_groq_client):
        with pytest.raises(InvalidInputError):
            await provider.open_stream("")

        mock_groq_client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_stream_requests_upstream_immediately(
        self, provider, mock_groq_client, fake_stream
    ):
        upstream = fake_stream(["a", "b"])
        mock_groq_client.chat.completions.create.return_value = upstream

        fragments = await provider.open_stream("Hello")

        mock_groq_client.chat.completions.create.assert_awaited_once()
        assert upstream.consumed == 0
        assert [f async for f in fragments] == ["a", "b"]
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_close_releases_client(self, provider, mock_groq_client):
        await provider.close()

        mock_groq_client.close.assert_awaited_once()
