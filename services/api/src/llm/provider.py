"""
Completion provider adapter.

Wraps the Groq chat-completions API (single-shot and streaming) behind a
small interface that always fails with the service's own ProviderError
taxonomy instead of SDK-specific exceptions.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from groq import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncGroq,
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
)

from shared.utils import (
    InvalidInputError,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
    get_logger,
)

logger = get_logger(__name__)


@dataclass
class Completion:
    """Text generated by the provider for one request."""

    text: str
    model: str
    finish_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)


def translate_provider_error(exc: Exception) -> ProviderError:
    """Map a Groq SDK exception onto the ProviderError taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return ProviderAuthError(f"Provider rejected credentials: {exc}")
    if isinstance(exc, RateLimitError):
        return ProviderRateLimitError(f"Provider rate limit exceeded: {exc}")
    if isinstance(exc, (APITimeoutError, asyncio.TimeoutError)):
        return ProviderTimeoutError("Provider did not respond before the deadline")
    if isinstance(exc, APIStatusError):
        return ProviderError(f"Provider returned HTTP {exc.status_code}: {exc}")
    if isinstance(exc, APIConnectionError):
        return ProviderError(f"Could not reach provider: {exc}")
    if isinstance(exc, APIError):
        return ProviderResponseError(f"Malformed provider response: {exc}")
    return ProviderError(f"Provider call failed: {exc}")


class CompletionProvider:
    """
    Chat-completion client with a fixed generation policy.

    Output length and sampling temperature are class constants so that every
    session sees the same behaviour. One instance is built at startup and
    shared by all requests; it holds no per-request state.
    """

    MAX_TOKENS = 1000
    TEMPERATURE = 0.7

    def __init__(
        self,
        api_key: str,
        model: str = "llama-3.3-70b-versatile",
        timeout: float = 30.0,
        client: Optional[AsyncGroq] = None,
    ):
        """
        Initialize the provider.

        Args:
            api_key: Groq API key
            model: Model identifier
            timeout: Default deadline in seconds for a completion call
            client: Pre-built client (tests inject a mock here)
        """
        if not api_key and client is None:
            raise ValueError("A Groq API key is required")

        # Retries are left to the caller, the SDK must not retry on its own
        self.client = client or AsyncGroq(api_key=api_key, max_retries=0)
        self.model = model
        self.timeout = timeout
        logger.info(f"Initialized completion provider with model '{model}'")

    async def complete(
        self,
        messages: List[Dict[str, str]],
        timeout: Optional[float] = None,
    ) -> Completion:
        """
        Generate a reply for an ordered message list.

        Args:
            messages: Chat messages as {role, content} dicts, oldest first
            timeout: Deadline in seconds, defaults to the configured timeout

        Returns:
            Completion with the generated text

        Raises:
            InvalidInputError: If ``messages`` is empty
            ProviderError: If the call fails or yields no usable content
        """
        if not messages:
            raise InvalidInputError("Messages list cannot be empty")

        deadline = timeout if timeout is not None else self.timeout
        logger.debug(f"Sending {len(messages)} messages to model {self.model}")

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=self.MAX_TOKENS,
                    temperature=self.TEMPERATURE,
                ),
                timeout=deadline,
            )
        except Exception as e:
            error = translate_provider_error(e)
            logger.error(f"Completion request failed: {error}")
            raise error from e

        return self._parse_response(response)

    def _parse_response(self, response) -> Completion:
        try:
            choice = response.choices[0]
            content = choice.message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise ProviderResponseError("Provider response had no choices") from e

        if not isinstance(content, str) or not content.strip():
            raise ProviderResponseError("No response content received from provider")

        usage = {}
        raw_usage = getattr(response, "usage", None)
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(raw_usage, key, None)
            if isinstance(value, int):
                usage[key] = value

        finish_reason = getattr(choice, "finish_reason", None)
        logger.info(
            f"Generated reply ({len(content)} characters)",
            extra={"finish_reason": finish_reason, **usage},
        )
        return Completion(
            text=content,
            model=getattr(response, "model", None) or self.model,
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
            usage=usage,
        )

    async def open_stream(self, prompt: str) -> AsyncIterator[str]:
        """
        Open a streaming completion and return its fragments.

        The upstream request is made before this returns, so a rejected key,
        a rate limit or a deadline surfaces here rather than after the first
        byte of a streaming response has gone out.

        Args:
            prompt: User prompt

        Returns:
            Async iterator of non-empty text fragments. Closing it early
            (``aclose()``, task cancellation, or a client disconnect in a
            streaming response) closes the upstream HTTP stream.

        Raises:
            InvalidInputError: If ``prompt`` is blank
            ProviderError: If the stream cannot be opened
        """
        if not prompt or not prompt.strip():
            raise InvalidInputError("Prompt cannot be empty")

        logger.debug(f"Streaming response from model {self.model}")

        try:
            upstream = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=self.MAX_TOKENS,
                    temperature=self.TEMPERATURE,
                    stream=True,
                ),
                timeout=self.timeout,
            )
        except Exception as e:
            error = translate_provider_error(e)
            logger.error(f"Failed to open completion stream: {error}")
            raise error from e

        return self._relay(upstream)

    async def _relay(self, upstream) -> AsyncIterator[str]:
        fragments = 0
        try:
            async for chunk in upstream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    fragments += 1
                    yield content
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"Stream consumer went away after {fragments} fragments")
            raise
        except APIError as e:
            error = translate_provider_error(e)
            logger.error(f"Completion stream broke: {error}")
            raise error from e
        finally:
            await upstream.close()

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """
        Stream a reply to a single prompt, opening the upstream lazily.

        Yields:
            Non-empty text fragments

        Raises:
            InvalidInputError: If ``prompt`` is blank
            ProviderError: If the stream cannot be opened or breaks mid-way
        """
        fragments = await self.open_stream(prompt)
        async with aclosing(fragments):
            async for fragment in fragments:
                yield fragment

    async def close(self) -> None:
        """Release the underlying HTTP client."""
        await self.client.close()
