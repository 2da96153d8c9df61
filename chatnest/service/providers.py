from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional, Protocol, Sequence

from openai import AsyncOpenAI

from chatnest.config import ProviderKind, Settings
from chatnest.logging import get_logger

logger = get_logger(__name__)


class CompletionProvider(Protocol):
    """Interface for pluggable completion backends.

    ``create_completion`` returns the provider handle: an async iterator of
    text fragments. Closing the iterator (``aclose``) or setting the cancel
    event must release the upstream request.
    """

    name: str

    def create_completion(
        self,
        model: str,
        messages: List[dict],
        max_output_tokens: int,
        temperature: float,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class OpenAIProvider:
    """Streams chat completions from an OpenAI-compatible API."""

    name = "openai"

    def __init__(self, api_key: str, *, base_url: Optional[str] = None) -> None:
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def create_completion(
        self,
        model: str,
        messages: List[dict],
        max_output_tokens: int,
        temperature: float,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_output_tokens,
            temperature=temperature,
            stream=True,
        )
        try:
            async for chunk in stream:
                if cancel_event.is_set():
                    break
                choices = getattr(chunk, "choices", None) or []
                first_choice = next(iter(choices), None)
                if first_choice is None or first_choice.delta is None:
                    continue
                content = first_choice.delta.content
                if content:
                    yield content
        finally:
            # Releases the upstream HTTP response on every exit path
            await stream.close()

    async def close(self) -> None:
        await self.client.close()


class StubProvider:
    """Deterministic provider for tests and key-less local runs.

    Yields ``fragments`` when given, otherwise echoes the last user message
    word by word.
    """

    name = "stub"

    def __init__(
        self,
        fragments: Optional[Sequence[str]] = None,
        *,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fragments = list(fragments) if fragments is not None else None
        self.delay_seconds = delay_seconds
        self.requests: List[dict] = []
        self.closed_handles = 0

    def _script(self, messages: List[dict]) -> List[str]:
        if self.fragments is not None:
            return list(self.fragments)
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        words = last_user.split()
        if not words:
            return ["..."]
        return [words[0]] + [f" {word}" for word in words[1:]]

    async def create_completion(
        self,
        model: str,
        messages: List[dict],
        max_output_tokens: int,
        temperature: float,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[str]:
        self.requests.append(
            {
                "model": model,
                "messages": messages,
                "max_output_tokens": max_output_tokens,
                "temperature": temperature,
            }
        )
        try:
            for fragment in self._script(messages):
                if cancel_event.is_set():
                    return
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
                yield fragment
        finally:
            self.closed_handles += 1

    async def close(self) -> None:
        return None


def build_provider(settings: Settings) -> CompletionProvider:
    kind = settings.effective_provider
    if kind == ProviderKind.OPENAI:
        logger.info("provider_selected", provider="openai", model=settings.chat_model)
        return OpenAIProvider(settings.openai_api_key or "", base_url=settings.openai_base_url)
    if settings.provider == ProviderKind.OPENAI:
        logger.warning(
            "provider_fallback_stub",
            message="OPENAI_API_KEY not configured; serving stub completions",
        )
    return StubProvider(delay_seconds=settings.stub_fragment_delay_seconds)
