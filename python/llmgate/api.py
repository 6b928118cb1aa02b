"""Function API over a lazily created default Gateway.

Usage:
    from llmgate import Message, completion, completion_stream

    response = await completion(
        "openai:gpt-4o-mini",
        [Message(role="user", content="Hello!")],
        max_tokens=100,
    )

    async for chunk in completion_stream("ollama:llama3.2", messages):
        ...
"""

import threading
from collections.abc import AsyncIterator, Sequence
from typing import Any

from llmgate.gateway import Gateway
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    CompletionRequest,
    Message,
    ModelInfo,
    ProviderStatus,
)

_gateway: Gateway | None = None
_gateway_lock = threading.Lock()


def get_gateway() -> Gateway:
    """Return the default gateway, creating it on first use."""
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = Gateway()
    return _gateway


def set_gateway(gateway: Gateway | None) -> None:
    """Replace the default gateway (None resets it; for testing)."""
    global _gateway
    with _gateway_lock:
        _gateway = gateway


def _build_request(
    model: str,
    messages: Sequence[Message],
    provider: str | None,
    params: dict[str, Any],
) -> CompletionRequest:
    return CompletionRequest(model=model, messages=list(messages), provider=provider, **params)


async def completion(
    model: str,
    messages: Sequence[Message],
    *,
    provider: str | None = None,
    **params: Any,
) -> ChatCompletion:
    """Create a chat completion.

    Args:
        model: Model id, optionally provider-prefixed ("anthropic:claude-...").
        messages: Conversation.
        provider: Explicit provider; the model id is then used verbatim.
        **params: Any other CompletionRequest field (tools, temperature, ...).
    """
    return await get_gateway().completion(_build_request(model, messages, provider, params))


def completion_stream(
    model: str,
    messages: Sequence[Message],
    *,
    provider: str | None = None,
    **params: Any,
) -> AsyncIterator[ChatCompletionChunk]:
    """Stream a chat completion. Iterate the result with ``async for``."""
    return get_gateway().completion_stream(_build_request(model, messages, provider, params))


async def list_models(
    provider: str, *, api_key: str | None = None, base_url: str | None = None
) -> list[ModelInfo]:
    """List models offered by a provider."""
    return await get_gateway().list_models(provider, api_key=api_key, base_url=base_url)


async def check_provider(
    provider: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    include_models: bool = False,
) -> ProviderStatus:
    """Check whether a provider is configured and reachable. Never raises."""
    return await get_gateway().check_provider(
        provider, api_key=api_key, base_url=base_url, include_models=include_models
    )


def supported_providers() -> list[str]:
    """Names of registered, enabled providers."""
    return get_gateway().supported_providers()
