"""Gateway: routes canonical requests to provider adapters.

- Resolves provider + model from the request (see registry)
- Checks feature flags for provider availability
- Builds the adapter config from settings, with per-call overrides
- Wraps adapter calls with error normalization (wrap_error)

Observability:
- Emits llm.request.started / llm.request.finished / llm.request.failed events
- All events use safe_kv() to prevent sensitive data leakage
- Message content, tool arguments and keys are never logged; only sizes
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import replace

import httpx

from llmgate.adapter import ProviderAdapter, ProviderConfig
from llmgate.config import Settings, get_settings
from llmgate.errors import GatewayError, UnsupportedProviderError, wrap_error
from llmgate.logging import call_id_var, get_logger
from llmgate.redact import safe_kv
from llmgate.registry import ProviderRegistry, default_registry
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    CompletionRequest,
    ModelInfo,
    ParsedModel,
    ProviderStatus,
)

logger = get_logger(__name__)


def _base_log_fields(parsed: ParsedModel, request: CompletionRequest, *, streaming: bool) -> dict:
    """Build base log fields for request events."""
    return {
        "call_id": call_id_var.get() or uuid.uuid4().hex,
        "provider": parsed.provider,
        "model_name": parsed.model,
        "streaming": streaming,
        "message_count": len(request.messages),
        "message_chars": sum(len(m.text()) for m in request.messages),
        "tool_count": len(request.tools or ()),
    }


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _timeout_of(adapter: ProviderAdapter | None) -> float | None:
    return adapter.timeout_s if adapter is not None else None


class Gateway:
    """Routes completion requests to provider adapters.

    Handles:
    - Provider/model resolution and feature flag enforcement
    - Adapter construction from settings plus per-call overrides
    - Error normalization across all providers
    - Observability event emission
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize gateway.

        Args:
            registry: Provider registry (defaults to the process-wide one).
            settings: Settings (defaults to get_settings()).
            client: Optional shared httpx.AsyncClient for connection pooling.
        """
        self._registry = registry or default_registry
        self._settings = settings or get_settings()
        self._client = client

    def is_provider_enabled(self, provider: str) -> bool:
        return self._settings.is_provider_enabled(provider)

    def is_provider_available(self, provider: str) -> bool:
        """Check if a provider is known and enabled (no network I/O)."""
        return self._registry.has(provider) and self.is_provider_enabled(provider)

    def supported_providers(self) -> list[str]:
        """Registered providers that are enabled."""
        return [name for name in self._registry.names() if self.is_provider_enabled(name)]

    def _check_enabled(self, provider: str) -> None:
        if not self._registry.has(provider):
            raise UnsupportedProviderError(provider, self._registry.names())
        if not self.is_provider_enabled(provider):
            raise UnsupportedProviderError(provider, reason=f"Provider '{provider}' is disabled")

    def resolve(self, model: str, provider: str | None = None) -> ParsedModel:
        """Resolve provider and model id, enforcing feature flags.

        Raises:
            ModelResolutionError: If no provider can be determined.
            UnsupportedProviderError: If the provider is unknown or disabled.
        """
        parsed = self._registry.resolve(model, provider)
        self._check_enabled(parsed.provider)
        return parsed

    def provider_config(
        self, provider: str, *, api_key: str | None = None, base_url: str | None = None
    ) -> ProviderConfig:
        """Settings-derived config with per-call overrides applied."""
        return self._settings.provider_config(provider).merged(api_key=api_key, base_url=base_url)

    def adapter(
        self, provider: str, *, api_key: str | None = None, base_url: str | None = None
    ) -> ProviderAdapter:
        """Get an adapter for an enabled provider."""
        self._check_enabled(provider)
        config = self.provider_config(provider, api_key=api_key, base_url=base_url)
        # Instances built from settings alone are reused; per-call overrides are not cached.
        use_cache = api_key is None and base_url is None
        return self._registry.create(provider, config, client=self._client, use_cache=use_cache)

    def _kv(self, **fields) -> dict:
        return safe_kv(_env=self._settings.llmgate_env, **fields)

    def _log_failed(self, base: dict, error: GatewayError, start: float) -> None:
        logger.error(
            "llm.request.failed",
            **self._kv(
                **base,
                outcome="error",
                error_kind=error.kind.value,
                status_code=error.status_code,
                latency_ms=_elapsed_ms(start),
            ),
        )

    async def completion(self, request: CompletionRequest) -> ChatCompletion:
        """Non-streaming completion with error normalization.

        Raises:
            GatewayError: With a normalized kind on failure.
        """
        parsed = self.resolve(request.model, request.provider)
        routed = replace(request, model=parsed.model, provider=parsed.provider)
        base = _base_log_fields(parsed, request, streaming=False)

        logger.info("llm.request.started", **self._kv(**base))
        start = time.monotonic()
        adapter = None

        try:
            adapter = self.adapter(
                parsed.provider, api_key=request.api_key, base_url=request.base_url
            )
            response = await adapter.completion(routed)
        except Exception as exc:
            error = wrap_error(exc, provider=parsed.provider, timeout_s=_timeout_of(adapter))
            self._log_failed(base, error, start)
            if error is exc:
                raise
            raise error from exc

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **self._kv(
                **base,
                outcome="success",
                latency_ms=_elapsed_ms(start),
                finish_reason=response.choices[0].finish_reason if response.choices else None,
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
            ),
        )
        return response

    async def completion_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Streaming completion with error normalization.

        Yields:
            ChatCompletionChunk objects as the backend produces them.

        Raises:
            GatewayError: With a normalized kind on failure.
        """
        parsed = self.resolve(request.model, request.provider)
        routed = replace(request, model=parsed.model, provider=parsed.provider)
        base = _base_log_fields(parsed, request, streaming=True)

        logger.info("llm.request.started", **self._kv(**base))
        start = time.monotonic()
        chunk_count = 0
        finish_reason = None
        adapter = None

        try:
            adapter = self.adapter(
                parsed.provider, api_key=request.api_key, base_url=request.base_url
            )
            async with aclosing(adapter.completion_stream(routed)) as chunks:
                async for chunk in chunks:
                    chunk_count += 1
                    for choice in chunk.choices:
                        if choice.finish_reason is not None:
                            finish_reason = choice.finish_reason
                    yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            logger.info(
                "llm.request.finished",
                **self._kv(
                    **base,
                    outcome="cancelled",
                    latency_ms=_elapsed_ms(start),
                    chunk_count=chunk_count,
                ),
            )
            raise
        except Exception as exc:
            error = wrap_error(exc, provider=parsed.provider, timeout_s=_timeout_of(adapter))
            self._log_failed({**base, "chunk_count": chunk_count}, error, start)
            if error is exc:
                raise
            raise error from exc

        logger.info(
            "llm.request.finished",
            **self._kv(
                **base,
                outcome="success",
                latency_ms=_elapsed_ms(start),
                chunk_count=chunk_count,
                finish_reason=finish_reason,
            ),
        )

    async def list_models(
        self, provider: str, *, api_key: str | None = None, base_url: str | None = None
    ) -> list[ModelInfo]:
        """List models of one provider (empty when it cannot list).

        Raises:
            GatewayError: With a normalized kind on failure.
        """
        adapter = None
        try:
            adapter = self.adapter(provider, api_key=api_key, base_url=base_url)
            return await adapter.list_models()
        except Exception as exc:
            error = wrap_error(
                exc, provider=provider.strip().lower(), timeout_s=_timeout_of(adapter)
            )
            if error is exc:
                raise
            raise error from exc

    async def check_provider(
        self,
        provider: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        include_models: bool = False,
    ) -> ProviderStatus:
        """Report whether a provider is usable. Never raises."""
        name = provider.strip().lower()
        try:
            adapter = self.adapter(name, api_key=api_key, base_url=base_url)
            if adapter.requires_api_key and not adapter.config.api_key:
                hint = adapter.env_api_key_name or "api_key"
                return ProviderStatus(name, False, error=f"API key not configured ({hint})")

            if not await adapter.is_available():
                return ProviderStatus(name, False, error=f"Provider '{name}' is not reachable")

            models = await adapter.list_models() if include_models else None
            return ProviderStatus(name, True, models=models)
        except GatewayError as exc:
            return ProviderStatus(name, False, error=exc.message)
        except Exception as exc:
            error = wrap_error(exc, provider=name)
            logger.warning("provider_check_failed", provider=name, error_kind=error.kind.value)
            return ProviderStatus(name, False, error=error.message)
