"""Provider registry and model-string resolution.

The registry maps a lowercase provider name to an adapter constructor. It is
the only process-wide mutable structure: writers serialize on a lock and
publish a fresh read-only mapping, so readers always see a consistent
snapshot without locking.

Model strings resolve in this order:
1. Explicit provider given: used verbatim (lowercased); the whole string is the model
2. "provider:model": split on the first ":" (the model may contain more ":")
3. "provider/model": split on the first "/" only if the left side is registered
4. Otherwise (including an empty model id after the separator): ModelResolutionError
"""

import threading
from collections.abc import Callable, Mapping
from types import MappingProxyType

import httpx

from llmgate.adapter import ProviderAdapter, ProviderConfig
from llmgate.errors import ModelResolutionError, UnsupportedProviderError
from llmgate.types import ParsedModel

AdapterFactory = Callable[..., ProviderAdapter]


class ProviderRegistry:
    """Registry of adapter constructors with an optional instance cache."""

    def __init__(self):
        self._lock = threading.Lock()
        self._factories: Mapping[str, AdapterFactory] = MappingProxyType({})
        self._cache: dict[tuple, ProviderAdapter] = {}

    def register(self, name: str, factory: AdapterFactory) -> None:
        """Register (or replace) the constructor for a provider."""
        key = name.strip().lower()
        if not key:
            raise ValueError("provider name must not be empty")
        with self._lock:
            factories = dict(self._factories)
            factories[key] = factory
            self._factories = MappingProxyType(factories)
            self._drop_cached(key)

    def unregister(self, name: str) -> bool:
        key = name.strip().lower()
        with self._lock:
            if key not in self._factories:
                return False
            factories = dict(self._factories)
            del factories[key]
            self._factories = MappingProxyType(factories)
            self._drop_cached(key)
        return True

    def _drop_cached(self, key: str) -> None:
        for cache_key in [k for k in self._cache if k[0] == key]:
            del self._cache[cache_key]

    def get(self, name: str) -> AdapterFactory:
        """Return the constructor for a provider.

        Raises:
            UnsupportedProviderError: If no such provider is registered.
        """
        factories = self._factories
        factory = factories.get(name.strip().lower())
        if factory is None:
            raise UnsupportedProviderError(name, list(factories))
        return factory

    def has(self, name: str) -> bool:
        return name.strip().lower() in self._factories

    def names(self) -> list[str]:
        return sorted(self._factories)

    def create(
        self,
        name: str,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        use_cache: bool = False,
    ) -> ProviderAdapter:
        """Construct an adapter. Construction performs no I/O.

        With use_cache, instances are reused per (provider, config, client).
        """
        factory = self.get(name)
        config = config or ProviderConfig()
        if not use_cache:
            return factory(config, client=client)

        cache_key = (name.strip().lower(), config.cache_key(), id(client) if client else None)
        with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        adapter = factory(config, client=client)
        with self._lock:
            return self._cache.setdefault(cache_key, adapter)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def parse_model_string(self, model: str, provider: str | None = None) -> ParsedModel:
        """Split a model string into provider and model id.

        Raises:
            ModelResolutionError: If no provider can be determined.
        """
        if provider:
            return ParsedModel(provider=provider.strip().lower(), model=model)

        head, sep, tail = model.partition(":")
        if sep and head.strip() and tail:
            return ParsedModel(provider=head.strip().lower(), model=tail)

        head, sep, tail = model.partition("/")
        if sep and tail and self.has(head):
            return ParsedModel(provider=head.strip().lower(), model=tail)

        raise ModelResolutionError(model)

    def resolve(self, model: str, provider: str | None = None) -> ParsedModel:
        """Parse a model string and require its provider to be registered.

        Raises:
            ModelResolutionError: If no provider can be determined.
            UnsupportedProviderError: If the provider is not registered.
        """
        parsed = self.parse_model_string(model, provider)
        self.get(parsed.provider)
        return parsed

    def adapter_for_model(
        self,
        model: str,
        provider: str | None = None,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        use_cache: bool = False,
    ) -> tuple[ProviderAdapter, ParsedModel]:
        parsed = self.resolve(model, provider)
        adapter = self.create(parsed.provider, config, client=client, use_cache=use_cache)
        return adapter, parsed


# =============================================================================
# Default registry
# =============================================================================

default_registry = ProviderRegistry()


def register_provider(name: str, factory: AdapterFactory) -> None:
    default_registry.register(name, factory)


def unregister_provider(name: str) -> bool:
    return default_registry.unregister(name)


def create_provider(
    name: str,
    config: ProviderConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    use_cache: bool = False,
) -> ProviderAdapter:
    return default_registry.create(name, config, client=client, use_cache=use_cache)


def clear_provider_cache() -> None:
    default_registry.clear_cache()


def supported_providers() -> list[str]:
    return default_registry.names()


def parse_model_string(model: str, provider: str | None = None) -> ParsedModel:
    return default_registry.parse_model_string(model, provider)


def resolve_provider_and_model(model: str, provider: str | None = None) -> ParsedModel:
    return default_registry.resolve(model, provider)
