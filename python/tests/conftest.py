"""Pytest configuration and fixtures for llmgate tests.

Test isolation strategy:
- Provider credentials and gateway variables are removed from the environment
  so a developer's shell never leaks into a test
- Settings and the default gateway are reset after every test
- HTTP is mocked with respx; no test talks to a real backend
"""

import httpx
import pytest

from llmgate.api import set_gateway
from llmgate.config import Settings, clear_settings_cache
from llmgate.providers import register_builtin_providers
from llmgate.registry import ProviderRegistry
from llmgate.types import Message


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Strip every settings variable from the environment and run as LLMGATE_ENV=test."""
    for field in Settings.model_fields.values():
        if field.alias:
            monkeypatch.delenv(field.alias, raising=False)
    monkeypatch.setenv("LLMGATE_ENV", "test")
    clear_settings_cache()
    yield
    clear_settings_cache()
    set_gateway(None)


@pytest.fixture
def httpx_client():
    """Create an httpx AsyncClient for testing."""
    return httpx.AsyncClient()


@pytest.fixture
def registry() -> ProviderRegistry:
    """A fresh registry holding the built-in providers."""
    fresh = ProviderRegistry()
    register_builtin_providers(fresh)
    return fresh


@pytest.fixture
def messages() -> list[Message]:
    return [
        Message(role="system", content="You are helpful."),
        Message(role="user", content="Hello!"),
    ]
