"""Built-in provider adapters."""

from llmgate.providers.anthropic import AnthropicAdapter
from llmgate.providers.gemini import GeminiAdapter
from llmgate.providers.llamafile import LlamafileAdapter
from llmgate.providers.ollama import OllamaAdapter
from llmgate.providers.openai import (
    COMPATIBLE_SPECS,
    OpenAIAdapter,
    OpenAISpec,
    compatible_adapter_factory,
)
from llmgate.registry import ProviderRegistry

__all__ = [
    "AnthropicAdapter",
    "GeminiAdapter",
    "LlamafileAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "OpenAISpec",
    "register_builtin_providers",
]


def register_builtin_providers(registry: ProviderRegistry) -> None:
    """Register every built-in provider on a registry."""
    registry.register("openai", OpenAIAdapter)
    registry.register("anthropic", AnthropicAdapter)
    registry.register("gemini", GeminiAdapter)
    registry.register("ollama", OllamaAdapter)
    registry.register("llamafile", LlamafileAdapter)
    for spec in COMPATIBLE_SPECS:
        registry.register(spec.name, compatible_adapter_factory(spec))
