"""Unified completion gateway over LLM backends.

This package lets a caller issue one canonical completion request and get
back one canonical response or chunk stream, whichever backend served it.
It includes:

- Canonical request/response/chunk types (OpenAI-shaped)
- Provider adapters with async support (non-streaming + streaming)
- Streaming decoders for SSE and NDJSON backends
- Provider registry and "provider:model" resolution
- Error classification into a fixed taxonomy
- Feature-flag enforcement and structured request events

Usage:
    from llmgate import Message, completion

    response = await completion(
        "anthropic:claude-3-5-haiku-20241022",
        [Message(role="user", content="Hello!")],
        max_tokens=100,
    )

Rules:
- Adapters are async using httpx.AsyncClient
- No retries inside adapters
- No logging of request/response bodies
- Every failure surfaces as a GatewayError
"""

from llmgate.adapter import ProviderAdapter, ProviderCapabilities, ProviderConfig
from llmgate.api import (
    check_provider,
    completion,
    completion_stream,
    get_gateway,
    list_models,
    set_gateway,
    supported_providers,
)
from llmgate.errors import (
    ErrorKind,
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    MissingCredentialError,
    ModelResolutionError,
    ProviderUnavailableError,
    RateLimitedError,
    RequestFailedError,
    ResolutionError,
    UnsupportedProviderError,
    wrap_error,
)
from llmgate.gateway import Gateway
from llmgate.logging import configure_logging, get_logger
from llmgate.providers import register_builtin_providers
from llmgate.registry import (
    ProviderRegistry,
    clear_provider_cache,
    create_provider,
    default_registry,
    parse_model_string,
    register_provider,
    resolve_provider_and_model,
    unregister_provider,
)
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkChoice,
    ChunkDelta,
    CompletionRequest,
    CompletionUsage,
    FunctionCall,
    ImagePart,
    Message,
    ModelInfo,
    NamedToolChoice,
    ParsedModel,
    ProviderStatus,
    ResponseFormat,
    TextPart,
    Tool,
    ToolCall,
    ToolFunction,
    validate_request,
)

register_builtin_providers(default_registry)

__all__ = [
    # Core types
    "Message",
    "TextPart",
    "ImagePart",
    "ToolCall",
    "FunctionCall",
    "Tool",
    "ToolFunction",
    "NamedToolChoice",
    "ResponseFormat",
    "CompletionRequest",
    "ChatCompletion",
    "Choice",
    "CompletionUsage",
    "ChatCompletionChunk",
    "ChunkChoice",
    "ChunkDelta",
    "ModelInfo",
    "ParsedModel",
    "ProviderStatus",
    "validate_request",
    # Errors
    "ErrorKind",
    "GatewayError",
    "MissingCredentialError",
    "ResolutionError",
    "UnsupportedProviderError",
    "ModelResolutionError",
    "RequestFailedError",
    "InvalidRequestError",
    "RateLimitedError",
    "ProviderUnavailableError",
    "GatewayTimeoutError",
    "wrap_error",
    # Adapter interface
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderConfig",
    # Registry
    "ProviderRegistry",
    "default_registry",
    "register_provider",
    "unregister_provider",
    "create_provider",
    "clear_provider_cache",
    "parse_model_string",
    "resolve_provider_and_model",
    "register_builtin_providers",
    # Gateway and function API
    "Gateway",
    "completion",
    "completion_stream",
    "list_models",
    "check_provider",
    "supported_providers",
    "get_gateway",
    "set_gateway",
    # Logging
    "configure_logging",
    "get_logger",
]
