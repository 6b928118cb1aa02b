"""Abstract base class for provider adapters.

Rules:
- Async adapters with httpx.AsyncClient
- No retries inside adapters
- No logging of request/response bodies
- Construction performs no I/O; network access happens only inside
  completion, completion_stream, is_available and list_models
- Every failure leaves an adapter as a GatewayError (see wrap_error)

An adapter is configured once from a ProviderConfig and holds no per-request
mutable state, so one instance may serve concurrent calls.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import aclosing
from dataclasses import asdict, dataclass, field, replace
from typing import Any, ClassVar

import httpx

from llmgate.errors import (
    GatewayError,
    InvalidRequestError,
    MissingCredentialError,
    RequestFailedError,
    wrap_error,
)
from llmgate.streaming import Frame, StreamDecoder
from llmgate.transport import client_session, get_json, iter_frames, open_stream, post_json
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    CompletionRequest,
    CompletionUsage,
    FinishReason,
    ModelInfo,
    ToolCall,
    validate_request,
)


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static capability record of one adapter variant."""

    streaming: bool = True
    tools: bool = False
    vision: bool = False
    list_models: bool = False
    reasoning: bool = False


@dataclass(frozen=True)
class ProviderConfig:
    """Construction-time configuration of an adapter instance.

    Attributes:
        api_key: Credential (None for keyless local daemons)
        base_url: Override of the adapter's api_base
        timeout_s: Per-call timeout; the adapter default applies when None
        options: Provider-specific options (e.g. anthropic_version)
    """

    api_key: str | None = None
    base_url: str | None = None
    timeout_s: float | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def cache_key(self) -> str:
        """Deterministic serialization used to key the instance cache."""
        data = asdict(self)
        data["options"] = dict(self.options)
        return json.dumps(data, sort_keys=True, default=str)

    def merged(self, **overrides: Any) -> "ProviderConfig":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self


# =============================================================================
# Shared helpers
# =============================================================================


_FINISH_REASONS: dict[str, FinishReason] = {
    # OpenAI and compatible servers
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
    # Anthropic
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
    # Gemini (matched case-insensitively)
    "finish_reason_unspecified": "stop",
    "other": "stop",
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
    "spii": "content_filter",
    "image_safety": "content_filter",
    "language": "content_filter",
    "malformed_function_call": "stop",
    # Ollama done_reason
    "load": "stop",
    "unload": "stop",
}


def map_finish_reason(reason: str | None, *, has_tool_calls: bool = False) -> FinishReason:
    """Map a backend stop signal onto the canonical finish_reason vocabulary.

    A tool call outranks every other signal. Unknown or missing values
    become "stop".
    """
    if has_tool_calls:
        return "tool_calls"
    if not reason:
        return "stop"
    return _FINISH_REASONS.get(reason.lower(), "stop")


def check_capabilities(
    provider: str, capabilities: ProviderCapabilities, request: CompletionRequest
) -> None:
    """Fail with RequestFailedError when the request needs a missing capability."""
    if request.tools and not capabilities.tools:
        raise RequestFailedError(
            f"Provider '{provider}' does not support tool calling", provider=provider
        )
    if request.has_images() and not capabilities.vision:
        raise RequestFailedError(
            f"Provider '{provider}' does not support image input", provider=provider
        )


def build_usage(
    prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None
) -> CompletionUsage | None:
    """Usage record from backend counters, or None if the backend sent none."""
    if not isinstance(prompt_tokens, int) and not isinstance(completion_tokens, int):
        return None
    prompt = prompt_tokens if isinstance(prompt_tokens, int) else 0
    completion = completion_tokens if isinstance(completion_tokens, int) else 0
    total = total_tokens if isinstance(total_tokens, int) else prompt + completion
    return CompletionUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def arguments_json(arguments: Any) -> str:
    """Tool call arguments as a JSON string; decoded objects are re-encoded."""
    if isinstance(arguments, str):
        return arguments or "{}"
    if arguments is None:
        return "{}"
    return json.dumps(arguments)


def decode_arguments(tool_call: ToolCall) -> Any:
    """Decode a tool call's arguments for backends that take structured input."""
    try:
        return json.loads(tool_call.function.arguments or "{}")
    except ValueError as exc:
        raise InvalidRequestError(
            f"tool call {tool_call.id!r}: arguments are not valid JSON"
        ) from exc


def parse_data_url(url: str) -> tuple[str, str] | None:
    """Split a base64 data URL into (media_type, data)."""
    if not url.startswith("data:"):
        return None
    header, sep, data = url[5:].partition(",")
    media_type, _, encoding = header.partition(";")
    if not sep or encoding != "base64" or not media_type:
        return None
    return media_type, data


def unsupported(provider: str, feature: str) -> RequestFailedError:
    """Build the error raised when a request field cannot be expressed."""
    return RequestFailedError(f"Provider '{provider}' does not support {feature}", provider=provider)


# =============================================================================
# Adapter base
# =============================================================================


class ProviderAdapter(ABC):
    """Base class for backend adapters.

    Subclasses declare their identity and capabilities as class attributes and
    implement the conversion hooks. The request flow (validate, resolve the
    credential, call, convert, wrap errors) is shared.
    """

    name: str
    env_api_key_name: str | None = None
    doc_url: str = ""
    api_base: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()
    default_timeout_s: float = 60.0
    requires_api_key: bool = True
    decoder_class: ClassVar[type[StreamDecoder]]

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize adapter.

        Args:
            config: Credentials, base URL, timeout and options.
            client: Optional shared httpx.AsyncClient for connection pooling.
                When omitted, each call opens and closes its own client.
        """
        self.config = config or ProviderConfig()
        self._client = client

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.api_base).rstrip("/")

    @property
    def timeout_s(self) -> float:
        return self.config.timeout_s or self.default_timeout_s

    def metadata(self) -> dict:
        """Describe this provider (name, credential variable, docs, capabilities)."""
        return {
            "name": self.name,
            "env_api_key_name": self.env_api_key_name,
            "doc_url": self.doc_url,
            "requires_api_key": self.requires_api_key,
            "capabilities": asdict(self.capabilities),
        }

    # -------------------------------------------------------------------------
    # Conversion hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def build_headers(self, api_key: str | None) -> dict[str, str]:
        """Request headers for this backend."""

    @abstractmethod
    def completion_url(self, model: str, *, stream: bool) -> str:
        """Endpoint serving (streaming) completions for a model."""

    @abstractmethod
    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        """Convert a canonical request into the backend-native body.

        Raises:
            RequestFailedError: If the request uses a field this backend
                cannot express.
        """

    @abstractmethod
    def convert_response(self, data: Mapping[str, Any], *, model: str) -> ChatCompletion:
        """Convert a backend-native response body into a ChatCompletion."""

    def stream_decode(
        self, frames: AsyncIterator[Frame], *, model: str
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Decode a raw frame stream into canonical chunks.

        Each call gets a fresh decoder, so concurrent streams share no state.
        """
        return self.decoder_class(provider=self.name, model=model).decode(frames)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def check_request(self, request: CompletionRequest) -> None:
        """Validation shared by every operation, run before any I/O."""
        validate_request(request)
        check_capabilities(self.name, self.capabilities, request)

    def require_api_key(self) -> str | None:
        """Return the configured key, or raise if one is required and absent."""
        if self.requires_api_key and not self.config.api_key:
            raise MissingCredentialError(self.name, self.env_api_key_name)
        return self.config.api_key

    def _wrap(self, exc: Exception) -> GatewayError:
        return wrap_error(exc, provider=self.name, timeout_s=self.timeout_s)

    async def completion(self, request: CompletionRequest) -> ChatCompletion:
        """Non-streaming completion.

        Raises:
            InvalidRequestError: If the request fails validation.
            MissingCredentialError: If a required API key is absent.
            GatewayError: Any backend or transport failure, already classified.
        """
        self.check_request(request)
        api_key = self.require_api_key()
        body = self.convert_request(request, stream=False)

        try:
            async with client_session(self._client, self.timeout_s) as client:
                data = await post_json(
                    client,
                    self.completion_url(request.model, stream=False),
                    headers=self.build_headers(api_key),
                    body=body,
                    timeout_s=self.timeout_s,
                )
            return self.convert_response(data, model=request.model)
        except GatewayError:
            raise
        except Exception as exc:
            raise self._wrap(exc) from exc

    async def completion_stream(
        self, request: CompletionRequest
    ) -> AsyncIterator[ChatCompletionChunk]:
        """Streaming completion. Chunks are produced lazily.

        Closing the returned iterator early releases the HTTP response.
        """
        if not self.capabilities.streaming:
            raise RequestFailedError(
                f"Provider '{self.name}' does not support streaming", provider=self.name
            )
        self.check_request(request)
        api_key = self.require_api_key()
        body = self.convert_request(request, stream=True)

        try:
            async with client_session(self._client, self.timeout_s) as client:
                async with open_stream(
                    client,
                    self.completion_url(request.model, stream=True),
                    headers=self.build_headers(api_key),
                    body=body,
                    timeout_s=self.timeout_s,
                ) as response:
                    frames = iter_frames(response, timeout_s=self.timeout_s, provider=self.name)
                    async with aclosing(self.stream_decode(frames, model=request.model)) as chunks:
                        async for chunk in chunks:
                            yield chunk
        except GatewayError:
            raise
        except Exception as exc:
            raise self._wrap(exc) from exc

    async def is_available(self) -> bool:
        """Cheap reachability check. Never raises."""
        if self.requires_api_key and not self.config.api_key:
            return False
        if not self.capabilities.list_models:
            return True
        try:
            await self.list_models()
        except GatewayError:
            return False
        return True

    async def list_models(self) -> list[ModelInfo]:
        """List models offered by the backend (empty when unsupported)."""
        if not self.capabilities.list_models:
            return []
        api_key = self.require_api_key()
        try:
            async with client_session(self._client, self.timeout_s) as client:
                data = await get_json(
                    client,
                    self.models_url(),
                    headers=self.build_headers(api_key),
                    timeout_s=self.timeout_s,
                )
            return self.convert_models(data)
        except GatewayError:
            raise
        except Exception as exc:
            raise self._wrap(exc) from exc

    def models_url(self) -> str:
        return f"{self.base_url}/models"

    def convert_models(self, data: Mapping[str, Any]) -> list[ModelInfo]:
        """Convert a model listing body. Adapters that list models override this."""
        return []
