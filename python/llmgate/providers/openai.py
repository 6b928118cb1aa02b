"""OpenAI adapter and the OpenAI-compatible provider family.

- Endpoint: POST {base}/chat/completions
- Headers: Authorization: Bearer <key>, Content-Type: application/json
- Streaming: Server-Sent Events with data: {...} lines
- Terminal event: data: [DONE]
- Models: GET {base}/models

Streamed tool calls arrive incrementally:

    {"choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"id":"call_1",
        "function":{"name":"get_weather","arguments":""}}]}}]}
    {"choices":[{"index":0,"delta":{"tool_calls":[{"index":0,
        "function":{"arguments":"{\\"city\\":"}}]}}]}
    ...
    {"choices":[{"index":0,"delta":{},"finish_reason":"tool_calls"}]}

Fragments are accumulated per (choice index, tool_calls[].index) and the
complete call is emitted when the choice's finish_reason arrives.

Groq, Together, OpenRouter, Mistral, DeepSeek and LM Studio speak the same
wire format; each is an OpenAIAdapter configured by its own OpenAISpec.
"""

import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from llmgate.adapter import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderConfig,
    arguments_json,
    build_usage,
    map_finish_reason,
)
from llmgate.errors import classify_stream_error_event
from llmgate.streaming import StreamDecoder, new_id, new_tool_call_id
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    CompletionRequest,
    FunctionCall,
    Message,
    ModelInfo,
    NamedToolChoice,
    ToolCall,
    ToolChoice,
)

# Models taking max_completion_tokens instead of max_tokens
_COMPLETION_TOKEN_PREFIXES = ("o1", "o3", "o4")
_VISION_MODELS = ("gpt-4o", "gpt-4-turbo", "gpt-4-vision", "gpt-4.1", "gpt-5", "o1", "o3", "o4")


@dataclass(frozen=True)
class OpenAISpec:
    """Identity and defaults of one OpenAI-wire-compatible provider.

    Attributes:
        model_filter: Substrings a listed model id must contain (None = keep all)
        model_heuristics: Fill supports_tools/supports_vision on listed models
    """

    name: str
    api_base: str
    env_api_key_name: str | None
    doc_url: str
    capabilities: ProviderCapabilities
    requires_api_key: bool = True
    default_timeout_s: float = 60.0
    model_filter: tuple[str, ...] | None = None
    model_heuristics: bool = False


_COMPAT_CAPABILITIES = ProviderCapabilities(
    streaming=True, tools=True, vision=False, list_models=True, reasoning=False
)

OPENAI_SPEC = OpenAISpec(
    name="openai",
    api_base="https://api.openai.com/v1",
    env_api_key_name="OPENAI_API_KEY",
    doc_url="https://platform.openai.com/docs/api-reference",
    capabilities=ProviderCapabilities(
        streaming=True, tools=True, vision=True, list_models=True, reasoning=False
    ),
    model_filter=("gpt", "o1", "o3", "o4"),
    model_heuristics=True,
)

COMPATIBLE_SPECS: tuple[OpenAISpec, ...] = (
    OpenAISpec(
        name="groq",
        api_base="https://api.groq.com/openai/v1",
        env_api_key_name="GROQ_API_KEY",
        doc_url="https://console.groq.com/docs",
        capabilities=_COMPAT_CAPABILITIES,
    ),
    OpenAISpec(
        name="together",
        api_base="https://api.together.xyz/v1",
        env_api_key_name="TOGETHER_API_KEY",
        doc_url="https://docs.together.ai",
        capabilities=_COMPAT_CAPABILITIES,
    ),
    OpenAISpec(
        name="openrouter",
        api_base="https://openrouter.ai/api/v1",
        env_api_key_name="OPENROUTER_API_KEY",
        doc_url="https://openrouter.ai/docs",
        capabilities=ProviderCapabilities(
            streaming=True, tools=True, vision=True, list_models=True, reasoning=True
        ),
    ),
    OpenAISpec(
        name="mistral",
        api_base="https://api.mistral.ai/v1",
        env_api_key_name="MISTRAL_API_KEY",
        doc_url="https://docs.mistral.ai",
        capabilities=_COMPAT_CAPABILITIES,
    ),
    OpenAISpec(
        name="deepseek",
        api_base="https://api.deepseek.com/v1",
        env_api_key_name="DEEPSEEK_API_KEY",
        doc_url="https://api-docs.deepseek.com",
        capabilities=ProviderCapabilities(
            streaming=True, tools=True, vision=False, list_models=True, reasoning=True
        ),
    ),
    OpenAISpec(
        name="lmstudio",
        api_base="http://localhost:1234/v1",
        env_api_key_name=None,
        doc_url="https://lmstudio.ai/docs",
        capabilities=_COMPAT_CAPABILITIES,
        requires_api_key=False,
        default_timeout_s=120.0,
    ),
)


def uses_completion_tokens(model: str) -> bool:
    return model.startswith(_COMPLETION_TOKEN_PREFIXES)


def convert_tool_choice(choice: ToolChoice) -> str | dict:
    if isinstance(choice, NamedToolChoice):
        return {"type": "function", "function": {"name": choice.name}}
    return choice


def convert_tool_calls(raw: Any) -> list[ToolCall]:
    """Parse an OpenAI-shaped tool_calls list."""
    calls = []
    for item in raw or []:
        function = item.get("function") or {}
        calls.append(
            ToolCall(
                id=item.get("id") or new_tool_call_id(),
                function=FunctionCall(
                    name=function.get("name") or "",
                    arguments=arguments_json(function.get("arguments")),
                ),
            )
        )
    return calls


def _reasoning_text(data: Mapping[str, Any]) -> str | None:
    value = data.get("reasoning_content") or data.get("reasoning")
    return value if isinstance(value, str) and value else None


class OpenAIStreamDecoder(StreamDecoder):
    """Decoder for OpenAI chat.completion.chunk SSE streams."""

    protocol = "sse"

    def handle_event(self, event: Mapping[str, Any]) -> Iterator[ChatCompletionChunk]:
        error = event.get("error")
        if isinstance(error, Mapping):
            raise classify_stream_error_event(self.provider, error.get("type"), error.get("message"))

        self.state.capture(id=event.get("id"), model=event.get("model"), created=event.get("created"))

        for choice in event.get("choices") or []:
            index = choice.get("index", 0)
            delta = choice.get("delta") or {}

            if delta.get("role"):
                role_chunk = self.state.role_chunk(index, delta["role"])
                if role_chunk is not None:
                    yield role_chunk

            reasoning = _reasoning_text(delta)
            if reasoning:
                yield self.state.chunk(index, ChunkDelta(reasoning=reasoning))

            content = delta.get("content")
            if isinstance(content, str) and content:
                yield self.state.chunk(index, ChunkDelta(content=content))

            for position, fragment in enumerate(delta.get("tool_calls") or []):
                function = fragment.get("function") or {}
                self.tool_calls.append(
                    index,
                    fragment.get("index", position),
                    arguments_fragment(function.get("arguments")),
                    id=fragment.get("id"),
                    name=function.get("name"),
                )

            finish_reason = choice.get("finish_reason")
            if finish_reason:
                calls = self.tool_calls.pop_choice(index)
                if calls:
                    yield self.state.chunk(index, ChunkDelta(tool_calls=calls))
                yield self.state.chunk(
                    index,
                    ChunkDelta(),
                    map_finish_reason(finish_reason, has_tool_calls=bool(calls)),
                )


def arguments_fragment(value: Any) -> str | None:
    """Argument fragment as text; some compatible servers send whole objects."""
    if value is None or isinstance(value, str):
        return value
    return arguments_json(value)


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions adapter.

    Also serves every OpenAI-compatible provider: pass a different spec.
    """

    decoder_class = OpenAIStreamDecoder

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        spec: OpenAISpec = OPENAI_SPEC,
    ):
        super().__init__(config, client=client)
        self.spec = spec
        self.name = spec.name
        self.api_base = spec.api_base
        self.env_api_key_name = spec.env_api_key_name
        self.doc_url = spec.doc_url
        self.capabilities = spec.capabilities
        self.requires_api_key = spec.requires_api_key
        self.default_timeout_s = spec.default_timeout_s

    def build_headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def completion_url(self, model: str, *, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        body: dict = {
            "model": request.model,
            "messages": [message.to_dict() for message in request.messages],
            "stream": stream,
        }

        if request.tools:
            body["tools"] = [tool.to_dict() for tool in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = convert_tool_choice(request.tool_choice)

        if request.max_tokens is not None:
            if uses_completion_tokens(request.model):
                body["max_completion_tokens"] = request.max_tokens
            else:
                body["max_tokens"] = request.max_tokens

        for name in (
            "temperature",
            "top_p",
            "seed",
            "presence_penalty",
            "frequency_penalty",
            "n",
            "user",
        ):
            value = getattr(request, name)
            if value is not None:
                body[name] = value

        stop = request.stop_list()
        if stop:
            body["stop"] = stop

        if request.response_format is not None:
            response_format: dict = {"type": request.response_format.type}
            if request.response_format.json_schema is not None:
                response_format["json_schema"] = dict(request.response_format.json_schema)
            body["response_format"] = response_format

        return body

    def convert_response(self, data: Mapping[str, Any], *, model: str) -> ChatCompletion:
        choices = []
        for position, choice in enumerate(data.get("choices") or []):
            message = choice.get("message") or {}
            tool_calls = convert_tool_calls(message.get("tool_calls"))
            content = message.get("content")
            choices.append(
                Choice(
                    index=choice.get("index", position),
                    message=Message(
                        role="assistant",
                        content=content if isinstance(content, str) else None,
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=map_finish_reason(
                        choice.get("finish_reason"), has_tool_calls=bool(tool_calls)
                    ),
                    reasoning=_reasoning_text(message),
                )
            )

        usage = data.get("usage") or {}
        return ChatCompletion(
            id=data.get("id") or new_id(self.name),
            created=data.get("created") or int(time.time()),
            model=data.get("model") or model,
            provider=self.name,
            choices=choices,
            usage=build_usage(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            ),
        )

    def convert_models(self, data: Mapping[str, Any]) -> list[ModelInfo]:
        models = []
        for item in data.get("data") or []:
            model_id = item.get("id")
            if not isinstance(model_id, str):
                continue
            if self.spec.model_filter and not any(m in model_id for m in self.spec.model_filter):
                continue
            supports_tools = supports_vision = None
            if self.spec.model_heuristics:
                # o1 preview/mini models shipped without tool support
                supports_tools = not model_id.startswith("o1-")
                supports_vision = any(m in model_id for m in _VISION_MODELS)
            models.append(
                ModelInfo(
                    id=model_id,
                    provider=self.name,
                    owned_by=item.get("owned_by"),
                    created=item.get("created"),
                    supports_tools=supports_tools,
                    supports_vision=supports_vision,
                )
            )
        return models


def compatible_adapter_factory(spec: OpenAISpec):
    """Adapter constructor for one OpenAI-compatible provider."""

    def create(
        config: ProviderConfig | None = None, *, client: httpx.AsyncClient | None = None
    ) -> OpenAIAdapter:
        return OpenAIAdapter(config, client=client, spec=spec)

    create.__name__ = f"{spec.name}_adapter"
    return create
