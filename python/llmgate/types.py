"""Canonical request/response vocabulary shared by every provider adapter.

The shapes follow the OpenAI chat completions format, which every adapter
converts to and from:

- Message / ToolCall / Tool: conversation inputs
- CompletionRequest: one canonical request, independent of the backend
- ChatCompletion / Choice: terminal object of a non-streaming call
- ChatCompletionChunk / ChunkChoice / ChunkDelta: incremental stream frames

Streaming invariants:
- id, created and model are identical on every chunk of one stream
- role appears at most once per choice index
- finish_reason is non-null only on the terminal chunk of a choice index
- a ToolCall carried by a chunk is complete; its arguments string is the
  verbatim concatenation of the fragments the backend sent
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from typing import Any, Literal

from llmgate.errors import InvalidRequestError

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter"]

VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})
FINISH_REASONS: frozenset[str] = frozenset({"stop", "length", "tool_calls", "content_filter"})
TOOL_CHOICE_MODES: frozenset[str] = frozenset({"none", "auto", "required"})


# =============================================================================
# Message content
# =============================================================================


@dataclass(frozen=True)
class TextPart:
    """Text content part of a message."""

    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    """Image content part of a message.

    Attributes:
        url: An http(s) URL or a ``data:<mime>;base64,<data>`` URL
        detail: Optional fidelity hint ("auto", "low" or "high")
    """

    url: str
    detail: str | None = None

    def to_dict(self) -> dict:
        image_url: dict = {"url": self.url}
        if self.detail is not None:
            image_url["detail"] = self.detail
        return {"type": "image_url", "image_url": image_url}


ContentPart = TextPart | ImagePart
MessageContent = str | Sequence[ContentPart] | None


@dataclass(frozen=True)
class FunctionCall:
    """Function name plus JSON-encoded arguments."""

    name: str
    arguments: str


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to invoke a named function."""

    id: str
    function: FunctionCall
    kind: str = "function"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.kind,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


@dataclass(frozen=True)
class Message:
    """A message in a conversation.

    tool_call_id is only valid on role="tool"; tool_calls only on
    role="assistant". See validate_request.
    """

    role: Role
    content: MessageContent = None
    tool_calls: Sequence[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def text(self) -> str:
        """Return the textual content, joining text parts and dropping images."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def to_dict(self) -> dict:
        data: dict = {"role": self.role}
        if self.content is None or isinstance(self.content, str):
            data["content"] = self.content
        else:
            data["content"] = [part.to_dict() for part in self.content]
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data


# =============================================================================
# Tools
# =============================================================================


@dataclass(frozen=True)
class ToolFunction:
    """Function definition exposed to the model."""

    name: str
    parameters: Mapping[str, Any] = field(default_factory=lambda: {"type": "object"})
    description: str | None = None


@dataclass(frozen=True)
class Tool:
    """A tool the model may call."""

    function: ToolFunction
    kind: str = "function"

    def to_dict(self) -> dict:
        fn: dict = {"name": self.function.name, "parameters": dict(self.function.parameters)}
        if self.function.description is not None:
            fn["description"] = self.function.description
        return {"type": self.kind, "function": fn}


@dataclass(frozen=True)
class NamedToolChoice:
    """Force the model to call one specific function."""

    name: str


ToolChoice = Literal["none", "auto", "required"] | NamedToolChoice


@dataclass(frozen=True)
class ResponseFormat:
    """Response format hint.

    Attributes:
        type: "text", "json_object" or "json_schema"
        json_schema: Schema payload when type == "json_schema"
    """

    type: Literal["text", "json_object", "json_schema"] = "text"
    json_schema: Mapping[str, Any] | None = None


# =============================================================================
# Request
# =============================================================================


@dataclass(frozen=True)
class CompletionRequest:
    """Canonical completion request.

    Attributes:
        model: Model id, optionally prefixed ("openai:gpt-4o", "openai/gpt-4o")
        messages: Ordered, non-empty conversation
        provider: Explicit provider; when set, model is used verbatim
        api_key: Per-call credential override
        base_url: Per-call base URL override
    """

    model: str
    messages: Sequence[Message]
    provider: str | None = None
    tools: Sequence[Tool] | None = None
    tool_choice: ToolChoice | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: str | Sequence[str] | None = None
    seed: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    n: int | None = None
    user: str | None = None
    response_format: ResponseFormat | None = None
    api_key: str | None = None
    base_url: str | None = None

    def stop_list(self) -> list[str] | None:
        """Return stop sequences as a list regardless of input shape."""
        if self.stop is None:
            return None
        if isinstance(self.stop, str):
            return [self.stop]
        return list(self.stop)

    def has_images(self) -> bool:
        """Whether any message carries an image part."""
        for message in self.messages:
            if message.content is not None and not isinstance(message.content, str):
                if any(isinstance(part, ImagePart) for part in message.content):
                    return True
        return False


def validate_request(request: CompletionRequest) -> None:
    """Reject malformed requests before any network I/O.

    Runs identically for every adapter.

    Raises:
        InvalidRequestError: If messages is empty, a role is unknown,
            tool_call_id is set on a non-tool message, tool_calls is set on a
            non-assistant message, or a tool call is not a function call.
    """
    if not request.messages:
        raise InvalidRequestError("messages must not be empty")

    for position, message in enumerate(request.messages):
        if message.role not in VALID_ROLES:
            raise InvalidRequestError(f"messages[{position}]: unknown role {message.role!r}")
        if message.tool_call_id is not None and message.role != "tool":
            raise InvalidRequestError(
                f"messages[{position}]: tool_call_id is only allowed on tool messages"
            )
        if message.tool_calls is not None and message.role != "assistant":
            raise InvalidRequestError(
                f"messages[{position}]: tool_calls is only allowed on assistant messages"
            )
        for tool_call in message.tool_calls or ():
            if tool_call.kind != "function":
                raise InvalidRequestError(
                    f"messages[{position}]: unsupported tool call type {tool_call.kind!r}"
                )

    if isinstance(request.tool_choice, str) and request.tool_choice not in TOOL_CHOICE_MODES:
        raise InvalidRequestError(f"unknown tool_choice {request.tool_choice!r}")


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class CompletionUsage:
    """Token usage statistics."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class Choice:
    """One generated alternative of a non-streaming completion."""

    index: int
    message: Message
    finish_reason: FinishReason | None
    reasoning: str | None = None

    def to_dict(self) -> dict:
        message = self.message.to_dict()
        if self.reasoning is not None:
            message["reasoning"] = {"content": self.reasoning}
        return {"index": self.index, "message": message, "finish_reason": self.finish_reason}


@dataclass(frozen=True)
class ChatCompletion:
    """Terminal object of a non-streaming call."""

    id: str
    created: int
    model: str
    provider: str
    choices: Sequence[Choice]
    usage: CompletionUsage | None = None

    def to_dict(self) -> dict:
        data: dict = {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "provider": self.provider,
            "choices": [choice.to_dict() for choice in self.choices],
        }
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass(frozen=True)
class ChunkDelta:
    """Incremental fields carried by one chunk. Unset fields are None."""

    role: Role | None = None
    content: str | None = None
    tool_calls: Sequence[ToolCall] | None = None
    reasoning: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_dict(self) -> dict:
        data: dict = {}
        if self.role is not None:
            data["role"] = self.role
        if self.content is not None:
            data["content"] = self.content
        if self.tool_calls is not None:
            data["tool_calls"] = [
                {"index": position, **tc.to_dict()} for position, tc in enumerate(self.tool_calls)
            ]
        if self.reasoning is not None:
            data["reasoning"] = {"content": self.reasoning}
        return data


@dataclass(frozen=True)
class ChunkChoice:
    """A choice inside one streaming chunk."""

    index: int
    delta: ChunkDelta
    finish_reason: FinishReason | None = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "delta": self.delta.to_dict(),
            "finish_reason": self.finish_reason,
        }


@dataclass(frozen=True)
class ChatCompletionChunk:
    """One incremental frame of a streaming completion."""

    id: str
    created: int
    model: str
    choices: Sequence[ChunkChoice]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [choice.to_dict() for choice in self.choices],
        }


# =============================================================================
# Models, resolution and status
# =============================================================================


@dataclass(frozen=True)
class ModelInfo:
    """Information about a model offered by a provider."""

    id: str
    provider: str
    owned_by: str | None = None
    created: int | None = None
    context_length: int | None = None
    supports_tools: bool | None = None
    supports_vision: bool | None = None

    def to_dict(self) -> dict:
        data: dict = {"id": self.id, "object": "model", "provider": self.provider}
        for name in ("owned_by", "created", "context_length", "supports_tools", "supports_vision"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data


@dataclass(frozen=True)
class ParsedModel:
    """Result of resolving a model string."""

    provider: str
    model: str


@dataclass(frozen=True)
class ProviderStatus:
    """Result of a provider availability check."""

    provider: str
    available: bool
    error: str | None = None
    models: Sequence[ModelInfo] | None = None
