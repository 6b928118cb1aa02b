"""Anthropic Messages API adapter.

- Endpoint: POST {base}/messages
- Headers: x-api-key: <key>, anthropic-version: 2023-06-01, Content-Type: application/json

Message conversion:
- System messages extracted to the separate "system" field (joined by newlines)
- Tool results become user messages with tool_result blocks; consecutive
  results share one user message
- Assistant tool calls become tool_use blocks with decoded input
- Images: data URLs as base64 sources, http(s) URLs as url sources

Response (non-stream):
{
  "id": "msg_...",
  "model": "claude-...",
  "content": [{"type": "text", "text": "..."},
              {"type": "tool_use", "id": "toolu_...", "name": "...", "input": {...}}],
  "stop_reason": "end_turn" | "max_tokens" | "stop_sequence" | "tool_use",
  "usage": {"input_tokens": 100, "output_tokens": 50}
}

Streaming (SSE, each data line carries its own "type"):
- message_start: id and model
- content_block_start: text, thinking or tool_use (id, name) at a block index
- content_block_delta: text_delta, thinking_delta, or input_json_delta
  (partial_json fragments of the tool input)
- content_block_stop: a tool_use block is complete
- message_delta: stop_reason
- message_stop: end of stream
- error: stream-level failure
"""

import time
from collections.abc import Iterator, Mapping
from typing import Any

from llmgate.adapter import (
    ProviderAdapter,
    ProviderCapabilities,
    arguments_json,
    build_usage,
    decode_arguments,
    map_finish_reason,
    parse_data_url,
    unsupported,
)
from llmgate.errors import classify_stream_error_event
from llmgate.streaming import StreamDecoder, new_id
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    CompletionRequest,
    FunctionCall,
    ImagePart,
    Message,
    NamedToolChoice,
    TextPart,
    ToolCall,
    ToolChoice,
)

ANTHROPIC_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


def _image_block(part: ImagePart) -> dict:
    parsed = parse_data_url(part.url)
    if parsed is not None:
        media_type, data = parsed
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }
    return {"type": "image", "source": {"type": "url", "url": part.url}}


def _content_blocks(message: Message) -> list[dict]:
    if message.content is None:
        return []
    if isinstance(message.content, str):
        return [{"type": "text", "text": message.content}] if message.content else []
    blocks = []
    for part in message.content:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        else:
            blocks.append(_image_block(part))
    return blocks


def convert_messages(messages: list[Message]) -> tuple[str | None, list[dict]]:
    """Split canonical messages into (system prompt, Anthropic messages)."""
    system_parts: list[str] = []
    converted: list[dict] = []

    for message in messages:
        if message.role == "system":
            system_parts.append(message.text())
            continue

        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.text(),
            }
            previous = converted[-1] if converted else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and previous["content"]
                and previous["content"][-1].get("type") == "tool_result"
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if message.role == "assistant" and message.tool_calls:
            blocks = _content_blocks(message)
            for tool_call in message.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": tool_call.id,
                        "name": tool_call.function.name,
                        "input": decode_arguments(tool_call),
                    }
                )
            converted.append({"role": "assistant", "content": blocks})
            continue

        if isinstance(message.content, str) or message.content is None:
            converted.append({"role": message.role, "content": message.content or ""})
        else:
            converted.append({"role": message.role, "content": _content_blocks(message)})

    system = "\n".join(part for part in system_parts if part) or None
    return system, converted


def convert_tool_choice(choice: ToolChoice) -> dict:
    if isinstance(choice, NamedToolChoice):
        return {"type": "tool", "name": choice.name}
    if choice == "required":
        return {"type": "any"}
    return {"type": choice}


class AnthropicStreamDecoder(StreamDecoder):
    """Decoder for Anthropic Messages SSE streams.

    Tool calls are keyed by content block index and emitted whole on
    content_block_stop.
    """

    protocol = "sse"

    def __init__(self, *, provider: str, model: str):
        super().__init__(provider=provider, model=model)
        self._saw_tool_call = False

    def handle_event(self, event: Mapping[str, Any]) -> Iterator[ChatCompletionChunk]:
        event_type = event.get("type")

        if event_type == "message_start":
            message = event.get("message") or {}
            self.state.capture(id=message.get("id"), model=message.get("model"))
            role_chunk = self.state.role_chunk(0)
            if role_chunk is not None:
                yield role_chunk

        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "tool_use":
                self.tool_calls.start(
                    0, event.get("index"), id=block.get("id"), name=block.get("name")
                )
            elif block_type == "text" and block.get("text"):
                yield self.state.chunk(0, ChunkDelta(content=block["text"]))
            elif block_type == "thinking" and block.get("thinking"):
                yield self.state.chunk(0, ChunkDelta(reasoning=block["thinking"]))

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta" and delta.get("text"):
                yield self.state.chunk(0, ChunkDelta(content=delta["text"]))
            elif delta_type == "thinking_delta" and delta.get("thinking"):
                yield self.state.chunk(0, ChunkDelta(reasoning=delta["thinking"]))
            elif delta_type == "input_json_delta":
                self.tool_calls.append(0, event.get("index"), delta.get("partial_json"))

        elif event_type == "content_block_stop":
            tool_call = self.tool_calls.pop(0, event.get("index"))
            if tool_call is not None:
                self._saw_tool_call = True
                yield self.state.chunk(0, ChunkDelta(tool_calls=[tool_call]))

        elif event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if stop_reason:
                pending = self.tool_calls.pop_choice(0)
                if pending:
                    self._saw_tool_call = True
                    yield self.state.chunk(0, ChunkDelta(tool_calls=pending))
                yield self.state.chunk(
                    0,
                    ChunkDelta(),
                    map_finish_reason(stop_reason, has_tool_calls=self._saw_tool_call),
                )

        elif event_type == "message_stop":
            self.done = True

        elif event_type == "error":
            error = event.get("error") or {}
            raise classify_stream_error_event(self.provider, error.get("type"), error.get("message"))


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter."""

    name = "anthropic"
    env_api_key_name = "ANTHROPIC_API_KEY"
    doc_url = "https://docs.anthropic.com"
    api_base = "https://api.anthropic.com/v1"
    capabilities = ProviderCapabilities(
        streaming=True, tools=True, vision=True, list_models=False, reasoning=True
    )
    decoder_class = AnthropicStreamDecoder

    async def is_available(self) -> bool:
        # No free health endpoint; a probe request would spend tokens.
        return bool(self.config.api_key) and self.config.api_key.startswith("sk-ant-")

    def build_headers(self, api_key: str | None) -> dict[str, str]:
        return {
            "x-api-key": api_key or "",
            "anthropic-version": self.config.options.get("anthropic_version", ANTHROPIC_API_VERSION),
            "Content-Type": "application/json",
        }

    def completion_url(self, model: str, *, stream: bool) -> str:
        return f"{self.base_url}/messages"

    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        if request.seed is not None:
            raise unsupported(self.name, "seed")
        if request.presence_penalty is not None or request.frequency_penalty is not None:
            raise unsupported(self.name, "presence/frequency penalties")
        if request.n is not None and request.n > 1:
            raise unsupported(self.name, "multiple choices (n > 1)")
        if request.response_format is not None and request.response_format.type != "text":
            raise unsupported(self.name, f"response_format {request.response_format.type!r}")

        system, messages = convert_messages(list(request.messages))
        body: dict = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": stream,
        }
        if system:
            body["system"] = system

        if request.tools:
            body["tools"] = [
                {
                    "name": tool.function.name,
                    "description": tool.function.description or "",
                    "input_schema": dict(tool.function.parameters),
                }
                for tool in request.tools
            ]
        if request.tool_choice is not None:
            body["tool_choice"] = convert_tool_choice(request.tool_choice)

        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        stop = request.stop_list()
        if stop:
            body["stop_sequences"] = stop
        if request.user is not None:
            body["metadata"] = {"user_id": request.user}

        budget = self.config.options.get("thinking_budget_tokens")
        if budget:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}

        return body

    def convert_response(self, data: Mapping[str, Any], *, model: str) -> ChatCompletion:
        text_parts: list[str] = []
        thinking_parts: list[str] = []
        tool_calls: list[ToolCall] = []

        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text") or "")
            elif block_type == "thinking":
                thinking_parts.append(block.get("thinking") or "")
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=block.get("id") or "",
                        function=FunctionCall(
                            name=block.get("name") or "",
                            arguments=arguments_json(block.get("input")),
                        ),
                    )
                )

        usage = data.get("usage") or {}
        return ChatCompletion(
            id=data.get("id") or new_id(self.name),
            created=int(time.time()),
            model=data.get("model") or model,
            provider=self.name,
            choices=[
                Choice(
                    index=0,
                    message=Message(
                        role="assistant",
                        content="".join(text_parts) or None,
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=map_finish_reason(
                        data.get("stop_reason"), has_tool_calls=bool(tool_calls)
                    ),
                    reasoning="".join(thinking_parts) or None,
                )
            ],
            usage=build_usage(usage.get("input_tokens"), usage.get("output_tokens")),
        )
