"""Ollama adapter (local daemon).

- Chat: POST {base}/api/chat
- Models: GET {base}/api/tags
- Version: GET {base}/api/version
- No API key

Request body:
{
  "model": "llama3.2",
  "messages": [{"role": "user", "content": "...", "images": ["<base64>"]}],
  "tools": [{"type": "function", "function": {...}}],
  "options": {"temperature": 0.7, "num_predict": 256, "stop": ["..."]},
  "format": "json",
  "stream": true
}

Streaming is newline-delimited JSON, one object per line:
{"model": "...", "message": {"role": "assistant", "content": "Hel"}, "done": false}
...
{"model": "...", "message": {"role": "assistant", "content": ""}, "done": true,
 "done_reason": "stop", "prompt_eval_count": 10, "eval_count": 20}

Tool calls arrive whole inside message.tool_calls with decoded arguments.
Tool calling needs daemon version 0.3.0 or later; is_available records the
daemon version and tool requests against an older daemon are rejected.
"""

import asyncio
import time
from collections.abc import Iterator, Mapping
from typing import Any

import httpx

from llmgate.adapter import (
    ProviderAdapter,
    ProviderCapabilities,
    build_usage,
    decode_arguments,
    map_finish_reason,
    parse_data_url,
    unsupported,
)
from llmgate.errors import RequestFailedError
from llmgate.logging import get_logger
from llmgate.providers.openai import convert_tool_calls
from llmgate.streaming import StreamDecoder, new_id
from llmgate.transport import client_session, get_json
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    CompletionRequest,
    ImagePart,
    Message,
    ModelInfo,
    NamedToolChoice,
)

logger = get_logger(__name__)

MINIMUM_TOOL_VERSION = "0.3.0"
PROBE_TIMEOUT_S = 5.0

_TOOL_MODELS = (
    "llama3",
    "mistral",
    "mixtral",
    "qwen",
    "phi3",
    "phi4",
    "granite",
    "command-r",
)
_VISION_MODELS = ("llava", "bakllava", "llama3.2-vision", "moondream")


def parse_version(version: str) -> tuple[int, ...]:
    parts = []
    for piece in version.strip().lstrip("v").split("-")[0].split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def version_at_least(version: str, minimum: str) -> bool:
    current, required = parse_version(version), parse_version(minimum)
    width = max(len(current), len(required))
    return current + (0,) * (width - len(current)) >= required + (0,) * (width - len(required))


class OllamaStreamDecoder(StreamDecoder):
    """Decoder for /api/chat NDJSON streams."""

    protocol = "ndjson"

    def __init__(self, *, provider: str, model: str):
        super().__init__(provider=provider, model=model)
        self._saw_tool_call = False

    def handle_event(self, event: Mapping[str, Any]) -> Iterator[ChatCompletionChunk]:
        if event.get("error"):
            raise RequestFailedError(
                f"Stream from {self.provider} failed: {event['error']}", provider=self.provider
            )

        self.state.capture(model=event.get("model"))
        message = event.get("message") or {}

        role_chunk = self.state.role_chunk(0, message.get("role") or "assistant")
        if role_chunk is not None:
            yield role_chunk

        thinking = message.get("thinking")
        if isinstance(thinking, str) and thinking:
            yield self.state.chunk(0, ChunkDelta(reasoning=thinking))

        content = message.get("content")
        if isinstance(content, str) and content:
            yield self.state.chunk(0, ChunkDelta(content=content))

        tool_calls = convert_tool_calls(message.get("tool_calls"))
        if tool_calls:
            self._saw_tool_call = True
            yield self.state.chunk(0, ChunkDelta(tool_calls=tool_calls))

        if event.get("done"):
            yield self.state.chunk(
                0,
                ChunkDelta(),
                map_finish_reason(event.get("done_reason"), has_tool_calls=self._saw_tool_call),
            )
            self.done = True


class OllamaAdapter(ProviderAdapter):
    """Ollama local daemon adapter."""

    name = "ollama"
    env_api_key_name = None
    doc_url = "https://github.com/ollama/ollama/blob/main/docs/api.md"
    api_base = "http://localhost:11434"
    capabilities = ProviderCapabilities(
        streaming=True, tools=True, vision=True, list_models=True, reasoning=True
    )
    default_timeout_s = 120.0
    requires_api_key = False
    decoder_class = OllamaStreamDecoder

    def __init__(self, config=None, *, client: httpx.AsyncClient | None = None):
        super().__init__(config, client=client)
        # Daemon facts learned by is_available; None until probed
        self.version: str | None = None
        self.tools_supported: bool | None = None

    def build_headers(self, api_key: str | None) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def completion_url(self, model: str, *, stream: bool) -> str:
        return f"{self.base_url}/api/chat"

    def models_url(self) -> str:
        return f"{self.base_url}/api/tags"

    async def _fetch_version(self, client: httpx.AsyncClient) -> str | None:
        try:
            data = await get_json(
                client, f"{self.base_url}/api/version", headers={}, timeout_s=PROBE_TIMEOUT_S
            )
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError):
            return None
        version = data.get("version")
        return version if isinstance(version, str) and version else None

    async def is_available(self) -> bool:
        """Probe /api/tags, then record the daemon version. Never raises."""
        try:
            async with client_session(self._client, PROBE_TIMEOUT_S) as client:
                await get_json(client, self.models_url(), headers={}, timeout_s=PROBE_TIMEOUT_S)
                self.version = await self._fetch_version(client)
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError, OSError) as exc:
            logger.debug("ollama_unavailable", error_type=type(exc).__name__)
            return False

        if self.version:
            self.tools_supported = version_at_least(self.version, MINIMUM_TOOL_VERSION)
        else:
            # Unknown version: assume a current daemon
            self.tools_supported = True
        return True

    def _convert_message(self, message: Message) -> dict:
        converted: dict = {"role": message.role, "content": message.text()}

        if message.content is not None and not isinstance(message.content, str):
            images = []
            for part in message.content:
                if isinstance(part, ImagePart):
                    parsed = parse_data_url(part.url)
                    if parsed is None:
                        raise unsupported(self.name, "image URLs (pass a base64 data URL)")
                    images.append(parsed[1])
            if images:
                converted["images"] = images

        if message.tool_calls:
            converted["tool_calls"] = [
                {
                    "function": {
                        "name": tool_call.function.name,
                        "arguments": decode_arguments(tool_call),
                    }
                }
                for tool_call in message.tool_calls
            ]
        if message.role == "tool" and message.name:
            converted["tool_name"] = message.name
        return converted

    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        if request.n is not None and request.n > 1:
            raise unsupported(self.name, "multiple choices (n > 1)")
        if request.tool_choice == "required" or isinstance(request.tool_choice, NamedToolChoice):
            raise unsupported(self.name, "forced tool choice")
        if request.user is not None:
            raise unsupported(self.name, "user attribution")

        body: dict = {
            "model": request.model,
            "messages": [self._convert_message(message) for message in request.messages],
            "stream": stream,
        }

        if request.tools and request.tool_choice != "none":
            if self.tools_supported is False:
                raise RequestFailedError(
                    f"Ollama version {self.version} does not support tool calling. "
                    f"Upgrade to {MINIMUM_TOOL_VERSION} or later.",
                    provider=self.name,
                )
            body["tools"] = [tool.to_dict() for tool in request.tools]

        options: dict = {}
        for name, key in (
            ("temperature", "temperature"),
            ("top_p", "top_p"),
            ("max_tokens", "num_predict"),
            ("seed", "seed"),
            ("presence_penalty", "presence_penalty"),
            ("frequency_penalty", "frequency_penalty"),
        ):
            value = getattr(request, name)
            if value is not None:
                options[key] = value
        stop = request.stop_list()
        if stop:
            options["stop"] = stop
        if options:
            body["options"] = options

        if request.response_format is not None:
            if request.response_format.type == "json_object":
                body["format"] = "json"
            elif request.response_format.type == "json_schema":
                schema = request.response_format.json_schema or {}
                body["format"] = dict(schema.get("schema", schema))

        return body

    def convert_response(self, data: Mapping[str, Any], *, model: str) -> ChatCompletion:
        message = data.get("message") or {}
        tool_calls = convert_tool_calls(message.get("tool_calls"))
        thinking = message.get("thinking")
        content = message.get("content")

        return ChatCompletion(
            id=new_id(self.name),
            created=int(time.time()),
            model=data.get("model") or model,
            provider=self.name,
            choices=[
                Choice(
                    index=0,
                    message=Message(
                        role="assistant",
                        content=content if isinstance(content, str) else None,
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=map_finish_reason(
                        data.get("done_reason"), has_tool_calls=bool(tool_calls)
                    ),
                    reasoning=thinking if isinstance(thinking, str) and thinking else None,
                )
            ],
            usage=build_usage(data.get("prompt_eval_count"), data.get("eval_count")),
        )

    def convert_models(self, data: Mapping[str, Any]) -> list[ModelInfo]:
        models = []
        for item in data.get("models") or []:
            name = item.get("name") or item.get("model")
            if not isinstance(name, str):
                continue
            lowered = name.lower()
            models.append(
                ModelInfo(
                    id=name,
                    provider=self.name,
                    owned_by="ollama",
                    supports_tools=any(m in lowered for m in _TOOL_MODELS),
                    supports_vision=any(m in lowered for m in _VISION_MODELS),
                )
            )
        return models
