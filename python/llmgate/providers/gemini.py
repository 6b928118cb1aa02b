"""Gemini adapter (Generative Language API).

- Non-streaming: POST {base}/models/{model}:generateContent
- Streaming: POST {base}/models/{model}:streamGenerateContent?alt=sse
- Models: GET {base}/models

Auth:
- Header: x-goog-api-key: <key>
- NEVER put key in query param

Message conversion:
- System messages -> systemInstruction.parts
- "assistant" role -> "model" role, tool calls -> functionCall parts
- Tool results -> user turn with functionResponse parts (the function name
  is recovered from the assistant call with the same id)
- Images: data URLs only, as inlineData parts

Request body:
{
  "contents": [
    {"role": "user", "parts": [{"text": "..."}]},
    {"role": "model", "parts": [{"functionCall": {"name": "...", "args": {...}}}]}
  ],
  "systemInstruction": {"parts": [{"text": "<system_prompt>"}]},
  "tools": [{"functionDeclarations": [{"name": ..., "parameters": {...}}]}],
  "toolConfig": {"functionCallingConfig": {"mode": "AUTO"}},
  "generationConfig": {"maxOutputTokens": 1024, "temperature": 0.7}
}

Streaming:
- Each event: data: {"candidates":[{"content":{"parts":[...]}, "finishReason": ...}]}
- functionCall parts arrive whole, so tool calls are emitted immediately
- The stream simply ends after the event carrying finishReason
"""

import json
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
from llmgate.streaming import StreamDecoder, new_id, new_tool_call_id
from llmgate.types import (
    ChatCompletion,
    ChatCompletionChunk,
    Choice,
    ChunkDelta,
    CompletionRequest,
    FunctionCall,
    ImagePart,
    Message,
    ModelInfo,
    NamedToolChoice,
    TextPart,
    ToolCall,
    ToolChoice,
)


def _function_response(message: Message) -> dict:
    text = message.text()
    try:
        value = json.loads(text)
    except ValueError:
        value = None
    return value if isinstance(value, dict) else {"content": text}


def convert_tool_choice(choice: ToolChoice) -> dict:
    if isinstance(choice, NamedToolChoice):
        config = {"mode": "ANY", "allowedFunctionNames": [choice.name]}
    else:
        config = {"mode": {"none": "NONE", "auto": "AUTO", "required": "ANY"}[choice]}
    return {"functionCallingConfig": config}


def parse_candidate_parts(parts: Any) -> tuple[list[str], list[str], list[ToolCall]]:
    """Split Gemini parts into (text, thought text, tool calls)."""
    texts: list[str] = []
    thoughts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in parts or []:
        if "functionCall" in part:
            call = part["functionCall"] or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or new_tool_call_id(),
                    function=FunctionCall(
                        name=call.get("name") or "",
                        arguments=arguments_json(call.get("args")),
                    ),
                )
            )
        elif isinstance(part.get("text"), str):
            (thoughts if part.get("thought") else texts).append(part["text"])
    return texts, thoughts, tool_calls


class GeminiStreamDecoder(StreamDecoder):
    """Decoder for streamGenerateContent SSE streams."""

    protocol = "sse"

    def __init__(self, *, provider: str, model: str):
        super().__init__(provider=provider, model=model)
        self._tool_choices: set[int] = set()

    def handle_event(self, event: Mapping[str, Any]) -> Iterator[ChatCompletionChunk]:
        self.state.capture(id=event.get("responseId"))

        for position, candidate in enumerate(event.get("candidates") or []):
            index = candidate.get("index", position)
            role_chunk = self.state.role_chunk(index)
            if role_chunk is not None:
                yield role_chunk

            content = candidate.get("content") or {}
            texts, thoughts, tool_calls = parse_candidate_parts(content.get("parts"))
            for thought in thoughts:
                if thought:
                    yield self.state.chunk(index, ChunkDelta(reasoning=thought))
            for text in texts:
                if text:
                    yield self.state.chunk(index, ChunkDelta(content=text))
            if tool_calls:
                self._tool_choices.add(index)
                yield self.state.chunk(index, ChunkDelta(tool_calls=tool_calls))

            finish_reason = candidate.get("finishReason")
            if finish_reason:
                yield self.state.chunk(
                    index,
                    ChunkDelta(),
                    map_finish_reason(finish_reason, has_tool_calls=index in self._tool_choices),
                )


class GeminiAdapter(ProviderAdapter):
    """Gemini generateContent adapter."""

    name = "gemini"
    env_api_key_name = "GEMINI_API_KEY"
    doc_url = "https://ai.google.dev/gemini-api/docs"
    api_base = "https://generativelanguage.googleapis.com/v1beta"
    capabilities = ProviderCapabilities(
        streaming=True, tools=True, vision=True, list_models=True, reasoning=True
    )
    decoder_class = GeminiStreamDecoder

    def build_headers(self, api_key: str | None) -> dict[str, str]:
        """Build request headers.

        Note: API key goes in header, NEVER in query param.
        """
        return {
            "x-goog-api-key": api_key or "",
            "Content-Type": "application/json",
        }

    def completion_url(self, model: str, *, stream: bool) -> str:
        model = model.removeprefix("models/")
        if stream:
            return f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{model}:generateContent"

    def _parts(self, message: Message) -> list[dict]:
        if message.content is None:
            return []
        if isinstance(message.content, str):
            return [{"text": message.content}] if message.content else []
        parts = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ImagePart):
                parsed = parse_data_url(part.url)
                if parsed is None:
                    raise unsupported(self.name, "image URLs (pass a base64 data URL)")
                mime_type, data = parsed
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
        return parts

    def convert_messages(self, messages: list[Message]) -> tuple[list[dict], list[dict]]:
        """Convert messages into (system parts, contents)."""
        system_parts: list[dict] = []
        contents: list[dict] = []
        call_names: dict[str, str] = {}

        for message in messages:
            if message.role == "system":
                system_parts.extend(self._parts(message))
            elif message.role == "tool":
                name = message.name or call_names.get(message.tool_call_id or "", "")
                contents.append(
                    {
                        "role": "user",
                        "parts": [
                            {
                                "functionResponse": {
                                    "name": name,
                                    "response": _function_response(message),
                                }
                            }
                        ],
                    }
                )
            elif message.role == "assistant":
                parts = self._parts(message)
                for tool_call in message.tool_calls or ():
                    call_names[tool_call.id] = tool_call.function.name
                    parts.append(
                        {
                            "functionCall": {
                                "name": tool_call.function.name,
                                "args": decode_arguments(tool_call),
                            }
                        }
                    )
                contents.append({"role": "model", "parts": parts})
            else:
                contents.append({"role": "user", "parts": self._parts(message)})

        return system_parts, contents

    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        if request.user is not None:
            raise unsupported(self.name, "user attribution")

        system_parts, contents = self.convert_messages(list(request.messages))
        body: dict = {"contents": contents}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}

        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.function.name,
                            "description": tool.function.description or "",
                            "parameters": dict(tool.function.parameters),
                        }
                        for tool in request.tools
                    ]
                }
            ]
        if request.tool_choice is not None:
            body["toolConfig"] = convert_tool_choice(request.tool_choice)

        generation_config: dict = {}
        for name, key in (
            ("temperature", "temperature"),
            ("top_p", "topP"),
            ("max_tokens", "maxOutputTokens"),
            ("seed", "seed"),
            ("presence_penalty", "presencePenalty"),
            ("frequency_penalty", "frequencyPenalty"),
            ("n", "candidateCount"),
        ):
            value = getattr(request, name)
            if value is not None:
                generation_config[key] = value
        stop = request.stop_list()
        if stop:
            generation_config["stopSequences"] = stop
        if request.response_format is not None and request.response_format.type != "text":
            generation_config["responseMimeType"] = "application/json"
            schema = request.response_format.json_schema
            if schema is not None:
                generation_config["responseSchema"] = dict(schema.get("schema", schema))
        if generation_config:
            body["generationConfig"] = generation_config

        return body

    def convert_response(self, data: Mapping[str, Any], *, model: str) -> ChatCompletion:
        choices = []
        for position, candidate in enumerate(data.get("candidates") or []):
            content = candidate.get("content") or {}
            texts, thoughts, tool_calls = parse_candidate_parts(content.get("parts"))
            choices.append(
                Choice(
                    index=candidate.get("index", position),
                    message=Message(
                        role="assistant",
                        content="".join(texts) or None,
                        tool_calls=tool_calls or None,
                    ),
                    finish_reason=map_finish_reason(
                        candidate.get("finishReason"), has_tool_calls=bool(tool_calls)
                    ),
                    reasoning="".join(thoughts) or None,
                )
            )

        usage = data.get("usageMetadata") or {}
        return ChatCompletion(
            id=data.get("responseId") or new_id(self.name),
            created=int(time.time()),
            model=data.get("modelVersion") or model,
            provider=self.name,
            choices=choices,
            usage=build_usage(
                usage.get("promptTokenCount"),
                usage.get("candidatesTokenCount"),
                usage.get("totalTokenCount"),
            ),
        )

    def convert_models(self, data: Mapping[str, Any]) -> list[ModelInfo]:
        models = []
        for item in data.get("models") or []:
            methods = item.get("supportedGenerationMethods") or []
            if "generateContent" not in methods:
                continue
            name = item.get("name") or ""
            models.append(
                ModelInfo(
                    id=name.removeprefix("models/"),
                    provider=self.name,
                    owned_by="google",
                    context_length=item.get("inputTokenLimit"),
                )
            )
        return models
