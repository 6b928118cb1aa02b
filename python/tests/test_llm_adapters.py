"""Tests for the provider adapter layer.

Test coverage per provider:
- test_{provider}_nonstream_success: Happy path non-streaming
- test_{provider}_stream_success: Happy path streaming
- test_{provider}_invalid_key_401: 401 -> MISSING_CREDENTIAL
- test_{provider}_rate_limit_429: 429 -> RATE_LIMITED
- test_{provider}_provider_down_500: 5xx -> REQUEST_FAILED with status
- test_{provider}_timeout: Timeout -> TIMEOUT
- request conversion and unsupported-field checks

Explicitly Forbidden:
- Live provider calls
- Real API keys anywhere in test code
- Flaky tests depending on network

These are pure unit tests. They use respx to mock HTTP requests and test
each adapter in isolation.
"""

import json
from pathlib import Path

import httpx
import pytest
import respx

from llmgate.adapter import ProviderConfig
from llmgate.errors import (
    ErrorKind,
    GatewayTimeoutError,
    InvalidRequestError,
    MissingCredentialError,
    ProviderUnavailableError,
    RateLimitedError,
    RequestFailedError,
)
from llmgate.providers import AnthropicAdapter, GeminiAdapter, LlamafileAdapter, OllamaAdapter
from llmgate.providers.openai import COMPATIBLE_SPECS, OpenAIAdapter
from llmgate.types import (
    ChatCompletionChunk,
    CompletionRequest,
    FunctionCall,
    ImagePart,
    Message,
    NamedToolChoice,
    ResponseFormat,
    TextPart,
    Tool,
    ToolCall,
    ToolFunction,
)

# Path to test fixtures
FIXTURES_DIR = Path(__file__).parent / "fixtures" / "llm"

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash"
OLLAMA_BASE = "http://localhost:11434"


def load_fixture(provider: str, filename: str) -> dict | str:
    """Load a test fixture file."""
    path = FIXTURES_DIR / provider / filename
    content = path.read_text()
    if filename.endswith(".json"):
        return json.loads(content)
    return content


def sent_body(route: respx.Route) -> dict:
    return json.loads(route.calls.last.request.content)


async def collect(stream) -> list[ChatCompletionChunk]:
    return [chunk async for chunk in stream]


def streamed_text(chunks: list[ChatCompletionChunk]) -> str:
    return "".join(c.choices[0].delta.content or "" for c in chunks)


WEATHER_TOOL = Tool(
    function=ToolFunction(
        name="get_weather",
        description="Current weather for a city",
        parameters={"type": "object", "properties": {"city": {"type": "string"}}},
    )
)


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def llm_request(messages):
    """Create a basic completion request for testing."""
    return CompletionRequest(
        model="gpt-4o-mini",
        messages=messages,
        max_tokens=100,
        temperature=0.7,
    )


@pytest.fixture
def tool_conversation():
    """A conversation holding a completed tool round trip."""
    return [
        Message(role="system", content="You are helpful."),
        Message(role="user", content="Weather in Paris?"),
        Message(
            role="assistant",
            tool_calls=[
                ToolCall(
                    id="call_1",
                    function=FunctionCall(name="get_weather", arguments='{"city": "Paris"}'),
                )
            ],
        ),
        Message(role="tool", content='{"temp_c": 21}', tool_call_id="call_1"),
    ]


def _openai(httpx_client, **config) -> OpenAIAdapter:
    return OpenAIAdapter(ProviderConfig(api_key="sk-test", **config), client=httpx_client)


# =============================================================================
# OpenAI Adapter Tests
# =============================================================================


class TestOpenAIAdapter:
    """Tests for OpenAI adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_nonstream_success(self, httpx_client, llm_request):
        """Happy path non-streaming completion."""
        fixture = load_fixture("openai", "success_nonstream.json")
        route = respx.post(OPENAI_URL).respond(200, json=fixture)

        response = await _openai(httpx_client).completion(llm_request)

        assert response.id == "chatcmpl-abc123"
        assert response.provider == "openai"
        assert response.choices[0].message.content == "Hello! How can I help you today?"
        assert response.choices[0].finish_reason == "stop"
        assert response.usage is not None
        assert response.usage.prompt_tokens == 10
        assert response.usage.completion_tokens == 8
        assert response.usage.total_tokens == 18

        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer sk-test"
        body = sent_body(route)
        assert body["model"] == "gpt-4o-mini"
        assert body["stream"] is False
        assert body["max_tokens"] == 100
        assert body["temperature"] == 0.7
        assert body["messages"][0] == {"role": "system", "content": "You are helpful."}

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_tool_call_response(self, httpx_client, tool_conversation):
        """Tool calls in the response are surfaced with finish_reason tool_calls."""
        fixture = load_fixture("openai", "success_tool_call.json")
        route = respx.post(OPENAI_URL).respond(200, json=fixture)

        response = await _openai(httpx_client).completion(
            CompletionRequest(
                model="gpt-4o-mini",
                messages=tool_conversation,
                tools=[WEATHER_TOOL],
                tool_choice=NamedToolChoice(name="get_weather"),
            )
        )

        choice = response.choices[0]
        assert choice.finish_reason == "tool_calls"
        assert choice.message.content is None
        (call,) = choice.message.tool_calls
        assert call.id == "call_abc"
        assert json.loads(call.function.arguments) == {"city": "Paris"}

        body = sent_body(route)
        assert body["tools"][0]["function"]["name"] == "get_weather"
        assert body["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}
        assert body["messages"][3] == {
            "role": "tool",
            "content": '{"temp_c": 21}',
            "tool_call_id": "call_1",
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_stream_success(self, httpx_client, llm_request):
        """Happy path streaming completion."""
        stream_content = load_fixture("openai", "success_stream_chunks.txt")
        route = respx.post(OPENAI_URL).respond(
            200, content=stream_content, headers={"content-type": "text/event-stream"}
        )

        chunks = await collect(_openai(httpx_client).completion_stream(llm_request))

        assert len(chunks) == 4
        assert chunks[0].choices[0].delta.role == "assistant"
        assert streamed_text(chunks) == "Hello! How can I help?"
        assert chunks[-1].choices[0].finish_reason == "stop"
        for chunk in chunks[:-1]:
            assert chunk.choices[0].finish_reason is None
        assert {c.id for c in chunks} == {"chatcmpl-abc123"}
        assert sent_body(route)["stream"] is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_stream_tool_call(self, httpx_client, llm_request):
        """Streamed tool call fragments are emitted as one complete call."""
        stream_content = load_fixture("openai", "tool_stream_chunks.txt")
        respx.post(OPENAI_URL).respond(200, content=stream_content)

        chunks = await collect(_openai(httpx_client).completion_stream(llm_request))

        tool_chunks = [c for c in chunks if c.choices[0].delta.tool_calls]
        assert len(tool_chunks) == 1
        (call,) = tool_chunks[0].choices[0].delta.tool_calls
        assert call.id == "call_abc"
        assert call.function.name == "get_weather"
        assert call.function.arguments == '{"city": "Paris"}'
        assert chunks[-1].choices[0].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_invalid_key_401(self, httpx_client, llm_request):
        """401 response should raise MissingCredentialError."""
        fixture = load_fixture("openai", "error_401.json")
        respx.post(OPENAI_URL).respond(401, json=fixture)

        with pytest.raises(MissingCredentialError) as exc_info:
            await _openai(httpx_client).completion(llm_request)

        assert exc_info.value.status_code == 401
        assert exc_info.value.provider == "openai"

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_stream_invalid_key_401(self, httpx_client, llm_request):
        """401 on a stream is classified before any chunk is produced."""
        fixture = load_fixture("openai", "error_401.json")
        respx.post(OPENAI_URL).respond(401, json=fixture)

        with pytest.raises(MissingCredentialError):
            await collect(_openai(httpx_client).completion_stream(llm_request))

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_rate_limit_429(self, httpx_client, llm_request):
        """429 response should raise RateLimitedError with retry-after."""
        fixture = load_fixture("openai", "error_429.json")
        respx.post(OPENAI_URL).respond(429, json=fixture, headers={"retry-after": "20"})

        with pytest.raises(RateLimitedError) as exc_info:
            await _openai(httpx_client).completion(llm_request)

        assert exc_info.value.retry_after_s == 20.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_provider_down_500(self, httpx_client, llm_request):
        """500 response should raise RequestFailedError carrying the status."""
        fixture = load_fixture("openai", "error_500.json")
        respx.post(OPENAI_URL).respond(500, json=fixture)

        with pytest.raises(RequestFailedError) as exc_info:
            await _openai(httpx_client).completion(llm_request)

        assert exc_info.value.status_code == 500
        assert "server had an error" in exc_info.value.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_timeout(self, httpx_client, llm_request):
        """Timeout should raise GatewayTimeoutError."""
        respx.post(OPENAI_URL).mock(side_effect=httpx.ReadTimeout("Read timed out"))

        with pytest.raises(GatewayTimeoutError) as exc_info:
            await _openai(httpx_client, timeout_s=1).completion(llm_request)

        assert exc_info.value.timeout_s == 1

    @pytest.mark.asyncio
    async def test_openai_missing_key(self, llm_request):
        """No key configured: fails before any network call."""
        adapter = OpenAIAdapter(ProviderConfig())
        with pytest.raises(MissingCredentialError, match="OPENAI_API_KEY"):
            await adapter.completion(llm_request)

    @pytest.mark.asyncio
    async def test_openai_invalid_request(self, httpx_client):
        """Validation runs before the credential check and the network."""
        with pytest.raises(InvalidRequestError):
            await _openai(httpx_client).completion(CompletionRequest(model="gpt-4o", messages=[]))

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_o_series_uses_max_completion_tokens(self, httpx_client, messages):
        fixture = load_fixture("openai", "success_nonstream.json")
        route = respx.post(OPENAI_URL).respond(200, json=fixture)

        await _openai(httpx_client).completion(
            CompletionRequest(
                model="o3-mini",
                messages=messages,
                max_tokens=500,
                stop="END",
                response_format=ResponseFormat(type="json_object"),
            )
        )

        body = sent_body(route)
        assert body["max_completion_tokens"] == 500
        assert "max_tokens" not in body
        assert body["stop"] == ["END"]
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_list_models(self, httpx_client):
        """Model listing keeps chat models and fills capability heuristics."""
        fixture = load_fixture("openai", "models.json")
        respx.get("https://api.openai.com/v1/models").respond(200, json=fixture)

        models = await _openai(httpx_client).list_models()

        by_id = {m.id: m for m in models}
        assert set(by_id) == {"gpt-4o", "gpt-3.5-turbo", "o1-mini"}
        assert by_id["gpt-4o"].supports_vision is True
        assert by_id["gpt-3.5-turbo"].supports_vision is False
        assert by_id["o1-mini"].supports_tools is False
        assert by_id["gpt-4o"].provider == "openai"

    @pytest.mark.asyncio
    @respx.mock
    async def test_openai_is_available(self, httpx_client):
        respx.get("https://api.openai.com/v1/models").respond(401, json={})
        assert await _openai(httpx_client).is_available() is False
        assert await OpenAIAdapter(ProviderConfig()).is_available() is False


class TestOpenAICompatibleAdapters:
    """Groq, Together, OpenRouter, Mistral, DeepSeek and LM Studio share the OpenAI wire."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_groq_posts_to_own_base(self, httpx_client, llm_request):
        spec = next(s for s in COMPATIBLE_SPECS if s.name == "groq")
        fixture = load_fixture("openai", "success_nonstream.json")
        route = respx.post("https://api.groq.com/openai/v1/chat/completions").respond(
            200, json=fixture
        )

        adapter = OpenAIAdapter(ProviderConfig(api_key="gsk-test"), client=httpx_client, spec=spec)
        response = await adapter.completion(llm_request)

        assert response.provider == "groq"
        assert route.calls.last.request.headers["authorization"] == "Bearer gsk-test"

    @pytest.mark.asyncio
    @respx.mock
    async def test_lmstudio_needs_no_key(self, httpx_client, llm_request):
        spec = next(s for s in COMPATIBLE_SPECS if s.name == "lmstudio")
        fixture = load_fixture("openai", "success_nonstream.json")
        route = respx.post("http://localhost:1234/v1/chat/completions").respond(200, json=fixture)

        adapter = OpenAIAdapter(ProviderConfig(), client=httpx_client, spec=spec)
        await adapter.completion(llm_request)

        assert "authorization" not in route.calls.last.request.headers
        assert adapter.timeout_s == 120.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_lmstudio_not_running(self, httpx_client, llm_request):
        spec = next(s for s in COMPATIBLE_SPECS if s.name == "lmstudio")
        respx.post("http://localhost:1234/v1/chat/completions").mock(
            side_effect=httpx.ConnectError("All connection attempts failed")
        )

        adapter = OpenAIAdapter(ProviderConfig(), client=httpx_client, spec=spec)
        with pytest.raises(ProviderUnavailableError):
            await adapter.completion(llm_request)

    @pytest.mark.asyncio
    async def test_groq_rejects_images(self, httpx_client):
        spec = next(s for s in COMPATIBLE_SPECS if s.name == "groq")
        adapter = OpenAIAdapter(ProviderConfig(api_key="gsk-test"), client=httpx_client, spec=spec)
        request = CompletionRequest(
            model="llama-3.1-8b-instant",
            messages=[Message(role="user", content=[ImagePart("data:image/png;base64,AAAA")])],
        )
        with pytest.raises(RequestFailedError, match="does not support image input"):
            await adapter.completion(request)


class TestLlamafileAdapter:
    @pytest.mark.asyncio
    @respx.mock
    async def test_llamafile_defaults_model_and_flattens_content(self, httpx_client):
        fixture = load_fixture("openai", "success_nonstream.json")
        route = respx.post("http://localhost:8080/v1/chat/completions").respond(200, json=fixture)

        adapter = LlamafileAdapter(client=httpx_client)
        response = await adapter.completion(
            CompletionRequest(
                model="",
                messages=[Message(role="user", content=[TextPart("Hello "), TextPart("there")])],
            )
        )

        assert response.provider == "llamafile"
        body = sent_body(route)
        assert body["model"] == "default"
        assert body["messages"][0]["content"] == "Hello there"

    @pytest.mark.asyncio
    @respx.mock
    async def test_llamafile_stream(self, httpx_client, llm_request):
        stream_content = load_fixture("openai", "success_stream_chunks.txt")
        respx.post("http://localhost:8080/v1/chat/completions").respond(200, content=stream_content)

        chunks = await collect(LlamafileAdapter(client=httpx_client).completion_stream(llm_request))

        assert streamed_text(chunks) == "Hello! How can I help?"

    @pytest.mark.asyncio
    @respx.mock
    async def test_llamafile_list_models(self, httpx_client):
        respx.get("http://localhost:8080/v1/models").respond(
            200, json={"data": [{"id": "mistral-7b-instruct", "owned_by": "llamacpp"}]}
        )
        models = await LlamafileAdapter(client=httpx_client).list_models()
        assert [m.id for m in models] == ["mistral-7b-instruct"]
        assert models[0].supports_tools is None


# =============================================================================
# Anthropic Adapter Tests
# =============================================================================


def _anthropic(httpx_client, **options) -> AnthropicAdapter:
    return AnthropicAdapter(
        ProviderConfig(api_key="sk-ant-test", options=options), client=httpx_client
    )


class TestAnthropicAdapter:
    """Tests for Anthropic adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_nonstream_success(self, httpx_client, llm_request):
        """Happy path non-streaming completion."""
        fixture = load_fixture("anthropic", "success_nonstream.json")
        route = respx.post(ANTHROPIC_URL).respond(200, json=fixture)

        response = await _anthropic(httpx_client).completion(llm_request)

        assert response.id == "msg_01XFDUDYJgAACzvnptvVoYEL"
        assert response.choices[0].message.content == "Hello! How can I help you today?"
        assert response.choices[0].finish_reason == "stop"
        assert response.usage is not None
        assert response.usage.prompt_tokens == 10
        assert response.usage.completion_tokens == 8
        assert response.usage.total_tokens == 18

        request = route.calls.last.request
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = sent_body(route)
        assert body["system"] == "You are helpful."
        assert body["messages"] == [{"role": "user", "content": "Hello!"}]
        assert body["max_tokens"] == 100

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_tool_round_trip(self, httpx_client, tool_conversation):
        """Tool calls and results convert to tool_use / tool_result blocks."""
        fixture = load_fixture("anthropic", "success_tool_use.json")
        route = respx.post(ANTHROPIC_URL).respond(200, json=fixture)

        response = await _anthropic(httpx_client).completion(
            CompletionRequest(
                model="claude-3-5-haiku-20241022",
                messages=tool_conversation,
                tools=[WEATHER_TOOL],
                tool_choice="required",
            )
        )

        choice = response.choices[0]
        assert choice.finish_reason == "tool_calls"
        assert choice.message.content == "Let me check the weather."
        (call,) = choice.message.tool_calls
        assert call.id == "toolu_01A09q90qw90lq917835lq9"
        assert json.loads(call.function.arguments) == {"city": "Paris"}

        body = sent_body(route)
        assert body["max_tokens"] == 4096
        assert body["tool_choice"] == {"type": "any"}
        assert body["tools"][0]["input_schema"]["properties"] == {"city": {"type": "string"}}
        assistant, tool_result = body["messages"][1], body["messages"][2]
        assert assistant["content"][0] == {
            "type": "tool_use",
            "id": "call_1",
            "name": "get_weather",
            "input": {"city": "Paris"},
        }
        assert tool_result == {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "call_1", "content": '{"temp_c": 21}'}
            ],
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_consecutive_tool_results_merge(self, httpx_client):
        fixture = load_fixture("anthropic", "success_nonstream.json")
        route = respx.post(ANTHROPIC_URL).respond(200, json=fixture)

        calls = [
            ToolCall(id=f"call_{i}", function=FunctionCall(name="f", arguments="{}"))
            for i in range(2)
        ]
        await _anthropic(httpx_client).completion(
            CompletionRequest(
                model="claude-3-5-haiku-20241022",
                messages=[
                    Message(role="user", content="go"),
                    Message(role="assistant", tool_calls=calls),
                    Message(role="tool", content="a", tool_call_id="call_0"),
                    Message(role="tool", content="b", tool_call_id="call_1"),
                ],
            )
        )

        body = sent_body(route)
        assert len(body["messages"]) == 3
        assert [b["tool_use_id"] for b in body["messages"][2]["content"]] == ["call_0", "call_1"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_image_sources(self, httpx_client):
        fixture = load_fixture("anthropic", "success_nonstream.json")
        route = respx.post(ANTHROPIC_URL).respond(200, json=fixture)

        await _anthropic(httpx_client).completion(
            CompletionRequest(
                model="claude-3-5-haiku-20241022",
                messages=[
                    Message(
                        role="user",
                        content=[
                            TextPart("Compare"),
                            ImagePart("data:image/png;base64,iVBORw0KGgo="),
                            ImagePart("https://example.com/cat.jpg"),
                        ],
                    )
                ],
            )
        )

        blocks = sent_body(route)["messages"][0]["content"]
        assert blocks[1]["source"] == {
            "type": "base64",
            "media_type": "image/png",
            "data": "iVBORw0KGgo=",
        }
        assert blocks[2]["source"] == {"type": "url", "url": "https://example.com/cat.jpg"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_stream_success(self, httpx_client, llm_request):
        """Happy path streaming completion."""
        stream_content = load_fixture("anthropic", "success_stream_chunks.txt")
        respx.post(ANTHROPIC_URL).respond(
            200, content=stream_content, headers={"content-type": "text/event-stream"}
        )

        chunks = await collect(_anthropic(httpx_client).completion_stream(llm_request))

        assert chunks[0].choices[0].delta.role == "assistant"
        assert streamed_text(chunks) == "Hello! How can I help?"
        assert chunks[-1].choices[0].finish_reason == "stop"
        assert {c.id for c in chunks} == {"msg_01XFDUDYJgAACzvnptvVoYEL"}
        assert {c.model for c in chunks} == {"claude-3-5-haiku-20241022"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_stream_tool_use(self, httpx_client, llm_request):
        stream_content = load_fixture("anthropic", "tool_stream_chunks.txt")
        respx.post(ANTHROPIC_URL).respond(200, content=stream_content)

        chunks = await collect(_anthropic(httpx_client).completion_stream(llm_request))

        tool_chunks = [c for c in chunks if c.choices[0].delta.tool_calls]
        assert len(tool_chunks) == 1
        (call,) = tool_chunks[0].choices[0].delta.tool_calls
        assert call.function.name == "get_weather"
        assert call.function.arguments == '{"a":1}'
        assert chunks[-1].choices[0].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_invalid_key_401(self, httpx_client, llm_request):
        fixture = load_fixture("anthropic", "error_401.json")
        respx.post(ANTHROPIC_URL).respond(401, json=fixture)

        with pytest.raises(MissingCredentialError) as exc_info:
            await _anthropic(httpx_client).completion(llm_request)

        assert "invalid x-api-key" in exc_info.value.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_rate_limit_429(self, httpx_client, llm_request):
        fixture = load_fixture("anthropic", "error_429.json")
        respx.post(ANTHROPIC_URL).respond(429, json=fixture)

        with pytest.raises(RateLimitedError):
            await collect(_anthropic(httpx_client).completion_stream(llm_request))

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_overloaded_529(self, httpx_client, llm_request):
        fixture = load_fixture("anthropic", "error_529.json")
        respx.post(ANTHROPIC_URL).respond(529, json=fixture)

        with pytest.raises(RequestFailedError) as exc_info:
            await _anthropic(httpx_client).completion(llm_request)

        assert exc_info.value.status_code == 529
        assert "Overloaded" in exc_info.value.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_timeout(self, httpx_client, llm_request):
        respx.post(ANTHROPIC_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with pytest.raises(GatewayTimeoutError):
            await _anthropic(httpx_client).completion(llm_request)

    @pytest.mark.asyncio
    async def test_anthropic_rejects_seed(self, httpx_client, messages):
        request = CompletionRequest(model="claude-3-5-haiku-20241022", messages=messages, seed=7)
        with pytest.raises(RequestFailedError, match="does not support seed"):
            await _anthropic(httpx_client).completion(request)

    @pytest.mark.asyncio
    async def test_anthropic_rejects_json_response_format(self, httpx_client, messages):
        request = CompletionRequest(
            model="claude-3-5-haiku-20241022",
            messages=messages,
            response_format=ResponseFormat(type="json_object"),
        )
        with pytest.raises(RequestFailedError, match="response_format"):
            await _anthropic(httpx_client).completion(request)

    @pytest.mark.asyncio
    async def test_anthropic_invalid_tool_arguments(self, httpx_client):
        bad_call = ToolCall(id="c", function=FunctionCall(name="f", arguments="{not json"))
        request = CompletionRequest(
            model="claude-3-5-haiku-20241022",
            messages=[Message(role="user", content="hi"), Message(role="assistant", tool_calls=[bad_call])],
        )
        with pytest.raises(InvalidRequestError):
            await _anthropic(httpx_client).completion(request)

    @pytest.mark.asyncio
    @respx.mock
    async def test_anthropic_options(self, httpx_client, messages):
        fixture = load_fixture("anthropic", "success_nonstream.json")
        route = respx.post(ANTHROPIC_URL).respond(200, json=fixture)

        adapter = _anthropic(
            httpx_client, anthropic_version="2024-01-01", thinking_budget_tokens=2048
        )
        await adapter.completion(
            CompletionRequest(model="claude-sonnet-4", messages=messages, user="user-42")
        )

        assert route.calls.last.request.headers["anthropic-version"] == "2024-01-01"
        body = sent_body(route)
        assert body["thinking"] == {"type": "enabled", "budget_tokens": 2048}
        assert body["metadata"] == {"user_id": "user-42"}

    @pytest.mark.asyncio
    async def test_anthropic_is_available_checks_key_shape(self):
        assert await AnthropicAdapter(ProviderConfig(api_key="sk-ant-abc")).is_available() is True
        assert await AnthropicAdapter(ProviderConfig(api_key="sk-abc")).is_available() is False
        assert await AnthropicAdapter(ProviderConfig()).is_available() is False

    @pytest.mark.asyncio
    async def test_anthropic_list_models_empty(self):
        assert await AnthropicAdapter(ProviderConfig(api_key="sk-ant-abc")).list_models() == []


# =============================================================================
# Gemini Adapter Tests
# =============================================================================


def _gemini(httpx_client) -> GeminiAdapter:
    return GeminiAdapter(ProviderConfig(api_key="test-gemini-key"), client=httpx_client)


@pytest.fixture
def gemini_request(messages):
    return CompletionRequest(
        model="gemini-2.0-flash", messages=messages, max_tokens=100, temperature=0.7
    )


class TestGeminiAdapter:
    """Tests for Gemini adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_nonstream_success(self, httpx_client, gemini_request):
        """Happy path non-streaming completion."""
        fixture = load_fixture("gemini", "success_nonstream.json")
        route = respx.post(f"{GEMINI_BASE}:generateContent").respond(200, json=fixture)

        response = await _gemini(httpx_client).completion(gemini_request)

        assert response.id == "resp-gemini-001"
        assert response.choices[0].message.content == "Hello! How can I help you today?"
        assert response.choices[0].finish_reason == "stop"
        assert response.usage is not None
        assert response.usage.total_tokens == 18

        request = route.calls.last.request
        assert request.headers["x-goog-api-key"] == "test-gemini-key"
        assert "key" not in request.url.params
        body = sent_body(route)
        assert body["systemInstruction"] == {"parts": [{"text": "You are helpful."}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "Hello!"}]}]
        assert body["generationConfig"] == {"temperature": 0.7, "maxOutputTokens": 100}

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_function_call(self, httpx_client, tool_conversation):
        fixture = load_fixture("gemini", "success_function_call.json")
        route = respx.post(f"{GEMINI_BASE}:generateContent").respond(200, json=fixture)

        response = await _gemini(httpx_client).completion(
            CompletionRequest(
                model="gemini-2.0-flash",
                messages=tool_conversation,
                tools=[WEATHER_TOOL],
                tool_choice="auto",
            )
        )

        choice = response.choices[0]
        assert choice.finish_reason == "tool_calls"
        assert json.loads(choice.message.tool_calls[0].function.arguments) == {"city": "Paris"}

        body = sent_body(route)
        assert body["toolConfig"] == {"functionCallingConfig": {"mode": "AUTO"}}
        assert body["tools"][0]["functionDeclarations"][0]["name"] == "get_weather"
        model_turn, tool_turn = body["contents"][1], body["contents"][2]
        assert model_turn == {
            "role": "model",
            "parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Paris"}}}],
        }
        assert tool_turn["parts"][0]["functionResponse"] == {
            "name": "get_weather",
            "response": {"temp_c": 21},
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_stream_success(self, httpx_client, gemini_request):
        """Happy path streaming completion."""
        stream_content = load_fixture("gemini", "success_stream_chunks.txt")
        route = respx.post(url__startswith=f"{GEMINI_BASE}:streamGenerateContent").respond(
            200, content=stream_content, headers={"content-type": "text/event-stream"}
        )

        chunks = await collect(_gemini(httpx_client).completion_stream(gemini_request))

        assert route.calls.last.request.url.params["alt"] == "sse"
        assert len(chunks) == 4
        assert streamed_text(chunks) == "Hello! How can I help?"
        assert chunks[-1].choices[0].finish_reason == "stop"
        assert {c.id for c in chunks} == {"resp-gemini-001"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_rate_limit_429(self, httpx_client, gemini_request):
        fixture = load_fixture("gemini", "error_429.json")
        respx.post(f"{GEMINI_BASE}:generateContent").respond(429, json=fixture)

        with pytest.raises(RateLimitedError):
            await _gemini(httpx_client).completion(gemini_request)

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_invalid_key_400_is_request_failed(self, httpx_client, gemini_request):
        respx.post(f"{GEMINI_BASE}:generateContent").respond(
            400, json={"error": {"code": 400, "message": "API key not valid.", "status": "INVALID_ARGUMENT"}}
        )

        with pytest.raises(RequestFailedError) as exc_info:
            await _gemini(httpx_client).completion(gemini_request)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_gemini_rejects_image_urls(self, httpx_client):
        request = CompletionRequest(
            model="gemini-2.0-flash",
            messages=[Message(role="user", content=[ImagePart("https://example.com/cat.jpg")])],
        )
        with pytest.raises(RequestFailedError, match="image URLs"):
            await _gemini(httpx_client).completion(request)

    @pytest.mark.asyncio
    async def test_gemini_rejects_user(self, httpx_client, messages):
        request = CompletionRequest(model="gemini-2.0-flash", messages=messages, user="u1")
        with pytest.raises(RequestFailedError, match="user attribution"):
            await _gemini(httpx_client).completion(request)

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_json_schema(self, httpx_client, messages):
        fixture = load_fixture("gemini", "success_nonstream.json")
        route = respx.post(f"{GEMINI_BASE}:generateContent").respond(200, json=fixture)

        schema = {"type": "object", "properties": {"ok": {"type": "boolean"}}}
        await _gemini(httpx_client).completion(
            CompletionRequest(
                model="gemini-2.0-flash",
                messages=messages,
                response_format=ResponseFormat(
                    type="json_schema", json_schema={"name": "result", "schema": schema}
                ),
                tool_choice=NamedToolChoice(name="get_weather"),
                tools=[WEATHER_TOOL],
            )
        )

        body = sent_body(route)
        assert body["generationConfig"]["responseMimeType"] == "application/json"
        assert body["generationConfig"]["responseSchema"] == schema
        assert body["toolConfig"]["functionCallingConfig"] == {
            "mode": "ANY",
            "allowedFunctionNames": ["get_weather"],
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_gemini_list_models(self, httpx_client):
        fixture = load_fixture("gemini", "models.json")
        respx.get("https://generativelanguage.googleapis.com/v1beta/models").respond(
            200, json=fixture
        )

        models = await _gemini(httpx_client).list_models()

        assert [m.id for m in models] == ["gemini-2.0-flash"]
        assert models[0].context_length == 1048576


# =============================================================================
# Ollama Adapter Tests
# =============================================================================


class TestOllamaAdapter:
    """Tests for Ollama adapter."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_nonstream_success(self, httpx_client, messages):
        fixture = load_fixture("ollama", "success_nonstream.json")
        route = respx.post(f"{OLLAMA_BASE}/api/chat").respond(200, json=fixture)

        response = await OllamaAdapter(client=httpx_client).completion(
            CompletionRequest(
                model="llama3.2:latest",
                messages=messages,
                max_tokens=64,
                stop=["END"],
                response_format=ResponseFormat(type="json_object"),
            )
        )

        assert response.provider == "ollama"
        assert response.choices[0].message.content == "Hello! How can I help you today?"
        assert response.usage is not None
        assert response.usage.total_tokens == 18

        body = sent_body(route)
        assert body["model"] == "llama3.2:latest"
        assert body["stream"] is False
        assert body["options"] == {"num_predict": 64, "stop": ["END"]}
        assert body["format"] == "json"

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_tool_call_response(self, httpx_client, messages):
        fixture = load_fixture("ollama", "success_tool_call.json")
        route = respx.post(f"{OLLAMA_BASE}/api/chat").respond(200, json=fixture)

        response = await OllamaAdapter(client=httpx_client).completion(
            CompletionRequest(model="llama3.2", messages=messages, tools=[WEATHER_TOOL])
        )

        choice = response.choices[0]
        assert choice.finish_reason == "tool_calls"
        assert json.loads(choice.message.tool_calls[0].function.arguments) == {"city": "Paris"}
        assert sent_body(route)["tools"][0]["function"]["name"] == "get_weather"

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_stream_success(self, httpx_client, messages):
        stream_content = load_fixture("ollama", "success_stream_chunks.txt")
        respx.post(f"{OLLAMA_BASE}/api/chat").respond(
            200, content=stream_content, headers={"content-type": "application/x-ndjson"}
        )

        chunks = await collect(
            OllamaAdapter(client=httpx_client).completion_stream(
                CompletionRequest(model="llama3.2", messages=messages)
            )
        )

        assert len(chunks) == 4
        assert streamed_text(chunks) == "Hello! How can I help?"
        assert chunks[-1].choices[0].finish_reason == "stop"

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_images_sent_as_base64(self, httpx_client):
        fixture = load_fixture("ollama", "success_nonstream.json")
        route = respx.post(f"{OLLAMA_BASE}/api/chat").respond(200, json=fixture)

        await OllamaAdapter(client=httpx_client).completion(
            CompletionRequest(
                model="llava",
                messages=[
                    Message(
                        role="user",
                        content=[TextPart("What is this?"), ImagePart("data:image/png;base64,QUJD")],
                    )
                ],
            )
        )

        assert sent_body(route)["messages"][0] == {
            "role": "user",
            "content": "What is this?",
            "images": ["QUJD"],
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_not_running(self, httpx_client, messages):
        respx.post(f"{OLLAMA_BASE}/api/chat").mock(
            side_effect=httpx.ConnectError("All connection attempts failed")
        )

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await OllamaAdapter(client=httpx_client).completion(
                CompletionRequest(model="llama3.2", messages=messages)
            )

        assert exc_info.value.kind == ErrorKind.UNAVAILABLE

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_model_not_found_404(self, httpx_client, messages):
        respx.post(f"{OLLAMA_BASE}/api/chat").respond(
            404, json={"error": 'model "nope" not found, try pulling it first'}
        )

        with pytest.raises(RequestFailedError) as exc_info:
            await OllamaAdapter(client=httpx_client).completion(
                CompletionRequest(model="nope", messages=messages)
            )

        assert exc_info.value.status_code == 404
        assert "not found" in exc_info.value.message

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_is_available_records_version(self, httpx_client):
        respx.get(f"{OLLAMA_BASE}/api/tags").respond(200, json=load_fixture("ollama", "tags.json"))
        respx.get(f"{OLLAMA_BASE}/api/version").respond(200, json={"version": "0.5.7"})

        adapter = OllamaAdapter(client=httpx_client)
        assert await adapter.is_available() is True
        assert adapter.version == "0.5.7"
        assert adapter.tools_supported is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_old_version_rejects_tools(self, httpx_client, messages):
        respx.get(f"{OLLAMA_BASE}/api/tags").respond(200, json={"models": []})
        respx.get(f"{OLLAMA_BASE}/api/version").respond(200, json={"version": "0.2.8"})

        adapter = OllamaAdapter(client=httpx_client)
        assert await adapter.is_available() is True
        assert adapter.tools_supported is False

        with pytest.raises(RequestFailedError, match="Upgrade to 0.3.0 or later"):
            await adapter.completion(
                CompletionRequest(model="llama3.2", messages=messages, tools=[WEATHER_TOOL])
            )

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_not_reachable(self, httpx_client):
        respx.get(f"{OLLAMA_BASE}/api/tags").mock(
            side_effect=httpx.ConnectError("Connection refused")
        )
        assert await OllamaAdapter(client=httpx_client).is_available() is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_ollama_list_models(self, httpx_client):
        respx.get(f"{OLLAMA_BASE}/api/tags").respond(200, json=load_fixture("ollama", "tags.json"))

        models = await OllamaAdapter(client=httpx_client).list_models()

        by_id = {m.id: m for m in models}
        assert set(by_id) == {"llama3.2:latest", "llava:7b", "tinyllama:latest"}
        assert by_id["llama3.2:latest"].supports_tools is True
        assert by_id["llava:7b"].supports_vision is True
        assert by_id["tinyllama:latest"].supports_tools is False

    @pytest.mark.asyncio
    async def test_ollama_rejects_unsupported_fields(self, httpx_client, messages):
        adapter = OllamaAdapter(client=httpx_client)
        for request in (
            CompletionRequest(model="llama3.2", messages=messages, n=2),
            CompletionRequest(model="llama3.2", messages=messages, user="u1"),
            CompletionRequest(
                model="llama3.2", messages=messages, tools=[WEATHER_TOOL], tool_choice="required"
            ),
            CompletionRequest(
                model="llava",
                messages=[Message(role="user", content=[ImagePart("https://example.com/a.png")])],
            ),
        ):
            with pytest.raises(RequestFailedError, match="does not support"):
                await adapter.completion(request)


# =============================================================================
# Tool definitions across providers
# =============================================================================

TOOL_DEFINITIONS = [
    WEATHER_TOOL,
    Tool(
        function=ToolFunction(
            name="search_docs",
            description="Full-text search over the documentation",
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "limit": {"type": "integer", "minimum": 1},
                },
                "required": ["query"],
            },
        )
    ),
    Tool(
        function=ToolFunction(
            name="convert_currency",
            description="Convert an amount between two currencies",
            parameters={
                "type": "object",
                "properties": {
                    "amount": {"type": "number"},
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                },
            },
        )
    ),
]


def _openai_style_tools(body: dict) -> list[tuple]:
    return [
        (t["function"]["name"], t["function"]["description"], t["function"]["parameters"])
        for t in body["tools"]
    ]


def _anthropic_tools(body: dict) -> list[tuple]:
    return [(t["name"], t["description"], t["input_schema"]) for t in body["tools"]]


def _gemini_tools(body: dict) -> list[tuple]:
    (declarations,) = body["tools"]
    return [
        (d["name"], d["description"], d["parameters"])
        for d in declarations["functionDeclarations"]
    ]


TOOL_ROUTES = [
    pytest.param(
        lambda client: OpenAIAdapter(ProviderConfig(api_key="sk-test"), client=client),
        OPENAI_URL,
        "gpt-4o-mini",
        ("openai", "success_nonstream.json"),
        _openai_style_tools,
        id="openai",
    ),
    pytest.param(
        lambda client: AnthropicAdapter(ProviderConfig(api_key="sk-ant-test"), client=client),
        ANTHROPIC_URL,
        "claude-3-5-haiku-20241022",
        ("anthropic", "success_nonstream.json"),
        _anthropic_tools,
        id="anthropic",
    ),
    pytest.param(
        lambda client: GeminiAdapter(ProviderConfig(api_key="test-gemini-key"), client=client),
        f"{GEMINI_BASE}:generateContent",
        "gemini-2.0-flash",
        ("gemini", "success_nonstream.json"),
        _gemini_tools,
        id="gemini",
    ),
    pytest.param(
        lambda client: OllamaAdapter(client=client),
        f"{OLLAMA_BASE}/api/chat",
        "llama3.2",
        ("ollama", "success_nonstream.json"),
        _openai_style_tools,
        id="ollama",
    ),
]


class TestToolDefinitions:
    """Every tool definition reaches the backend with name, description and schema intact."""

    @pytest.mark.asyncio
    @respx.mock
    @pytest.mark.parametrize("make_adapter,url,model,fixture,extract_tools", TOOL_ROUTES)
    async def test_all_tools_sent(
        self, httpx_client, messages, make_adapter, url, model, fixture, extract_tools
    ):
        route = respx.post(url).respond(200, json=load_fixture(*fixture))
        request = CompletionRequest(model=model, messages=messages, tools=TOOL_DEFINITIONS)

        await make_adapter(httpx_client).completion(request)

        sent = extract_tools(sent_body(route))
        assert sent == [
            (tool.function.name, tool.function.description, dict(tool.function.parameters))
            for tool in TOOL_DEFINITIONS
        ]
