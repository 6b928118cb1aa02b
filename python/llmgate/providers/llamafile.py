"""Llamafile adapter (local daemon).

Llamafile serves the OpenAI chat completions wire format under /v1:
- Chat: POST {base}/v1/chat/completions
- Models: GET {base}/v1/models
- No API key

Multimodal content is flattened to its text parts, and an empty model id
selects the model the daemon was started with ("default").
"""

import httpx

from llmgate.adapter import ProviderCapabilities, ProviderConfig
from llmgate.providers.openai import OpenAIAdapter, OpenAISpec
from llmgate.types import CompletionRequest

DEFAULT_MODEL = "default"

LLAMAFILE_SPEC = OpenAISpec(
    name="llamafile",
    api_base="http://localhost:8080",
    env_api_key_name=None,
    doc_url="https://github.com/Mozilla-Ocho/llamafile",
    capabilities=ProviderCapabilities(
        streaming=True, tools=True, vision=False, list_models=True, reasoning=False
    ),
    requires_api_key=False,
)


class LlamafileAdapter(OpenAIAdapter):
    """Llamafile local daemon adapter."""

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(config, client=client, spec=LLAMAFILE_SPEC)

    def completion_url(self, model: str, *, stream: bool) -> str:
        return f"{self.base_url}/v1/chat/completions"

    def models_url(self) -> str:
        return f"{self.base_url}/v1/models"

    def convert_request(self, request: CompletionRequest, *, stream: bool) -> dict:
        body = super().convert_request(request, stream=stream)
        body["model"] = request.model or DEFAULT_MODEL
        for converted, message in zip(body["messages"], request.messages):
            if isinstance(converted.get("content"), list):
                converted["content"] = message.text()
        return body
