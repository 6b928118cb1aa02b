"""Streaming decoder core.

Turns a backend's raw frame stream into an ordered sequence of canonical
ChatCompletionChunk objects, lazily.

Frames are one of:
- bytes / str: raw body data, buffered and split on newlines
- Mapping: a pre-parsed event (SDK-style), handled without buffering

Per-stream state lives on the decoder instance and is never shared:
- FrameBuffer: partial-line reassembly (incremental UTF-8)
- StreamState: id/created/model captured once, roles announced per choice
- ToolCallAccumulator: in-progress tool calls keyed by (choice, backend key)

A segment that fails to parse is skipped; it never aborts the stream.
"""

import codecs
import json
import time
import uuid
from collections.abc import AsyncIterator, Hashable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from llmgate.logging import get_logger
from llmgate.types import (
    ChatCompletionChunk,
    ChunkChoice,
    ChunkDelta,
    FinishReason,
    FunctionCall,
    Role,
    ToolCall,
)

logger = get_logger(__name__)

Frame = bytes | str | Mapping[str, Any]

# Returned by parse_sse_line for the "data: [DONE]" terminator
SSE_DONE = object()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:24]}"


def new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


# =============================================================================
# Framing
# =============================================================================


class FrameBuffer:
    """Reassemble newline-delimited segments from arbitrarily split frames.

    A multi-byte UTF-8 character split across two frames is decoded once both
    halves have arrived. The trailing incomplete segment is retained.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes | str) -> list[str]:
        """Append a frame and return every complete segment it finishes."""
        text = self._decoder.decode(data) if isinstance(data, bytes) else data
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return whatever is left once the source has ended."""
        rest = (self._pending + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._pending = ""
        return [rest] if rest.strip() else []


def parse_sse_line(line: str) -> Any:
    """Parse one server-sent-events line.

    Returns:
        The decoded JSON payload of a data line, SSE_DONE for "[DONE]",
        or None for blank lines, comments and non-data fields.

    Raises:
        ValueError: If a data payload is not valid JSON.
    """
    if not line or line.startswith(":"):
        return None
    if not line.startswith("data:"):
        # event:, id:, retry: carry nothing the decoders need
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    if payload == "[DONE]":
        return SSE_DONE
    return json.loads(payload)


def parse_ndjson_line(line: str) -> Any:
    """Parse one newline-delimited JSON line (None for blank lines)."""
    line = line.strip()
    if not line:
        return None
    return json.loads(line)


# =============================================================================
# Per-stream state
# =============================================================================


class StreamState:
    """Identity of one stream and the chunk factory that stamps it.

    id, created and model may be captured from the first informative frame;
    after the first chunk is built they are frozen.
    """

    def __init__(self, *, provider: str, model: str):
        self.id = new_id(provider)
        self.created = int(time.time())
        self.model = model
        self._frozen = False
        self._announced: set[int] = set()

    def capture(
        self,
        *,
        id: str | None = None,
        model: str | None = None,
        created: int | None = None,
    ) -> None:
        if self._frozen:
            return
        if id:
            self.id = id
        if model:
            self.model = model
        if isinstance(created, int):
            self.created = created

    def chunk(
        self,
        index: int,
        delta: ChunkDelta,
        finish_reason: FinishReason | None = None,
    ) -> ChatCompletionChunk:
        self._frozen = True
        return ChatCompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model,
            choices=[ChunkChoice(index=index, delta=delta, finish_reason=finish_reason)],
        )

    def role_chunk(self, index: int, role: Role = "assistant") -> ChatCompletionChunk | None:
        """Chunk announcing the role, or None if this choice already announced one."""
        if index in self._announced:
            return None
        self._announced.add(index)
        return self.chunk(index, ChunkDelta(role=role))


@dataclass
class _PendingToolCall:
    id: str | None = None
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def finalize(self) -> ToolCall:
        return ToolCall(
            id=self.id or new_tool_call_id(),
            function=FunctionCall(name=self.name, arguments="".join(self.fragments) or "{}"),
        )


class ToolCallAccumulator:
    """In-progress tool calls of one stream.

    Keyed by (choice_index, key) where key is the backend's own identifier
    for the call within the choice (OpenAI delta index, Anthropic content
    block index). Argument fragments are concatenated verbatim, never parsed.
    """

    def __init__(self):
        self._pending: dict[tuple[int, Hashable], _PendingToolCall] = {}

    def start(
        self,
        choice_index: int,
        key: Hashable,
        *,
        id: str | None = None,
        name: str | None = None,
    ) -> None:
        self._pending[(choice_index, key)] = _PendingToolCall(id=id, name=name or "")

    def append(
        self,
        choice_index: int,
        key: Hashable,
        fragment: str | None,
        *,
        id: str | None = None,
        name: str | None = None,
    ) -> None:
        """Add an argument fragment, opening the call if this is its first fragment."""
        pending = self._pending.setdefault((choice_index, key), _PendingToolCall())
        if id and not pending.id:
            pending.id = id
        if name and not pending.name:
            pending.name = name
        if fragment:
            pending.fragments.append(fragment)

    def has_pending(self, choice_index: int | None = None) -> bool:
        if choice_index is None:
            return bool(self._pending)
        return any(index == choice_index for index, _ in self._pending)

    def pop(self, choice_index: int, key: Hashable) -> ToolCall | None:
        pending = self._pending.pop((choice_index, key), None)
        return pending.finalize() if pending is not None else None

    def pop_choice(self, choice_index: int) -> list[ToolCall]:
        """Finalize every pending call of one choice, in arrival order."""
        keys = [k for k in self._pending if k[0] == choice_index]
        return [self._pending.pop(k).finalize() for k in keys]

    def pending_choices(self) -> list[int]:
        return sorted({index for index, _ in self._pending})

    def discard(self) -> int:
        count = len(self._pending)
        self._pending.clear()
        return count


# =============================================================================
# Decoder base
# =============================================================================


class StreamDecoder:
    """Protocol-specific state machine over one stream.

    Subclasses set ``protocol`` and implement ``handle_event``, which receives
    one parsed segment and yields the chunks it produces. Setting
    ``self.done`` stops the stream after the current event; tool calls still
    pending at that point are flushed by ``flush_tool_calls``.
    """

    protocol: ClassVar[Literal["sse", "ndjson"]] = "sse"

    def __init__(self, *, provider: str, model: str):
        self.provider = provider
        self.state = StreamState(provider=provider, model=model)
        self.tool_calls = ToolCallAccumulator()
        self.done = False

    def handle_event(self, event: Mapping[str, Any]) -> Iterator[ChatCompletionChunk]:
        raise NotImplementedError

    def _parse(self, segment: str) -> Any:
        if self.protocol == "ndjson":
            return parse_ndjson_line(segment)
        return parse_sse_line(segment)

    def _events(self, segments: Iterable[str]) -> Iterator[Mapping[str, Any]]:
        for segment in segments:
            try:
                event = self._parse(segment)
            except ValueError:
                logger.debug(
                    "stream_segment_skipped", provider=self.provider, segment_chars=len(segment)
                )
                continue
            if event is SSE_DONE:
                self.done = True
                return
            if isinstance(event, Mapping):
                yield event

    def _process(self, events: Iterable[Mapping[str, Any]]) -> Iterator[ChatCompletionChunk]:
        for event in events:
            yield from self.handle_event(event)
            if self.done:
                return

    async def decode(self, frames: AsyncIterator[Frame]) -> AsyncIterator[ChatCompletionChunk]:
        """Lazily decode frames into chunks.

        The frame source is closed when decoding ends for any reason,
        including the consumer abandoning this iterator.
        """
        buffer = FrameBuffer()
        try:
            async for frame in frames:
                if isinstance(frame, Mapping):
                    events: Iterable[Mapping[str, Any]] = [frame]
                else:
                    events = self._events(buffer.feed(frame))
                for chunk in self._process(events):
                    yield chunk
                if self.done:
                    break

            if not self.done:
                for chunk in self._process(self._events(buffer.flush())):
                    yield chunk
            if self.done:
                for chunk in self.flush_tool_calls():
                    yield chunk
            else:
                self.finish()
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()

    def flush_tool_calls(self) -> Iterator[ChatCompletionChunk]:
        """Emit calls still pending when the backend signalled the end of the stream.

        Each choice with pending calls gets one tool call chunk followed by
        its terminal chunk.
        """
        for index in self.tool_calls.pending_choices():
            calls = self.tool_calls.pop_choice(index)
            yield self.state.chunk(index, ChunkDelta(tool_calls=calls))
            yield self.state.chunk(index, ChunkDelta(), "tool_calls")

    def finish(self) -> None:
        """Called when the source ends without a terminating signal."""
        dropped = self.tool_calls.discard()
        if dropped:
            logger.warning(
                "stream_tool_calls_dropped", provider=self.provider, tool_call_count=dropped
            )
