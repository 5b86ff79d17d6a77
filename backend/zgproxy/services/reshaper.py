import enum
import json
import re
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

import structlog

from zgproxy.schemas import ChatMessage, CompletionResponse, StreamChoice, StreamFrame
from zgproxy.services.codec import DELTA_SHAPES, DialectCodec, delta_finish_reason, new_completion_id, probe
from zgproxy.services.frames import TERMINAL, LineBuffer, encode_frame, parse_line, terminal_frame

logger = structlog.get_logger()

_WHITESPACE_RUN = re.compile(r"(\s+)")


class ReshaperState(str, enum.Enum):
    INIT = "init"
    STREAMING = "streaming"
    SYNTHESIZING = "synthesizing"
    TERMINATED = "terminated"


class Granularity(str, enum.Enum):
    WORD = "word"
    MESSAGE = "message"


def is_event_stream(content_type: Optional[str]) -> bool:
    return "stream" in (content_type or "").lower()


def split_deltas(text: str, granularity: Granularity = Granularity.WORD) -> List[str]:
    """Split text into content deltas; whitespace runs become deltas of their own."""
    if not text:
        return []
    if granularity == Granularity.MESSAGE:
        return [text]
    return [part for part in _WHITESPACE_RUN.split(text) if part]


def synthesize_frames(
    response: CompletionResponse,
    granularity: Granularity = Granularity.WORD,
) -> Iterator[StreamFrame]:
    """Yield an incremental frame sequence equivalent to a complete response."""
    choice = response.choices[0]

    def frame(delta: Dict[str, Any], finish_reason: Optional[str] = None) -> StreamFrame:
        return StreamFrame(
            id=response.id,
            created=response.created,
            model=response.model,
            choices=[StreamChoice(delta=delta, finish_reason=finish_reason)],
        )

    yield frame({"role": "assistant"})

    for piece in split_deltas(choice.message.content or "", granularity):
        yield frame({"content": piece})

    tool_calls = choice.message.tool_calls or []
    for index, call in enumerate(tool_calls):
        yield frame({
            "tool_calls": [{
                "index": index,
                "id": call.id,
                "type": call.type,
                "function": {"name": call.function.name, "arguments": ""},
            }]
        })
        yield frame({
            "tool_calls": [{
                "index": index,
                "function": {"arguments": call.function.arguments},
            }]
        })

    yield frame({}, "tool_calls" if tool_calls else choice.finish_reason)


class StreamReshaper:
    """Turns one upstream body into OpenAI ``chat.completion.chunk`` SSE text.

    Event-stream upstreams are relayed frame by frame; anything else is read
    whole, decoded once and replayed as synthesized frames. Once a frame has
    been produced the output always ends with ``data: [DONE]``; a relay that
    fails before its first frame raises instead.
    """

    def __init__(
        self,
        codec: DialectCodec,
        *,
        model: str,
        request_messages: Sequence[ChatMessage],
        granularity: Granularity = Granularity.WORD,
    ):
        self.codec = codec
        self.model = model
        self.request_messages = request_messages
        self.granularity = granularity
        self.state = ReshaperState.INIT
        self.stream_id = new_completion_id()
        self.created = int(time.time())

    def reshape(self, content_type: Optional[str], chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        if self.state is not ReshaperState.INIT:
            raise RuntimeError(f"reshaper already used (state={self.state.value})")
        if is_event_stream(content_type):
            self.state = ReshaperState.STREAMING
            return self._relay(chunks)
        self.state = ReshaperState.SYNTHESIZING
        return self._synthesize(chunks)

    def closing_frame(self, finish_reason: str) -> str:
        return encode_frame(self._frame({}, finish_reason))

    def _frame(self, delta: Dict[str, Any], finish_reason: Optional[str], usage: Any = None) -> StreamFrame:
        return StreamFrame(
            id=self.stream_id,
            created=self.created,
            model=self.model,
            choices=[StreamChoice(delta=delta, finish_reason=finish_reason)],
            usage=usage if isinstance(usage, dict) else None,
        )

    async def _synthesize(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        try:
            body = bytearray()
            async for chunk in chunks:
                body.extend(chunk)
            payload = _load_document(bytes(body))
            response = self.codec.decode_response(payload, self.model, self.request_messages)
            frames = [encode_frame(f) for f in synthesize_frames(response, self.granularity)]
        except Exception as e:
            logger.error("Failed to synthesize stream", error=str(e), model=self.model)
            frames = [self.closing_frame("error")]

        try:
            for frame in frames:
                yield frame
            yield terminal_frame()
        finally:
            self.state = ReshaperState.TERMINATED

    async def _relay(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        relayed = False
        try:
            try:
                async with aclosing(iter_lines(chunks)) as lines:
                    async for line in lines:
                        out = self._translate_line(line)
                        if out is TERMINAL:
                            break
                        if out is not None:
                            relayed = True
                            yield out
            except Exception as e:
                # nothing sent yet, the caller can still answer with a plain error
                if not relayed:
                    raise
                logger.error("Upstream stream failed", error=str(e), model=self.model)
                yield self.closing_frame("error")
            yield terminal_frame()
        finally:
            self.state = ReshaperState.TERMINATED

    def _translate_line(self, line: str) -> Any:
        parsed = parse_line(line)
        if parsed is None or parsed is TERMINAL:
            return parsed
        _, delta = probe(DELTA_SHAPES, parsed)
        usage = parsed.get("usage") if isinstance(parsed, dict) else None
        return encode_frame(self._frame(delta or {}, delta_finish_reason(parsed), usage))


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Pull complete lines out of a byte stream, draining the remainder at the end."""
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def _load_document(body: bytes) -> Any:
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
