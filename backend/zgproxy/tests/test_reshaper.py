import json

import pytest

from zgproxy.schemas import ChatMessage
from zgproxy.services.codec import DialectCodec
from zgproxy.services.reshaper import (
    Granularity,
    ReshaperState,
    StreamReshaper,
    is_event_stream,
    split_deltas,
)
from zgproxy.tests.utils.upstream import byte_chunks, collect, parse_sse, sse

MESSAGES = [ChatMessage(role="user", content="hi")]


def make_reshaper(**kwargs) -> StreamReshaper:
    return StreamReshaper(DialectCodec(), model="served-model", request_messages=MESSAGES, **kwargs)


def deltas(frames):
    return [f["choices"][0]["delta"] for f in frames if f != "[DONE]"]


def finish_reasons(frames):
    return [f["choices"][0]["finish_reason"] for f in frames if f != "[DONE]"]


def test_split_deltas_keeps_whitespace_runs():
    assert split_deltas("a b") == ["a", " ", "b"]
    assert split_deltas("  hello\n\nworld ") == ["  ", "hello", "\n\n", "world", " "]
    assert split_deltas("") == []
    assert split_deltas("a b", Granularity.MESSAGE) == ["a b"]


def test_event_stream_detection():
    assert is_event_stream("text/event-stream; charset=utf-8")
    assert not is_event_stream("application/json")
    assert not is_event_stream(None)


@pytest.mark.anyio
async def test_synthesizes_word_frames_from_json_body():
    reshaper = make_reshaper()
    body = json.dumps({"choices": [{"message": {"content": "a b"}, "finish_reason": "stop"}]}).encode()

    frames = parse_sse(await collect(reshaper.reshape("application/json", byte_chunks(body))))

    assert deltas(frames) == [
        {"role": "assistant"},
        {"content": "a"},
        {"content": " "},
        {"content": "b"},
        {},
    ]
    assert finish_reasons(frames) == [None, None, None, None, "stop"]
    assert frames[-1] == "[DONE]"
    assert len(frames) == 6
    assert reshaper.state is ReshaperState.TERMINATED


@pytest.mark.anyio
async def test_synthesis_state_is_set_before_iteration():
    reshaper = make_reshaper()
    frames = reshaper.reshape("application/json", byte_chunks(b'{"response": "x"}'))

    assert reshaper.state is ReshaperState.SYNTHESIZING
    await collect(frames)
    assert reshaper.state is ReshaperState.TERMINATED


@pytest.mark.anyio
async def test_synthesized_frames_reconstruct_original_spacing():
    text = "Hello,  world!\n\tBye"
    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("application/json", byte_chunks(json.dumps({"response": text}).encode()))))

    assert "".join(d.get("content", "") for d in deltas(frames)) == text


@pytest.mark.anyio
async def test_message_granularity_sends_one_content_delta():
    reshaper = make_reshaper(granularity=Granularity.MESSAGE)

    frames = parse_sse(await collect(reshaper.reshape("application/json", byte_chunks(b'{"content": "one two three"}'))))

    assert deltas(frames) == [{"role": "assistant"}, {"content": "one two three"}, {}]


@pytest.mark.anyio
async def test_synthesized_tool_calls_force_tool_calls_finish_reason():
    body = {
        "choices": [{
            "message": {
                "content": None,
                "tool_calls": [
                    {"id": "call_a", "type": "function", "function": {"name": "lookup", "arguments": "{\"q\":\"x\"}"}},
                    {"id": "call_b", "type": "function", "function": {"name": "fetch", "arguments": "{}"}},
                ],
            },
            "finish_reason": "stop",
        }]
    }
    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("application/json", byte_chunks(json.dumps(body).encode()))))

    assert deltas(frames) == [
        {"role": "assistant"},
        {"tool_calls": [{"index": 0, "id": "call_a", "type": "function", "function": {"name": "lookup", "arguments": ""}}]},
        {"tool_calls": [{"index": 0, "function": {"arguments": "{\"q\":\"x\"}"}}]},
        {"tool_calls": [{"index": 1, "id": "call_b", "type": "function", "function": {"name": "fetch", "arguments": ""}}]},
        {"tool_calls": [{"index": 1, "function": {"arguments": "{}"}}]},
        {},
    ]
    assert finish_reasons(frames)[-1] == "tool_calls"
    assert frames[-1] == "[DONE]"


@pytest.mark.anyio
async def test_synthesis_failure_still_terminates_stream():
    async def broken():
        yield b'{"resp'
        raise ConnectionError("upstream reset")

    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("application/json", broken())))

    assert deltas(frames) == [{}]
    assert finish_reasons(frames) == ["error"]
    assert frames[-1] == "[DONE]"


@pytest.mark.anyio
async def test_relays_upstream_frames_in_order():
    upstream = sse(
        {"id": "u1", "choices": [{"delta": {"role": "assistant"}, "finish_reason": None}]},
        {"id": "u1", "choices": [{"delta": {"content": "Hel"}, "finish_reason": None}]},
        {"id": "u1", "choices": [{"delta": {"content": "lo"}, "finish_reason": None}]},
        {"id": "u1", "choices": [{"delta": {}, "finish_reason": "stop"}]},
    )
    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("text/event-stream", byte_chunks(upstream))))

    assert deltas(frames) == [{"role": "assistant"}, {"content": "Hel"}, {"content": "lo"}, {}]
    assert finish_reasons(frames) == [None, None, None, "stop"]
    assert frames[-1] == "[DONE]"
    assert all(f["object"] == "chat.completion.chunk" for f in frames[:-1])
    assert all(f["model"] == "served-model" for f in frames[:-1])
    assert len({f["id"] for f in frames[:-1]}) == 1


@pytest.mark.anyio
async def test_relay_reassembles_lines_split_across_chunks():
    upstream = sse({"choices": [{"delta": {"content": "żółw 🐢"}}]})
    # cut in the middle of the JSON and inside the multi-byte emoji
    cut_a = 12
    cut_b = upstream.index("🐢".encode("utf-8")) + 2
    reshaper = make_reshaper()

    out = await collect(reshaper.reshape(
        "text/event-stream",
        byte_chunks(upstream[:cut_a], upstream[cut_a:cut_b], upstream[cut_b:]),
    ))

    assert deltas(parse_sse(out)) == [{"content": "żółw 🐢"}]


@pytest.mark.anyio
async def test_relay_probes_alternative_delta_shapes():
    upstream = (
        b'data: {"delta": {"content": "a"}}\n\n'
        b'data: {"content": "b"}\n\n'
        b'data: "c"\n\n'
        b': keep-alive\n\n'
        b'data: not-json\n\n'
        b'data: [DONE]\n\n'
    )
    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("text/event-stream", byte_chunks(upstream))))

    assert deltas(frames) == [{"content": "a"}, {"content": "b"}, {"content": "c"}]


@pytest.mark.anyio
async def test_relay_stops_reading_after_terminal_marker():
    read = []

    async def chunks():
        for chunk in (sse({"content": "x"}), b'data: {"content": "after"}\n\n'):
            read.append(chunk)
            yield chunk

    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("text/event-stream", chunks())))

    assert deltas(frames) == [{"content": "x"}]
    assert frames.count("[DONE]") == 1
    assert len(read) == 1


@pytest.mark.anyio
async def test_relay_adds_terminal_marker_when_upstream_omits_it():
    upstream = sse({"content": "x"}, done=False) + b'data: {"content": "tail"}'
    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("text/event-stream", byte_chunks(upstream))))

    assert deltas(frames) == [{"content": "x"}, {"content": "tail"}]
    assert frames[-1] == "[DONE]"


@pytest.mark.anyio
async def test_relay_failure_mid_stream_emits_error_close():
    async def chunks():
        yield sse({"content": "partial"}, done=False)
        raise ConnectionError("peer closed")

    reshaper = make_reshaper()

    frames = parse_sse(await collect(reshaper.reshape("text/event-stream", chunks())))

    assert deltas(frames) == [{"content": "partial"}, {}]
    assert finish_reasons(frames) == [None, "error"]
    assert frames[-1] == "[DONE]"


@pytest.mark.anyio
async def test_relay_failure_before_first_frame_raises():
    async def chunks():
        yield b": keep-alive\n\n"
        raise ConnectionError("peer closed")

    reshaper = make_reshaper()

    with pytest.raises(ConnectionError):
        await collect(reshaper.reshape("text/event-stream", chunks()))

    assert reshaper.state is ReshaperState.TERMINATED


@pytest.mark.anyio
async def test_reshaper_is_single_use():
    reshaper = make_reshaper()
    await collect(reshaper.reshape("application/json", byte_chunks(b'"x"')))

    with pytest.raises(RuntimeError):
        reshaper.reshape("application/json", byte_chunks(b'"x"'))
