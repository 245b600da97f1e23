import json

import pytest

from omintel.sse import (
    DONE_FRAME,
    SSELineBuffer,
    data_payload,
    format_event,
    iter_sse_data,
)


async def _pieces(*chunks):
    for chunk in chunks:
        yield chunk


def test_format_event():
    frame = format_event({"type": "content", "content": "hi"})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "content", "content": "hi"}
    assert DONE_FRAME == "data: [DONE]\n\n"


def test_line_buffer_carries_partial_lines():
    buffer = SSELineBuffer()

    assert buffer.feed(b"data: {\"a\"") == []
    assert buffer.feed(b": 1}\r\ndata: x\n") == ['data: {"a": 1}', "data: x"]
    assert buffer.feed(b"tail") == []
    assert buffer.flush() == ["tail"]
    assert buffer.flush() == []


def test_line_buffer_handles_split_multibyte_characters():
    encoded = "data: café\n".encode("utf-8")
    split = encoded.index(b"\xc3") + 1
    buffer = SSELineBuffer()

    assert buffer.feed(encoded[:split]) == []
    assert buffer.feed(encoded[split:]) == ["data: café"]


def test_data_payload():
    assert data_payload("data: hello") == "hello"
    assert data_payload("data:hello") == "hello"
    assert data_payload("event: ping") is None
    assert data_payload(": comment") is None


@pytest.mark.asyncio
async def test_iter_sse_data_stops_at_done():
    chunks = _pieces(b": keep-alive\n\nda", b"ta: one\n\nevent: x\ndata: two\n\ndata: [DONE]\n\ndata: three\n\n")

    payloads = [p async for p in iter_sse_data(chunks)]

    assert payloads == ["one", "two"]


@pytest.mark.asyncio
async def test_iter_sse_data_flushes_unterminated_last_line():
    payloads = [p async for p in iter_sse_data(_pieces(b"data: one\n\ndata: last"))]

    assert payloads == ["one", "last"]
