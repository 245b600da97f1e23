# omintel/sse.py
"""
Server-Sent Events helpers.

Upstream side: the completion API streams SSE; bytes arrive in arbitrary
pieces, so lines are buffered and a trailing partial line is carried over
to the next read. Only ``data:`` lines matter and ``[DONE]`` ends the stream.

Downstream side: our own dialect puts the event type inside the JSON
payload (``{"type": ...}``) rather than in an ``event:`` line.
"""
import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List

DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"

# transport-level terminators sent after the semantic done/complete event
DONE_FRAME = f"data: {DONE_TOKEN}\n\n"
END_EVENT_FRAME = "event: done\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class SSELineBuffer:
    """Turns arbitrary byte pieces into complete text lines."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        return [rest.rstrip("\r")] if rest else []


def data_payload(line: str):
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


async def iter_sse_data(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield every ``data:`` payload up to (not including) the ``[DONE]`` token."""
    buffer = SSELineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            payload = data_payload(line)
            if payload is None:
                continue
            if payload.strip() == DONE_TOKEN:
                return
            yield payload
    for line in buffer.flush():
        payload = data_payload(line)
        if payload is not None and payload.strip() != DONE_TOKEN:
            yield payload
