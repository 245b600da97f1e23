"""Test configuration and fixtures for the OM Intel Chat service."""

import json
from collections.abc import AsyncGenerator
from typing import List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from omintel.db import Database
from omintel.identity import Identity, IdentityProvider
from omintel.llm import CompletionClient
from omintel.repository import RowStore
from omintel.storage import LocalBlobStore

TEST_DATABASE_URL = "sqlite+aiosqlite://"

FINANCIAL_PAGE = (
    "Financial Highlights\n"
    "Net Operating Income of $1,200,000 at a 6.5% cap rate.\n"
    "Rent roll attached. Income statement and cash flow projections.\n"
    "Returns analysis shows a 14% IRR."
)


def build_pdf(pages: List[str]) -> bytes:
    """Minimal valid PDF with one Helvetica text line per input line."""
    page_ids = [4 + 2 * i for i in range(len(pages))]
    kids = " ".join(f"{pid} 0 R" for pid in page_ids)
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {len(pages)} >>".encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for pid, text in zip(page_ids, pages):
        ops = ["BT", "/F1 10 Tf", "14 TL", "40 800 Td"]
        for line in text.split("\n"):
            escaped = line.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
            ops.append(f"({escaped}) Tj T*")
        ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        objects.append(
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 842] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {pid + 1} 0 R >>".encode()
        )
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    out = b"%PDF-1.4\n"
    offsets = []
    for num, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += f"{num} 0 obj\n".encode() + body + b"\nendobj\n"
    xref = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for off in offsets:
        out += f"{off:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n".encode()
    return out


def sse_body(deltas: List[str], done: bool = True) -> bytes:
    """Upstream-style SSE body for a list of content deltas."""
    lines = [": keep-alive\n\n"]
    for delta in deltas:
        chunk = {"choices": [{"delta": {"content": delta}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def parse_sse(body: str) -> List[dict]:
    """Decode our downstream SSE dialect; transport terminators become {"type": "<terminator>"}."""
    events = []
    for frame in body.split("\n\n"):
        frame = frame.strip()
        if not frame:
            continue
        if frame == "data: [DONE]" or frame == "event: done":
            events.append({"type": frame})
            continue
        assert frame.startswith("data: "), frame
        events.append(json.loads(frame[len("data: "):]))
    return events


class RecordingDispatcher:
    def __init__(self, fail=False):
        self.submitted = []
        self.fail = fail

    def submit(self, document_id):
        if self.fail:
            raise ConnectionError("broker unreachable")
        self.submitted.append(document_id)
        return document_id


class FakeRedis:
    """Just enough of redis.asyncio for the notifier and the rate limiter."""

    def __init__(self):
        self.counters = {}
        self.published = []
        self.pubsub_obj = MagicMock()
        self.pubsub_obj.subscribe = AsyncMock()
        self.pubsub_obj.unsubscribe = AsyncMock()
        self.pubsub_obj.aclose = AsyncMock()

        async def _listen():
            for message in self.pending_messages:
                yield message

        self.pending_messages = []
        self.pubsub_obj.listen = _listen
        self.ping = AsyncMock(return_value=True)
        self.expire = AsyncMock()
        self.aclose = AsyncMock()

    async def publish(self, channel, data):
        self.published.append((channel, json.loads(data)))
        return 1

    async def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def pubsub(self):
        return self.pubsub_obj


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest_asyncio.fixture(scope="function")
async def db() -> AsyncGenerator[Database, None]:
    database = Database(TEST_DATABASE_URL)
    await database.init_models()
    yield database
    await database.close()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def store(db) -> RowStore:
    return RowStore(db)


@pytest.fixture
def blobs(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "blobs"), "http://files.test")


@pytest.fixture
def alice() -> Identity:
    return Identity(id="user-alice", email="alice@example.com")


@pytest.fixture
def bob() -> Identity:
    return Identity(id="user-bob", email="bob@example.com")


class UpstreamRecorder:
    """httpx MockTransport handler that records requests and replays queued responses."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[httpx.Response] = []

    def queue(self, response: httpx.Response) -> None:
        self.responses.append(response)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, text="no response queued")
        return self.responses.pop(0)

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest_asyncio.fixture
async def llm(upstream) -> AsyncGenerator[CompletionClient, None]:
    client = CompletionClient(
        "https://llm.test/v1",
        "sk-test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )
    yield client
    await client.close()


def identity_handler(request: httpx.Request) -> httpx.Response:
    tokens = {
        "Bearer alice-token": {"id": "user-alice", "email": "alice@example.com"},
        "Bearer bob-token": {"id": "user-bob", "email": "bob@example.com"},
    }
    user = tokens.get(request.headers.get("authorization"))
    if user is None:
        return httpx.Response(401, json={"msg": "invalid JWT"})
    return httpx.Response(200, json=user)


@pytest_asyncio.fixture
async def identity_provider() -> AsyncGenerator[IdentityProvider, None]:
    provider = IdentityProvider(
        "https://auth.test",
        "anon-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(identity_handler)),
    )
    yield provider
    await provider.close()
