import httpx
import pytest

from omintel.errors import UpstreamError
from omintel.llm import CompletionClient

from conftest import sse_body


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


@pytest.mark.asyncio
async def test_stream_yields_deltas_in_order(llm, upstream):
    upstream.queue(httpx.Response(200, content=sse_body(["Hel", "lo", " world"])))

    async with llm.open_chat_stream([{"role": "user", "content": "hi"}]) as stream:
        deltas = [d async for d in stream.deltas()]

    assert deltas == ["Hel", "lo", " world"]
    payload = upstream.payload()
    assert payload["stream"] is True
    assert payload["model"] == "gpt-4o"
    assert payload["temperature"] == 0.1
    assert payload["max_tokens"] == 3000
    assert upstream.requests[0].headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_stream_reassembles_frames_split_across_reads(llm, upstream):
    body = sse_body(["alpha", "beta"])

    async def pieces():
        for i in range(0, len(body), 7):
            yield body[i:i + 7]

    upstream.queue(httpx.Response(200, content=pieces()))

    async with llm.open_chat_stream([{"role": "user", "content": "hi"}]) as stream:
        deltas = [d async for d in stream.deltas()]

    assert deltas == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_stream_skips_malformed_and_empty_frames(llm, upstream):
    body = (
        b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
        b"data: not-json\n\n"
        b'data: {"choices": []}\n\n'
        b'data: {"choices": [{"delta": {"content": "ok"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    upstream.queue(httpx.Response(200, content=body))

    async with llm.open_chat_stream([{"role": "user", "content": "hi"}]) as stream:
        deltas = [d async for d in stream.deltas()]

    assert deltas == ["ok"]


@pytest.mark.asyncio
async def test_stream_non_2xx_raises(llm, upstream):
    upstream.queue(httpx.Response(500, text="boom"))

    with pytest.raises(UpstreamError):
        async with llm.open_chat_stream([{"role": "user", "content": "hi"}]):
            pass


@pytest.mark.asyncio
async def test_missing_api_key_raises(upstream):
    client = CompletionClient("https://llm.test/v1", "",
                              client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
    with pytest.raises(UpstreamError):
        await client.chat_completion([{"role": "user", "content": "hi"}])
    assert upstream.requests == []
    await client.close()


@pytest.mark.asyncio
async def test_chat_completion_retries_server_errors(llm, upstream):
    upstream.queue(httpx.Response(503, text="busy"))
    upstream.queue(_completion("answer"))

    content = await llm.chat_completion([{"role": "user", "content": "hi"}], model="gpt-4o-mini", backoff=0)

    assert content == "answer"
    assert len(upstream.requests) == 2
    assert upstream.payload()["model"] == "gpt-4o-mini"
    assert upstream.payload()["stream"] is False


@pytest.mark.asyncio
async def test_chat_completion_client_error_is_not_retried(llm, upstream):
    upstream.queue(httpx.Response(400, json={"error": "bad request"}))

    with pytest.raises(UpstreamError):
        await llm.chat_completion([{"role": "user", "content": "hi"}], backoff=0)
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_chat_completion_without_content_raises(llm, upstream):
    upstream.queue(httpx.Response(200, json={"choices": []}))

    with pytest.raises(UpstreamError):
        await llm.chat_completion([{"role": "user", "content": "hi"}])
