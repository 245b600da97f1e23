# omintel/llm.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

import httpx

from omintel.errors import UpstreamError
from omintel.sse import iter_sse_data

logger = logging.getLogger(__name__)


class ChatStream:
    """An open streaming completion; iterate ``deltas()`` for the text pieces."""

    def __init__(self, response: httpx.Response):
        self.response = response

    async def deltas(self) -> AsyncIterator[str]:
        try:
            async for payload in iter_sse_data(self.response.aiter_bytes()):
                try:
                    parsed = json.loads(payload)
                    content = parsed["choices"][0].get("delta", {}).get("content")
                except (ValueError, KeyError, IndexError, TypeError, AttributeError):
                    # skip malformed frames
                    continue
                if content:
                    yield content
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream stream interrupted: {e}") from e


class CompletionClient:
    """
    OpenAI-compatible chat completions. Owns its httpx client; close() on shutdown.
    """

    def __init__(self, base_url: str, api_key: str, model: str = "gpt-4o",
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 60.0,
                 temperature: float = 0.1, max_tokens: int = 3000):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "CompletionClient":
        return cls(
            settings.openai_base,
            settings.openai_api_key,
            model=settings.chat_model,
            client=client,
            timeout=settings.upstream_timeout,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamError("OpenAI API key not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _payload(self, messages: List[Dict[str, str]], model: Optional[str], stream: bool,
                 temperature: Optional[float], max_tokens: Optional[int]) -> Dict:
        return {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }

    @asynccontextmanager
    async def open_chat_stream(self, messages: List[Dict[str, str]], model: Optional[str] = None,
                               temperature: Optional[float] = None,
                               max_tokens: Optional[int] = None) -> AsyncIterator[ChatStream]:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(messages, model, True, temperature, max_tokens)
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                if resp.status_code < 200 or resp.status_code >= 300:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    logger.error("Completion API non-2xx (status=%d). Body snippet: %.500s", resp.status_code, body)
                    raise UpstreamError(f"Failed to get AI response (status {resp.status_code})")
                yield ChatStream(resp)
        except httpx.HTTPError as e:
            logger.exception("Network error while calling completion API")
            raise UpstreamError(f"OpenAI API error: {e}") from e

    async def _post_with_retry(self, url, json, headers, retries=3, backoff=1.0):
        delay = backoff
        for attempt in range(1, retries + 1):
            try:
                resp = await self.client.post(url, json=json, headers=headers)
            except httpx.TransportError as e:
                if attempt == retries:
                    logger.exception("Request failed after %s attempts to %s", retries, url)
                    raise UpstreamError(f"OpenAI API error: {e}") from e
                logger.warning("Request attempt %s failed, retrying in %.1fs: %s", attempt, delay, e)
                await asyncio.sleep(delay)
                delay *= 2
                continue
            if resp.status_code >= 500 and attempt < retries:
                logger.warning("Request attempt %s got %d, retrying in %.1fs", attempt, resp.status_code, delay)
                await asyncio.sleep(delay)
                delay *= 2
                continue
            if resp.status_code < 200 or resp.status_code >= 300:
                logger.error("Completion API non-2xx (status=%d). Body snippet: %.500s", resp.status_code, resp.text)
                raise UpstreamError(f"Completion API returned status {resp.status_code}")
            return resp.json()

    async def chat_completion(self, messages: List[Dict[str, str]], model: Optional[str] = None,
                              temperature: Optional[float] = None, max_tokens: Optional[int] = None,
                              retries: int = 3, backoff: float = 1.0) -> str:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(messages, model, False, temperature, max_tokens)
        data = await self._post_with_retry(url, payload, self._headers(), retries=retries, backoff=backoff)
        choices = (data or {}).get("choices")
        if not choices or not (choices[0].get("message") or {}).get("content"):
            raise UpstreamError("No content received from completion API")
        return choices[0]["message"]["content"]

    async def close(self) -> None:
        await self.client.aclose()
