"""Streaming client for an OpenAI-compatible chat completions API."""

import json
import logging
from typing import AsyncIterator, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

# Returned by _parse_line for the "[DONE]" terminator.
_DONE = object()


class GenerationError(Exception):
    """Raised when the generation engine fails."""

    pass


class GenerationEngine(Protocol):
    """Produces an ordered, finite sequence of text fragments for a prompt."""

    def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[str]: ...


class OpenAIChatEngine:
    """Streams chat completion deltas over Server-Sent Events."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def stream(
        self,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[str]:
        """Yield content fragments in the order the engine emits them."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")

        url = f"{self._base_url}/chat/completions"
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "text/event-stream",
        }

        try:
            async with self._http.stream(
                "POST", url, json=payload, headers=headers
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise GenerationError(f"HTTP {response.status_code}: {body}")

                async for line in response.aiter_lines():
                    fragment = self._parse_line(line)
                    if fragment is None:
                        continue
                    if fragment is _DONE:
                        return
                    yield fragment
        except httpx.TimeoutException as e:
            raise GenerationError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise GenerationError(f"Request failed: {e}") from e

    def _parse_line(self, line: str):
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return _DONE

        try:
            chunk = json.loads(data)
        except ValueError as e:
            raise GenerationError(f"Invalid stream chunk: {data!r}") from e

        if "error" in chunk:
            error = chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GenerationError(message or "Generation failed")

        choices = chunk.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("delta") or {}).get("content") or None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
