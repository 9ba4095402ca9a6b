"""Delivery queues that hand dispatched tasks to the executor asynchronously."""

import logging
import uuid
from typing import Protocol

import httpx
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from models.state import now_ms

logger = logging.getLogger(__name__)

DEFAULT_QSTASH_URL = "https://qstash.upstash.io"


class QueueError(Exception):
    """Raised when a delivery request cannot be submitted."""

    pass


class DeliveryQueue(Protocol):
    """Accepts a payload for at-least-once delivery to a URL."""

    async def submit(
        self, url: str, payload: dict, retries: int = 3, delay: int = 0
    ) -> str: ...


class QStashQueue:
    """Publishes JSON deliveries through Upstash QStash."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_QSTASH_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not token:
            raise ValueError("token is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self._token = token
        self._base_url = (base_url or DEFAULT_QSTASH_URL).rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def submit(
        self, url: str, payload: dict, retries: int = 3, delay: int = 0
    ) -> str:
        """Queue ``payload`` for delivery to ``url``. Returns the QStash message id."""
        if not url or not url.strip():
            raise ValueError("url is required")
        if retries < 0:
            raise ValueError("retries must be non-negative")
        if delay < 0:
            raise ValueError("delay must be non-negative")

        endpoint = f"{self._base_url}/v2/publish/{url}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Upstash-Retries": str(retries),
            "Upstash-Delay": f"{delay}s",
        }

        try:
            response = await self._http.post(endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise QueueError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise QueueError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise QueueError(f"HTTP {response.status_code}: {response.text}")

        try:
            return response.json()["messageId"]
        except (ValueError, KeyError, TypeError) as e:
            raise QueueError(f"Invalid response: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


class DeliveryItem(BaseModel):
    """A queued delivery awaiting a worker."""

    message_id: str
    url: str
    payload: dict
    # Budget requested at submit. Runs record their own failures, so the worker
    # never redelivers.
    retries: int = 3
    not_before: int = Field(default_factory=now_ms)


class RedisDeliveryQueue:
    """LPUSH/BRPOP delivery queue for running without an external queue service."""

    def __init__(self, redis_client: Redis, queue_key: str = "queue:deliveries"):
        if redis_client is None:
            raise ValueError("redis_client is required")
        if not queue_key:
            raise ValueError("queue_key is required")
        self._redis = redis_client
        self._key = queue_key

    async def submit(
        self, url: str, payload: dict, retries: int = 3, delay: int = 0
    ) -> str:
        """Add a delivery to the queue (FIFO). Returns its message id."""
        if not url or not url.strip():
            raise ValueError("url is required")
        if retries < 0:
            raise ValueError("retries must be non-negative")
        if delay < 0:
            raise ValueError("delay must be non-negative")

        item = DeliveryItem(
            message_id=f"msg_{uuid.uuid4().hex}",
            url=url,
            payload=payload,
            retries=retries,
            not_before=now_ms() + delay * 1000,
        )
        await self._redis.lpush(self._key, item.model_dump_json())
        return item.message_id

    async def dequeue(self, timeout: int = 0) -> DeliveryItem | None:
        """Remove and return the next delivery. Blocks up to timeout seconds."""
        if timeout < 0:
            raise ValueError("timeout must be non-negative")

        result = await self._redis.brpop(self._key, timeout=timeout)
        if result is None:
            return None

        _, raw = result
        return DeliveryItem.model_validate_json(raw)

    async def requeue(self, item: DeliveryItem) -> None:
        """Put a delivery back at the tail of the queue."""
        if item is None:
            raise ValueError("item is required")

        await self._redis.lpush(self._key, item.model_dump_json())

    async def length(self) -> int:
        """Get number of queued deliveries."""
        return await self._redis.llen(self._key)

    async def clear(self) -> None:
        """Remove all queued deliveries."""
        await self._redis.delete(self._key)
