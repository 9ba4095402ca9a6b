"""Task-scoped publish/subscribe relay."""

import asyncio
import logging
from typing import Callable

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError

from models.envelope import DecodedEnvelope, Envelope, RawText, decode_frame
from models.state import TaskStatus

logger = logging.getLogger(__name__)

MessageHandler = Callable[[DecodedEnvelope | RawText], None]
SubscribedHandler = Callable[[], None]


class RelayError(Exception):
    """Raised when publishing or subscribing fails."""

    pass


def channel_for(task_id: str) -> str:
    """Name of the pub/sub channel carrying a task's events."""
    if not task_id:
        raise ValueError("task_id is required")
    return f"task:{task_id}"


def _ignore() -> None:
    pass


class PubSubRelay:
    """Publishes task envelopes and feeds live subscribers.

    Subclasses provide the transport through ``publish`` and ``_consume``.
    Delivery is at-most-once per live subscriber; nothing is persisted.
    """

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of subscribers that received it."""
        raise NotImplementedError

    async def _consume(
        self, channel: str, on_message: MessageHandler, on_subscribed: SubscribedHandler
    ) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release transport resources held by the relay."""

    async def publish_envelope(self, task_id: str, envelope: Envelope) -> int:
        channel = channel_for(task_id)
        count = await self.publish(channel, envelope.to_wire())
        logger.debug(
            f"Published {envelope.type.value} to {channel}, subscribers: {count}"
        )
        return count

    async def publish_start(self, task_id: str) -> int:
        return await self.publish_envelope(task_id, Envelope.start(task_id))

    async def publish_content(self, task_id: str, text: str) -> int:
        return await self.publish_envelope(task_id, Envelope.content(text))

    async def publish_end(self, task_id: str, full_content: str) -> int:
        return await self.publish_envelope(task_id, Envelope.end(full_content))

    async def publish_error(self, task_id: str, message: str) -> int:
        return await self.publish_envelope(task_id, Envelope.error(message))

    async def publish_status(self, task_id: str, status: TaskStatus) -> int:
        return await self.publish_envelope(task_id, Envelope.status(status))

    async def subscribe(
        self,
        channel: str,
        on_message: MessageHandler,
        cancel_event: asyncio.Event | None = None,
        on_subscribed: SubscribedHandler | None = None,
    ) -> None:
        """Feed decoded messages from a channel to ``on_message``.

        ``on_subscribed`` is called once the transport is listening; messages
        published after that point reach ``on_message``. Returns when the feed
        ends or ``cancel_event`` is set. Transport failures raise RelayError.
        The underlying connection is released on every exit path.
        """
        if not channel:
            raise ValueError("channel is required")
        if on_message is None:
            raise ValueError("on_message is required")

        consumer = asyncio.create_task(
            self._consume(channel, on_message, on_subscribed or _ignore)
        )
        if cancel_event is None:
            await consumer
            return

        waiter = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not consumer.done():
                consumer.cancel()
                logger.info(f"Subscription cancelled for channel {channel}")
            await asyncio.gather(consumer, waiter, return_exceptions=True)

        if not consumer.cancelled() and consumer.exception() is not None:
            raise consumer.exception()


class RedisPubSubRelay(PubSubRelay):
    """Relay over native Redis PUBLISH/SUBSCRIBE."""

    def __init__(self, redis_client: Redis):
        if redis_client is None:
            raise ValueError("redis_client is required")
        self._redis = redis_client

    async def publish(self, channel: str, message: str) -> int:
        if not channel:
            raise ValueError("channel is required")
        try:
            return await self._redis.publish(channel, message)
        except RedisError as e:
            raise RelayError(f"Publish to {channel} failed: {e}") from e

    async def _consume(
        self, channel: str, on_message: MessageHandler, on_subscribed: SubscribedHandler
    ) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"Subscribed to channel {channel}")
            on_subscribed()
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                decoded = decode_frame(data, channel)
                if decoded is not None:
                    on_message(decoded)
            logger.info(f"Subscription ended for channel {channel}")
        except RedisError as e:
            raise RelayError(f"Subscription to {channel} failed: {e}") from e
        finally:
            await pubsub.aclose()


class RestPubSubRelay(PubSubRelay):
    """Relay over the Upstash Redis REST API.

    Subscriptions are a long-lived ``GET /subscribe/<channel>`` read as
    Server-Sent Events, whose framing is unwrapped by ``decode_frame``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if not token:
            raise ValueError("token is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        self._base_url = base_url.rstrip("/")
        self._token = token
        self._owns_client = http_client is None
        # Subscriptions block on reads indefinitely.
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, read=None)
        )

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def publish(self, channel: str, message: str) -> int:
        if not channel:
            raise ValueError("channel is required")

        try:
            response = await self._http.post(
                self._base_url,
                json=["PUBLISH", channel, message],
                headers=self._headers(),
            )
        except httpx.RequestError as e:
            raise RelayError(f"Publish to {channel} failed: {e}") from e

        if response.status_code >= 400:
            raise RelayError(
                f"Publish to {channel} failed: HTTP {response.status_code}: {response.text}"
            )

        try:
            return int(response.json()["result"])
        except (ValueError, KeyError, TypeError) as e:
            raise RelayError(f"Invalid publish response: {e}") from e

    async def _consume(
        self, channel: str, on_message: MessageHandler, on_subscribed: SubscribedHandler
    ) -> None:
        url = f"{self._base_url}/subscribe/{channel}"
        headers = {**self._headers(), "Accept": "text/event-stream"}

        try:
            async with self._http.stream("GET", url, headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise RelayError(
                        f"Failed to subscribe to {channel}: HTTP {response.status_code}"
                    )
                logger.info(f"Subscribed to channel {channel}")
                on_subscribed()
                async for line in response.aiter_lines():
                    decoded = decode_frame(line, channel)
                    if decoded is not None:
                        on_message(decoded)
            logger.info(f"Subscription ended for channel {channel}")
        except httpx.RequestError as e:
            raise RelayError(f"Subscription to {channel} failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
