"""Bridge from a task's pub/sub channel to a client-facing SSE stream."""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from models.envelope import DecodedEnvelope, Envelope, RawText, format_sse
from models.state import TaskStatus
from services.pubsub import PubSubRelay, channel_for
from services.task_log import TaskLog

logger = logging.getLogger(__name__)

DEFAULT_GRACE_DELAY = 1.0


@dataclass(frozen=True)
class _SubscriptionFailed:
    message: str


_END = object()
_SUBSCRIBED = object()


class StreamingBridge:
    """Relays a task's live events to one client as Server-Sent Events.

    Each call to ``open`` owns one subscription. Closing the returned stream
    (client disconnect) releases that subscription only; the task's run is
    unaffected.
    """

    def __init__(
        self,
        task_log: TaskLog,
        relay: PubSubRelay,
        grace_delay: float = DEFAULT_GRACE_DELAY,
        close_on_terminal: bool = True,
    ):
        if task_log is None:
            raise ValueError("task_log is required")
        if relay is None:
            raise ValueError("relay is required")
        if grace_delay < 0:
            raise ValueError("grace_delay must be non-negative")

        self._task_log = task_log
        self._relay = relay
        self._grace_delay = grace_delay
        self._close_on_terminal = close_on_terminal

    async def open(self, task_id: str) -> AsyncIterator[str]:
        """Check the task exists and return its SSE frame stream.

        Raises TaskNotFoundError before any subscription is made.
        """
        if not task_id:
            raise ValueError("task_id is required")

        entry = await self._task_log.require_status(task_id)
        return self._stream(task_id, entry.status)

    async def _stream(self, task_id: str, status: TaskStatus) -> AsyncIterator[str]:
        logger.info(f"Starting stream for task {task_id}")
        yield format_sse(Envelope.connected(task_id))

        if self._close_on_terminal and status.is_terminal:
            # Finished before the client arrived; its events are gone.
            yield format_sse(Envelope.status(status))
            return

        queue: asyncio.Queue = asyncio.Queue()
        cancel = asyncio.Event()
        subscription = asyncio.create_task(
            self._subscribe(channel_for(task_id), queue, cancel)
        )

        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return

                if item is _SUBSCRIBED:
                    # A run that finished before the channel was live publishes nothing more.
                    entry = await self._task_log.get_status(task_id)
                    if (
                        self._close_on_terminal
                        and entry is not None
                        and entry.status.is_terminal
                    ):
                        yield format_sse(Envelope.status(entry.status))
                        return
                    continue

                if isinstance(item, _SubscriptionFailed):
                    yield format_sse(Envelope.error(item.message))
                    # Let the error frame flush before the stream closes.
                    await asyncio.sleep(self._grace_delay)
                    return

                envelope = self._to_envelope(item)
                yield format_sse(envelope)
                if self._close_on_terminal and envelope.is_terminal_status:
                    return
        finally:
            cancel.set()
            await asyncio.gather(subscription, return_exceptions=True)
            logger.info(f"Stream closed for task {task_id}")

    async def _subscribe(
        self, channel: str, queue: asyncio.Queue, cancel: asyncio.Event
    ) -> None:
        try:
            await self._relay.subscribe(
                channel,
                queue.put_nowait,
                cancel,
                on_subscribed=lambda: queue.put_nowait(_SUBSCRIBED),
            )
        except Exception as e:
            logger.error(f"Subscription error on {channel}: {e}")
            queue.put_nowait(_SubscriptionFailed(str(e) or "Subscription failed"))
        finally:
            queue.put_nowait(_END)

    def _to_envelope(self, item: DecodedEnvelope | RawText) -> Envelope:
        if isinstance(item, DecodedEnvelope):
            return item.envelope
        return Envelope.content(item.text)
