"""Dispatcher that registers new tasks and queues them for execution."""

import logging

from pydantic import BaseModel, ConfigDict

from models.state import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    TaskRequest,
    TaskStatus,
    new_task_id,
)
from services.task_log import TaskLog
from services.task_queue import DeliveryQueue, QueueError

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """Raised when a task could not be handed to the delivery queue."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Failed to queue task {task_id}: {reason}")


class DispatchResult(BaseModel):
    """Identifiers returned for a queued task."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    message_id: str


class TaskDispatcher:
    """Creates tasks in pending state and submits them to the delivery queue."""

    def __init__(
        self,
        task_log: TaskLog,
        queue: DeliveryQueue,
        webhook_url: str,
        retries: int = 3,
        delay: int = 0,
        default_model: str = DEFAULT_MODEL,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
        default_temperature: float = DEFAULT_TEMPERATURE,
    ):
        if task_log is None:
            raise ValueError("task_log is required")
        if queue is None:
            raise ValueError("queue is required")
        if not webhook_url or not webhook_url.strip():
            raise ValueError("webhook_url is required")
        if retries < 0:
            raise ValueError("retries must be non-negative")
        if delay < 0:
            raise ValueError("delay must be non-negative")

        self._task_log = task_log
        self._queue = queue
        self._webhook_url = webhook_url
        self._retries = retries
        self._delay = delay
        self._default_model = default_model
        self._default_max_tokens = default_max_tokens
        self._default_temperature = default_temperature

    async def start_task(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> DispatchResult:
        """Register a task and queue it. Returns as soon as the queue accepts it."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")

        request = TaskRequest(
            task_id=new_task_id(),
            prompt=prompt,
            model=model or self._default_model,
            max_tokens=max_tokens if max_tokens is not None else self._default_max_tokens,
            temperature=temperature if temperature is not None else self._default_temperature,
        )
        task_id = request.task_id

        await self._task_log.append_status(task_id, TaskStatus.PENDING)

        try:
            message_id = await self._queue.submit(
                self._webhook_url,
                request.model_dump(mode="json", by_alias=True),
                retries=self._retries,
                delay=self._delay,
            )
        except QueueError as e:
            logger.error(f"Failed to queue task {task_id}: {e}")
            await self._mark_undeliverable(task_id, f"Dispatch failed: {e}")
            raise DispatchError(task_id, str(e)) from e

        logger.info(f"Task {task_id} queued, message {message_id}")
        return DispatchResult(task_id=task_id, message_id=message_id)

    async def _mark_undeliverable(self, task_id: str, message: str) -> None:
        # A task the queue never accepted must not stay pending.
        try:
            await self._task_log.append_error(task_id, message)
            await self._task_log.append_status(task_id, TaskStatus.FAILED)
        except Exception as e:
            logger.error(f"Failed to record dispatch failure for task {task_id}: {e}")
