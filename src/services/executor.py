"""Executor that runs one generation task and reports its progress."""

import asyncio
import logging
from contextlib import aclosing

from models.state import ExecutionResult, TaskRequest, TaskStatus
from services.generation import GenerationEngine
from services.pubsub import PubSubRelay
from services.task_log import TaskLog

logger = logging.getLogger(__name__)


class TaskCancelledError(Exception):
    """Raised inside a run when its cancel event is set."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task cancelled: {task_id}")


class TaskExecutor:
    """Drives the generation engine for a task and owns its state machine.

    pending -> running -> completed | failed

    Output fragments are written to the task log and published to the task's
    channel as two independent awaits; readers of either sink may see the
    other ahead or behind. ``execute`` never raises: every failure is recorded
    as a ``failed`` status plus an error entry and reported in the result.
    """

    def __init__(
        self,
        task_log: TaskLog,
        relay: PubSubRelay,
        engine: GenerationEngine,
        exclusive: bool = True,
    ):
        if task_log is None:
            raise ValueError("task_log is required")
        if relay is None:
            raise ValueError("relay is required")
        if engine is None:
            raise ValueError("engine is required")

        self._task_log = task_log
        self._relay = relay
        self._engine = engine
        self._exclusive = exclusive

    async def execute(
        self,
        request: TaskRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run a task to completion or failure.

        When ``exclusive`` is set, a redelivery of a task that has already been
        claimed returns a duplicate result without touching its logs or channel.
        ``cancel_event`` is checked between fragments; callers that leave it
        unset get runs that finish regardless of who is watching.
        """
        if request is None:
            raise ValueError("request is required")

        task_id = request.task_id
        try:
            if self._exclusive and not await self._task_log.claim_run(task_id):
                logger.warning(f"Task {task_id} already claimed, skipping duplicate delivery")
                return ExecutionResult(
                    task_id=task_id,
                    success=False,
                    error="Task already claimed by another delivery",
                    duplicate=True,
                )
            content = await self._run(request, cancel_event)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Task {task_id} failed: {message}")
            await self._record_failure(task_id, message)
            return ExecutionResult(task_id=task_id, success=False, error=message)

        logger.info(f"Task {task_id} completed ({len(content)} chars)")
        return ExecutionResult(task_id=task_id, success=True, content=content)

    async def _run(self, request: TaskRequest, cancel_event: asyncio.Event | None) -> str:
        task_id = request.task_id

        await self._task_log.append_status(task_id, TaskStatus.RUNNING)
        await self._relay.publish_status(task_id, TaskStatus.RUNNING)
        await self._relay.publish_start(task_id)
        logger.info(f"Task {task_id} running with model {request.model}")

        parts: list[str] = []
        fragments = self._engine.stream(
            request.prompt, request.model, request.max_tokens, request.temperature
        )
        async with aclosing(fragments):
            async for fragment in fragments:
                if cancel_event is not None and cancel_event.is_set():
                    raise TaskCancelledError(task_id)
                if not fragment:
                    continue
                parts.append(fragment)
                await self._task_log.append_chunk(task_id, fragment)
                await self._relay.publish_content(task_id, fragment)

        content = "".join(parts)
        await self._relay.publish_end(task_id, content)
        await self._task_log.set_result(task_id, content)
        await self._task_log.append_status(task_id, TaskStatus.COMPLETED)
        # Completion is already recorded; only the notification may be lost.
        await self._best_effort(
            task_id, "publish completed status",
            self._relay.publish_status, task_id, TaskStatus.COMPLETED,
        )
        return content

    async def _record_failure(self, task_id: str, message: str) -> None:
        await self._best_effort(
            task_id, "record error", self._task_log.append_error, task_id, message
        )
        await self._best_effort(
            task_id, "record failed status",
            self._task_log.append_status, task_id, TaskStatus.FAILED,
        )
        await self._best_effort(
            task_id, "publish error", self._relay.publish_error, task_id, message
        )
        await self._best_effort(
            task_id, "publish failed status",
            self._relay.publish_status, task_id, TaskStatus.FAILED,
        )

    async def _best_effort(self, task_id: str, action: str, func, *args) -> None:
        try:
            await func(*args)
        except Exception as e:
            logger.error(f"Failed to {action} for task {task_id}: {e}")
