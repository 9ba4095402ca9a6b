"""Redis-backed status, error and stream logs for tasks."""

import logging
import uuid

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from models.state import ErrorEntry, StatusEntry, TaskStatus, now_ms

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


class TaskNotFoundError(Exception):
    """Raised when a task has no recorded status."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


def _text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _decode_status(raw: str) -> StatusEntry | None:
    try:
        return StatusEntry.model_validate_json(raw)
    except ValidationError:
        pass
    # Legacy entries are the bare status value.
    try:
        return StatusEntry(status=TaskStatus(raw.strip()), timestamp=0)
    except ValueError:
        logger.warning(f"Skipping unreadable status entry: {raw!r}")
        return None


def _decode_error(raw: str) -> ErrorEntry:
    try:
        return ErrorEntry.model_validate_json(raw)
    except ValidationError:
        return ErrorEntry(error=raw, timestamp=0)


class TaskLog:
    """Append-only, TTL-bounded per-task logs.

    Every log is a Redis list written with LPUSH, so index 0 is the newest
    entry and reads reverse the list to get production order. Each write
    refreshes the key's TTL.
    """

    def __init__(self, redis_client: Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        if redis_client is None:
            raise ValueError("redis_client is required")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def _status_key(self, task_id: str) -> str:
        return f"task:{task_id}:status"

    def _error_key(self, task_id: str) -> str:
        return f"task:{task_id}:error"

    def _stream_key(self, task_id: str) -> str:
        return f"task:{task_id}:stream"

    def _result_key(self, task_id: str) -> str:
        return f"task:{task_id}:result"

    def _claim_key(self, task_id: str) -> str:
        return f"task:{task_id}:claim"

    def _keys(self, task_id: str) -> list[str]:
        return [
            self._status_key(task_id),
            self._error_key(task_id),
            self._stream_key(task_id),
            self._result_key(task_id),
            self._claim_key(task_id),
        ]

    async def _push(self, key: str, value: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.lpush(key, value).expire(key, self._ttl).execute()

    async def _newest(self, key: str) -> str | None:
        try:
            raw = await self._redis.lindex(key, 0)
        except ResponseError:
            # Pre-list deployments stored a single string value under the key.
            raw = await self._redis.get(key)
        return _text(raw) if raw is not None else None

    async def _oldest_first(self, key: str) -> list[str]:
        try:
            items = await self._redis.lrange(key, 0, -1)
        except ResponseError:
            value = await self._redis.get(key)
            items = [value] if value is not None else []
        return [_text(item) for item in reversed(items)]

    async def append_status(self, task_id: str, status: TaskStatus) -> StatusEntry:
        """Append a status transition."""
        if not task_id:
            raise ValueError("task_id is required")

        entry = StatusEntry(status=status, timestamp=now_ms())
        await self._push(self._status_key(task_id), entry.model_dump_json())
        return entry

    async def append_error(self, task_id: str, message: str) -> ErrorEntry:
        """Append an error message."""
        if not task_id:
            raise ValueError("task_id is required")
        if not message:
            raise ValueError("message is required")

        entry = ErrorEntry(error=message, timestamp=now_ms())
        await self._push(self._error_key(task_id), entry.model_dump_json())
        return entry

    async def append_chunk(self, task_id: str, chunk: str) -> None:
        """Append one raw output fragment."""
        if not task_id:
            raise ValueError("task_id is required")
        await self._push(self._stream_key(task_id), chunk)

    async def set_result(self, task_id: str, content: str) -> None:
        """Store the final concatenated output of a completed run."""
        if not task_id:
            raise ValueError("task_id is required")
        await self._redis.set(self._result_key(task_id), content, ex=self._ttl)

    async def get_status(self, task_id: str) -> StatusEntry | None:
        """Get the newest status entry, or None for an unknown task."""
        if not task_id:
            raise ValueError("task_id is required")

        raw = await self._newest(self._status_key(task_id))
        if raw is None:
            return None
        return _decode_status(raw)

    async def require_status(self, task_id: str) -> StatusEntry:
        """Get the newest status entry, raising TaskNotFoundError if absent."""
        entry = await self.get_status(task_id)
        if entry is None:
            raise TaskNotFoundError(task_id)
        return entry

    async def get_status_history(self, task_id: str) -> list[StatusEntry]:
        """Get all status entries, oldest first."""
        if not task_id:
            raise ValueError("task_id is required")

        entries = [
            entry
            for entry in map(_decode_status, await self._oldest_first(self._status_key(task_id)))
            if entry is not None
        ]
        return sorted(entries, key=lambda e: e.timestamp)

    async def get_error(self, task_id: str) -> ErrorEntry | None:
        """Get the newest error entry."""
        if not task_id:
            raise ValueError("task_id is required")

        raw = await self._newest(self._error_key(task_id))
        if raw is None:
            return None
        return _decode_error(raw)

    async def get_error_history(self, task_id: str) -> list[ErrorEntry]:
        """Get all error entries, oldest first."""
        if not task_id:
            raise ValueError("task_id is required")

        entries = [_decode_error(raw) for raw in await self._oldest_first(self._error_key(task_id))]
        return sorted(entries, key=lambda e: e.timestamp)

    async def get_stream(self, task_id: str) -> list[str]:
        """Get all output fragments in production order."""
        if not task_id:
            raise ValueError("task_id is required")
        return await self._oldest_first(self._stream_key(task_id))

    async def get_stream_content(self, task_id: str) -> str:
        """Get the output fragments joined into one string."""
        return "".join(await self.get_stream(task_id))

    async def get_result(self, task_id: str) -> str | None:
        """Get the final output of a completed run."""
        if not task_id:
            raise ValueError("task_id is required")

        raw = await self._redis.get(self._result_key(task_id))
        return _text(raw) if raw is not None else None

    async def exists(self, task_id: str) -> bool:
        """Check whether the task has any recorded status."""
        if not task_id:
            raise ValueError("task_id is required")
        return await self._redis.exists(self._status_key(task_id)) > 0

    async def claim_run(self, task_id: str) -> bool:
        """Atomically claim the right to execute a task.

        Only the first caller within the TTL window wins. The claim is never
        released by a run; it expires with the task's other keys or on cleanup.
        """
        if not task_id:
            raise ValueError("task_id is required")

        claimed = await self._redis.set(
            self._claim_key(task_id), uuid.uuid4().hex, nx=True, ex=self._ttl
        )
        return bool(claimed)

    async def cleanup(self, task_id: str) -> int:
        """Delete every key of a task immediately. Returns number of keys removed."""
        if not task_id:
            raise ValueError("task_id is required")
        return await self._redis.delete(*self._keys(task_id))
