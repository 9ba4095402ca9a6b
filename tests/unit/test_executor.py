"""Unit tests for TaskExecutor."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import RedisError

from models.state import TaskRequest, TaskStatus
from services.executor import TaskExecutor
from services.generation import GenerationError
from services.pubsub import PubSubRelay, RelayError
from services.task_log import TaskLog


class FakeEngine:
    """Engine that yields canned fragments and then optionally fails."""

    def __init__(self, fragments=(), error=None):
        self.fragments = list(fragments)
        self.error = error
        self.calls = []
        self.closed = False

    async def stream(self, prompt, model, max_tokens, temperature):
        self.calls.append((prompt, model, max_tokens, temperature))
        try:
            for fragment in self.fragments:
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class RecordingRelay(PubSubRelay):
    """Relay that records envelopes and can be told to fail."""

    def __init__(self, fail_when=None):
        self.published = []
        self.fail_when = fail_when

    async def publish(self, channel, message):
        envelope = json.loads(message)
        if self.fail_when is not None and self.fail_when(envelope):
            raise RelayError("relay unavailable")
        self.published.append(envelope)
        return 1

    def types(self):
        return [e["type"] for e in self.published]


@pytest.fixture
def task_log():
    redis_client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return TaskLog(redis_client)


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def request_t1():
    return TaskRequest(task_id="t1", prompt="Say hello", model="gpt-test", max_tokens=20)


def run_and_read(task_log, executor, request, cancel_event=None):
    async def scenario():
        await task_log.append_status(request.task_id, TaskStatus.PENDING)
        result = await executor.execute(request, cancel_event)
        return result, {
            "statuses": [e.status for e in await task_log.get_status_history(request.task_id)],
            "errors": [e.error for e in await task_log.get_error_history(request.task_id)],
            "stream": await task_log.get_stream(request.task_id),
            "result": await task_log.get_result(request.task_id),
        }

    return asyncio.run(scenario())


class TestTaskExecutorInit:
    """Tests for TaskExecutor initialization."""

    def test_init_requires_dependencies(self, task_log, relay):
        engine = FakeEngine()
        with pytest.raises(ValueError, match="task_log is required"):
            TaskExecutor(None, relay, engine)
        with pytest.raises(ValueError, match="relay is required"):
            TaskExecutor(task_log, None, engine)
        with pytest.raises(ValueError, match="engine is required"):
            TaskExecutor(task_log, relay, None)

    def test_execute_without_request_raises(self, task_log, relay):
        executor = TaskExecutor(task_log, relay, FakeEngine())
        with pytest.raises(ValueError, match="request is required"):
            asyncio.run(executor.execute(None))


class TestSuccessfulRun:
    """Tests for a run that completes."""

    def test_completed_run(self, task_log, relay, request_t1):
        engine = FakeEngine(["Hel", "lo", "!"])
        executor = TaskExecutor(task_log, relay, engine)

        result, logs = run_and_read(task_log, executor, request_t1)

        assert result.success
        assert result.content == "Hello!"
        assert not result.duplicate
        assert logs["statuses"] == [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETED]
        assert logs["stream"] == ["Hel", "lo", "!"]
        assert logs["result"] == "Hello!"
        assert logs["errors"] == []
        assert engine.calls == [("Say hello", "gpt-test", 20, 0.7)]

    def test_published_envelope_order(self, task_log, relay, request_t1):
        """Start precedes content, end carries the full text, completed comes last."""
        executor = TaskExecutor(task_log, relay, FakeEngine(["a", "b"]))

        run_and_read(task_log, executor, request_t1)

        assert relay.types() == ["status", "start", "content", "content", "end", "status"]
        assert relay.published[0]["data"] == "running"
        assert relay.published[1]["taskId"] == "t1"
        assert [e["data"] for e in relay.published[2:4]] == ["a", "b"]
        assert relay.published[4]["data"] == "ab"
        assert relay.published[5]["data"] == "completed"

    def test_empty_fragments_are_skipped(self, task_log, relay, request_t1):
        executor = TaskExecutor(task_log, relay, FakeEngine(["a", "", "b"]))

        _, logs = run_and_read(task_log, executor, request_t1)

        assert logs["stream"] == ["a", "b"]
        assert relay.types().count("content") == 2

    def test_empty_output_completes(self, task_log, relay, request_t1):
        executor = TaskExecutor(task_log, relay, FakeEngine([]))

        result, logs = run_and_read(task_log, executor, request_t1)

        assert result.success
        assert result.content == ""
        assert logs["statuses"][-1] == TaskStatus.COMPLETED
        assert relay.published[-2]["type"] == "end"
        assert relay.published[-2]["data"] == ""

    def test_engine_is_closed(self, task_log, relay, request_t1):
        engine = FakeEngine(["x"])
        run_and_read(task_log, TaskExecutor(task_log, relay, engine), request_t1)
        assert engine.closed

    def test_lost_completed_notification_keeps_success(self, task_log, request_t1):
        relay = RecordingRelay(
            fail_when=lambda e: e["type"] == "status" and e.get("data") == "completed"
        )
        executor = TaskExecutor(task_log, relay, FakeEngine(["done"]))

        result, logs = run_and_read(task_log, executor, request_t1)

        assert result.success
        assert logs["statuses"][-1] == TaskStatus.COMPLETED
        assert relay.types()[-1] == "end"


class TestFailedRun:
    """Tests for runs that fail."""

    def test_engine_failure_mid_stream(self, task_log, relay, request_t1):
        """Fragments written before the failure stay in the stream log."""
        engine = FakeEngine(["par", "tial"], error=GenerationError("model overloaded"))
        executor = TaskExecutor(task_log, relay, engine)

        result, logs = run_and_read(task_log, executor, request_t1)

        assert not result.success
        assert result.error == "model overloaded"
        assert logs["statuses"] == [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.FAILED]
        assert logs["errors"] == ["model overloaded"]
        assert logs["stream"] == ["par", "tial"]
        assert logs["result"] is None
        assert "end" not in relay.types()
        assert relay.types()[-2:] == ["error", "status"]
        assert relay.published[-2]["data"] == "model overloaded"
        assert relay.published[-1]["data"] == "failed"
        assert engine.closed

    def test_error_without_message_uses_type_name(self, task_log, relay, request_t1):
        executor = TaskExecutor(task_log, relay, FakeEngine(error=RuntimeError()))

        result, logs = run_and_read(task_log, executor, request_t1)

        assert result.error == "RuntimeError"
        assert logs["errors"] == ["RuntimeError"]

    def test_relay_failure_fails_run(self, task_log, request_t1):
        relay = RecordingRelay(fail_when=lambda e: True)
        executor = TaskExecutor(task_log, relay, FakeEngine(["x"]))

        result, logs = run_and_read(task_log, executor, request_t1)

        assert not result.success
        assert "relay unavailable" in result.error
        assert logs["statuses"][-1] == TaskStatus.FAILED
        assert relay.published == []

    def test_task_log_failure_does_not_raise(self, relay, request_t1):
        task_log = MagicMock()
        task_log.claim_run = AsyncMock(return_value=True)
        task_log.append_status = AsyncMock(side_effect=RedisError("redis down"))
        task_log.append_error = AsyncMock(side_effect=RedisError("redis down"))
        executor = TaskExecutor(task_log, relay, FakeEngine(["x"]))

        result = asyncio.run(executor.execute(request_t1))

        assert not result.success
        assert result.error == "redis down"
        assert relay.types() == ["error", "status"]

    def test_claim_failure_is_recorded(self, relay, request_t1):
        task_log = MagicMock()
        task_log.claim_run = AsyncMock(side_effect=RedisError("redis down"))
        task_log.append_error = AsyncMock()
        task_log.append_status = AsyncMock()
        engine = FakeEngine(["x"])
        executor = TaskExecutor(task_log, relay, engine)

        result = asyncio.run(executor.execute(request_t1))

        assert not result.success
        assert engine.calls == []
        task_log.append_status.assert_awaited_once_with("t1", TaskStatus.FAILED)

    def test_cancelled_run_fails(self, task_log, relay, request_t1):
        cancel = asyncio.Event()
        cancel.set()
        engine = FakeEngine(["a", "b"])
        executor = TaskExecutor(task_log, relay, engine)

        result, logs = run_and_read(task_log, executor, request_t1, cancel)

        assert not result.success
        assert result.error == "Task cancelled: t1"
        assert logs["stream"] == []
        assert logs["statuses"][-1] == TaskStatus.FAILED
        assert engine.closed


class TestDuplicateDelivery:
    """Tests for repeated deliveries of one task."""

    def test_second_delivery_is_duplicate(self, task_log, relay, request_t1):
        engine = FakeEngine(["x"])
        executor = TaskExecutor(task_log, relay, engine)

        async def scenario():
            first = await executor.execute(request_t1)
            second = await executor.execute(request_t1)
            return first, second, await task_log.get_stream(request_t1.task_id)

        first, second, stream = asyncio.run(scenario())

        assert first.success
        assert second.duplicate
        assert not second.success
        assert len(engine.calls) == 1
        assert stream == ["x"]
        assert relay.types().count("start") == 1

    def test_non_exclusive_runs_again(self, task_log, relay, request_t1):
        engine = FakeEngine(["x"])
        executor = TaskExecutor(task_log, relay, engine, exclusive=False)

        async def scenario():
            await executor.execute(request_t1)
            second = await executor.execute(request_t1)
            return second, await task_log.get_stream(request_t1.task_id)

        second, stream = asyncio.run(scenario())

        assert second.success
        assert len(engine.calls) == 2
        assert stream == ["x", "x"]
