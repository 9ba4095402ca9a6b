"""FastAPI REST API for task dispatch, delivery and streaming."""

import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import ValidationError

from api.models import (
    ErrorResponse,
    HealthResponse,
    TaskHistoryResponse,
    TaskStartRequest,
    TaskStartResponse,
    TaskStatusResponse,
    WebhookResponse,
)
from models.state import TaskRequest, TaskStatus, new_task_id
from services.bridge import StreamingBridge
from services.dispatcher import DispatchError, TaskDispatcher
from services.executor import TaskExecutor
from services.signature import SIGNATURE_HEADER, AuthError, SignatureVerifier
from services.task_log import TaskLog, TaskNotFoundError

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
    "Access-Control-Allow-Headers": "Cache-Control",
}

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

DEV_TEST_PROMPT = "Tell me a short story about technology"


class TaskStreamAPI:
    """REST API for starting tasks and following their output."""

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        executor: TaskExecutor,
        task_log: TaskLog,
        bridge: StreamingBridge,
        verifier: SignatureVerifier | None = None,
        production: bool = False,
        webhook_url: str | None = None,
    ):
        """Initialize API with dependencies."""
        if dispatcher is None:
            raise ValueError("dispatcher is required")
        if executor is None:
            raise ValueError("executor is required")
        if task_log is None:
            raise ValueError("task_log is required")
        if bridge is None:
            raise ValueError("bridge is required")

        self._dispatcher = dispatcher
        self._executor = executor
        self._task_log = task_log
        self._bridge = bridge
        self._verifier = verifier
        self._production = production
        self._webhook_url = webhook_url

    def _verify_delivery(self, signature: str | None, body: bytes) -> None:
        if not self._production:
            return
        if self._verifier is None:
            raise AuthError("Signature verification is not configured")
        self._verifier.require(signature, body, self._webhook_url)

    async def _run_delivery(self, request: TaskRequest) -> WebhookResponse:
        logger.info(f"Delivery received for task {request.task_id}")
        result = await self._executor.execute(request)
        if result.duplicate:
            # Report the outcome of the run that holds the claim.
            entry = await self._task_log.get_status(request.task_id)
            return WebhookResponse(
                task_id=request.task_id,
                result=entry is not None and entry.status == TaskStatus.COMPLETED,
                message="Duplicate delivery ignored",
                duplicate=True,
            )
        return WebhookResponse(
            task_id=request.task_id,
            result=result.success,
            message="Task completed successfully" if result.success else "Task failed",
            error=result.error,
        )

    def create_app(self, lifespan=None) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Taskstream API",
            description="Queue-backed generation tasks with live streaming",
            version="1.0.0",
            lifespan=lifespan,
        )

        @app.post(
            "/api/tasks",
            response_model=TaskStartResponse,
            responses={502: {"model": ErrorResponse}},
        )
        async def start_task(request: TaskStartRequest) -> TaskStartResponse:
            """Queue a new generation task."""
            try:
                result = await self._dispatcher.start_task(
                    request.prompt,
                    model=request.model,
                    max_tokens=request.max_tokens,
                    temperature=request.temperature,
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except DispatchError as e:
                raise HTTPException(
                    status_code=502, detail=f"Failed to start task: {e.reason}"
                )

            return TaskStartResponse(
                task_id=result.task_id, message_id=result.message_id
            )

        @app.get(
            "/api/tasks/{task_id}",
            response_model=TaskStatusResponse,
            responses={404: {"model": ErrorResponse}},
        )
        async def get_task_status(task_id: str) -> TaskStatusResponse:
            """Get task status."""
            entry = await self._task_log.get_status(task_id)
            if entry is None:
                raise HTTPException(status_code=404, detail="Task not found")

            error = None
            result = None
            if entry.status == TaskStatus.FAILED:
                latest_error = await self._task_log.get_error(task_id)
                error = latest_error.error if latest_error else None
            elif entry.status == TaskStatus.COMPLETED:
                result = await self._task_log.get_result(task_id)

            return TaskStatusResponse(
                task_id=task_id,
                status=entry.status.value,
                error=error,
                result=result,
            )

        @app.get(
            "/api/tasks/{task_id}/history",
            response_model=TaskHistoryResponse,
            responses={404: {"model": ErrorResponse}},
        )
        async def get_task_history(task_id: str) -> TaskHistoryResponse:
            """Get the recorded status timeline, errors and output of a task."""
            statuses = await self._task_log.get_status_history(task_id)
            if not statuses:
                raise HTTPException(status_code=404, detail="Task not found")

            return TaskHistoryResponse(
                task_id=task_id,
                statuses=statuses,
                errors=await self._task_log.get_error_history(task_id),
                stream=await self._task_log.get_stream_content(task_id),
            )

        @app.get(
            "/api/tasks/{task_id}/stream",
            responses={404: {"model": ErrorResponse}},
        )
        async def stream_task(task_id: str) -> StreamingResponse:
            """Follow a task's live events as Server-Sent Events."""
            try:
                frames = await self._bridge.open(task_id)
            except TaskNotFoundError:
                raise HTTPException(
                    status_code=404,
                    detail="Task not found",
                    headers={"Access-Control-Allow-Origin": "*"},
                )

            return StreamingResponse(
                frames, media_type="text/event-stream", headers=SSE_HEADERS
            )

        @app.options("/api/tasks/{task_id}/stream")
        async def stream_preflight(task_id: str) -> Response:
            """Answer the CORS preflight for the event stream."""
            return Response(status_code=200, headers=PREFLIGHT_HEADERS)

        @app.delete(
            "/api/tasks/{task_id}",
            responses={404: {"model": ErrorResponse}},
        )
        async def delete_task(task_id: str) -> dict:
            """Delete all recorded data of a task."""
            if not await self._task_log.exists(task_id):
                raise HTTPException(status_code=404, detail="Task not found")

            await self._task_log.cleanup(task_id)
            return {"status": "deleted"}

        @app.post(
            "/api/qstash/webhook",
            response_model=WebhookResponse,
            responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
        )
        async def deliver_task(request: Request) -> WebhookResponse:
            """Run a task delivered by the queue."""
            body = await request.body()
            try:
                self._verify_delivery(request.headers.get(SIGNATURE_HEADER), body)
            except AuthError as e:
                logger.warning(f"Rejected delivery: {e}")
                raise HTTPException(status_code=401, detail=str(e))

            try:
                task_request = TaskRequest.model_validate_json(body)
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=f"Invalid delivery: {e}")

            return await self._run_delivery(task_request)

        @app.get(
            "/api/qstash/webhook",
            response_model=WebhookResponse,
            responses={405: {"model": ErrorResponse}},
        )
        async def trigger_test_delivery(
            task_id: str | None = Query(default=None, alias="taskId"),
            prompt: str | None = None,
        ) -> WebhookResponse:
            """Run a task directly, bypassing the queue. Development only."""
            if self._production:
                raise HTTPException(status_code=405, detail="Method not allowed")

            task_request = TaskRequest(
                task_id=task_id or new_task_id(),
                prompt=prompt or DEV_TEST_PROMPT,
            )
            return await self._run_delivery(task_request)

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(status="ok")

        return app
