"""State models for task lifecycle tracking."""

import time
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_task_id() -> str:
    """Mint a task id: creation time plus a random suffix."""
    return f"task_{now_ms()}_{uuid.uuid4().hex[:9]}"


class StatusEntry(BaseModel):
    """One entry of a task's status history."""

    model_config = ConfigDict(frozen=True)

    status: TaskStatus
    timestamp: int


class ErrorEntry(BaseModel):
    """One entry of a task's error history."""

    model_config = ConfigDict(frozen=True)

    error: str
    timestamp: int


class TaskRequest(BaseModel):
    """Parameters of a single generation run, as delivered by the queue."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: str = Field(alias="taskId")
    prompt: str
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, alias="maxTokens", gt=0)
    temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    @field_validator("task_id")
    @classmethod
    def task_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("task_id is required")
        return v

    @field_validator("prompt")
    @classmethod
    def prompt_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt is required")
        return v


class ExecutionResult(BaseModel):
    """Outcome of one executor run. Failures are reported here, never raised."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    success: bool
    content: str | None = None
    error: str | None = None
    duplicate: bool = False
