"""Request and response models for REST API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.state import ErrorEntry, StatusEntry


class TaskStartRequest(BaseModel):
    """Request to start a generation task."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    prompt: str
    model: str | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens", gt=0)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    @field_validator("prompt")
    @classmethod
    def prompt_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt is required")
        return v


class TaskStartResponse(BaseModel):
    """Response from task submission."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool = True
    task_id: str = Field(alias="taskId")
    message_id: str = Field(alias="messageId")
    message: str = "Task queued successfully"


class TaskStatusResponse(BaseModel):
    """Response for task status."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: str = Field(alias="taskId")
    status: str
    error: str | None = None
    result: str | None = None


class TaskHistoryResponse(BaseModel):
    """Full recorded timeline of a task."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: str = Field(alias="taskId")
    statuses: list[StatusEntry]
    errors: list[ErrorEntry]
    stream: str


class WebhookResponse(BaseModel):
    """Response to the delivery queue after a run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    success: bool = True
    task_id: str = Field(alias="taskId")
    result: bool
    message: str
    error: str | None = None
    duplicate: bool = False


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str
