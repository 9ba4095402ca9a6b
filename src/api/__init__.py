# API package

from api.app import TaskStreamAPI
from api.models import (
    ErrorResponse,
    HealthResponse,
    TaskHistoryResponse,
    TaskStartRequest,
    TaskStartResponse,
    TaskStatusResponse,
    WebhookResponse,
)

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "TaskHistoryResponse",
    "TaskStartRequest",
    "TaskStartResponse",
    "TaskStatusResponse",
    "TaskStreamAPI",
    "WebhookResponse",
]
