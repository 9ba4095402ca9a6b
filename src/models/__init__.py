"""Models package."""

from models.envelope import (
    DecodedEnvelope,
    Envelope,
    EnvelopeType,
    RawText,
    decode_frame,
    format_sse,
)
from models.state import (
    ErrorEntry,
    ExecutionResult,
    StatusEntry,
    TaskRequest,
    TaskStatus,
    new_task_id,
    now_ms,
)

__all__ = [
    "DecodedEnvelope",
    "Envelope",
    "EnvelopeType",
    "ErrorEntry",
    "ExecutionResult",
    "RawText",
    "StatusEntry",
    "TaskRequest",
    "TaskStatus",
    "decode_frame",
    "format_sse",
    "new_task_id",
    "now_ms",
]
