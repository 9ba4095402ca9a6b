"""Pub/sub wire envelopes and the relay frame decoder."""

import json
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from models.state import TaskStatus, now_ms


class EnvelopeType(str, Enum):
    """Kind of event carried by an envelope."""

    CONNECTED = "connected"
    START = "start"
    CONTENT = "content"
    END = "end"
    ERROR = "error"
    STATUS = "status"


class Envelope(BaseModel):
    """One timestamped task event, immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: EnvelopeType
    data: str | None = None
    timestamp: int = Field(default_factory=now_ms)
    task_id: str | None = Field(default=None, alias="taskId")

    def to_wire(self) -> str:
        """Serialize to the JSON wire shape, omitting absent fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @property
    def is_terminal_status(self) -> bool:
        return self.type == EnvelopeType.STATUS and self.data in (
            TaskStatus.COMPLETED.value,
            TaskStatus.FAILED.value,
        )

    @classmethod
    def connected(cls, task_id: str) -> "Envelope":
        return cls(type=EnvelopeType.CONNECTED, task_id=task_id)

    @classmethod
    def start(cls, task_id: str) -> "Envelope":
        return cls(type=EnvelopeType.START, task_id=task_id)

    @classmethod
    def content(cls, text: str) -> "Envelope":
        return cls(type=EnvelopeType.CONTENT, data=text)

    @classmethod
    def end(cls, full_content: str) -> "Envelope":
        return cls(type=EnvelopeType.END, data=full_content)

    @classmethod
    def error(cls, message: str) -> "Envelope":
        return cls(type=EnvelopeType.ERROR, data=message)

    @classmethod
    def status(cls, status: TaskStatus) -> "Envelope":
        return cls(type=EnvelopeType.STATUS, data=status.value)


@dataclass(frozen=True)
class DecodedEnvelope:
    """A relay frame that carried a well-formed envelope."""

    envelope: Envelope


@dataclass(frozen=True)
class RawText:
    """A relay frame that could not be read as an envelope."""

    text: str


def format_sse(envelope: Envelope) -> str:
    """Frame an envelope as a single Server-Sent Event."""
    return f"data: {envelope.to_wire()}\n\n"


def _as_envelope(value: object) -> Envelope | None:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    try:
        return Envelope.model_validate(value)
    except ValidationError:
        return None


def _strip_framing(payload: str, channel: str | None) -> str | None:
    if payload.startswith("data:"):
        payload = payload[len("data:"):].strip()

    # Upstash REST subscribe frames: "subscribe,<channel>,<n>", "message,<channel>,<payload>"
    if payload.startswith(("subscribe,", "unsubscribe,")):
        return None
    if payload.startswith("message,"):
        parts = payload.split(",", 2)
        if len(parts) == 3 and (channel is None or parts[1] == channel):
            payload = parts[2]

    return payload or None


def decode_frame(
    line: str, channel: str | None = None
) -> DecodedEnvelope | RawText | None:
    """Decode one line read from a relay transport.

    Tried in order:
      1. strip transport framing (``data:`` prefix, ``message,<channel>,`` prefix);
      2. parse as JSON, unwrapping a ``message`` field, and validate as an Envelope;
      3. fall back to the text itself.

    Returns None for blank lines and subscription control frames.
    """
    payload = _strip_framing(line.strip(), channel)
    if payload is None:
        return None

    try:
        parsed = json.loads(payload)
    except ValueError:
        return RawText(payload)

    if isinstance(parsed, dict) and parsed.get("message"):
        parsed = parsed["message"]

    envelope = _as_envelope(parsed)
    if envelope is not None:
        return DecodedEnvelope(envelope)

    if isinstance(parsed, str):
        return RawText(parsed)
    return RawText(json.dumps(parsed))
