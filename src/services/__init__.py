# Services package

from services.bridge import StreamingBridge
from services.config import AppConfig
from services.dispatcher import DispatchError, DispatchResult, TaskDispatcher
from services.executor import TaskCancelledError, TaskExecutor
from services.generation import GenerationEngine, GenerationError, OpenAIChatEngine
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.pubsub import (
    PubSubRelay,
    RedisPubSubRelay,
    RelayError,
    RestPubSubRelay,
    channel_for,
)
from services.signature import AuthError, SignatureVerifier
from services.task_log import TaskLog, TaskNotFoundError
from services.task_queue import (
    DeliveryItem,
    DeliveryQueue,
    QStashQueue,
    QueueError,
    RedisDeliveryQueue,
)

__all__ = [
    "AppConfig",
    "AuthError",
    "DeliveryItem",
    "DeliveryQueue",
    "DispatchError",
    "DispatchResult",
    "GenerationEngine",
    "GenerationError",
    "OpenAIChatEngine",
    "PubSubRelay",
    "QStashQueue",
    "QueueError",
    "RedisDeliveryQueue",
    "RedisPubSubRelay",
    "RelayError",
    "RestPubSubRelay",
    "SignatureVerifier",
    "SizeAndTimeRotatingHandler",
    "StreamingBridge",
    "TaskCancelledError",
    "TaskDispatcher",
    "TaskExecutor",
    "TaskLog",
    "TaskNotFoundError",
    "channel_for",
    "configure_logging",
]
