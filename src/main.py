"""Main entry point for the taskstream API server."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from fastapi import FastAPI
from redis.asyncio import Redis

from api.app import TaskStreamAPI
from services.bridge import StreamingBridge
from services.config import AppConfig
from services.dispatcher import TaskDispatcher
from services.executor import TaskExecutor
from services.generation import OpenAIChatEngine
from services.log_service import configure_logging
from services.pubsub import PubSubRelay, RedisPubSubRelay, RestPubSubRelay
from services.signature import SignatureVerifier
from services.task_log import TaskLog
from services.task_queue import DeliveryQueue, QStashQueue, RedisDeliveryQueue

logger = logging.getLogger(__name__)


def get_redis_client(redis_url: str | None = None) -> Redis:
    """Create Redis client from config or environment."""
    url = redis_url or os.environ.get("REDIS_URL", "redis://localhost:6379")
    return Redis.from_url(url, decode_responses=True)


@dataclass
class Services:
    """Client handles constructed once per process and shared by all requests."""

    config: AppConfig
    redis_client: Redis
    task_log: TaskLog
    relay: PubSubRelay
    engine: OpenAIChatEngine
    queue: DeliveryQueue
    dispatcher: TaskDispatcher
    executor: TaskExecutor
    bridge: StreamingBridge
    verifier: SignatureVerifier | None

    async def aclose(self) -> None:
        """Close network clients."""
        await self.relay.aclose()
        await self.engine.aclose()
        if isinstance(self.queue, QStashQueue):
            await self.queue.aclose()
        await self.redis_client.aclose()


def build_relay(config: AppConfig, redis_client: Redis) -> PubSubRelay:
    if config.relay_transport == "rest":
        return RestPubSubRelay(
            config.upstash_redis_rest_url, config.upstash_redis_rest_token
        )
    return RedisPubSubRelay(redis_client)


def build_queue(config: AppConfig, redis_client: Redis) -> DeliveryQueue:
    if config.queue_backend == "redis":
        return RedisDeliveryQueue(redis_client)
    return QStashQueue(config.qstash_token, base_url=config.qstash_url)


def build_services(config: AppConfig) -> Services:
    """Wire every service from config."""
    redis_client = get_redis_client(config.redis_url)
    task_log = TaskLog(redis_client, ttl_seconds=config.task_ttl_seconds)
    relay = build_relay(config, redis_client)
    engine = OpenAIChatEngine(config.openai_api_key, base_url=config.openai_base_url)
    queue = build_queue(config, redis_client)

    dispatcher = TaskDispatcher(
        task_log,
        queue,
        config.webhook_url,
        retries=config.queue_retries,
        delay=config.queue_delay_seconds,
        default_model=config.default_model,
        default_max_tokens=config.default_max_tokens,
        default_temperature=config.default_temperature,
    )
    executor = TaskExecutor(task_log, relay, engine, exclusive=config.exclusive_runs)
    bridge = StreamingBridge(task_log, relay, grace_delay=config.stream_grace_delay)

    verifier = None
    if config.qstash_current_signing_key:
        verifier = SignatureVerifier(
            config.qstash_current_signing_key, config.qstash_next_signing_key
        )

    return Services(
        config=config,
        redis_client=redis_client,
        task_log=task_log,
        relay=relay,
        engine=engine,
        queue=queue,
        dispatcher=dispatcher,
        executor=executor,
        bridge=bridge,
        verifier=verifier,
    )


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create FastAPI application with all dependencies."""
    config = config or AppConfig()
    services = build_services(config)

    @asynccontextmanager
    async def lifespan(app):
        yield
        await services.aclose()

    api = TaskStreamAPI(
        services.dispatcher,
        services.executor,
        services.task_log,
        services.bridge,
        verifier=services.verifier,
        production=config.is_production,
        webhook_url=config.webhook_url,
    )
    return api.create_app(lifespan=lifespan)


def main() -> int:
    """Run the taskstream API server."""
    parser = argparse.ArgumentParser(description="Taskstream API Server")
    parser.add_argument(
        "--host",
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=os.environ.get("LOG_LEVEL", "info").lower(),
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    configure_logging(
        log_dir="logs",
        log_file="taskstream.log",
        level=getattr(logging, args.log_level.upper()),
    )

    config = AppConfig()
    missing = config.missing_variables()
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return 1

    logger.info("Starting taskstream API server")
    logger.info(f"Redis: {config.redis_url}, relay: {config.relay_transport}, "
                f"queue: {config.queue_backend}, env: {config.app_env}")

    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def get_app() -> FastAPI:
    """Get or create the FastAPI application (for uvicorn import)."""
    return create_app()


if __name__ == "__main__":
    sys.exit(main())
