"""Worker daemon that runs tasks from the Redis delivery queue."""

import asyncio
import logging
import signal
import sys

from pydantic import ValidationError
from redis.exceptions import RedisError

from main import build_services
from models.state import TaskRequest, now_ms
from services.config import AppConfig
from services.executor import TaskExecutor
from services.log_service import configure_logging
from services.task_queue import RedisDeliveryQueue

logger = logging.getLogger("worker_daemon")


class WorkerDaemon:
    """Pulls deliveries off the queue and executes them one at a time."""

    def __init__(
        self,
        queue: RedisDeliveryQueue,
        executor: TaskExecutor,
        poll_timeout: int = 1,
        idle_interval: float = 0.5,
    ):
        if queue is None:
            raise ValueError("queue is required")
        if executor is None:
            raise ValueError("executor is required")
        if poll_timeout <= 0:
            raise ValueError("poll_timeout must be positive")

        self.queue = queue
        self.executor = executor
        self.poll_timeout = poll_timeout
        self.idle_interval = idle_interval
        self.running = True

    async def process_next(self) -> bool:
        """Handle one delivery.

        Returns True if a delivery was handled, False if none was ready.
        """
        item = await self.queue.dequeue(timeout=self.poll_timeout)
        if item is None:
            return False

        if item.not_before > now_ms():
            await self.queue.requeue(item)
            return False

        try:
            request = TaskRequest.model_validate(item.payload)
        except ValidationError as e:
            logger.error(f"Dropping malformed delivery {item.message_id}: {e}")
            return True

        # The executor records failures itself and never raises.
        result = await self.executor.execute(request)

        if result.duplicate:
            outcome = "ignored as duplicate"
        else:
            outcome = "success" if result.success else "failed"
        logger.info(
            f"Delivery {item.message_id} for task {request.task_id} finished: {outcome}"
        )
        return True

    async def run(self) -> None:
        """Main daemon loop."""
        logger.info("Worker daemon started, waiting for deliveries...")

        while self.running:
            try:
                if not await self.process_next():
                    await asyncio.sleep(self.idle_interval)
            except RedisError as e:
                logger.error(f"Error in daemon loop: {e}")
                await asyncio.sleep(self.idle_interval)

        logger.info("Worker daemon stopped")

    def stop(self) -> None:
        """Signal daemon to stop."""
        self.running = False


async def _serve(config: AppConfig) -> int:
    services = build_services(config)
    try:
        await services.redis_client.ping()
        logger.info("Redis connection established")
    except RedisError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        await services.aclose()
        return 1

    daemon = WorkerDaemon(services.queue, services.executor)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, daemon.stop)

    try:
        await daemon.run()
    finally:
        await services.aclose()
    return 0


def main() -> int:
    configure_logging(
        log_dir="logs",
        log_file="worker_daemon.log",
        level=logging.INFO,
    )

    config = AppConfig()
    if config.queue_backend != "redis":
        logger.error("Worker daemon requires QUEUE_BACKEND=redis")
        return 1

    missing = config.missing_variables()
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return 1

    logger.info(f"Connecting to Redis at {config.redis_url}")
    return asyncio.run(_serve(config))


if __name__ == "__main__":
    sys.exit(main())
