#!/usr/bin/env python3
"""
Result consumer: reads worker results from the broker and reconciles them.

Broker action per outcome of CompletionHandler.handle_completion:
- returns normally          -> acknowledge
- CompressWorkerError       -> acknowledge (the failure is already recorded)
- invalid message           -> dead-letter
- any other error           -> leave pending; redelivered after the pending timeout
- too many deliveries       -> dead-letter without handling

Several consumers can run side by side; each needs a unique consumer name.
"""

import asyncio
import logging
import os
import signal
import socket
from typing import Optional

from api.completion import CompletionHandler, CompressWorkerError, InvalidResultMessageError
from api.database import database
from api.errors import truncate_error
from api.interfaces import JobQueue, QueueMessage
from api.job_queue import RedisJobQueue
from api.metrics import RESULT_MESSAGES_TOTAL, init_app_info
from api.redis_client import RedisClient
from api.services import build_completion_handler
from config import LOG_LEVEL, OrchestratorConfig

logger = logging.getLogger(__name__)

ACKED = "acked"
DEAD_LETTERED = "dead_lettered"
REDELIVERY = "redelivery"


class CompletionConsumer:
    """Feeds result messages to a CompletionHandler and applies the ack policy."""

    def __init__(self, handler: CompletionHandler, queue: JobQueue, max_deliveries: int):
        self.handler = handler
        self.queue = queue
        self.max_deliveries = max_deliveries
        self.processed = 0

    def stop(self) -> None:
        self.queue.stop()

    async def process(self, message: QueueMessage) -> str:
        """Handle one message and acknowledge, dead-letter or leave it pending.

        Returns:
            The broker action taken (ACKED, DEAD_LETTERED or REDELIVERY)
        """
        if message.delivery_count > self.max_deliveries:
            logger.error(
                f"Result message {message.message_id} delivered {message.delivery_count} times, dead-lettering"
            )
            await self.queue.reject(message, f"exceeded {self.max_deliveries} deliveries")
            return self._count(DEAD_LETTERED)

        try:
            await self.handler.handle_completion(message.payload)
        except InvalidResultMessageError as e:
            logger.warning(f"Dead-lettering result message {message.message_id}: {e}")
            await self.queue.reject(message, str(e))
            return self._count(DEAD_LETTERED)
        except CompressWorkerError as e:
            logger.info(str(e))
        except Exception as e:
            logger.exception(
                f"Handling result message {message.message_id} failed "
                f"(delivery {message.delivery_count}/{self.max_deliveries}), leaving it pending: {truncate_error(e)}"
            )
            return self._count(REDELIVERY)

        await self.queue.acknowledge(message)
        return self._count(ACKED)

    def _count(self, action: str) -> str:
        self.processed += 1
        RESULT_MESSAGES_TOTAL.labels(action=action).inc()
        return action

    async def run(self) -> None:
        """Consume until the queue is stopped."""
        async for message in self.queue.consume():
            await self.process(message)
        logger.info(f"Result consumer stopped after {self.processed} messages")


def default_consumer_name() -> str:
    return f"consumer-{socket.gethostname()}-{os.getpid()}"


async def run_consumer(config: OrchestratorConfig, consumer_name: Optional[str] = None) -> None:
    """Connect to the database and Redis, then consume results until a shutdown signal."""
    consumer_name = consumer_name or default_consumer_name()
    queue = RedisJobQueue(config, consumer_name=consumer_name)
    consumer = CompletionConsumer(build_completion_handler(config), queue, config.max_deliveries)

    def signal_handler(sig, frame):
        """Handle shutdown signals gracefully."""
        logger.info("Shutdown signal received, finishing current message...")
        consumer.stop()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    init_app_info(component="consumer")
    await database.connect()
    try:
        await queue.initialize(consumer_name)
        logger.info(f"Consuming {config.results_stream} as {consumer_name}")
        await consumer.run()
    finally:
        await database.disconnect()
        await RedisClient.reset_instance()


def main():
    """Entry point for the result consumer."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_consumer(OrchestratorConfig.from_env()))


if __name__ == "__main__":
    main()
