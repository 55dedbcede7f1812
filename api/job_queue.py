"""
Redis Streams broker for conversion jobs and worker results.

Streams (names derived from the configured prefix):
- <prefix>:conversion:jobs         work items published for the workers
- <prefix>:conversion:results      worker results, read through a consumer group
- <prefix>:conversion:dead-letter  results that could not be handled

Each stream entry has a single ``payload`` field holding the JSON document.
Result entries stay pending until acknowledged; entries left pending longer
than the pending timeout (crashed consumer, or a handler error that asked for
redelivery) are claimed again by the next consumer that polls.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from api.interfaces import JobQueue, QueueMessage
from api.redis_client import get_redis
from config import OrchestratorConfig

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"
DEAD_LETTER_MAX_LEN = 1000
# Pause between polls while Redis is unavailable
UNAVAILABLE_RETRY_SECONDS = 1.0


class QueuePublishError(Exception):
    """The broker did not accept a published message."""

    pass


class RedisJobQueue(JobQueue):
    """JobQueue over Redis Streams with a consumer group for results."""

    def __init__(self, config: OrchestratorConfig, consumer_name: Optional[str] = None) -> None:
        self.config = config
        self._consumer_name = consumer_name
        self._initialized: bool = False
        self._stopping: bool = False

    async def initialize(self, consumer_name: str) -> None:
        """
        Prepare the queue for consuming results.

        Creates the consumer group on the results stream (and the stream
        itself) if needed. Publishing does not require this call.

        Args:
            consumer_name: Unique name for this consumer (e.g., consumer-host-1234)
        """
        self._consumer_name = consumer_name

        redis = await get_redis()
        if not redis:
            logger.warning("Redis unavailable, result consumer group not created yet")
            return

        try:
            await redis.xgroup_create(
                self.config.results_stream, self.config.consumer_group, id="0", mkstream=True
            )
            logger.info(f"Created consumer group {self.config.consumer_group} on {self.config.results_stream}")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise
            # Group already exists

        self._initialized = True
        logger.info(f"Result queue initialized (consumer: {consumer_name})")

    async def publish(self, payload: bytes) -> None:
        redis = await get_redis()
        if not redis:
            raise QueuePublishError("Redis is unavailable")

        try:
            message_id = await redis.xadd(
                self.config.jobs_stream,
                {PAYLOAD_FIELD: payload.decode("utf-8")},
                maxlen=self.config.stream_max_len,
            )
        except Exception as e:
            raise QueuePublishError(f"Failed to publish to {self.config.jobs_stream}: {e}") from e

        logger.debug(f"Published job message {message_id} to {self.config.jobs_stream}")

    def stop(self) -> None:
        """Make ``consume()`` return after the message currently being handled."""
        self._stopping = True

    async def consume(self) -> AsyncIterator[QueueMessage]:
        if not self._consumer_name:
            raise RuntimeError("initialize() must be called before consume()")

        while not self._stopping:
            if not self._initialized:
                await self.initialize(self._consumer_name)
                if not self._initialized:
                    await asyncio.sleep(UNAVAILABLE_RETRY_SECONDS)
                    continue

            message = await self.claim_message()
            if message is not None:
                yield message

    async def claim_message(self) -> Optional[QueueMessage]:
        """
        Take the next result message for this consumer.

        Abandoned pending messages are recovered before new ones are read.

        Returns:
            QueueMessage, or None if nothing arrived within the block timeout
        """
        redis = await get_redis()
        if not redis:
            await asyncio.sleep(UNAVAILABLE_RETRY_SECONDS)
            return None

        try:
            recovered = await self._recover_abandoned_message(redis)
            if recovered:
                return recovered
            return await self._read_new_message(redis)
        except Exception as e:
            # Retried on the next claim; the pool reconnects on its own
            logger.warning(f"Reading from {self.config.results_stream} failed: {e}")
            await asyncio.sleep(UNAVAILABLE_RETRY_SECONDS)
            return None

    async def _recover_abandoned_message(self, redis) -> Optional[QueueMessage]:
        stream_name = self.config.results_stream
        pending = await redis.xpending_range(
            stream_name,
            self.config.consumer_group,
            min="-",
            max="+",
            count=10,
        )

        for entry in pending:
            idle_time = entry.get("time_since_delivered", 0)
            if idle_time <= self.config.pending_timeout_ms:
                continue
            claimed = await redis.xclaim(
                stream_name,
                self.config.consumer_group,
                self._consumer_name,
                self.config.pending_timeout_ms,
                [entry["message_id"]],
            )
            if claimed:
                message_id, data = claimed[0]
                # XCLAIM counts as another delivery
                delivery_count = entry.get("times_delivered", 1) + 1
                logger.info(
                    f"Recovered pending result {message_id} from {stream_name} "
                    f"(idle {idle_time}ms, delivery {delivery_count})"
                )
                return self._to_message(data, message_id, stream_name, delivery_count)

        return None

    async def _read_new_message(self, redis) -> Optional[QueueMessage]:
        stream_name = self.config.results_stream
        messages = await redis.xreadgroup(
            self.config.consumer_group,
            self._consumer_name,
            {stream_name: ">"},
            count=1,
            block=self.config.consumer_block_ms,
        )

        if messages:
            # messages format: [[stream_name, [(message_id, data), ...]]]
            _stream, msg_list = messages[0]
            if msg_list:
                message_id, data = msg_list[0]
                return self._to_message(data, message_id, stream_name, 1)
        return None

    @staticmethod
    def _to_message(
        data: Optional[Dict[str, str]],
        message_id: str,
        stream_name: str,
        delivery_count: int,
    ) -> QueueMessage:
        payload = (data or {}).get(PAYLOAD_FIELD, "")
        return QueueMessage(
            payload=payload.encode("utf-8"),
            message_id=message_id,
            stream=stream_name,
            delivery_count=delivery_count,
        )

    async def acknowledge(self, message: QueueMessage) -> bool:
        redis = await get_redis()
        if not redis:
            return False

        try:
            await redis.xack(message.stream, self.config.consumer_group, message.message_id)
            logger.debug(f"Acknowledged result message {message.message_id}")
            return True
        except Exception as e:
            logger.warning(f"Failed to acknowledge result message {message.message_id}: {e}")
            return False

    async def reject(self, message: QueueMessage, error: str) -> bool:
        redis = await get_redis()
        if not redis:
            return False

        try:
            dlq_data = {
                PAYLOAD_FIELD: message.payload.decode("utf-8", errors="replace"),
                "error": error[:500],
                "failed_at": datetime.now(timezone.utc).isoformat(),
                "original_stream": message.stream,
                "original_id": message.message_id,
                "delivery_count": str(message.delivery_count),
            }
            await redis.xadd(self.config.dead_letter_stream, dlq_data, maxlen=DEAD_LETTER_MAX_LEN)

            await redis.xack(message.stream, self.config.consumer_group, message.message_id)

            logger.info(f"Result message {message.message_id} moved to dead letter stream: {error[:100]}")
            return True
        except Exception as e:
            logger.warning(f"Failed to move result message {message.message_id} to dead letter stream: {e}")
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """
        Stream lengths and pending counts.

        Returns:
            Dict with an ``available`` flag plus per-stream numbers
        """
        redis = await get_redis()
        if not redis:
            return {"available": False}

        stats: Dict[str, Any] = {"available": True, "streams": {}}

        try:
            stats["streams"]["jobs"] = {"length": await redis.xlen(self.config.jobs_stream)}
        except Exception as e:
            logger.debug(f"Could not read length of {self.config.jobs_stream}: {e}")
            stats["streams"]["jobs"] = {"length": 0}

        try:
            length = await redis.xlen(self.config.results_stream)
            pending_info = await redis.xpending(self.config.results_stream, self.config.consumer_group)
            stats["streams"]["results"] = {
                "length": length,
                "pending": pending_info.get("pending", 0) if pending_info else 0,
            }
        except Exception as e:
            logger.debug(f"Could not read stats of {self.config.results_stream}: {e}")
            stats["streams"]["results"] = {"length": 0, "pending": 0}

        try:
            stats["dead_letter"] = await redis.xlen(self.config.dead_letter_stream)
        except Exception as e:
            logger.debug(f"Could not read length of {self.config.dead_letter_stream}: {e}")
            stats["dead_letter"] = 0

        return stats
