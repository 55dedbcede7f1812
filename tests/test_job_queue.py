"""Tests for the Redis Streams broker.

Tests cover:
- Consumer group creation on the results stream
- Job publishing
- Reading new results and recovering abandoned ones
- Acknowledgment and dead-lettering
- Queue statistics
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from api.interfaces import QueueMessage
from api.job_queue import DEAD_LETTER_MAX_LEN, PAYLOAD_FIELD, QueuePublishError, RedisJobQueue
from config import OrchestratorConfig

CONFIG = OrchestratorConfig(stream_prefix="vc", consumer_group="grp", pending_timeout_ms=1000, stream_max_len=500)


def result_message(message_id="1700000000000-0", delivery_count=1) -> QueueMessage:
    return QueueMessage(
        payload=b'{"request_id": 1, "error": "boom"}',
        message_id=message_id,
        stream=CONFIG.results_stream,
        delivery_count=delivery_count,
    )


class TestStreamNames:
    """Tests for stream names derived from the prefix."""

    def test_stream_names(self):
        assert CONFIG.jobs_stream == "vc:conversion:jobs"
        assert CONFIG.results_stream == "vc:conversion:results"
        assert CONFIG.dead_letter_stream == "vc:conversion:dead-letter"


class TestInitialization:
    """Tests for RedisJobQueue.initialize."""

    @pytest.mark.asyncio
    async def test_creates_consumer_group(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            await queue.initialize("consumer-1")

        mock_redis.xgroup_create.assert_called_once_with("vc:conversion:results", "grp", id="0", mkstream=True)
        assert queue._initialized is True

    @pytest.mark.asyncio
    async def test_ignores_existing_group(self):
        """Should ignore BUSYGROUP error for an existing group."""
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(side_effect=Exception("BUSYGROUP Consumer Group name already exists"))

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            await queue.initialize("consumer-1")

        assert queue._initialized is True

    @pytest.mark.asyncio
    async def test_other_group_errors_propagate(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()
        mock_redis.xgroup_create = AsyncMock(side_effect=Exception("WRONGTYPE"))

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            with pytest.raises(Exception, match="WRONGTYPE"):
                await queue.initialize("consumer-1")

    @pytest.mark.asyncio
    async def test_redis_unavailable_leaves_uninitialized(self):
        queue = RedisJobQueue(CONFIG)

        with patch("api.job_queue.get_redis", return_value=None):
            await queue.initialize("consumer-1")

        assert queue._initialized is False


class TestPublish:
    """Tests for job publishing."""

    @pytest.mark.asyncio
    async def test_publishes_payload_to_jobs_stream(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(return_value="1-0")

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            await queue.publish(b'{"request_id": 1}')

        mock_redis.xadd.assert_called_once_with(
            "vc:conversion:jobs", {PAYLOAD_FIELD: '{"request_id": 1}'}, maxlen=500
        )

    @pytest.mark.asyncio
    async def test_raises_when_redis_unavailable(self):
        queue = RedisJobQueue(CONFIG)

        with patch("api.job_queue.get_redis", return_value=None):
            with pytest.raises(QueuePublishError, match="unavailable"):
                await queue.publish(b"{}")

    @pytest.mark.asyncio
    async def test_wraps_xadd_errors(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()
        mock_redis.xadd = AsyncMock(side_effect=ConnectionError("Connection refused"))

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            with pytest.raises(QueuePublishError) as exc_info:
                await queue.publish(b"{}")

        assert isinstance(exc_info.value.__cause__, ConnectionError)


class TestClaimMessage:
    """Tests for reading result messages."""

    @pytest.mark.asyncio
    async def test_reads_new_message(self):
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-1")
        mock_redis = AsyncMock()
        mock_redis.xpending_range = AsyncMock(return_value=[])
        mock_redis.xreadgroup = AsyncMock(
            return_value=[["vc:conversion:results", [("5-0", {PAYLOAD_FIELD: '{"request_id": 3}'})]]]
        )

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            message = await queue.claim_message()

        assert message.message_id == "5-0"
        assert message.stream == "vc:conversion:results"
        assert json.loads(message.payload) == {"request_id": 3}
        assert message.delivery_count == 1
        mock_redis.xreadgroup.assert_called_once_with(
            "grp", "consumer-1", {"vc:conversion:results": ">"}, count=1, block=CONFIG.consumer_block_ms
        )

    @pytest.mark.asyncio
    async def test_returns_none_when_nothing_arrives(self):
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-1")
        mock_redis = AsyncMock()
        mock_redis.xpending_range = AsyncMock(return_value=[])
        mock_redis.xreadgroup = AsyncMock(return_value=[])

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            assert await queue.claim_message() is None

    @pytest.mark.asyncio
    async def test_recovers_abandoned_message_first(self):
        """Messages idle past the pending timeout are claimed before new ones are read."""
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-2")
        mock_redis = AsyncMock()
        mock_redis.xpending_range = AsyncMock(
            return_value=[
                {"message_id": "1-0", "consumer": "consumer-1", "time_since_delivered": 500, "times_delivered": 1},
                {"message_id": "2-0", "consumer": "consumer-1", "time_since_delivered": 5000, "times_delivered": 2},
            ]
        )
        mock_redis.xclaim = AsyncMock(return_value=[("2-0", {PAYLOAD_FIELD: '{"request_id": 2}'})])

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            message = await queue.claim_message()

        assert message.message_id == "2-0"
        assert message.delivery_count == 3
        mock_redis.xclaim.assert_called_once_with("vc:conversion:results", "grp", "consumer-2", 1000, ["2-0"])
        mock_redis.xreadgroup.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_errors_return_none(self):
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-1")
        mock_redis = AsyncMock()
        mock_redis.xpending_range = AsyncMock(side_effect=ConnectionError("gone"))

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            with patch("api.job_queue.asyncio.sleep", new_callable=AsyncMock):
                assert await queue.claim_message() is None

    @pytest.mark.asyncio
    async def test_missing_payload_field_gives_empty_payload(self):
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-1")
        mock_redis = AsyncMock()
        mock_redis.xpending_range = AsyncMock(return_value=[])
        mock_redis.xreadgroup = AsyncMock(return_value=[["vc:conversion:results", [("6-0", {"other": "x"})]]])

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            message = await queue.claim_message()

        assert message.payload == b""


class TestConsume:
    """Tests for the consume loop."""

    @pytest.mark.asyncio
    async def test_requires_consumer_name(self):
        queue = RedisJobQueue(CONFIG)

        with pytest.raises(RuntimeError):
            async for _ in queue.consume():
                pass

    @pytest.mark.asyncio
    async def test_yields_until_stopped(self):
        queue = RedisJobQueue(CONFIG, consumer_name="consumer-1")
        queue._initialized = True
        first = result_message("1-0")

        async def claim():
            return first

        with patch.object(queue, "claim_message", side_effect=claim):
            received = []
            async for message in queue.consume():
                received.append(message)
                queue.stop()

        assert received == [first]


class TestAcknowledgeAndReject:
    """Tests for acknowledgment and the dead-letter stream."""

    @pytest.mark.asyncio
    async def test_acknowledge(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            assert await queue.acknowledge(result_message("9-0")) is True

        mock_redis.xack.assert_called_once_with("vc:conversion:results", "grp", "9-0")

    @pytest.mark.asyncio
    async def test_acknowledge_without_redis(self):
        queue = RedisJobQueue(CONFIG)

        with patch("api.job_queue.get_redis", return_value=None):
            assert await queue.acknowledge(result_message()) is False

    @pytest.mark.asyncio
    async def test_reject_moves_message_to_dead_letter(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            assert await queue.reject(result_message("9-0", delivery_count=4), "invalid response") is True

        stream, data = mock_redis.xadd.call_args[0]
        assert stream == "vc:conversion:dead-letter"
        assert mock_redis.xadd.call_args[1] == {"maxlen": DEAD_LETTER_MAX_LEN}
        assert data[PAYLOAD_FIELD] == '{"request_id": 1, "error": "boom"}'
        assert data["error"] == "invalid response"
        assert data["original_stream"] == "vc:conversion:results"
        assert data["original_id"] == "9-0"
        assert data["delivery_count"] == "4"
        assert "failed_at" in data
        mock_redis.xack.assert_called_once_with("vc:conversion:results", "grp", "9-0")

    @pytest.mark.asyncio
    async def test_reject_truncates_long_errors(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            await queue.reject(result_message(), "e" * 2000)

        _stream, data = mock_redis.xadd.call_args[0]
        assert len(data["error"]) == 500


class TestStats:
    """Tests for queue statistics."""

    @pytest.mark.asyncio
    async def test_stats(self):
        queue = RedisJobQueue(CONFIG)
        mock_redis = AsyncMock()
        mock_redis.xlen = AsyncMock(side_effect=[4, 2, 1])
        mock_redis.xpending = AsyncMock(return_value={"pending": 2})

        with patch("api.job_queue.get_redis", return_value=mock_redis):
            stats = await queue.get_stats()

        assert stats == {
            "available": True,
            "streams": {"jobs": {"length": 4}, "results": {"length": 2, "pending": 2}},
            "dead_letter": 1,
        }

    @pytest.mark.asyncio
    async def test_stats_without_redis(self):
        queue = RedisJobQueue(CONFIG)

        with patch("api.job_queue.get_redis", return_value=None):
            assert await queue.get_stats() == {"available": False}
