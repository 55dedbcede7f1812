"""
Pytest fixtures for videocmprs tests.

Provides in-memory stores, blob storage and queue that implement the
collaborator interfaces, plus a SQLite database for the repository tests.
"""

import copy
import io
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import pytest
from databases import Database

from api.database import create_tables
from api.interfaces import BlobStore, JobQueue, QueueMessage, RequestStore, VideoStore
from api.models import ConversionRequest, FileBlob, VideoAsset
from api.repositories import (
    REQUEST_COLUMN_ALIASES,
    REQUEST_CREATE_COLUMNS,
    REQUEST_UPDATE_COLUMNS,
    VIDEO_COLUMN_ALIASES,
    VIDEO_CREATE_COLUMNS,
    VIDEO_UPDATE_COLUMNS,
    RecordNotFoundError,
    StaleRecordError,
    normalize_fields,
)
from config import OrchestratorConfig


class FakeRequestStore(RequestStore):
    """
    In-memory RequestStore keeping rows in their column form.

    ``update_errors`` is consumed one entry per update call: an exception is
    raised, None lets the update through.
    """

    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self.update_errors: List[Optional[Exception]] = []
        self.updates: List[tuple] = []

    async def create(self, fields: Mapping[str, Any]) -> ConversionRequest:
        if self.create_error:
            raise self.create_error
        values = normalize_fields(fields, REQUEST_CREATE_COLUMNS, REQUEST_COLUMN_ALIASES)
        row = {
            "id": len(self.rows) + 1,
            "status": "in_review",
            "details": "",
            "bitrate": 0,
            "resolution_x": 0,
            "resolution_y": 0,
            "ratio_x": 0,
            "ratio_y": 0,
            "original_file_id": None,
            "converted_file_id": None,
            "version": 1,
            "created_at": datetime.now(timezone.utc),
            "updated_at": None,
        }
        row.update(values)
        self.rows[row["id"]] = row
        return ConversionRequest.from_mapping(row)

    async def retrieve(self, request_id: int) -> ConversionRequest:
        if self.retrieve_error:
            raise self.retrieve_error
        if request_id not in self.rows:
            raise RecordNotFoundError("requests", request_id)
        return ConversionRequest.from_mapping(dict(self.rows[request_id]))

    async def update(
        self,
        request_id: int,
        fields: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ConversionRequest:
        self.updates.append((request_id, dict(fields), expected_version))
        if self.update_errors:
            error = self.update_errors.pop(0)
            if error is not None:
                raise error

        values = normalize_fields(fields, REQUEST_UPDATE_COLUMNS, REQUEST_COLUMN_ALIASES)
        row = self.rows.get(request_id)
        if row is None:
            raise RecordNotFoundError("requests", request_id)
        if expected_version is not None and row["version"] != expected_version:
            raise StaleRecordError(request_id, expected_version)

        row.update(values)
        row["version"] += 1
        row["updated_at"] = datetime.now(timezone.utc)
        return ConversionRequest.from_mapping(dict(row))

    async def list_for_owner(self, owner_id: int, limit: int = 50, offset: int = 0) -> List[ConversionRequest]:
        owned = [r for r in sorted(self.rows.values(), key=lambda r: -r["id"]) if r["user_id"] == owner_id]
        return [ConversionRequest.from_mapping(dict(r)) for r in owned[offset : offset + limit]]


class FakeVideoStore(VideoStore):
    """In-memory VideoStore keeping rows in their column form."""

    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.create_error: Optional[Exception] = None
        self.update_error: Optional[Exception] = None
        self.updates: List[tuple] = []

    async def create(self, fields: Mapping[str, Any]) -> VideoAsset:
        if self.create_error:
            raise self.create_error
        values = normalize_fields(fields, VIDEO_CREATE_COLUMNS, VIDEO_COLUMN_ALIASES)
        row = {
            "id": len(self.rows) + 1,
            "size": 0,
            "bitrate": 0,
            "resolution_x": 0,
            "resolution_y": 0,
            "ratio_x": 0,
            "ratio_y": 0,
            "created_at": datetime.now(timezone.utc),
        }
        row.update(values)
        self.rows[row["id"]] = row
        return VideoAsset.from_mapping(row)

    async def retrieve(self, video_id: int) -> VideoAsset:
        if video_id not in self.rows:
            raise RecordNotFoundError("videos", video_id)
        return VideoAsset.from_mapping(dict(self.rows[video_id]))

    async def update(self, video_id: int, fields: Mapping[str, Any]) -> VideoAsset:
        self.updates.append((video_id, dict(fields)))
        if self.update_error:
            raise self.update_error
        values = normalize_fields(fields, VIDEO_UPDATE_COLUMNS, VIDEO_COLUMN_ALIASES)
        if video_id not in self.rows:
            raise RecordNotFoundError("videos", video_id)
        self.rows[video_id].update(values)
        return VideoAsset.from_mapping(dict(self.rows[video_id]))


class FakeBlobStore(BlobStore):
    def __init__(self):
        self.uploads: List[str] = []
        self.error: Optional[Exception] = None

    async def upload(self, blob: FileBlob) -> str:
        if self.error:
            raise self.error
        key = f"original_test{len(self.uploads) + 1:04d}_{blob.name}"
        self.uploads.append(key)
        return key


class FakeJobQueue(JobQueue):
    """In-memory broker: records published payloads and replays queued results."""

    def __init__(self, messages: Optional[List[QueueMessage]] = None):
        self.published: List[bytes] = []
        self.publish_error: Optional[Exception] = None
        self.messages = list(messages or [])
        self.acked: List[str] = []
        self.rejected: List[tuple] = []
        self.stopped = False

    async def publish(self, payload: bytes) -> None:
        if self.publish_error:
            raise self.publish_error
        self.published.append(payload)

    async def consume(self) -> AsyncIterator[QueueMessage]:
        while self.messages and not self.stopped:
            yield self.messages.pop(0)

    async def acknowledge(self, message: QueueMessage) -> bool:
        self.acked.append(message.message_id)
        return True

    async def reject(self, message: QueueMessage, error: str) -> bool:
        self.rejected.append((message.message_id, error))
        return True

    def stop(self) -> None:
        self.stopped = True


class FakeTransaction:
    """Snapshot both stores on enter and restore them if the block raises."""

    def __init__(self, requests: FakeRequestStore, videos: FakeVideoStore):
        self.requests = requests
        self.videos = videos
        self.rolled_back = False

    async def __aenter__(self):
        self._request_rows = copy.deepcopy(self.requests.rows)
        self._video_rows = copy.deepcopy(self.videos.rows)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.requests.rows = self._request_rows
            self.videos.rows = self._video_rows
            self.rolled_back = True
        return False


@pytest.fixture
def orchestrator_config(tmp_path):
    """Config with short timeouts and local blob storage under tmp_path."""
    return OrchestratorConfig(
        operation_timeout=1.0,
        stream_prefix="test",
        consumer_group="test-group",
        consumer_block_ms=100,
        pending_timeout_ms=1000,
        max_deliveries=3,
        detail_max_length=200,
        storage_path=tmp_path / "blobs",
    )


@pytest.fixture
def request_store():
    return FakeRequestStore()


@pytest.fixture
def video_store():
    return FakeVideoStore()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def job_queue():
    return FakeJobQueue()


@pytest.fixture
def sample_blob():
    """A small upload named like the ones users send."""
    content = b"\x1a\x45\xdf\xa3" + b"\x00" * 2044
    return FileBlob(name="clip.mkv", size=len(content), stream=io.BytesIO(content), content_type="video/x-matroska")


@pytest.fixture
async def test_database(tmp_path):
    """SQLite database with the full schema, connected for the duration of a test."""
    db_path = tmp_path / "videocmprs_test.db"
    create_tables(f"sqlite:///{db_path}")
    db = Database(f"sqlite:///{db_path}")
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def fake_transaction(request_store, video_store):
    """Transaction factory over the in-memory stores, as passed to CompletionHandler."""
    return lambda: FakeTransaction(request_store, video_store)
