"""
Collaborator interfaces used by the submission and completion services.

Each entity gets its own store with typed returns. Implementations live in
``api.repositories`` (database), ``api.blob_storage`` (filesystem / S3) and
``api.job_queue`` (Redis Streams); the tests provide in-memory versions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from api.models import ConversionRequest, FileBlob, VideoAsset


class RequestStore(ABC):
    """Persistence for ConversionRequest rows."""

    @abstractmethod
    async def create(self, fields: Mapping[str, Any]) -> ConversionRequest:
        """
        Insert a new request.

        Args:
            fields: Column values (``user_id``, ``video_name``, ``bitrate``, ...).
                ``status`` defaults to in_review.

        Returns:
            The persisted request, including its new id.

        Raises:
            PersistenceError: If the insert fails.
        """
        pass

    @abstractmethod
    async def retrieve(self, request_id: int) -> ConversionRequest:
        """
        Fetch a request by id.

        Raises:
            RecordNotFoundError: If no such request exists.
            PersistenceError: If the query fails.
        """
        pass

    @abstractmethod
    async def update(
        self,
        request_id: int,
        fields: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ConversionRequest:
        """
        Apply a partial update and return the updated request.

        Args:
            request_id: Request to update.
            fields: Column patch. Unknown columns raise ValueError.
            expected_version: When given, the update only applies if the row
                still has this version.

        Raises:
            RecordNotFoundError: If no such request exists.
            StaleRecordError: If ``expected_version`` no longer matches.
            PersistenceError: If the update fails.
        """
        pass

    @abstractmethod
    async def list_for_owner(self, owner_id: int, limit: int = 50, offset: int = 0) -> List[ConversionRequest]:
        """Requests of one owner, newest first."""
        pass


class VideoStore(ABC):
    """Persistence for VideoAsset rows."""

    @abstractmethod
    async def create(self, fields: Mapping[str, Any]) -> VideoAsset:
        """Insert a video asset (``user_id``, ``name``, ``size``, ``service_id``, ...)."""
        pass

    @abstractmethod
    async def retrieve(self, video_id: int) -> VideoAsset:
        """Fetch a video asset by id; RecordNotFoundError if missing."""
        pass

    @abstractmethod
    async def update(self, video_id: int, fields: Mapping[str, Any]) -> VideoAsset:
        """Apply a partial update to a video asset and return it."""
        pass


class BlobStore(ABC):
    """Durable object storage for raw video bytes."""

    @abstractmethod
    async def upload(self, blob: FileBlob) -> str:
        """
        Store the blob's content.

        Returns:
            Opaque storage key for the stored object.

        Raises:
            BlobStorageError: If the upload fails.
        """
        pass


@dataclass
class QueueMessage:
    """One delivery of a raw payload from the broker."""

    payload: bytes
    message_id: str
    stream: str
    delivery_count: int = 1


class JobQueue(ABC):
    """At-least-once broker: publish work items and consume worker results."""

    @abstractmethod
    async def publish(self, payload: bytes) -> None:
        """
        Publish a work item.

        Raises:
            QueuePublishError: If the broker did not accept the message.
        """
        pass

    @abstractmethod
    def consume(self) -> AsyncIterator[QueueMessage]:
        """Yield result messages one at a time until the consumer is stopped."""
        pass

    @abstractmethod
    async def acknowledge(self, message: QueueMessage) -> bool:
        """Mark a message as handled so it is not redelivered."""
        pass

    @abstractmethod
    async def reject(self, message: QueueMessage, error: str) -> bool:
        """Move a message to the dead-letter stream and acknowledge it."""
        pass

    async def get_stats(self) -> Dict[str, Any]:
        """Queue statistics; backends without any return an empty dict."""
        return {}

    def stop(self) -> None:
        """Ask ``consume()`` to finish; a no-op for backends that never block."""
        pass
