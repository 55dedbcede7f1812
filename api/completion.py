"""
Completion path: reconcile a worker's result message into request and video state.

Branch order for a request still in review:

    error present          -> request failed with the worker's error, CompressWorkerError raised
    converted_video given  -> converted video stored, request completed
    neither                -> request failed ("Converted video does not present")

Independently of the above, an ``original_video`` patch updates the technical
metadata of the uploaded video. Store failures of that patch propagate, as
does a failed link of the converted video when the insert ran in a rolled-back
transaction; everything else is recorded on the request and swallowed.

Results are delivered at least once. A request that is no longer in review, or
whose version moved while the result was being handled, has already been
reconciled: the terminal transition is skipped and no second converted video
is created.
"""

import contextlib
import logging
from typing import AsyncContextManager, Callable, Optional

from api.enums import RequestStatus
from api.errors import truncate_details, truncate_error
from api.interfaces import RequestStore, VideoStore
from api.messages import ConversionResultMessage, VideoDescriptor
from api.metrics import COMPLETIONS_TOTAL
from api.models import ConversionRequest
from api.repositories import RecordNotFoundError, StaleRecordError

logger = logging.getLogger(__name__)

MISSING_CONVERTED_DETAILS = "Converted video does not present"
CONVERTED_INSERT_FAILED_DETAILS = "Can't add converted video to db, id: {service_id}"

# Columns of the original video a worker may correct after probing the file
ORIGINAL_PATCH_COLUMNS = frozenset(["size", "bitrate", "resolution_x", "resolution_y", "ratio_x", "ratio_y"])


class InvalidResultMessageError(Exception):
    """The payload is not a usable result message; redelivery cannot fix it."""

    def __init__(self, reason: str):
        super().__init__(f"invalid response from worker: {reason}")
        self.reason = reason


class InvalidIDError(InvalidResultMessageError):
    """A result message referenced a non-positive id."""

    def __init__(self, kind: str, value: Optional[int]):
        super().__init__(f"{kind} id must be positive, got {value}")
        self.kind = kind
        self.value = value


class CompressWorkerError(Exception):
    """The worker reported that the conversion failed. Recorded; not a processing error."""

    def __init__(self, request_id: int, error: str):
        super().__init__(f"compress worker got an error for request {request_id}: {truncate_error(error)}")
        self.request_id = request_id
        self.error = error


class CompletionHandler:
    """Applies worker results to requests and videos."""

    def __init__(
        self,
        requests: RequestStore,
        videos: VideoStore,
        transaction: Optional[Callable[[], AsyncContextManager]] = None,
        detail_max_length: Optional[int] = None,
    ):
        """
        Args:
            requests: Request store
            videos: Video store
            transaction: Factory for a context manager that makes the converted
                video insert and the request link atomic (``database.transaction``).
                Without one the two writes are independent.
            detail_max_length: Cap for worker error text stored in ``details``
        """
        self.requests = requests
        self.videos = videos
        self._transaction = transaction or contextlib.nullcontext
        self._atomic_link = transaction is not None
        self._detail_max_length = detail_max_length

    def _details(self, text: str) -> str:
        if self._detail_max_length is None:
            return truncate_details(text)
        return truncate_details(text, self._detail_max_length)

    async def handle_completion(self, raw_message: bytes) -> None:
        """
        Reconcile one result message.

        Raises:
            InvalidResultMessageError: Malformed payload, bad id or unknown request
            CompressWorkerError: The worker reported a failure (already recorded)
            Exception: Store errors that should lead to redelivery
        """
        try:
            result = ConversionResultMessage.from_payload(raw_message)
        except ValueError as e:
            COMPLETIONS_TOTAL.labels(outcome="invalid").inc()
            raise InvalidResultMessageError(truncate_error(e)) from e

        if result.request_id <= 0:
            COMPLETIONS_TOTAL.labels(outcome="invalid").inc()
            raise InvalidIDError("request", result.request_id)

        try:
            request = await self.requests.retrieve(result.request_id)
        except RecordNotFoundError as e:
            COMPLETIONS_TOTAL.labels(outcome="invalid").inc()
            raise InvalidResultMessageError(f"unknown request {result.request_id}") from e

        worker_error = None
        if request.status is RequestStatus.IN_REVIEW:
            worker_error = await self._apply_result(request, result)
        else:
            COMPLETIONS_TOTAL.labels(outcome="duplicate").inc()
            logger.info(f"Request {request.id} is already {request.status.value}, skipping duplicate result")

        if result.original_video is not None:
            await self._patch_original(request, result.original_video)

        if worker_error is not None:
            raise CompressWorkerError(request.id, worker_error)

    async def _apply_result(self, request: ConversionRequest, result: ConversionResultMessage) -> Optional[str]:
        """Run the terminal branch; returns the worker error if that branch applied."""
        if result.error:
            try:
                await self.requests.update(
                    request.id,
                    {"status": RequestStatus.FAILED, "details": self._details(result.error)},
                    expected_version=request.version,
                )
            except StaleRecordError:
                COMPLETIONS_TOTAL.labels(outcome="duplicate").inc()
                logger.info(f"Request {request.id} changed while recording worker error, skipping duplicate")
                return None
            COMPLETIONS_TOTAL.labels(outcome="worker_failed").inc()
            logger.warning(f"Worker failed request {request.id}: {truncate_error(result.error)}")
            return result.error

        if result.converted_video is not None:
            await self._store_converted(request, result.converted_video)
            return None

        COMPLETIONS_TOTAL.labels(outcome="incomplete").inc()
        logger.warning(f"Result for request {request.id} has neither error nor converted video")
        await self._mark_failed(request, MISSING_CONVERTED_DETAILS)
        return None

    async def _store_converted(self, request: ConversionRequest, descriptor: VideoDescriptor) -> None:
        fields = descriptor.to_fields()
        fields["user_id"] = request.owner_id
        fields.setdefault("name", request.video_name)

        video = None
        try:
            async with self._transaction():
                video = await self.videos.create(fields)
                await self.requests.update(
                    request.id,
                    {"status": RequestStatus.COMPLETED, "converted_file_id": video.id},
                    expected_version=request.version,
                )
        except StaleRecordError:
            COMPLETIONS_TOTAL.labels(outcome="duplicate").inc()
            logger.info(
                f"Request {request.id} changed while storing converted video {video.id}, "
                f"{self._orphan_note()} (duplicate result)"
            )
            return
        except Exception as e:
            if video is None:
                COMPLETIONS_TOTAL.labels(outcome="insert_failed").inc()
                logger.error(f"Storing converted video for request {request.id} failed: {truncate_error(e)}")
                await self._mark_failed(
                    request, CONVERTED_INSERT_FAILED_DETAILS.format(service_id=descriptor.service_id)
                )
                return
            COMPLETIONS_TOTAL.labels(outcome="link_failed").inc()
            logger.error(
                f"Converted video {video.id} for request {request.id} could not be linked, "
                f"{self._orphan_note()}: {truncate_error(e)}"
            )
            if self._atomic_link:
                # Nothing was kept, so the redelivered result can be applied cleanly
                raise
            return

        COMPLETIONS_TOTAL.labels(outcome="completed").inc()
        logger.info(f"Request {request.id} completed with converted video {video.id}")

    def _orphan_note(self) -> str:
        if self._atomic_link:
            return "insert rolled back"
        return "video left unlinked"

    async def _mark_failed(self, request: ConversionRequest, details: str) -> None:
        """Record a failure on the request; store errors are logged, not raised."""
        try:
            await self.requests.update(
                request.id,
                {"status": RequestStatus.FAILED, "details": self._details(details)},
                expected_version=request.version,
            )
        except StaleRecordError:
            logger.info(f"Request {request.id} changed before it could be marked failed, skipping duplicate")
        except Exception as e:
            logger.error(f"Marking request {request.id} failed ({details}) failed: {truncate_error(e)}")

    async def _patch_original(self, request: ConversionRequest, descriptor: VideoDescriptor) -> None:
        if descriptor.id is None or descriptor.id <= 0:
            raise InvalidIDError("original video", descriptor.id)

        fields = {k: v for k, v in descriptor.to_fields().items() if k in ORIGINAL_PATCH_COLUMNS}
        if request.original_video_id is not None and descriptor.id != request.original_video_id:
            logger.warning(
                f"Result for request {request.id} patches video {descriptor.id}, "
                f"but the request's original video is {request.original_video_id}"
            )
        await self.videos.update(descriptor.id, fields)
        logger.debug(f"Updated original video {descriptor.id} with {sorted(fields)}")
