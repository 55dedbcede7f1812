"""
Submission path: turn an upload plus desired parameters into a persisted,
published conversion job.

Every step after the request row exists records its failure on that row
(status failed plus a human-readable ``details``) before raising, so a client
polling the request never sees it stuck in review after a failed submission.
"""

import asyncio
import logging
from typing import Awaitable, NoReturn, TypeVar

from api.enums import RequestStatus
from api.errors import describe_error, truncate_error
from api.interfaces import BlobStore, JobQueue, RequestStore, VideoStore
from api.messages import ConversionJobMessage
from api.metrics import (
    COMPENSATION_FAILURES_TOTAL,
    JOB_PUBLISH_TOTAL,
    SUBMISSION_DURATION_SECONDS,
    SUBMISSIONS_TOTAL,
)
from api.models import ConversionParams, ConversionRequest, FileBlob
from config import OrchestratorConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

UPLOAD_FAILED_DETAILS = "Can't upload video to cloud"
VIDEO_FAILED_DETAILS = "Can't add video to database"
PUBLISH_FAILED_DETAILS = "Failed connection to worker"


class SubmissionError(Exception):
    """
    A submission step failed after the request row was created.

    The request has already been marked failed. ``request`` is the updated
    row and ``__cause__`` is the collaborator error that aborted the step.
    """

    def __init__(self, details: str, request: ConversionRequest):
        super().__init__(details)
        self.details = details
        self.request = request


class CompensationError(Exception):
    """A submission step failed and marking the request as failed failed too.

    The request row is left in review; both errors are kept on the exception.
    """

    def __init__(self, request_id: int, details: str, step_error: Exception, update_error: Exception):
        super().__init__(
            f"{details.lower()}: {describe_error(step_error)}, "
            f"can't update request status: {describe_error(update_error)}"
        )
        self.request_id = request_id
        self.details = details
        self.step_error = step_error
        self.update_error = update_error


class RequestSubmitter:
    """Creates conversion requests and hands them to the workers."""

    def __init__(
        self,
        requests: RequestStore,
        videos: VideoStore,
        blobs: BlobStore,
        queue: JobQueue,
        config: OrchestratorConfig,
    ):
        self.requests = requests
        self.videos = videos
        self.blobs = blobs
        self.queue = queue
        self.config = config

    async def _call(self, operation: Awaitable[T]) -> T:
        """Run one collaborator call under the per-operation deadline."""
        return await asyncio.wait_for(operation, timeout=self.config.operation_timeout)

    async def submit(self, owner_id: int, params: ConversionParams, blob: FileBlob) -> ConversionRequest:
        """
        Persist a conversion request, store its upload and publish the job.

        Args:
            owner_id: User the request and its videos belong to
            params: Validated target parameters
            blob: Uploaded file

        Returns:
            The request, still in review, with ``original_video`` attached

        Raises:
            SubmissionError: A step after request creation failed; the request is marked failed
            CompensationError: A step failed and the request could not be marked failed
            Exception: Request creation itself failed (nothing was persisted)
        """
        with SUBMISSION_DURATION_SECONDS.time():
            try:
                request = await self._call(
                    self.requests.create(
                        {
                            "user_id": owner_id,
                            "video_name": blob.name,
                            "bitrate": params.bitrate,
                            "resolution_x": params.resolution_width,
                            "resolution_y": params.resolution_height,
                            "ratio_x": params.ratio_x,
                            "ratio_y": params.ratio_y,
                            "status": RequestStatus.IN_REVIEW,
                        }
                    )
                )
            except Exception:
                SUBMISSIONS_TOTAL.labels(result="create_failed").inc()
                raise

            logger.info(f"Created request {request.id} for user {owner_id} ({blob.name}, {blob.size} bytes)")

            try:
                storage_key = await self._call(self.blobs.upload(blob))
            except Exception as e:
                SUBMISSIONS_TOTAL.labels(result="upload_failed").inc()
                await self._abort(request, UPLOAD_FAILED_DETAILS, e)

            try:
                video = await self._call(
                    self.videos.create(
                        {
                            "user_id": owner_id,
                            "name": blob.name,
                            "size": blob.size,
                            "service_id": storage_key,
                        }
                    )
                )
                request = await self._call(self.requests.update(request.id, {"original_file_id": video.id}))
            except Exception as e:
                SUBMISSIONS_TOTAL.labels(result="video_failed").inc()
                await self._abort(request, VIDEO_FAILED_DETAILS, e)

            request.original_video = video

            try:
                message = ConversionJobMessage.from_request(request, video)
                await self._call(self.queue.publish(message.to_payload()))
            except Exception as e:
                JOB_PUBLISH_TOTAL.labels(result="failed").inc()
                SUBMISSIONS_TOTAL.labels(result="publish_failed").inc()
                await self._abort(request, PUBLISH_FAILED_DETAILS, e)

            JOB_PUBLISH_TOTAL.labels(result="success").inc()
            SUBMISSIONS_TOTAL.labels(result="accepted").inc()
            logger.info(f"Request {request.id} submitted (video {video.id}, key {storage_key})")
            return request

    async def _abort(self, request: ConversionRequest, details: str, error: Exception) -> NoReturn:
        """Mark the request failed with ``details`` and raise; never returns."""
        try:
            failed = await self._call(
                self.requests.update(request.id, {"status": RequestStatus.FAILED, "details": details})
            )
        except Exception as update_error:
            COMPENSATION_FAILURES_TOTAL.inc()
            logger.error(
                f"Request {request.id}: {details} ({truncate_error(error)}) "
                f"and marking it failed also failed: {truncate_error(update_error)}"
            )
            raise CompensationError(request.id, details, error, update_error) from error

        failed.original_video = request.original_video
        logger.warning(f"Request {request.id} failed: {details}: {truncate_error(error)}")
        raise SubmissionError(details, failed) from error
