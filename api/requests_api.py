"""
HTTP API for conversion requests.

Endpoints:
- POST /api/v1/requests          upload a video with target parameters
- GET  /api/v1/requests          list the caller's requests
- GET  /api/v1/requests/{id}     request status
- GET  /api/v1/videos/{id}       video metadata
- GET  /api/health, GET /metrics

The caller's user id arrives in the X-Owner-ID header, set by the
authenticating proxy in front of this service.
"""

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import BinaryIO, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from api.database import database
from api.metrics import get_content_type, get_metrics, init_app_info
from api.models import FileBlob
from api.redis_client import RedisClient
from api.repositories import PersistenceError, RecordNotFoundError
from api.schemas import (
    ConversionRequestForm,
    ConversionRequestListResponse,
    ConversionRequestResponse,
    SubmissionFailedResponse,
    VideoResponse,
)
from api.services import Services, build_services
from api.submission import CompensationError, SubmissionError
from config import (
    API_PORT,
    LOG_LEVEL,
    MAX_UPLOAD_SIZE,
    SUPPORTED_VIDEO_EXTENSIONS,
    SUPPORTED_VIDEO_EXTENSIONS_STR,
    OrchestratorConfig,
)

logger = logging.getLogger(__name__)

VIDEO_CONTENT_TYPE = re.compile(r"^video/.+")


def _measure(stream: BinaryIO) -> int:
    """Size of a seekable upload stream; leaves the position at the start."""
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Without ``services`` the app connects the database on startup and wires
    the production collaborators from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if services is not None:
            app.state.services = services
            yield
            return

        init_app_info(component="api")
        await database.connect()
        app.state.services = build_services(OrchestratorConfig.from_env())
        yield
        await database.disconnect()
        await RedisClient.reset_instance()

    app = FastAPI(title="videocmprs", description="Video conversion requests", lifespan=lifespan)

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def get_owner_id(x_owner_id: Optional[str] = Header(None, alias="X-Owner-ID")) -> int:
        try:
            owner_id = int(x_owner_id or "")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid user ID")
        if owner_id <= 0:
            raise HTTPException(status_code=400, detail="Invalid user ID")
        return owner_id

    @app.post("/api/v1/requests", status_code=201, response_model=ConversionRequestResponse)
    async def create_request(
        video: UploadFile = File(...),
        bitrate: int = Form(0),
        resolution_x: int = Form(0),
        resolution_y: int = Form(0),
        ratio_x: int = Form(0),
        ratio_y: int = Form(0),
        owner_id: int = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ):
        """Upload a video and queue it for conversion."""
        filename = Path(video.filename or "").name
        if not filename:
            raise HTTPException(status_code=400, detail="Request does not include file")

        ext = Path(filename).suffix.lower()
        content_type = video.content_type or ""
        if not VIDEO_CONTENT_TYPE.match(content_type) and ext not in SUPPORTED_VIDEO_EXTENSIONS:
            raise HTTPException(
                status_code=400,
                detail=f"File is not a video. Supported extensions: {SUPPORTED_VIDEO_EXTENSIONS_STR}",
            )

        try:
            form = ConversionRequestForm(
                bitrate=bitrate,
                resolution_x=resolution_x,
                resolution_y=resolution_y,
                ratio_x=ratio_x,
                ratio_y=ratio_y,
            )
        except ValidationError as e:
            raise HTTPException(
                status_code=400,
                detail=[err["msg"] for err in e.errors()],
            )

        size = video.size if video.size is not None else _measure(video.file)
        if size > MAX_UPLOAD_SIZE:
            max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
            raise HTTPException(
                status_code=413,
                detail=f"File too large. Maximum upload size is {max_size_gb:.0f} GB",
            )

        blob = FileBlob(name=filename, size=size, stream=video.file, content_type=video.content_type)

        try:
            conversion = await services.submitter.submit(owner_id, form.to_params(), blob)
        except SubmissionError as e:
            logger.error(f"Submission of {filename} for user {owner_id} failed: {e.details}")
            body = SubmissionFailedResponse(
                detail=e.details,
                request=ConversionRequestResponse.from_request(e.request),
            )
            return JSONResponse(status_code=502, content=body.model_dump(mode="json"))
        except CompensationError as e:
            logger.error(f"Submission of {filename} for user {owner_id} failed: {e}")
            raise HTTPException(status_code=500, detail="Can not create request")
        except (PersistenceError, asyncio.TimeoutError) as e:
            logger.error(f"Creating request for user {owner_id} failed: {e}")
            raise HTTPException(status_code=500, detail="Can not create request")

        return ConversionRequestResponse.from_request(conversion)

    @app.get("/api/v1/requests", response_model=ConversionRequestListResponse)
    async def list_requests(
        limit: int = Query(10, ge=1, le=100),
        offset: int = Query(0, ge=0),
        owner_id: int = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ):
        rows = await services.requests.list_for_owner(owner_id, limit=limit, offset=offset)
        return ConversionRequestListResponse(
            requests=[ConversionRequestResponse.from_request(r) for r in rows],
            limit=limit,
            offset=offset,
        )

    @app.get("/api/v1/requests/{request_id}", response_model=ConversionRequestResponse)
    async def get_request(
        request_id: int,
        owner_id: int = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ):
        if request_id <= 0:
            raise HTTPException(status_code=400, detail="Invalid ID")
        try:
            conversion = await services.requests.retrieve(request_id)
        except RecordNotFoundError:
            raise HTTPException(status_code=404, detail="Request not found")

        # Other users' requests are indistinguishable from missing ones
        if conversion.owner_id != owner_id:
            raise HTTPException(status_code=404, detail="Request not found")

        if conversion.original_video_id is not None:
            try:
                conversion.original_video = await services.videos.retrieve(conversion.original_video_id)
            except RecordNotFoundError:
                logger.warning(f"Request {request_id} links missing video {conversion.original_video_id}")

        return ConversionRequestResponse.from_request(conversion)

    @app.get("/api/v1/videos/{video_id}", response_model=VideoResponse)
    async def get_video(
        video_id: int,
        owner_id: int = Depends(get_owner_id),
        services: Services = Depends(get_services),
    ):
        if video_id <= 0:
            raise HTTPException(status_code=400, detail="Invalid ID")
        try:
            video = await services.videos.retrieve(video_id)
        except RecordNotFoundError:
            raise HTTPException(status_code=404, detail="Video not found")
        if video.owner_id != owner_id:
            raise HTTPException(status_code=404, detail="Video not found")
        return VideoResponse.from_video(video)

    @app.get("/api/health")
    async def health(services: Services = Depends(get_services)):
        """Health check for load balancers; 503 when a dependency is down."""
        result = await services.health_check()
        return JSONResponse(
            status_code=200 if result["healthy"] else 503,
            content={
                "status": "healthy" if result["healthy"] else "unhealthy",
                "checks": result["checks"],
            },
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics(), media_type=get_content_type())

    return app


app = create_app()


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run("api.requests_api:app", host="0.0.0.0", port=API_PORT)


if __name__ == "__main__":
    main()
