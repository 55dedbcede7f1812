"""
Wiring of the orchestration services from configuration.

Entry points call ``build_services`` / ``build_completion_handler`` once; tests
construct ``Services`` directly with in-memory collaborators.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from databases import Database

from api.blob_storage import create_blob_store
from api.completion import CompletionHandler
from api.database import database
from api.interfaces import BlobStore, JobQueue, RequestStore, VideoStore
from api.job_queue import RedisJobQueue
from api.redis_client import RedisClient
from api.repositories import DatabaseRequestStore, DatabaseVideoStore
from api.submission import RequestSubmitter
from config import OrchestratorConfig

logger = logging.getLogger(__name__)


async def check_health(db: Database = database) -> Dict[str, Any]:
    """Check database and Redis connectivity.

    Returns:
        Dict with ``healthy`` and per-component ``checks``
    """
    checks = {"database": False, "redis": False}

    try:
        await db.fetch_val("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    try:
        client = await RedisClient.get_instance()
        checks["redis"] = await client.health_check()
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")

    return {"healthy": all(checks.values()), "checks": checks}


async def _always_healthy() -> Dict[str, Any]:
    return {"healthy": True, "checks": {}}


@dataclass
class Services:
    """Collaborators and the submitter built on top of them."""

    config: OrchestratorConfig
    requests: RequestStore
    videos: VideoStore
    blobs: BlobStore
    queue: JobQueue
    health_check: Callable[[], Awaitable[Dict[str, Any]]] = _always_healthy
    submitter: RequestSubmitter = field(init=False)

    def __post_init__(self) -> None:
        self.submitter = RequestSubmitter(
            self.requests,
            self.videos,
            self.blobs,
            self.queue,
            self.config,
        )


def build_services(config: OrchestratorConfig, db: Database = database) -> Services:
    """Production wiring: database stores, configured blob store, Redis broker."""
    return Services(
        config=config,
        requests=DatabaseRequestStore(db),
        videos=DatabaseVideoStore(db),
        blobs=create_blob_store(config),
        queue=RedisJobQueue(config, consumer_name="api-publisher"),
        health_check=lambda: check_health(db),
    )


def build_completion_handler(
    config: OrchestratorConfig,
    db: Database = database,
    requests: Optional[RequestStore] = None,
    videos: Optional[VideoStore] = None,
) -> CompletionHandler:
    """Completion handler whose converted-video insert and request link share a transaction."""
    return CompletionHandler(
        requests or DatabaseRequestStore(db),
        videos or DatabaseVideoStore(db),
        transaction=db.transaction,
        detail_max_length=config.detail_max_length,
    )
