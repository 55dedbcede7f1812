"""
Blob storage for uploaded videos.

Two backends:
- LocalBlobStore: files under a directory (single host / NAS deployments)
- S3BlobStore: an S3 or S3-compatible bucket

Keys have the form ``original_<8 random lowercase letters>_<file name>`` and
are what gets stored as the video's ``service_id``.
"""

import asyncio
import logging
import secrets
import string
from pathlib import Path
from typing import Optional

import aiofiles
import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from api.enums import StorageBackend
from api.interfaces import BlobStore
from api.models import FileBlob
from config import OrchestratorConfig

logger = logging.getLogger(__name__)

KEY_PREFIX = "original"
KEY_RANDOM_LENGTH = 8


class BlobStorageError(Exception):
    """Uploading to blob storage failed."""

    pass


def generate_storage_key(filename: str, prefix: str = KEY_PREFIX) -> str:
    """Build a unique storage key for an uploaded file.

    Any directory components in ``filename`` are dropped.
    """
    name = Path(filename).name or "video"
    token = "".join(secrets.choice(string.ascii_lowercase) for _ in range(KEY_RANDOM_LENGTH))
    return f"{prefix}_{token}_{name}"


class LocalBlobStore(BlobStore):
    """Stores blobs as files in a directory."""

    def __init__(self, root: Path, chunk_size: int = 1024 * 1024):
        self.root = Path(root)
        self.chunk_size = chunk_size

    def path_for(self, key: str) -> Path:
        return self.root / key

    async def upload(self, blob: FileBlob) -> str:
        key = generate_storage_key(blob.name)
        target = self.path_for(key)
        total_size = 0

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BlobStorageError(f"Cannot create storage directory {self.root}: {e}") from e

        stored = False
        try:
            async with aiofiles.open(target, "wb") as f:
                while True:
                    # Upload streams are spooled to disk, so reads block
                    chunk = await asyncio.to_thread(blob.stream.read, self.chunk_size)
                    if not chunk:
                        break
                    total_size += len(chunk)
                    await f.write(chunk)
            stored = True
        except OSError as e:
            raise BlobStorageError(f"Failed to write {key}: {e}") from e
        finally:
            # Also runs when the upload is cancelled by a timeout
            if not stored:
                self._remove_partial(target)

        logger.info(f"Stored {blob.name} as {key} ({total_size} bytes)")
        return key

    @staticmethod
    def _remove_partial(target: Path) -> None:
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial upload {target}: {e}")


class S3BlobStore(BlobStore):
    """Stores blobs in an S3 bucket; boto3 calls run in a worker thread."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ):
        self.bucket_name = bucket_name
        if client is not None:
            self.s3_client = client
            return

        config = Config(
            region_name=region,
            retries={"max_attempts": 3, "mode": "adaptive"},
        )
        kwargs = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        # Fall back to boto3's default credential chain when keys are not configured
        if access_key_id and secret_access_key:
            kwargs["aws_access_key_id"] = access_key_id
            kwargs["aws_secret_access_key"] = secret_access_key
        self.s3_client = boto3.client("s3", **kwargs)

    async def upload(self, blob: FileBlob) -> str:
        key = generate_storage_key(blob.name)
        extra_args = {"ContentType": blob.content_type} if blob.content_type else None

        try:
            await asyncio.to_thread(
                self.s3_client.upload_fileobj,
                blob.stream,
                self.bucket_name,
                key,
                ExtraArgs=extra_args,
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobStorageError(f"Failed to upload {key} to bucket {self.bucket_name}: {e}") from e

        logger.info(f"Uploaded {blob.name} to s3://{self.bucket_name}/{key}")
        return key


def create_blob_store(config: OrchestratorConfig) -> BlobStore:
    """Build the blob store selected by ``config.storage_backend``."""
    backend = StorageBackend(config.storage_backend)
    if backend is StorageBackend.S3:
        if not config.s3_bucket_name:
            raise ValueError("VCMPRS_S3_BUCKET_NAME is required for the s3 storage backend")
        return S3BlobStore(
            bucket_name=config.s3_bucket_name,
            region=config.s3_region,
            access_key_id=config.s3_access_key_id or None,
            secret_access_key=config.s3_secret_access_key or None,
            endpoint_url=config.s3_endpoint_url or None,
        )
    return LocalBlobStore(config.storage_path, chunk_size=config.upload_chunk_size)
