"""Storage for generated ad images.

Images are stored under ``{owner_id}/{variation_id}/{ratio}.png`` either in
Cloudflare R2 (S3-compatible, via boto3) or on local disk.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from static_engine.models.generation import AspectRatio

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


class AssetStoreError(Exception):
    """Error raised when an image cannot be stored."""

    pass


def asset_key(owner_id: str, variation_id: str, ratio: AspectRatio, mime_type: str = "image/png") -> str:
    """Object key for one ratio of one variation."""
    extension = _EXTENSIONS.get(mime_type, ".png")
    return f"{owner_id}/{variation_id}/{ratio.key}{extension}"


class AssetStore(ABC):
    """Uploads image bytes and returns a durable public URL."""

    @abstractmethod
    async def upload(
        self,
        owner_id: str,
        variation_id: str,
        ratio: AspectRatio,
        data: bytes,
        mime_type: str = "image/png",
    ) -> str:
        """Store ``data`` and return its public URL.

        Raises:
            AssetStoreError: If the upload fails
        """

    async def close(self) -> None:
        pass


class LocalAssetStore(AssetStore):
    """Stores images on local disk, served by the API under ``/uploads``."""

    def __init__(self, root_dir: str, public_base_url: str):
        self.root_dir = Path(root_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.root_dir.mkdir(parents=True, exist_ok=True)

    async def upload(
        self,
        owner_id: str,
        variation_id: str,
        ratio: AspectRatio,
        data: bytes,
        mime_type: str = "image/png",
    ) -> str:
        if not data:
            raise AssetStoreError("Refusing to store an empty image")

        key = asset_key(owner_id, variation_id, ratio, mime_type)
        path = self.root_dir / key
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise AssetStoreError(f"Failed to write {key}: {e}")

        logger.info(f"Stored {key} locally ({len(data) // 1024}KB)")
        return f"{self.public_base_url}/uploads/{key}"

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class R2AssetStore(AssetStore):
    """Cloudflare R2 object storage.

    Uses boto3 with the S3-compatible API; blocking calls run in a worker
    thread.
    """

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str = "generated-ads",
        public_url: Optional[str] = None,
        client=None,
    ):
        """Initialize R2 storage.

        Args:
            account_id: Cloudflare account ID
            access_key_id: R2 API access key ID
            secret_access_key: R2 API secret access key
            bucket_name: R2 bucket name
            public_url: Public URL base for objects (CDN URL)
            client: Pre-built S3 client (tests)
        """
        self.bucket_name = bucket_name
        self.public_url = public_url or f"https://{bucket_name}.{account_id}.r2.dev"

        self._client = client or boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )

        logger.info(f"R2 asset store initialized for bucket: {bucket_name}")

    async def upload(
        self,
        owner_id: str,
        variation_id: str,
        ratio: AspectRatio,
        data: bytes,
        mime_type: str = "image/png",
    ) -> str:
        if not data:
            raise AssetStoreError("Refusing to store an empty image")

        key = asset_key(owner_id, variation_id, ratio, mime_type)
        try:
            await asyncio.to_thread(
                self._client.upload_fileobj,
                BytesIO(data),
                self.bucket_name,
                key,
                ExtraArgs={"ContentType": mime_type},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise AssetStoreError(f"Failed to upload {key}: {e}")

        logger.info(f"Uploaded {key} to R2")
        return f"{self.public_url.rstrip('/')}/{key}"
