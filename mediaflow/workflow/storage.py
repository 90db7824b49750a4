"""
Asset Store — copy provider output into our own R2/S3 bucket.

All generated media is stored under:
  generations/{user_id}/{run_id}/{kind}.{ext}

Downloads use httpx, image dimensions are read with Pillow, and uploads go
through boto3 against the R2 S3-compatible endpoint. When R2 is not configured
the PassthroughAssetStore records the provider URL as-is.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional
from uuid import uuid4

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image, UnidentifiedImageError

from .errors import ProviderCallFailed
from .models import Asset, AssetKind, VIDEO_DIMENSIONS, WorkflowRun
from .providers import GeneratedImage
from .store import RunStore

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DOWNLOAD_TIMEOUT = 60.0

MIME_TYPES = {
    AssetKind.IMAGE: ("image/png", "png"),
    AssetKind.VIDEO: ("video/mp4", "mp4"),
}


# ── Helpers ──────────────────────────────────────────────────────────────────

def asset_key(user_id: str, run_id: str, kind: AssetKind) -> str:
    """S3 key for a run's generated asset."""
    _, ext = MIME_TYPES[kind]
    return f"generations/{user_id}/{run_id}/{kind.value}.{ext}"


async def download_bytes(
    url: str,
    timeout: float = DOWNLOAD_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """Download media from a provider URL and return raw bytes."""
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.content


def probe_image_size(data: bytes) -> Optional[tuple[int, int]]:
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        logger.warning("Could not read image dimensions from downloaded bytes")
        return None


class AssetStore(ABC):
    def __init__(self, store: RunStore):
        self.store = store

    @abstractmethod
    async def save_image(self, run: WorkflowRun, image: GeneratedImage) -> Asset:
        ...

    @abstractmethod
    async def save_video(self, run: WorkflowRun, video_url: str, source_asset_id: Optional[str] = None) -> Asset:
        ...


class PassthroughAssetStore(AssetStore):
    """Records the provider-hosted URL without copying the bytes."""

    async def save_image(self, run: WorkflowRun, image: GeneratedImage) -> Asset:
        asset = Asset(
            id=str(uuid4()),
            user_id=run.user_id,
            run_id=run.id,
            kind=AssetKind.IMAGE,
            public_url=image.url,
            mime_type="image/png",
            width=image.width,
            height=image.height,
            provider=image.provider,
            prompt=run.image_prompt,
        )
        await self.store.save_asset(asset)
        return asset

    async def save_video(self, run: WorkflowRun, video_url: str, source_asset_id: Optional[str] = None) -> Asset:
        width, height = VIDEO_DIMENSIONS[run.video_config.resolution]
        asset = Asset(
            id=str(uuid4()),
            user_id=run.user_id,
            run_id=run.id,
            kind=AssetKind.VIDEO,
            public_url=video_url,
            mime_type="video/mp4",
            width=width,
            height=height,
            duration=run.video_config.duration,
            provider="fal",
            prompt=run.video_prompt,
            source_asset_id=source_asset_id,
        )
        await self.store.save_asset(asset)
        return asset


class R2AssetStore(AssetStore):
    def __init__(
        self,
        store: RunStore,
        account_id: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        bucket: str = "assets",
        public_url: str = "",
        video_provider_id: str = "fal",
        s3_client=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(store)
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")
        self.video_provider_id = video_provider_id
        self._transport = transport
        self._s3 = s3_client or boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Upload bytes to R2 and return the public URL."""
        try:
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise ProviderCallFailed(f"Storage upload failed: {e}")

        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url

    async def _fetch(self, url: str) -> bytes:
        try:
            return await download_bytes(url, transport=self._transport)
        except httpx.HTTPError as e:
            raise ProviderCallFailed(f"Could not download generated media: {e}")

    async def save_image(self, run: WorkflowRun, image: GeneratedImage) -> Asset:
        data = await self._fetch(image.url)
        width, height = probe_image_size(data) or (image.width, image.height)
        key = asset_key(run.user_id, run.id, AssetKind.IMAGE)
        mime_type, _ = MIME_TYPES[AssetKind.IMAGE]
        url = await self.upload(key, data, mime_type)

        asset = Asset(
            id=str(uuid4()),
            user_id=run.user_id,
            run_id=run.id,
            kind=AssetKind.IMAGE,
            storage_key=key,
            public_url=url,
            mime_type=mime_type,
            width=width,
            height=height,
            size_bytes=len(data),
            provider=image.provider,
            prompt=run.image_prompt,
        )
        await self.store.save_asset(asset)
        return asset

    async def save_video(self, run: WorkflowRun, video_url: str, source_asset_id: Optional[str] = None) -> Asset:
        data = await self._fetch(video_url)
        key = asset_key(run.user_id, run.id, AssetKind.VIDEO)
        mime_type, _ = MIME_TYPES[AssetKind.VIDEO]
        url = await self.upload(key, data, mime_type)
        width, height = VIDEO_DIMENSIONS[run.video_config.resolution]

        asset = Asset(
            id=str(uuid4()),
            user_id=run.user_id,
            run_id=run.id,
            kind=AssetKind.VIDEO,
            storage_key=key,
            public_url=url,
            mime_type=mime_type,
            width=width,
            height=height,
            duration=run.video_config.duration,
            size_bytes=len(data),
            provider=self.video_provider_id,
            prompt=run.video_prompt,
            source_asset_id=source_asset_id,
        )
        await self.store.save_asset(asset)
        return asset
