"""
Veo 3 image-to-video via fal.ai's queue REST API.

fal.ai queue protocol:
  POST /{endpoint}                               → { request_id, status_url, response_url, cancel_url }
  GET  /{endpoint}/requests/{id}/status          → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{endpoint}/requests/{id}                 → result payload { video: { url } }
  PUT  /{endpoint}/requests/{id}/cancel          → best-effort cancel

Polling itself is owned by the ProviderPoller; this client only exposes the
individual calls.
"""

import logging
from typing import Optional

import httpx

from .http_retry import request_with_backoff
from .workflow.errors import ProviderCallFailed
from .workflow.models import ProviderJobStatus, VideoConfig, VideoResolution
from .workflow.providers import ProviderJobUpdate

logger = logging.getLogger(__name__)

FAL_API_BASE = "https://queue.fal.run"
VIDEO_ENDPOINT = "fal-ai/veo3/image-to-video"
REQUEST_TIMEOUT = 60.0

FAL_STATUS_MAP = {
    "IN_QUEUE": ProviderJobStatus.QUEUED,
    "IN_PROGRESS": ProviderJobStatus.PROCESSING,
    "COMPLETED": ProviderJobStatus.COMPLETED,
    "FAILED": ProviderJobStatus.FAILED,
    "ERROR": ProviderJobStatus.FAILED,
}

# fal only renders 720p / 1080p for veo3; 4k requests are rendered at 1080p
FAL_RESOLUTIONS = {
    VideoResolution.HD_720: "720p",
    VideoResolution.FULL_HD: "1080p",
    VideoResolution.UHD_4K: "1080p",
}


class FalVideoProvider:
    provider_id = "fal"
    supports_cancel = True

    def __init__(
        self,
        api_key: str = "",
        base_url: str = FAL_API_BASE,
        endpoint: str = VIDEO_ENDPOINT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self._transport = transport
        self._retry_kwargs = {} if max_retries is None else {"max_retries": max_retries}
        self._urls: dict[str, dict] = {}  # request_id → status/response/cancel URLs

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def tracked_jobs(self) -> set[str]:
        return set(self._urls)

    def forget(self, job_id: str) -> None:
        """Drop the queue URLs kept for a job that is no longer polled."""
        self._urls.pop(job_id, None)

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderCallFailed("FAL_KEY not set")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request_urls(self, request_id: str) -> dict:
        base = f"{self.base_url}/{self.endpoint}/requests/{request_id}"
        return self._urls.get(request_id) or {
            "status_url": f"{base}/status",
            "response_url": base,
            "cancel_url": f"{base}/cancel",
        }

    async def _call(self, method: str, url: str, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            return await request_with_backoff(
                client, method, url,
                label="fal.ai",
                headers=self._headers(),
                **self._retry_kwargs,
                **kwargs,
            )

    async def submit(self, image_url: str, prompt: str, config: VideoConfig) -> str:
        payload = {
            "prompt": prompt,
            "image_url": image_url,
            "duration": f"{config.duration}s",
            "resolution": FAL_RESOLUTIONS[config.resolution],
            "generate_audio": config.generate_audio,
        }
        logger.info(f"[fal] Submitting to {self.endpoint}...")
        resp = await self._call("POST", f"{self.base_url}/{self.endpoint}", json=payload)
        data = resp.json()

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderCallFailed(f"No request_id in fal.ai response: {str(data)[:200]}")

        defaults = self._request_urls(request_id)
        self._urls[request_id] = {
            key: data.get(key) or defaults[key]
            for key in ("status_url", "response_url", "cancel_url")
        }
        logger.info(f"[fal] Queued: request_id={request_id}")
        return request_id

    async def get_status(self, job_id: str) -> ProviderJobUpdate:
        urls = self._request_urls(job_id)
        resp = await self._call("GET", urls["status_url"])
        data = resp.json()
        raw_status = data.get("status", "")
        status = FAL_STATUS_MAP.get(raw_status)
        if status is None:
            logger.warning(f"[fal] Unknown status {raw_status!r} for {job_id}, treating as processing")
            status = ProviderJobStatus.PROCESSING

        if status == ProviderJobStatus.FAILED:
            self.forget(job_id)
            return ProviderJobUpdate(
                job_id=job_id, status=status,
                error=str(data.get("error") or "fal.ai job failed"),
            )

        if status == ProviderJobStatus.COMPLETED:
            result = (await self._call("GET", urls["response_url"])).json()
            video_url = (result.get("video") or {}).get("url")
            self.forget(job_id)
            return ProviderJobUpdate(job_id=job_id, status=status, result_url=video_url)

        return ProviderJobUpdate(job_id=job_id, status=status)

    async def cancel(self, job_id: str) -> None:
        urls = self._request_urls(job_id)
        await self._call("PUT", urls["cancel_url"])
        self.forget(job_id)
        logger.info(f"[fal] Cancelled request_id={job_id}")
