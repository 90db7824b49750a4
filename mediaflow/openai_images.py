"""
OpenAI Images API integration (dall-e-3).

Synchronous request/response: one POST returns the hosted image URL.
"""

import logging
from typing import Optional

import httpx

from .http_retry import request_with_backoff
from .workflow.errors import ProviderCallFailed
from .workflow.models import ImageConfig
from .workflow.providers import GeneratedImage

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
IMAGE_MODEL = "dall-e-3"
REQUEST_TIMEOUT = 120.0


class OpenAIImageProvider:
    provider_id = "openai"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = OPENAI_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._retry_kwargs = {} if max_retries is None else {"max_retries": max_retries}

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderCallFailed("OPENAI_API_KEY not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def generate(self, prompt: str, config: ImageConfig) -> GeneratedImage:
        payload = {
            "model": IMAGE_MODEL,
            "prompt": prompt,
            "n": 1,
            "size": config.size.value,
            "quality": config.quality.value,
            "style": config.style.value,
            "response_format": "url",
        }
        logger.info(f"[OpenAI] Generating {config.size.value} {config.quality.value} image")

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            resp = await request_with_backoff(
                client, "POST", f"{self.base_url}/images/generations",
                label="OpenAI images",
                json=payload,
                headers=self._headers(),
                **self._retry_kwargs,
            )

        data = resp.json().get("data") or []
        if not data or not data[0].get("url"):
            raise ProviderCallFailed(f"No image URL in OpenAI response: {str(resp.json())[:200]}")

        width, height = config.dimensions
        return GeneratedImage(
            url=data[0]["url"],
            width=width,
            height=height,
            provider=self.provider_id,
            revised_prompt=data[0].get("revised_prompt"),
        )
