"""
Shared async HTTP call with exponential backoff.

Retries 429/502/503/504 and transport errors:
  delay = BASE_DELAY * 2^attempt + random jitter  (or Retry-After when given)
Anything else non-2xx fails immediately. Final failures surface as
ProviderCallFailed so the coordinator can refund and fail the step.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

import httpx

from .workflow.errors import ProviderCallFailed

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0       # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


def backoff_delay(attempt: int, retry_after: Optional[str] = None) -> float:
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    label: str = "provider",
    max_retries: int = MAX_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """Make an HTTP request, retrying retryable statuses and network errors."""
    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise ProviderCallFailed(f"{label} request failed: {e}")
            delay = backoff_delay(attempt)
            logger.warning(
                f"{label} request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                f"— retrying in {delay:.1f}s"
            )
            await sleep(delay)
            continue

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < max_retries:
            delay = backoff_delay(attempt, response.headers.get("Retry-After"))
            logger.warning(
                f"{label} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
                f"— retrying in {delay:.1f}s (url={url})"
            )
            await sleep(delay)
            continue

        if response.is_error:
            raise ProviderCallFailed(
                f"{label} returned {response.status_code}: {response.text[:300]}"
            )
        return response

    raise ProviderCallFailed(f"Request to {url} failed after {max_retries + 1} attempts")
