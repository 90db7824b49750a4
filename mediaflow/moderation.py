"""
Content moderation for generation prompts and source images.

Two layers, applied in order by the validation step:
  1. Local rules — length, minimum word count, blocked keywords, suspicious
     patterns. Cheap, no network.
  2. OpenAI moderation endpoint (omni-moderation) for text and image URLs.

When the moderation service itself errors, production denies the request and
development allows it (only with SKIP_MODERATION=true).
"""

import logging
import re
from typing import Optional

import httpx

from .http_retry import request_with_backoff
from .workflow.errors import ProviderCallFailed
from .workflow.providers import ModerationVerdict

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
MODERATION_MODEL = "omni-moderation-latest"
REQUEST_TIMEOUT = 30.0

CONTENT_RULES = {
    "blocked_keywords": [
        "violence", "hate", "harassment", "illegal", "drugs", "weapons",
        "explicit", "adult", "nsfw", "gore", "suicide", "self-harm",
    ],
    "suspicious_patterns": [
        re.compile(r"\b(nude|naked|sex|porn)\b", re.IGNORECASE),
        re.compile(r"\b(kill|murder|death|violence)\b", re.IGNORECASE),
        re.compile(r"\b(hack|steal|fraud|scam)\b", re.IGNORECASE),
        re.compile(r"\b(drug|cocaine|heroin|meth)\b", re.IGNORECASE),
    ],
    "max_prompt_length": 2000,
    "min_prompt_words": 3,
}

_KEYWORD_PATTERNS = {
    keyword: re.compile(rf"(?<![\w-]){re.escape(keyword)}(?![\w-])", re.IGNORECASE)
    for keyword in CONTENT_RULES["blocked_keywords"]
}


def check_local_rules(text: str) -> Optional[ModerationVerdict]:
    """Return a deny verdict when a local rule trips, else None."""
    if len(text) > CONTENT_RULES["max_prompt_length"]:
        return ModerationVerdict(
            allowed=False,
            categories=["length_exceeded"],
            reason=f"Content exceeds maximum length of {CONTENT_RULES['max_prompt_length']} characters",
        )

    if len(text.split()) < CONTENT_RULES["min_prompt_words"]:
        return ModerationVerdict(
            allowed=False,
            categories=["insufficient_content"],
            reason=f"Content must contain at least {CONTENT_RULES['min_prompt_words']} words",
        )

    blocked = [kw for kw, pattern in _KEYWORD_PATTERNS.items() if pattern.search(text)]
    if blocked:
        return ModerationVerdict(
            allowed=False,
            categories=["blocked_keywords"],
            reason=f"Content contains blocked keywords: {', '.join(blocked)}",
        )

    for pattern in CONTENT_RULES["suspicious_patterns"]:
        if pattern.search(text):
            return ModerationVerdict(
                allowed=False,
                categories=["suspicious_pattern"],
                reason="Content contains suspicious patterns",
            )

    return None


class OpenAIModerationGate:
    """OpenAI moderation endpoint for prompts and image URLs."""

    def __init__(
        self,
        api_key: str = "",
        environment: str = "development",
        skip: bool = False,
        base_url: str = OPENAI_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 1,
    ):
        self.api_key = api_key
        self.environment = environment
        self.max_retries = max_retries
        self.skip = skip
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def fail_open(self) -> bool:
        return self.environment == "development" and self.skip

    async def check_prompt(self, text: str) -> ModerationVerdict:
        return await self._moderate(text)

    async def check_image(self, image_url: str) -> ModerationVerdict:
        return await self._moderate([{"type": "image_url", "image_url": {"url": image_url}}])

    def _service_unavailable(self, error: Exception) -> ModerationVerdict:
        if self.fail_open:
            logger.warning(f"Moderation unavailable, allowing in development: {error}")
            return ModerationVerdict(allowed=True)
        logger.error(f"Moderation unavailable, denying: {error}")
        return ModerationVerdict(
            allowed=False,
            categories=["moderation_error"],
            reason="Moderation service unavailable",
        )

    async def _moderate(self, payload) -> ModerationVerdict:
        if not self.api_key:
            return self._service_unavailable(ProviderCallFailed("OPENAI_API_KEY not set"))

        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
                resp = await request_with_backoff(
                    client, "POST", f"{self.base_url}/moderations",
                    label="OpenAI moderation",
                    max_retries=self.max_retries,
                    json={"model": MODERATION_MODEL, "input": payload},
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            results = resp.json().get("results") or []
        except (ProviderCallFailed, ValueError) as e:
            return self._service_unavailable(e)

        if not results:
            return ModerationVerdict(allowed=True)

        result = results[0]
        categories = [name for name, hit in (result.get("categories") or {}).items() if hit]
        if result.get("flagged"):
            return ModerationVerdict(
                allowed=False,
                categories=categories,
                reason=f"Content flagged for: {', '.join(categories) or 'policy violation'}",
            )
        return ModerationVerdict(allowed=True)
