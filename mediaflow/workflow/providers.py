"""
Interfaces of the external collaborators the coordinator drives.

Concrete clients live at the package root (openai_images, fal_video,
moderation); tests substitute in-process fakes.
"""

from typing import Optional, Protocol

from pydantic import BaseModel, Field

from .models import ImageConfig, ProviderJobStatus, VideoConfig


class ModerationVerdict(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    categories: list[str] = Field(default_factory=list)


class GeneratedImage(BaseModel):
    url: str
    width: int
    height: int
    provider: str
    revised_prompt: Optional[str] = None


class ProviderJobUpdate(BaseModel):
    job_id: str
    status: ProviderJobStatus
    result_url: Optional[str] = None
    error: Optional[str] = None


class ModerationGate(Protocol):
    async def check_prompt(self, text: str) -> ModerationVerdict:
        ...

    async def check_image(self, image_url: str) -> ModerationVerdict:
        ...


class ImageProvider(Protocol):
    provider_id: str

    @property
    def is_configured(self) -> bool:
        ...

    async def generate(self, prompt: str, config: ImageConfig) -> GeneratedImage:
        ...


class VideoProvider(Protocol):
    """Asynchronous provider: submit → poll status → result."""

    provider_id: str
    supports_cancel: bool

    @property
    def is_configured(self) -> bool:
        ...

    async def submit(self, image_url: str, prompt: str, config: VideoConfig) -> str:
        ...

    async def get_status(self, job_id: str) -> ProviderJobUpdate:
        ...

    async def cancel(self, job_id: str) -> None:
        ...

    def forget(self, job_id: str) -> None:
        """Release any per-job bookkeeping once the job is no longer polled."""
