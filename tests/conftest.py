"""Shared fakes and builders for workflow tests."""

import asyncio
from types import SimpleNamespace
from typing import Optional

import pytest

from mediaflow import metrics
from mediaflow.run_limiter import RunSlots
from mediaflow.workflow.coordinator import WorkflowCoordinator
from mediaflow.workflow.errors import ProviderCallFailed
from mediaflow.workflow.ledger import InMemoryCreditLedger
from mediaflow.workflow.models import (
    EventType,
    ImageConfig,
    ProviderJobStatus,
    VideoConfig,
    WorkflowStartRequest,
)
from mediaflow.workflow.providers import GeneratedImage, ModerationVerdict, ProviderJobUpdate
from mediaflow.workflow.publisher import ProgressPublisher
from mediaflow.workflow.storage import PassthroughAssetStore
from mediaflow.workflow.store import InMemoryRunStore

USER = "6f1c2a9e-3b4d-4e8f-9a1b-2c3d4e5f6a7b"
IMAGE_PROMPT = "A golden retriever running across a sunny beach at dawn"
VIDEO_PROMPT = "The camera slowly follows the dog as waves roll in"
SOURCE_IMAGE = "https://images.example.com/source.png"


class FakeImageProvider:
    provider_id = "fake-image"

    def __init__(self, configured: bool = True, error: Optional[Exception] = None):
        self.configured = configured
        self.error = error
        self.calls = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate(self, prompt: str, config: ImageConfig) -> GeneratedImage:
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        width, height = config.dimensions
        return GeneratedImage(
            url="https://provider.example.com/image.png",
            width=width,
            height=height,
            provider=self.provider_id,
        )


class FakeVideoProvider:
    """Replays ``script`` one entry per status check; the last entry repeats."""

    provider_id = "fake-video"

    def __init__(
        self,
        script=None,
        configured: bool = True,
        supports_cancel: bool = True,
        cancel_error: Optional[Exception] = None,
        result_url: Optional[str] = "https://provider.example.com/video.mp4",
    ):
        self.script = list(script or [ProviderJobStatus.COMPLETED])
        self.configured = configured
        self.supports_cancel = supports_cancel
        self.cancel_error = cancel_error
        self.result_url = result_url
        self.submitted = []
        self.status_calls = 0
        self.cancel_calls = []
        self.forgotten = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def submit(self, image_url: str, prompt: str, config: VideoConfig) -> str:
        job_id = f"job-{len(self.submitted) + 1}"
        self.submitted.append({"job_id": job_id, "image_url": image_url, "prompt": prompt})
        return job_id

    async def get_status(self, job_id: str) -> ProviderJobUpdate:
        index = min(self.status_calls, len(self.script) - 1)
        self.status_calls += 1
        entry = self.script[index]
        if isinstance(entry, Exception):
            raise entry
        if entry == ProviderJobStatus.COMPLETED:
            return ProviderJobUpdate(job_id=job_id, status=entry, result_url=self.result_url)
        if entry == ProviderJobStatus.FAILED:
            return ProviderJobUpdate(job_id=job_id, status=entry, error="render crashed")
        return ProviderJobUpdate(job_id=job_id, status=entry)

    async def cancel(self, job_id: str) -> None:
        self.cancel_calls.append(job_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    def forget(self, job_id: str) -> None:
        self.forgotten.append(job_id)


class FakeModeration:
    def __init__(self, denied_words=(), image_allowed: bool = True):
        self.denied_words = tuple(denied_words)
        self.image_allowed = image_allowed
        self.prompts = []
        self.images = []

    async def check_prompt(self, text: str) -> ModerationVerdict:
        self.prompts.append(text)
        for word in self.denied_words:
            if word in text:
                return ModerationVerdict(allowed=False, reason=f"flagged: {word}", categories=["violence"])
        return ModerationVerdict(allowed=True)

    async def check_image(self, image_url: str) -> ModerationVerdict:
        self.images.append(image_url)
        if not self.image_allowed:
            return ModerationVerdict(allowed=False, reason="flagged image")
        return ModerationVerdict(allowed=True)


def fast_sleep(delay: float = 0.0):
    """Poll sleep that honours the cancellation token without real waiting."""
    async def _sleep(seconds, token):
        if delay:
            await token.wait(delay)
        else:
            await asyncio.sleep(0)
    return _sleep


def make_env(
    balance: int = 100,
    video_script=None,
    image_provider: Optional[FakeImageProvider] = None,
    video_provider: Optional[FakeVideoProvider] = None,
    moderation: Optional[FakeModeration] = None,
    max_runs: int = 3,
    max_poll_attempts: int = 5,
    poll_delay: float = 0.0,
    provider_timeout: float = 5.0,
    worker_id: str = "worker-a",
    lease_seconds: float = 30.0,
    lease_renew_interval: float = 0.01,
) -> SimpleNamespace:
    store = InMemoryRunStore()
    ledger = InMemoryCreditLedger({USER: balance})
    publisher = ProgressPublisher()
    image = image_provider or FakeImageProvider()
    video = video_provider or FakeVideoProvider(script=video_script)
    gate = moderation or FakeModeration()
    slots = RunSlots(max_runs)
    coordinator = WorkflowCoordinator(
        store=store,
        ledger=ledger,
        publisher=publisher,
        moderation=gate,
        image_provider=image,
        video_provider=video,
        asset_store=PassthroughAssetStore(store),
        run_slots=slots,
        poll_interval=0.01,
        max_poll_attempts=max_poll_attempts,
        provider_timeout=provider_timeout,
        sleep=fast_sleep(poll_delay),
        worker_id=worker_id,
        lease_seconds=lease_seconds,
        lease_renew_interval=lease_renew_interval,
    )
    return SimpleNamespace(
        coordinator=coordinator,
        store=store,
        ledger=ledger,
        publisher=publisher,
        image=image,
        video=video,
        moderation=gate,
        slots=slots,
    )


def peer_coordinator(env, worker_id: str = "worker-b", **overrides) -> WorkflowCoordinator:
    """A second worker process sharing the run store and the ledger."""
    options = dict(
        store=env.store,
        ledger=env.ledger,
        publisher=ProgressPublisher(),
        moderation=env.moderation,
        image_provider=env.image,
        video_provider=env.video,
        asset_store=PassthroughAssetStore(env.store),
        run_slots=RunSlots(),
        poll_interval=0.01,
        sleep=fast_sleep(),
        worker_id=worker_id,
        lease_renew_interval=0.01,
    )
    options.update(overrides)
    return WorkflowCoordinator(**options)


def complete_request(**overrides) -> WorkflowStartRequest:
    data = {
        "variant": "complete",
        "image_prompt": IMAGE_PROMPT,
        "video_prompt": VIDEO_PROMPT,
    }
    data.update(overrides)
    return WorkflowStartRequest(**data)


async def wait_for_events(publisher: ProgressPublisher, run_id: str, timeout: float = 5.0) -> list:
    """Collect every event of a run up to and including ``complete``."""
    subscription = publisher.subscribe(run_id)

    async def _drain():
        return [event async for event in subscription]

    events = await asyncio.wait_for(_drain(), timeout)
    assert events[-1].type == EventType.COMPLETE
    # let the run task finish its bookkeeping (slot release)
    for _ in range(3):
        await asyncio.sleep(0)
    return events


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
