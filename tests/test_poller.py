import asyncio

import httpx
import pytest

from conftest import FakeVideoProvider, fast_sleep
from mediaflow.workflow.errors import (
    Cancelled,
    ProviderCallFailed,
    ProviderJobFailed,
    ProviderTimeout,
)
from mediaflow.workflow.models import ProviderJob, ProviderJobStatus
from mediaflow.workflow.poller import CancellationToken, ProviderPoller, estimate_progress


def _poller(provider, max_attempts=5, delay=0.0) -> ProviderPoller:
    return ProviderPoller(provider, poll_interval=0.01, max_attempts=max_attempts, sleep=fast_sleep(delay))


def _job() -> ProviderJob:
    return ProviderJob(job_id="job-1", provider="fake-video")


def test_estimate_progress_is_capped_below_completion():
    assert estimate_progress(1, 10) == 10
    assert estimate_progress(10, 10) == 95
    assert estimate_progress(3, 0) == 0


@pytest.mark.asyncio
async def test_returns_completed_update():
    provider = FakeVideoProvider(script=[
        ProviderJobStatus.QUEUED,
        ProviderJobStatus.PROCESSING,
        ProviderJobStatus.COMPLETED,
    ])
    job = _job()
    update = await _poller(provider).wait(job, CancellationToken())

    assert update.result_url == "https://provider.example.com/video.mp4"
    assert job.attempts == 3
    assert job.last_status == ProviderJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_job_raises_with_provider_error():
    provider = FakeVideoProvider(script=[ProviderJobStatus.FAILED])
    with pytest.raises(ProviderJobFailed, match="render crashed"):
        await _poller(provider).wait(_job(), CancellationToken())


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    provider = FakeVideoProvider(script=[ProviderJobStatus.PROCESSING])
    with pytest.raises(ProviderTimeout):
        await _poller(provider, max_attempts=4).wait(_job(), CancellationToken())
    assert provider.status_calls == 4
    assert provider.forgotten == ["job-1"]


@pytest.mark.asyncio
async def test_transient_status_errors_count_as_attempts():
    provider = FakeVideoProvider(script=[
        ProviderCallFailed("fal.ai returned 500"),
        httpx.ConnectError("connection refused"),
        ProviderJobStatus.COMPLETED,
    ])
    update = await _poller(provider).wait(_job(), CancellationToken())
    assert update.status == ProviderJobStatus.COMPLETED
    assert provider.status_calls == 3


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_below_100():
    provider = FakeVideoProvider(script=[ProviderJobStatus.PROCESSING] * 9 + [ProviderJobStatus.COMPLETED])
    reported = []

    async def on_progress(progress):
        reported.append(progress)

    await _poller(provider, max_attempts=10).wait(_job(), CancellationToken(), on_progress)

    assert reported == sorted(set(reported))
    assert max(reported) < 100


@pytest.mark.asyncio
async def test_cancel_requests_upstream_cancel():
    provider = FakeVideoProvider(script=[ProviderJobStatus.PROCESSING])
    token = CancellationToken()
    poller = _poller(provider, max_attempts=10_000, delay=0.01)

    waiter = asyncio.create_task(poller.wait(_job(), token))
    await asyncio.sleep(0.05)
    token.cancel()

    with pytest.raises(Cancelled):
        await asyncio.wait_for(waiter, 1)
    assert provider.cancel_calls == ["job-1"]
    assert provider.forgotten == ["job-1"]


@pytest.mark.asyncio
async def test_cancel_without_upstream_support_abandons_job():
    provider = FakeVideoProvider(script=[ProviderJobStatus.PROCESSING], supports_cancel=False)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(Cancelled):
        await _poller(provider).wait(_job(), token)
    assert provider.cancel_calls == []
    assert provider.status_calls == 0


@pytest.mark.asyncio
async def test_failing_upstream_cancel_still_cancels():
    provider = FakeVideoProvider(
        script=[ProviderJobStatus.PROCESSING],
        cancel_error=ProviderCallFailed("fal.ai returned 500"),
    )
    token = CancellationToken()
    token.cancel()

    with pytest.raises(Cancelled):
        await _poller(provider).wait(_job(), token)
    assert provider.cancel_calls == ["job-1"]


@pytest.mark.asyncio
async def test_token_wait_reports_cancellation():
    token = CancellationToken()
    assert await token.wait(0.01) is False
    token.cancel()
    assert await token.wait(1) is True
