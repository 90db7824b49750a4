"""
Provider Poller — bounded, cancellable wait on an asynchronous provider job.

The video provider completes minutes after submission. The poller checks the
job at a fixed interval for at most ``max_attempts`` ticks, reports a progress
estimate after every tick, and stops early when the run's cancellation token
fires. On cancellation it asks the provider to cancel upstream; providers that
cannot do that simply have the job abandoned.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .errors import Cancelled, ProviderCallFailed, ProviderJobFailed, ProviderTimeout
from .models import ProviderJob, ProviderJobStatus
from .providers import ProviderJobUpdate, VideoProvider

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = 10.0      # seconds
MAX_POLL_ATTEMPTS = 30    # 5 minutes max (30 * 10s)
STATUS_TIMEOUT = 15.0     # per status request
CANCEL_TIMEOUT = 10.0
PROGRESS_CAP = 95         # never report 100 before the provider says completed


class CancellationToken:
    """Cooperative cancel signal shared by the step loop and the poller."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


SleepFn = Callable[[float, CancellationToken], Awaitable[None]]
ProgressFn = Callable[[int], Awaitable[None]]


async def interruptible_sleep(seconds: float, token: CancellationToken) -> None:
    await token.wait(seconds)


def estimate_progress(attempt: int, max_attempts: int) -> int:
    if max_attempts <= 0:
        return 0
    return min(PROGRESS_CAP, int(attempt * 100 / max_attempts))


class ProviderPoller:
    def __init__(
        self,
        provider: VideoProvider,
        poll_interval: float = POLL_INTERVAL,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Optional[SleepFn] = None,
        status_timeout: float = STATUS_TIMEOUT,
    ):
        self.provider = provider
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.status_timeout = status_timeout
        self._sleep = sleep or interruptible_sleep

    async def wait(
        self,
        job: ProviderJob,
        token: CancellationToken,
        on_progress: Optional[ProgressFn] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> ProviderJobUpdate:
        """
        Poll ``job`` until it reaches a terminal provider status.

        Returns:
            The provider's completed update (carrying the result URL).

        Raises:
            ProviderJobFailed: provider reported the job failed.
            ProviderTimeout:   ``max_attempts`` exhausted while still running.
            Cancelled:         the token fired; upstream cancel was attempted.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        attempts = self.max_attempts if max_attempts is None else max_attempts
        try:
            return await self._poll(job, token, on_progress, interval, attempts)
        finally:
            self.provider.forget(job.job_id)

    async def _poll(
        self,
        job: ProviderJob,
        token: CancellationToken,
        on_progress: Optional[ProgressFn],
        interval: float,
        attempts: int,
    ) -> ProviderJobUpdate:
        reported = 0

        for attempt in range(1, attempts + 1):
            await self._sleep(interval, token)
            if token.cancelled:
                await self._cancel_upstream(job)
                raise Cancelled()

            job.attempts = attempt
            update = await self._check(job)

            if update is not None:
                job.last_status = update.status
                logger.info(
                    f"[{job.job_id}] poll #{attempt}/{attempts}: {update.status.value}"
                )

                if update.status == ProviderJobStatus.COMPLETED:
                    if not update.result_url:
                        raise ProviderJobFailed(
                            f"Provider job {job.job_id} completed without a result URL"
                        )
                    return update

                if update.status == ProviderJobStatus.FAILED:
                    raise ProviderJobFailed(
                        update.error or f"Provider job {job.job_id} failed"
                    )

            progress = estimate_progress(attempt, attempts)
            if on_progress is not None and progress > reported:
                reported = progress
                await on_progress(progress)

        if token.cancelled:
            await self._cancel_upstream(job)
            raise Cancelled()

        raise ProviderTimeout(
            f"Provider job {job.job_id} still {job.last_status.value} after "
            f"{attempts} checks ({attempts * interval:.0f}s)"
        )

    async def _check(self, job: ProviderJob) -> Optional[ProviderJobUpdate]:
        """One status request; transient failures count as an attempt."""
        try:
            return await asyncio.wait_for(
                self.provider.get_status(job.job_id), self.status_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{job.job_id}] status check timed out after {self.status_timeout}s")
        except (ProviderCallFailed, httpx.HTTPError) as e:
            if isinstance(e, ProviderJobFailed):
                raise
            logger.warning(f"[{job.job_id}] status check error: {e}")
        return None

    async def _cancel_upstream(self, job: ProviderJob) -> None:
        """Best effort: errors and unsupported cancels abandon the job."""
        if not getattr(self.provider, "supports_cancel", False):
            logger.info(f"[{job.job_id}] provider cannot cancel, abandoning job")
            return
        try:
            await asyncio.wait_for(self.provider.cancel(job.job_id), CANCEL_TIMEOUT)
            logger.info(f"[{job.job_id}] upstream cancel requested")
        except (asyncio.TimeoutError, NotImplementedError, ProviderCallFailed, httpx.HTTPError) as e:
            logger.warning(f"[{job.job_id}] upstream cancel failed, abandoning job: {e}")
