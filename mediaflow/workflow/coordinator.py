"""
WorkflowCoordinator — drives generation runs through their pipeline.

The coordinator is the only component that mutates run state. For every run:

  start()   validate → persist a queued run with all steps pending → take
            the run's lease → spawn one asyncio task that executes the
            steps in order
  per step  pending → processing (publish) → action → completed (publish)
            any WorkflowError fails the step, refunds its charge and fails
            the run
  cancel()  sets the run's cancellation token; the step loop and the
            poller observe it at the next step boundary / poll tick

Credits: paid steps debit their full cost *before* the provider call. A step
that does not complete gets that debit refunded before the final event is
published, so a finished run has only been charged for completed steps.

Ownership: several workers can share one run store. The worker executing a
run renews a lease on it every ``lease_renew_interval`` seconds. A cancel
arriving at another worker sets the run's cancel flag, which the owner picks
up on its next renewal. Only runs whose lease has expired are finalized by a
worker that did not start them. An owner whose lease was taken over stops
and refunds whatever debits the new owner cannot see.
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import httpx

from .. import metrics
from ..moderation import check_local_rules
from ..run_limiter import RunSlots
from .costs import cost_breakdown, estimate_run_cost
from .errors import (
    CancellationPending,
    Cancelled,
    ConcurrencyLimitExceeded,
    ContentRejected,
    InternalFailure,
    InvalidConfiguration,
    LeaseLost,
    ProviderCallFailed,
    ProviderTimeout,
    RunAlreadyTerminal,
    RunNotFound,
    WorkflowError,
)
from .ledger import REASON_GENERATION, REASON_REFUND, CreditLedger
from .models import (
    Asset,
    ErrorEvent,
    PipelineVariant,
    ProviderJob,
    RunCompleteEvent,
    RunStatus,
    StatusEvent,
    Step,
    StepStatus,
    StepUpdateEvent,
    WorkflowRun,
    WorkflowStartRequest,
)
from .poller import MAX_POLL_ATTEMPTS, POLL_INTERVAL, CancellationToken, ProviderPoller, SleepFn
from .providers import GeneratedImage, ImageProvider, ModerationGate, VideoProvider
from .publisher import ProgressPublisher
from .steps import (
    FINALIZATION,
    IMAGE_GENERATION,
    IMAGE_UPLOAD,
    VALIDATION,
    VIDEO_GENERATION,
    VIDEO_UPLOAD,
    advance_progress,
    build_steps,
    complete_step,
    fail_step,
    required_providers,
    start_step,
    transition_run,
)
from .storage import AssetStore
from .store import RunStore

logger = logging.getLogger(__name__)

PROVIDER_TIMEOUT = 120.0   # seconds, per provider request
SHUTDOWN_TIMEOUT = 10.0
LEASE_SECONDS = 30.0
LEASE_RENEW_INTERVAL = 5.0


@dataclass
class _ActiveRun:
    run: WorkflowRun
    token: CancellationToken
    task: Optional[asyncio.Task] = None
    image: Optional[GeneratedImage] = None
    image_asset: Optional[Asset] = None
    video_url: Optional[str] = None
    video_asset: Optional[Asset] = None
    lost: bool = False  # another worker took over the lease


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def validate_request(request: WorkflowStartRequest) -> None:
    """Structural checks; raises InvalidConfiguration."""
    variant = request.variant
    if variant in (PipelineVariant.COMPLETE, PipelineVariant.IMAGE_ONLY) and _blank(request.image_prompt):
        raise InvalidConfiguration("image_prompt is required")
    if variant in (PipelineVariant.COMPLETE, PipelineVariant.VIDEO_FROM_IMAGE) and _blank(request.video_prompt):
        raise InvalidConfiguration("video_prompt is required")

    if variant == PipelineVariant.VIDEO_FROM_IMAGE:
        if _blank(request.source_image_url):
            raise InvalidConfiguration("source_image_url is required for video-from-image")
        if not request.source_image_url.startswith(("http://", "https://")):
            raise InvalidConfiguration("source_image_url must be an http(s) URL")
    elif request.source_image_url:
        raise InvalidConfiguration("source_image_url is only accepted for video-from-image")


class WorkflowCoordinator:
    """
    Usage:
        coordinator = WorkflowCoordinator(store=..., ledger=..., ...)
        run = await coordinator.start(user_id, request)
        run = await coordinator.get_status(run.id)
        refunded = await coordinator.cancel(run.id)
    """

    def __init__(
        self,
        *,
        store: RunStore,
        ledger: CreditLedger,
        publisher: ProgressPublisher,
        moderation: ModerationGate,
        image_provider: ImageProvider,
        video_provider: VideoProvider,
        asset_store: AssetStore,
        run_slots: Optional[RunSlots] = None,
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        provider_timeout: float = PROVIDER_TIMEOUT,
        sleep: Optional[SleepFn] = None,
        worker_id: Optional[str] = None,
        lease_seconds: float = LEASE_SECONDS,
        lease_renew_interval: float = LEASE_RENEW_INTERVAL,
        remote_cancel_timeout: Optional[float] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.publisher = publisher
        self.moderation = moderation
        self.image_provider = image_provider
        self.video_provider = video_provider
        self.asset_store = asset_store
        self.run_slots = run_slots or RunSlots()
        self.provider_timeout = provider_timeout
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds
        self.lease_renew_interval = lease_renew_interval
        self.remote_cancel_timeout = (
            lease_seconds + 2 * lease_renew_interval if remote_cancel_timeout is None else remote_cancel_timeout
        )
        self.poller = ProviderPoller(
            video_provider,
            poll_interval=poll_interval,
            max_attempts=max_poll_attempts,
            sleep=sleep,
        )
        self._active: dict[str, _ActiveRun] = {}
        self._actions: dict[str, Callable[[_ActiveRun, Step], Awaitable[Optional[dict]]]] = {
            VALIDATION: self._validate,
            IMAGE_GENERATION: self._generate_image,
            IMAGE_UPLOAD: self._upload_image,
            VIDEO_GENERATION: self._generate_video,
            VIDEO_UPLOAD: self._upload_video,
            FINALIZATION: self._finalize,
        }

    # ── Public API ───────────────────────────────────────────────────────

    def check_configuration(self, request: WorkflowStartRequest) -> None:
        validate_request(request)
        providers = {"image": self.image_provider, "video": self.video_provider}
        for kind in sorted(required_providers(request.variant)):
            if not providers[kind].is_configured:
                raise InvalidConfiguration(f"No credentials configured for the {kind} provider")

    def estimate_cost(self, request: WorkflowStartRequest) -> int:
        return estimate_run_cost(request.variant, request.image_config, request.video_config)

    async def start(self, user_id: str, request: WorkflowStartRequest) -> WorkflowRun:
        """
        Create a queued run and begin executing it in the background.

        Raises:
            InvalidConfiguration:      missing fields or unconfigured provider
            ConcurrencyLimitExceeded:  user already at the active-run cap
        """
        self.check_configuration(request)

        if not self.run_slots.acquire(user_id):
            raise ConcurrencyLimitExceeded(
                f"At most {self.run_slots.max_runs} workflows can run at the same time"
            )

        try:
            breakdown = cost_breakdown(request.variant, request.image_config, request.video_config)
            run = WorkflowRun(
                id=str(uuid4()),
                user_id=user_id,
                variant=request.variant,
                project_id=request.project_id,
                image_prompt=request.image_prompt,
                video_prompt=request.video_prompt,
                source_image_url=request.source_image_url,
                image_config=request.image_config,
                video_config=request.video_config,
                steps=build_steps(request.variant, breakdown),
            )
            await self._save(run)
            await self.store.claim_run(run.id, self.worker_id, self.lease_seconds)
        except Exception:
            self.run_slots.release(user_id)
            raise

        active = _ActiveRun(run=run, token=CancellationToken())
        self._active[run.id] = active
        self._publish_status(run)
        active.task = asyncio.create_task(self._execute(active))

        metrics.run_started(run.variant.value)
        metrics.set_gauge("active_runs", len(self._active))
        logger.info(f"[{run.id}] queued {run.variant.value} run for user {user_id} (estimated {sum(breakdown.values())} credits)")
        return run.model_copy(deep=True)

    async def get_status(self, run_id: str, user_id: Optional[str] = None) -> WorkflowRun:
        active = self._active.get(run_id)
        run = active.run.model_copy(deep=True) if active else await self.store.get_run(run_id)
        if run is None or (user_id is not None and run.user_id != user_id):
            raise RunNotFound()
        return run

    async def list_runs(self, user_id: str, limit: int = 20) -> list[WorkflowRun]:
        return await self.store.list_runs(user_id, limit)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def cancel(self, run_id: str, user_id: Optional[str] = None) -> int:
        """
        Cancel a queued or running workflow.

        Returns the number of credits refunded. Waits until the run task has
        observed the cancellation and finished its bookkeeping. A run that
        another worker is executing is flagged instead, and this waits for
        that worker to stop it; CancellationPending if it has not done so
        within ``remote_cancel_timeout``.
        """
        active = self._active.get(run_id)
        if active is None:
            run = await self.store.get_run(run_id)
            if run is None or (user_id is not None and run.user_id != user_id):
                raise RunNotFound()
            if run.is_terminal:
                raise RunAlreadyTerminal(f"Workflow already {run.status.value}")
            orphan = await self._claim_orphan(run_id)
            if orphan is None:
                return await self._cancel_remote(run_id)
            await self._finish_cancelled(orphan)
            return orphan.run.refunded

        run = active.run
        if user_id is not None and run.user_id != user_id:
            raise RunNotFound()
        if run.is_terminal:
            raise RunAlreadyTerminal(f"Workflow already {run.status.value}")

        logger.info(f"[{run_id}] cancellation requested")
        active.token.cancel()
        if active.task is not None:
            await asyncio.shield(active.task)

        if run.status != RunStatus.CANCELLED:
            raise RunAlreadyTerminal(f"Workflow already {run.status.value}")
        return run.refunded

    async def _claim_orphan(self, run_id: str) -> Optional[_ActiveRun]:
        """Take over a run nobody holds a live lease on; None if it is owned."""
        if not await self.store.claim_run(run_id, self.worker_id, self.lease_seconds):
            return None
        run = await self.store.get_run(run_id)
        if run is None or run.is_terminal:
            return None
        return _ActiveRun(run=run, token=CancellationToken())

    async def _cancel_remote(self, run_id: str) -> int:
        """Flag a run another worker is executing and wait for it to stop."""
        await self.store.request_cancel(run_id)
        logger.info(f"[{run_id}] cancellation forwarded to the owning worker")

        deadline = time.monotonic() + self.remote_cancel_timeout
        while time.monotonic() < deadline:
            await asyncio.sleep(self.lease_renew_interval)
            run = await self.store.get_run(run_id)
            if run is not None and run.is_terminal:
                if run.status != RunStatus.CANCELLED:
                    raise RunAlreadyTerminal(f"Workflow already {run.status.value}")
                return run.refunded
            orphan = await self._claim_orphan(run_id)
            if orphan is not None:
                # the owner died before acting on the flag
                await self._finish_cancelled(orphan)
                return orphan.run.refunded
        raise CancellationPending()

    async def recover_orphans(self) -> int:
        """Fail runs whose owning worker stopped renewing its lease."""
        recovered = 0
        for run in await self.store.list_active_runs():
            if run.id in self._active:
                continue
            orphan = await self._claim_orphan(run.id)
            if orphan is None:
                continue
            await self._finish_failed(orphan, InternalFailure("Worker stopped while the workflow was running"))
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} orphaned workflow runs")
        return recovered

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Cancel every active run and wait for their bookkeeping."""
        active = list(self._active.values())
        if not active:
            return
        logger.info(f"Shutting down: cancelling {len(active)} active runs")
        for entry in active:
            entry.token.cancel()
        tasks = [entry.task for entry in active if entry.task is not None]
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    # ── Execution ────────────────────────────────────────────────────────

    async def _execute(self, active: _ActiveRun) -> None:
        run = active.run
        lease = asyncio.create_task(self._hold_lease(active))
        try:
            await self._run_pipeline(active)
        except (LeaseLost, RunAlreadyTerminal) as e:
            await self._abandon(active, e)
        except Exception as e:
            logger.error(f"[{run.id}] bookkeeping failed: {e}", exc_info=True)
        finally:
            lease.cancel()
            self.run_slots.release(run.user_id)
            self._active.pop(run.id, None)
            metrics.set_gauge("active_runs", len(self._active))

    async def _run_pipeline(self, active: _ActiveRun) -> None:
        run = active.run
        try:
            if active.token.cancelled:
                raise Cancelled()
            transition_run(run, RunStatus.RUNNING)
            await self._save(run)
            self._publish_status(run)

            for step in run.steps:
                if active.token.cancelled:
                    raise Cancelled()
                await self._run_step(active, step)

            await self._finish_completed(active)

        except (LeaseLost, RunAlreadyTerminal):
            raise
        except Cancelled:
            if active.lost:
                raise LeaseLost()
            await self._finish_cancelled(active)
        except WorkflowError as e:
            await self._finish_failed(active, e)
        except Exception as e:
            logger.error(f"[{run.id}] unexpected failure: {e}", exc_info=True)
            await self._finish_failed(active, InternalFailure())

    async def _hold_lease(self, active: _ActiveRun) -> None:
        """Renew the run's lease and pick up cancels requested elsewhere."""
        run_id = active.run.id
        while True:
            await asyncio.sleep(self.lease_renew_interval)
            try:
                held = await self.store.claim_run(run_id, self.worker_id, self.lease_seconds)
                cancel = held and await self.store.cancel_requested(run_id)
            except Exception as e:
                logger.warning(f"[{run_id}] lease renewal failed: {e}")
                continue
            if not held:
                if not active.run.is_terminal:
                    logger.warning(f"[{run_id}] lease taken over by another worker, stopping")
                    active.lost = True
                    active.token.cancel()
                return
            if cancel and not active.token.cancelled:
                logger.info(f"[{run_id}] cancellation requested by another worker")
                active.token.cancel()

    async def _abandon(self, active: _ActiveRun, reason: WorkflowError) -> None:
        """
        Stop a run another worker finished or took over.

        Debits this worker made that never reached the store are refunded;
        the stored run stays as the other worker left it.
        """
        run = active.run
        logger.warning(f"[{run.id}] stopping: {reason.message}")
        stored = await self.store.get_run(run.id)
        known = {s.transaction_id for s in stored.steps if s.transaction_id} if stored else set()
        for step in run.steps:
            if step.charged and step.transaction_id not in known:
                await self._refund_step(run, step)

        deadline = time.monotonic() + self.remote_cancel_timeout
        while stored is not None and not stored.is_terminal and time.monotonic() < deadline:
            await asyncio.sleep(self.lease_renew_interval)
            stored = await self.store.get_run(run.id)

        self.publisher.publish(run.id, ErrorEvent(run_id=run.id, code=reason.code, message=reason.message))
        self._publish_complete(stored or run)

    async def _run_step(self, active: _ActiveRun, step: Step) -> None:
        run = active.run
        start_step(step)
        await self._commit(active, step)
        logger.info(f"[{run.id}] {step.id} → processing")

        started = time.monotonic()
        result = await self._actions[step.id](active, step)

        complete_step(step, result)
        metrics.record_latency(f"step.{step.id}", (time.monotonic() - started) * 1000)
        await self._commit(active, step)
        logger.info(f"[{run.id}] {step.id} → completed")

    async def _save(self, run: WorkflowRun) -> None:
        await self.store.save_run(run, self.worker_id)

    async def _commit(self, active: _ActiveRun, step: Optional[Step] = None) -> None:
        """Persist the run and publish the step change."""
        run = active.run
        await self._save(run)
        self.publisher.publish(run.id, StepUpdateEvent(run_id=run.id, step=step, steps=run.steps))

    def _publish_status(self, run: WorkflowRun) -> None:
        self.publisher.publish(run.id, StatusEvent(run_id=run.id, status=run.status))

    async def _call_provider(self, call: Awaitable, label: str):
        try:
            return await asyncio.wait_for(call, self.provider_timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"{label} did not respond within {self.provider_timeout:.0f}s")
        except httpx.HTTPError as e:
            raise ProviderCallFailed(f"{label} request failed: {e}")

    # ── Credits ──────────────────────────────────────────────────────────

    async def _charge(self, active: _ActiveRun, step: Step) -> None:
        """Debit the step's full cost; raises InsufficientCredits."""
        if step.cost <= 0:
            return
        run = active.run
        txn_id = await self.ledger.debit(run.user_id, step.cost, REASON_GENERATION, run_id=run.id)
        step.charged = step.cost
        step.transaction_id = txn_id
        run.total_cost += step.cost
        metrics.credits_debited(step.cost)
        await self._save(run)

    async def _refund_step(self, run: WorkflowRun, step: Step) -> int:
        if not step.charged or not step.transaction_id:
            return 0
        amount = step.charged
        try:
            await self.ledger.refund(
                run.user_id, amount, REASON_REFUND, step.transaction_id, run_id=run.id
            )
        except (WorkflowError, ValueError) as e:
            logger.error(f"[{run.id}] refund of {amount} credits for {step.id} failed: {e}", exc_info=True)
            metrics.record_error(step.id, "refund_failed", str(e), run.id)
            return 0
        step.charged = 0
        run.total_cost -= amount
        run.refunded += amount
        metrics.credits_refunded(amount)
        logger.info(f"[{run.id}] refunded {amount} credits for {step.id}")
        return amount

    async def _release_unconsumed(self, run: WorkflowRun) -> None:
        for step in run.steps:
            if step.charged and step.status != StepStatus.COMPLETED:
                await self._refund_step(run, step)

    # ── Step actions ─────────────────────────────────────────────────────

    async def _validate(self, active: _ActiveRun, step: Step) -> dict:
        run = active.run
        prompts = [
            (label, text) for label, text in
            (("Image prompt", run.image_prompt), ("Video prompt", run.video_prompt))
            if text
        ]
        total = len(prompts) + (1 if run.source_image_url else 0)
        checked = 0

        for label, text in prompts:
            verdict = check_local_rules(text)
            if verdict is None:
                verdict = await self._call_provider(self.moderation.check_prompt(text), "Moderation")
            if not verdict.allowed:
                raise ContentRejected(f"{label} not allowed: {verdict.reason}")
            checked += 1
            if checked < total and advance_progress(step, checked * 100 // total):
                await self._commit(active, step)

        if run.source_image_url:
            verdict = await self._call_provider(self.moderation.check_image(run.source_image_url), "Moderation")
            if not verdict.allowed:
                raise ContentRejected(f"Source image not allowed: {verdict.reason}")

        return {"checks": total}

    async def _generate_image(self, active: _ActiveRun, step: Step) -> dict:
        run = active.run
        await self._charge(active, step)
        image = await self._call_provider(
            self.image_provider.generate(run.image_prompt, run.image_config), "Image provider"
        )
        active.image = image
        return {
            "provider": image.provider,
            "url": image.url,
            "width": image.width,
            "height": image.height,
            "revised_prompt": image.revised_prompt,
        }

    async def _upload_image(self, active: _ActiveRun, step: Step) -> dict:
        asset = await self._call_provider(
            self.asset_store.save_image(active.run, active.image), "Asset store"
        )
        active.image_asset = asset
        return {"asset_id": asset.id, "url": asset.public_url, "width": asset.width, "height": asset.height}

    async def _generate_video(self, active: _ActiveRun, step: Step) -> dict:
        run = active.run
        source_url = active.image_asset.public_url if active.image_asset else run.source_image_url

        await self._charge(active, step)
        job_id = await self._call_provider(
            self.video_provider.submit(source_url, run.video_prompt, run.video_config), "Video provider"
        )
        job = ProviderJob(job_id=job_id, provider=self.video_provider.provider_id)
        step.result = {"job_id": job_id, "provider": job.provider}
        await self._commit(active, step)
        logger.info(f"[{run.id}] video job {job_id} submitted")

        async def on_progress(progress: int):
            if advance_progress(step, progress):
                await self._commit(active, step)

        update = await self.poller.wait(job, active.token, on_progress)
        active.video_url = update.result_url
        return {"url": update.result_url, "poll_attempts": job.attempts}

    async def _upload_video(self, active: _ActiveRun, step: Step) -> dict:
        source_asset_id = active.image_asset.id if active.image_asset else None
        asset = await self._call_provider(
            self.asset_store.save_video(active.run, active.video_url, source_asset_id), "Asset store"
        )
        active.video_asset = asset
        return {"asset_id": asset.id, "url": asset.public_url, "duration": asset.duration}

    async def _finalize(self, active: _ActiveRun, step: Step) -> dict:
        return self._result_summary(active)

    @staticmethod
    def _result_summary(active: _ActiveRun) -> dict:
        summary = {}
        for kind, asset in (("image", active.image_asset), ("video", active.video_asset)):
            if asset is not None:
                summary[kind] = {
                    "asset_id": asset.id,
                    "url": asset.public_url,
                    "width": asset.width,
                    "height": asset.height,
                    "duration": asset.duration,
                }
        return summary

    # ── Terminal states ──────────────────────────────────────────────────

    async def _finish_completed(self, active: _ActiveRun) -> None:
        run = active.run
        run.result = self._result_summary(active)
        transition_run(run, RunStatus.COMPLETED)
        await self._save(run)
        self._publish_complete(run)
        metrics.run_finished(run.status.value)
        logger.info(f"[{run.id}] completed (charged {run.total_cost} credits)")

    async def _finish_failed(self, active: _ActiveRun, error: WorkflowError) -> None:
        run = active.run
        failed_step = run.processing_step()
        if failed_step is not None:
            await self._refund_step(run, failed_step)
            fail_step(failed_step, error.message, error.code)
            metrics.step_failed(failed_step.id, error.code, error.message, run.id)
            await self._commit(active, failed_step)
        await self._release_unconsumed(run)

        run.error = error.message
        run.error_code = error.code
        transition_run(run, RunStatus.FAILED)
        await self._save(run)

        self.publisher.publish(run.id, ErrorEvent(
            run_id=run.id,
            code=error.code,
            message=error.message,
            step_id=failed_step.id if failed_step else None,
        ))
        self._publish_complete(run)
        metrics.run_finished(run.status.value)
        logger.warning(f"[{run.id}] failed ({error.code}): {error.message}")

    async def _finish_cancelled(self, active: _ActiveRun) -> None:
        run = active.run
        for step in run.steps:
            if step.status in (StepStatus.PENDING, StepStatus.PROCESSING):
                await self._refund_step(run, step)
                fail_step(step, Cancelled.default_message, Cancelled.code)
        await self._release_unconsumed(run)

        run.error = Cancelled.default_message
        run.error_code = Cancelled.code
        transition_run(run, RunStatus.CANCELLED)
        await self._commit(active)
        self._publish_complete(run)
        metrics.run_finished(run.status.value)
        logger.info(f"[{run.id}] cancelled (refunded {run.refunded} credits)")

    def _publish_complete(self, run: WorkflowRun) -> None:
        self.publisher.publish(run.id, RunCompleteEvent(
            run_id=run.id,
            status=run.status,
            result=run.result,
            error=run.error,
            error_code=run.error_code,
            total_cost=run.total_cost,
            refunded=run.refunded,
        ))
