"""
Run registry — persistence for WorkflowRun records and produced assets.

Runs are never hard-deleted; they stay queryable for history and audit.

Several worker processes may share one registry. The worker executing a run
holds a lease on it (worker id + expiry) and renews it while the run is
active. Saves from a worker that lost the lease are refused, and so is any
save to a run that already finished. Other workers never touch a leased run
directly: they set its cancel flag and the owner acts on it.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from supabase import Client, PostgrestAPIError

from .errors import LeaseLost, RunAlreadyTerminal, WorkflowError
from .models import Asset, RunStatus, Step, WorkflowRun

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


class RunStore(ABC):
    @abstractmethod
    async def save_run(self, run: WorkflowRun, worker_id: Optional[str] = None) -> None:
        """
        Insert or update a run and its steps.

        Raises:
            RunAlreadyTerminal: the stored run already finished
            LeaseLost:          ``worker_id`` given and another worker holds the run
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        ...

    @abstractmethod
    async def list_runs(self, user_id: str, limit: int = 20) -> list[WorkflowRun]:
        ...

    @abstractmethod
    async def list_active_runs(self) -> list[WorkflowRun]:
        """Runs persisted as queued/running, whether or not a worker holds them."""

    @abstractmethod
    async def claim_run(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        """
        Take or extend the execution lease on an active run.

        False when the run is finished or another worker's lease has not
        expired yet.
        """

    @abstractmethod
    async def request_cancel(self, run_id: str) -> bool:
        """Flag an active run for cancellation by whichever worker owns it."""

    @abstractmethod
    async def cancel_requested(self, run_id: str) -> bool:
        ...

    @abstractmethod
    async def save_asset(self, asset: Asset) -> None:
        ...


class InMemoryRunStore(RunStore):
    """Keeps deep copies so callers cannot mutate stored state."""

    def __init__(self):
        self._runs: dict[str, WorkflowRun] = {}
        self._assets: dict[str, Asset] = {}
        self._leases: dict[str, tuple[str, float]] = {}  # run_id → (worker_id, monotonic expiry)
        self._cancel_requests: set[str] = set()

    async def save_run(self, run: WorkflowRun, worker_id: Optional[str] = None) -> None:
        stored = self._runs.get(run.id)
        if stored is not None:
            if stored.is_terminal:
                raise RunAlreadyTerminal(f"Workflow already {stored.status.value}")
            owner = self._leases.get(run.id, (None, 0.0))[0]
            if worker_id is not None and owner is not None and owner != worker_id:
                raise LeaseLost()
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, user_id: str, limit: int = 20) -> list[WorkflowRun]:
        runs = [r for r in self._runs.values() if r.user_id == user_id]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def list_active_runs(self) -> list[WorkflowRun]:
        return [
            r.model_copy(deep=True) for r in self._runs.values()
            if r.status.value in ACTIVE_STATUSES
        ]

    async def claim_run(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        now = time.monotonic()
        lease = self._leases.get(run_id)
        if lease is not None and lease[0] != worker_id and lease[1] > now:
            return False
        self._leases[run_id] = (worker_id, now + lease_seconds)
        return True

    def lease_holder(self, run_id: str) -> Optional[str]:
        lease = self._leases.get(run_id)
        return lease[0] if lease else None

    async def request_cancel(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        self._cancel_requests.add(run_id)
        return True

    async def cancel_requested(self, run_id: str) -> bool:
        return run_id in self._cancel_requests

    async def save_asset(self, asset: Asset) -> None:
        self._assets[asset.id] = asset.model_copy(deep=True)

    async def get_asset(self, asset_id: str) -> Optional[Asset]:
        asset = self._assets.get(asset_id)
        return asset.model_copy(deep=True) if asset else None


# ── Supabase ─────────────────────────────────────────────────────────────────

_RUN_COLUMNS = (
    "id, user_id, variant, project_id, image_prompt, video_prompt, source_image_url, "
    "image_config, video_config, status, created_at, started_at, completed_at, "
    "total_cost, refunded, result, error, error_code"
)


def _run_row(run: WorkflowRun) -> dict:
    return run.model_dump(mode="json", exclude={"steps"})


def _step_rows(run: WorkflowRun) -> list[dict]:
    rows = []
    for position, step in enumerate(run.steps):
        row = step.model_dump(mode="json")
        row["step_id"] = row.pop("id")
        row["run_id"] = run.id
        row["position"] = position
        rows.append(row)
    return rows


def _ownership_error(e: PostgrestAPIError) -> Optional[WorkflowError]:
    """save_workflow_run raises these by name."""
    message = e.message or ""
    if "run_already_terminal" in message:
        return RunAlreadyTerminal()
    if "lease_lost" in message:
        return LeaseLost()
    return None


def _run_from_rows(row: dict, step_rows: list[dict]) -> WorkflowRun:
    steps = []
    for s in sorted(step_rows, key=lambda r: r.get("position", 0)):
        data = {k: v for k, v in s.items() if k not in ("run_id", "position", "step_id")}
        data["id"] = s["step_id"]
        steps.append(Step(**data))
    return WorkflowRun(**row, steps=steps)


class SupabaseRunStore(RunStore):
    """
    Tables (see migrations/001_workflow_schema.sql):
      workflow_runs   one row per run, plus lease and cancel-flag columns
      workflow_steps  one row per (run_id, step_id)
      assets          produced media

    Writes to runs go through the ``save_workflow_run`` and
    ``claim_workflow_run`` functions so the ownership checks happen under
    the row lock.
    """

    def __init__(self, client: Client):
        self.client = client

    async def _rpc(self, fn: str, params: dict):
        return await asyncio.to_thread(lambda: self.client.rpc(fn, params).execute())

    async def save_run(self, run: WorkflowRun, worker_id: Optional[str] = None) -> None:
        try:
            await self._rpc("save_workflow_run", {
                "p_run": _run_row(run),
                "p_steps": _step_rows(run),
                "p_worker_id": worker_id,
            })
        except PostgrestAPIError as e:
            refused = _ownership_error(e)
            if refused is not None:
                raise refused
            raise

    async def claim_run(self, run_id: str, worker_id: str, lease_seconds: float) -> bool:
        resp = await self._rpc("claim_workflow_run", {
            "p_run_id": run_id,
            "p_worker_id": worker_id,
            "p_lease_seconds": lease_seconds,
        })
        return bool(resp.data)

    async def request_cancel(self, run_id: str) -> bool:
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_runs")
            .update({"cancel_requested": True})
            .eq("id", run_id)
            .in_("status", list(ACTIVE_STATUSES))
            .execute()
        )
        return bool(resp.data)

    async def cancel_requested(self, run_id: str) -> bool:
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_runs")
            .select("cancel_requested")
            .eq("id", run_id)
            .execute()
        )
        return bool(resp.data and resp.data[0].get("cancel_requested"))

    async def _load_steps(self, run_ids: list[str]) -> dict[str, list[dict]]:
        if not run_ids:
            return {}
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_steps").select("*").in_("run_id", run_ids).execute()
        )
        grouped: dict[str, list[dict]] = {}
        for row in resp.data or []:
            grouped.setdefault(row["run_id"], []).append(row)
        return grouped

    async def _load(self, rows: list[dict]) -> list[WorkflowRun]:
        steps = await self._load_steps([r["id"] for r in rows])
        return [_run_from_rows(r, steps.get(r["id"], [])) for r in rows]

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_runs").select(_RUN_COLUMNS).eq("id", run_id).execute()
        )
        if not resp.data:
            return None
        runs = await self._load(resp.data)
        return runs[0]

    async def list_runs(self, user_id: str, limit: int = 20) -> list[WorkflowRun]:
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_runs")
            .select(_RUN_COLUMNS)
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return await self._load(resp.data or [])

    async def list_active_runs(self) -> list[WorkflowRun]:
        resp = await asyncio.to_thread(
            lambda: self.client.table("workflow_runs")
            .select(_RUN_COLUMNS)
            .in_("status", list(ACTIVE_STATUSES))
            .execute()
        )
        return await self._load(resp.data or [])

    async def save_asset(self, asset: Asset) -> None:
        await asyncio.to_thread(
            lambda: self.client.table("assets").upsert(asset.model_dump(mode="json")).execute()
        )
        logger.info(f"[{asset.run_id}] recorded {asset.kind.value} asset {asset.id}")
