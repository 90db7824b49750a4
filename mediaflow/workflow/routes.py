"""
FastAPI routes for generation workflows and credits.

Workflow Endpoints:
  POST /workflow/start          — Start a run (pre-flight credit check)
  GET  /workflow                — List the caller's recent runs
  GET  /workflow/health         — Provider / storage configuration
  GET  /workflow/{id}/status    — Run + full step list (polling fallback)
  GET  /workflow/{id}/stream    — Server-Sent Events progress stream
  POST /workflow/{id}/cancel    — Cancel a run, returns refunded credits

Credit Endpoints:
  GET  /credits/balance         — Balance + recent transactions
  POST /credits/check           — Estimate a config's cost against the balance

The upstream gateway authenticates the user and forwards X-User-Id.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse

from ..provider_factory import ProviderFactory
from .costs import cost_breakdown
from .coordinator import WorkflowCoordinator
from .errors import CancellationPending, InsufficientCredits, RunNotFound, WorkflowError
from .ledger import CreditLedger
from .models import (
    CancelResponse,
    CostCheckResponse,
    CreditBalanceResponse,
    WorkflowRun,
    canonical_uuid,
    WorkflowStartRequest,
    WorkflowStartResponse,
)
from .streaming import stream_run_events

logger = logging.getLogger(__name__)


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_coordinator(request: Request) -> WorkflowCoordinator:
    return request.app.state.coordinator


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return canonical_uuid(x_user_id, "X-User-Id")
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "invalid_user_id", "message": str(e)})


def get_run_id(run_id: str) -> str:
    """Run ids are UUIDs; anything else cannot name a run."""
    try:
        return canonical_uuid(run_id, "run_id")
    except ValueError:
        raise _http_error(RunNotFound())


def _http_error(e: WorkflowError) -> HTTPException:
    detail = {"code": e.code, "message": e.message}
    if isinstance(e, InsufficientCredits):
        detail.update(required=e.required, available=e.available, shortage=e.shortage)
    return HTTPException(status_code=e.http_status, detail=detail)


# ═════════════════════════════════════════════════════════════════════════════
# Workflow Router
# ═════════════════════════════════════════════════════════════════════════════

workflow_router = APIRouter(prefix="/workflow", tags=["workflow"])


@workflow_router.post("/start", response_model=WorkflowStartResponse, status_code=202)
async def start_workflow(
    body: WorkflowStartRequest,
    require_funds: bool = Query(True, description="Reject up front when the balance cannot cover the whole run"),
    user_id: str = Depends(get_current_user),
    coordinator: WorkflowCoordinator = Depends(get_coordinator),
    ledger: CreditLedger = Depends(get_ledger),
):
    """
    Start a generation run; progress is streamed from ``stream_url``.

    Errors:
      - 400: Invalid configuration
      - 402: Insufficient credits for the estimated cost
      - 429: Too many active runs
    """
    try:
        coordinator.check_configuration(body)
        estimated = coordinator.estimate_cost(body)
        if require_funds:
            balance = await ledger.get_balance(user_id)
            if balance < estimated:
                raise InsufficientCredits(required=estimated, available=balance)

        run = await coordinator.start(user_id, body)
        return WorkflowStartResponse(
            run_id=run.id,
            status=run.status,
            estimated_cost=estimated,
            stream_url=f"/workflow/{run.id}/stream",
        )
    except WorkflowError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Workflow start failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@workflow_router.get("", response_model=list[WorkflowRun])
async def list_workflows(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    coordinator: WorkflowCoordinator = Depends(get_coordinator),
):
    """List the caller's runs, newest first."""
    return await coordinator.list_runs(user_id, limit)


@workflow_router.get("/health")
async def workflow_health(request: Request):
    """Which providers and backends have credentials configured."""
    return {"status": "ok", **ProviderFactory.status(request.app.state.settings)}


@workflow_router.get("/{run_id}/status", response_model=WorkflowRun)
async def get_workflow_status(
    run_id: str = Depends(get_run_id),
    user_id: str = Depends(get_current_user),
    coordinator: WorkflowCoordinator = Depends(get_coordinator),
):
    try:
        return await coordinator.get_status(run_id, user_id)
    except WorkflowError as e:
        raise _http_error(e)


@workflow_router.get("/{run_id}/stream")
async def stream_workflow(
    request: Request,
    run_id: str = Depends(get_run_id),
    user_id: str = Depends(get_current_user),
    coordinator: WorkflowCoordinator = Depends(get_coordinator),
):
    """
    Server-Sent Events: status, step-update, complete, error, heartbeat.
    Buffered events are replayed first; the stream closes after ``complete``.
    """
    try:
        run = await coordinator.get_status(run_id, user_id)
    except WorkflowError as e:
        raise _http_error(e)

    events = stream_run_events(
        request.app.state.publisher,
        coordinator,
        run,
        heartbeat_seconds=request.app.state.settings.heartbeat_seconds,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@workflow_router.post("/{run_id}/cancel", response_model=CancelResponse)
async def cancel_workflow(
    response: Response,
    run_id: str = Depends(get_run_id),
    user_id: str = Depends(get_current_user),
    coordinator: WorkflowCoordinator = Depends(get_coordinator),
):
    """
    202 when the run belongs to another worker that has not stopped it yet.

    Errors:
      - 404: Unknown run
      - 409: Run already finished
    """
    try:
        refunded = await coordinator.cancel(run_id, user_id)
        run = await coordinator.get_status(run_id, user_id)
        return CancelResponse(run_id=run_id, status=run.status, refunded=refunded)
    except CancellationPending:
        run = await coordinator.get_status(run_id, user_id)
        response.status_code = 202
        return CancelResponse(run_id=run_id, status=run.status, refunded=0)
    except WorkflowError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Cancel failed for {run_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


# ═════════════════════════════════════════════════════════════════════════════
# Credits Router
# ═════════════════════════════════════════════════════════════════════════════

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    limit: int = Query(10, ge=0, le=100),
    user_id: str = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    balance = await ledger.get_balance(user_id)
    transactions = await ledger.list_transactions(user_id, limit) if limit else []
    return CreditBalanceResponse(user_id=user_id, balance=balance, recent_transactions=transactions)


@credits_router.post("/check", response_model=CostCheckResponse)
async def check_credits(
    body: WorkflowStartRequest,
    user_id: str = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Pre-flight: would the balance cover this configuration?"""
    breakdown = cost_breakdown(body.variant, body.image_config, body.video_config)
    required = sum(breakdown.values())
    balance = await ledger.get_balance(user_id)
    return CostCheckResponse(
        has_enough=balance >= required,
        balance=balance,
        required=required,
        shortage=max(0, required - balance),
        breakdown=breakdown,
    )
