import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from supabase import Client, create_client

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import Settings, get_settings
from .provider_factory import ProviderFactory
from .run_limiter import RedisRunSlots, RunSlots
from .workflow.coordinator import WorkflowCoordinator
from .workflow.ledger import CreditLedger, InMemoryCreditLedger, SupabaseCreditLedger
from .workflow.publisher import ProgressPublisher
from .workflow.routes import credits_router, workflow_router
from .workflow.storage import AssetStore, PassthroughAssetStore, R2AssetStore
from .workflow.store import InMemoryRunStore, RunStore, SupabaseRunStore

load_dotenv()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 60

# ── Lazy Supabase client ──────────────────────────────────────────────────────
_supabase_client: Optional[Client] = None


def get_supabase(settings: Settings) -> Client:
    global _supabase_client
    if _supabase_client is None:
        if not settings.supabase_configured:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    return _supabase_client


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis(settings: Settings):
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None and settings.redis_url:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        try:
            client.ping()
            logger.info(f"Redis connected: {settings.redis_url[:30]}...")
            _redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} — falling back to in-memory run slots")
    return _redis_client


@dataclass
class Services:
    store: RunStore
    ledger: CreditLedger
    publisher: ProgressPublisher
    coordinator: WorkflowCoordinator


def build_services(settings: Settings) -> Services:
    if settings.supabase_configured:
        client = get_supabase(settings)
        store: RunStore = SupabaseRunStore(client)
        ledger: CreditLedger = SupabaseCreditLedger(client)
    else:
        logger.warning("Supabase not configured — runs and credits are kept in memory")
        store = InMemoryRunStore()
        ledger = InMemoryCreditLedger()

    r = get_redis(settings)
    if r is not None:
        run_slots = RedisRunSlots(r, settings.max_concurrent_runs_per_user)
    else:
        run_slots = RunSlots(settings.max_concurrent_runs_per_user)

    if settings.r2_configured:
        asset_store: AssetStore = R2AssetStore(
            store,
            account_id=settings.r2_account_id,
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            bucket=settings.r2_bucket_name,
            public_url=settings.r2_public_url,
        )
    else:
        logger.warning("R2 not configured — assets keep their provider URLs")
        asset_store = PassthroughAssetStore(store)

    publisher = ProgressPublisher(retention_seconds=settings.event_retention_seconds)
    coordinator = WorkflowCoordinator(
        store=store,
        ledger=ledger,
        publisher=publisher,
        moderation=ProviderFactory.moderation_gate(settings),
        image_provider=ProviderFactory.image_provider(settings),
        video_provider=ProviderFactory.video_provider(settings),
        asset_store=asset_store,
        run_slots=run_slots,
        poll_interval=settings.video_poll_interval,
        max_poll_attempts=settings.video_max_poll_attempts,
        provider_timeout=settings.provider_timeout_seconds,
        worker_id=settings.worker_id,
        lease_seconds=settings.run_lease_seconds,
        lease_renew_interval=settings.lease_renew_seconds,
    )
    return Services(store=store, ledger=ledger, publisher=publisher, coordinator=coordinator)


async def _purge_loop(publisher: ProgressPublisher):
    """Drop event logs of finished runs once their retention has passed."""
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        publisher.purge_expired()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Worker starting up ({settings.environment})...")
        recovered = await services.coordinator.recover_orphans()
        if recovered:
            logger.info(f"Recovered {recovered} orphaned run(s) from previous session")
        purge_task = asyncio.create_task(_purge_loop(services.publisher))
        yield
        logger.info("Worker shutting down...")
        purge_task.cancel()
        await services.coordinator.shutdown()

    app = FastAPI(title="mediaflow worker", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = services.store
    app.state.ledger = services.ledger
    app.state.publisher = services.publisher
    app.state.coordinator = services.coordinator

    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_shared_secret,
        environment=settings.environment,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"detail": {
                "code": "invalid_configuration",
                "message": "Invalid request body",
                "errors": jsonable_encoder(exc.errors()),
            }},
        )

    @app.get("/health")
    def health_check():
        """Verify worker is running and env vars are configured."""
        return {
            "status": "ok",
            "environment": settings.environment,
            "openai_api_key_set": bool(settings.openai_api_key),
            "fal_key_set": bool(settings.fal_key),
            "supabase_url_set": bool(settings.supabase_url),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        metrics.set_gauge("active_runs", services.coordinator.active_count)
        return metrics.get_snapshot()

    app.include_router(workflow_router)
    app.include_router(credits_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("mediaflow.main:app", host="0.0.0.0", port=get_settings().port)
