"""FastAPI application entrypoint."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import text

import app.models  # noqa: F401
from app.api.deps import Session
from app.api.proxy import router as proxy_router
from app.api.v1 import v1_router
from app.core import diagnostics
from app.core.config import get_settings
from app.core.database import async_session_factory, init_db
from app.core.errors import register_exception_handlers
from app.core.pricing import pricing_table, run_refresh_loop
from app.services import recorder
from app.services.directory import tenant_directory
from app.services.forwarding import close_upstream_client, get_upstream_client
from app.services.ledger import budget_ledger, run_reconcile_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    client = get_upstream_client()
    async with async_session_factory() as session:
        await tenant_directory.reload(session)
        await pricing_table.load_at_startup(client, session)
        if budget_ledger.strategy == "memory":
            await budget_ledger.reconcile(session)

    loops = [asyncio.create_task(run_refresh_loop(
        pricing_table, client, async_session_factory, settings.pricing_refresh_hours * 3600,
    ))]
    if budget_ledger.strategy == "memory":
        loops.append(asyncio.create_task(run_reconcile_loop(
            budget_ledger, async_session_factory, settings.budget_reconcile_seconds,
        )))
    logger.info("Tollbooth ready (budget strategy: %s)", budget_ledger.strategy)

    yield

    # Shutdown: stop background loops, flush pending usage, release the client
    for task in loops:
        task.cancel()
    for task in loops:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await recorder.drain()
    await close_upstream_client()


app = FastAPI(
    title="Tollbooth",
    version="0.1.0",
    description="Metered, budget-enforcing proxy for Azure OpenAI-compatible APIs",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ── Routes ───────────────────────────────────────────────────
app.include_router(proxy_router)
app.include_router(v1_router)


class HealthResponse(BaseModel):
    status: str  # "ok" or "degraded"
    db: str
    unknown_models: int
    recording_failures: int
    pricing_loaded_at: datetime | None


@app.get("/health", tags=["system"], response_model=HealthResponse)
async def health_check(session: Session) -> HealthResponse:
    try:
        await session.execute(text("SELECT 1"))
        db = "ok"
    except Exception as exc:
        logger.warning("Health check database probe failed: %s", exc)
        db = "error"

    unknown = len(diagnostics.unknown_models)
    failures = diagnostics.recording_failures
    healthy = (
        db == "ok"
        and unknown == 0
        and failures <= get_settings().health_max_recording_failures
    )
    return HealthResponse(
        status="ok" if healthy else "degraded",
        db=db,
        unknown_models=unknown,
        recording_failures=failures,
        pricing_loaded_at=pricing_table.snapshot.catalog_loaded_at,
    )
