"""Operational counters: unknown models, recording and extraction failures, pricing state."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.deps import AdminAuth
from app.core import diagnostics
from app.core.pricing import pricing_table
from app.services import recorder
from app.services.ledger import budget_ledger

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"], dependencies=[AdminAuth])


class DiagnosticsResponse(BaseModel):
    unknown_models: dict[str, int]
    unknown_model_hits: int
    recording_failures: int
    extraction_failures: int
    pricing_refresh_failures: int
    pricing_loaded_at: datetime | None
    catalog_models: int
    price_overrides: int
    budget_strategy: str
    pending_recordings: int
    uptime_seconds: int


@router.get("", response_model=DiagnosticsResponse)
async def get_diagnostics() -> DiagnosticsResponse:
    snap = pricing_table.snapshot
    return DiagnosticsResponse(
        **diagnostics.snapshot(),
        pricing_loaded_at=snap.catalog_loaded_at,
        catalog_models=len(snap.catalog),
        price_overrides=len(snap.overrides),
        budget_strategy=budget_ledger.strategy,
        pending_recordings=recorder.pending(),
    )
