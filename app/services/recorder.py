"""Usage recorder: prices a completed request and persists it off the response path.

``schedule()`` is synchronous and returns immediately. The actual work runs in
a detached task with its own database session, so it survives the caller
disconnecting and never adds latency to the response. Failures are logged and
counted; they never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from app.core import diagnostics
from app.core.pricing import CostResult, pricing_table
from app.models.base import utcnow
from app.models.usage import RequestLog
from app.services.ledger import budget_ledger, increment_usage

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()


@dataclass(frozen=True, slots=True)
class UsageRecord:
    tenant_id: uuid.UUID
    user_id: str | None
    model: str
    deployment: str
    endpoint: str
    prompt_tokens: int
    completion_tokens: int
    status_code: int
    is_stream: bool
    # Successful response without usable usage data
    usage_missing: bool = False
    overhead_ms: int = 0
    upstream_ms: int = 0
    transfer_ms: int = 0
    total_ms: int = 0


def price(record: UsageRecord) -> CostResult:
    if record.usage_missing:
        return CostResult(0.0, True)
    # Nothing was consumed, so there is nothing to price or flag
    if record.prompt_tokens == 0 and record.completion_tokens == 0:
        return CostResult(0.0, False)
    return pricing_table.cost(record.model, record.prompt_tokens, record.completion_tokens)


async def record_usage(record: UsageRecord, session_factory: sessionmaker) -> None:
    """Append the request log row and bump the daily aggregate in one transaction."""
    try:
        result = price(record)
        day = utcnow().date()
        async with session_factory() as session:
            session.add(RequestLog(
                tenant_id=record.tenant_id,
                user_id=record.user_id,
                model=record.model,
                deployment=record.deployment,
                endpoint=record.endpoint,
                prompt_tokens=record.prompt_tokens,
                completion_tokens=record.completion_tokens,
                total_tokens=record.prompt_tokens + record.completion_tokens,
                cost_usd=result.cost_usd,
                status_code=record.status_code,
                overhead_ms=record.overhead_ms,
                upstream_ms=record.upstream_ms,
                transfer_ms=record.transfer_ms,
                total_ms=record.total_ms,
                is_stream=record.is_stream,
                used_fallback_pricing=result.unpriced,
            ))
            await increment_usage(
                session,
                record.tenant_id,
                record.user_id,
                day,
                result.cost_usd,
                record.prompt_tokens,
                record.completion_tokens,
            )
            await session.commit()
        budget_ledger.record(record.tenant_id, record.user_id, day, result.cost_usd)
        logger.debug(
            "Recorded %s: %d+%d tokens, $%.6f",
            record.model or record.deployment,
            record.prompt_tokens,
            record.completion_tokens,
            result.cost_usd,
        )
    except Exception:
        diagnostics.record_recording_failure()
        logger.exception(
            "Failed to record usage for tenant %s (deployment %s)",
            record.tenant_id, record.deployment,
        )


def schedule(record: UsageRecord, session_factory: sessionmaker) -> asyncio.Task:
    """Start recording in the background and return without waiting."""
    task = asyncio.create_task(record_usage(record, session_factory))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending() -> int:
    return len(_background_tasks)


async def drain(timeout: float = 10.0) -> None:
    """Wait for in-flight recordings (shutdown and tests)."""
    if not _background_tasks:
        return
    done, still_pending = await asyncio.wait(set(_background_tasks), timeout=timeout)
    if still_pending:
        logger.warning("%d usage recordings still pending after %.1fs", len(still_pending), timeout)
