"""Budget ledger: accumulated spend per tenant/user and admission control.

Enforcement is lazy: ``admit`` only compares spend that has already been
recorded against each ceiling. The in-flight request is never estimated or
reserved, so the request that crosses a ceiling completes and the next one is
denied.

Two ways to read "used":

* ``store``: sum the ``usage_daily`` rows for the bucket on every check.
* ``memory``: read in-process counters that the usage recorder bumps after
  each durable write, reconciled periodically by building a fresh snapshot
  from the store and swapping it in whole.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import date, timedelta
from enum import StrEnum
from typing import NamedTuple

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from app.core.config import get_settings
from app.core.database import dialect_name
from app.core.errors import BudgetExceeded
from app.models.base import ANONYMOUS_USER, utctoday
from app.models.usage import UsageDaily
from app.services.directory import Resolution

logger = logging.getLogger(__name__)


class Period(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Scope(StrEnum):
    PROJECT = "project"
    USER = "user"


def period_range(period: Period, today: date) -> tuple[date, date]:
    """Inclusive calendar bucket containing ``today``. Weeks start on Sunday."""
    if period is Period.DAILY:
        return today, today
    if period is Period.WEEKLY:
        days_since_sunday = (today.weekday() + 1) % 7
        return today - timedelta(days=days_since_sunday), today
    return today.replace(day=1), today


def reconcile_window_start(today: date) -> date:
    """Earliest day any configured period can reach back to."""
    return min(period_range(p, today)[0] for p in Period)


# ── Durable store operations ─────────────────────────────────

async def cost_for_range(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    start: date,
    end: date,
    user_id: str | None = None,
) -> float:
    """Total recorded cost for a tenant (or one of its users) over [start, end]."""
    stmt = select(func.coalesce(func.sum(UsageDaily.total_cost), 0.0)).where(
        UsageDaily.tenant_id == tenant_id,
        UsageDaily.day >= start,
        UsageDaily.day <= end,
    )
    if user_id is not None:
        stmt = stmt.where(UsageDaily.user_id == user_id)
    return float((await session.execute(stmt)).scalar_one())


async def increment_usage(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: str | None,
    day: date,
    cost: float,
    prompt_tokens: int,
    completion_tokens: int,
) -> None:
    """Add one request's usage to its daily aggregate row.

    A single INSERT ... ON CONFLICT DO UPDATE with ``col = col + excluded.col``,
    so concurrent increments commute and none can be lost. Does not commit.
    """
    insert = postgresql.insert if dialect_name(session) == "postgresql" else sqlite.insert
    table = UsageDaily.__table__
    stmt = insert(table).values(
        tenant_id=tenant_id,
        user_id=user_id or ANONYMOUS_USER,
        day=day,
        total_cost=cost,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        request_count=1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.tenant_id, table.c.user_id, table.c.day],
        set_={
            "total_cost": table.c.total_cost + stmt.excluded.total_cost,
            "prompt_tokens": table.c.prompt_tokens + stmt.excluded.prompt_tokens,
            "completion_tokens": table.c.completion_tokens + stmt.excluded.completion_tokens,
            "request_count": table.c.request_count + stmt.excluded.request_count,
        },
    )
    await session.execute(stmt)


async def usage_rows(
    session: AsyncSession,
    tenant_id: uuid.UUID | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[UsageDaily]:
    stmt = select(UsageDaily)
    if tenant_id is not None:
        stmt = stmt.where(UsageDaily.tenant_id == tenant_id)
    if start is not None:
        stmt = stmt.where(UsageDaily.day >= start)
    if end is not None:
        stmt = stmt.where(UsageDaily.day <= end)
    stmt = stmt.order_by(UsageDaily.day.desc(), UsageDaily.user_id)  # type: ignore[attr-defined]
    return list((await session.execute(stmt)).scalars().all())


# ── In-memory counters ───────────────────────────────────────

class TenantDay(NamedTuple):
    tenant_id: uuid.UUID
    day: date


class UserDay(NamedTuple):
    tenant_id: uuid.UUID
    user_id: str
    day: date


class BudgetCounters:
    """Per-(tenant, day) and per-(tenant, user, day) cost.

    A fresh instance is built by each reconciliation; increments land on
    whichever instance is current. Every mutation completes without yielding
    to the event loop.
    """

    __slots__ = ("tenants", "users")

    def __init__(self) -> None:
        self.tenants: defaultdict[TenantDay, float] = defaultdict(float)
        self.users: defaultdict[UserDay, float] = defaultdict(float)

    def add(self, tenant_id: uuid.UUID, user_id: str | None, day: date, cost: float) -> None:
        self.tenants[TenantDay(tenant_id, day)] += cost
        self.users[UserDay(tenant_id, user_id or ANONYMOUS_USER, day)] += cost

    def tenant_cost(self, tenant_id: uuid.UUID, start: date, end: date) -> float:
        return sum(self.tenants.get(TenantDay(tenant_id, d), 0.0) for d in _days(start, end))

    def user_cost(self, tenant_id: uuid.UUID, user_id: str, start: date, end: date) -> float:
        return sum(
            self.users.get(UserDay(tenant_id, user_id, d), 0.0) for d in _days(start, end)
        )


def _days(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


# ── Ledger ───────────────────────────────────────────────────

class BudgetLedger:
    def __init__(self, strategy: str | None = None) -> None:
        self._strategy = strategy
        self._counters = BudgetCounters()

    @property
    def strategy(self) -> str:
        return self._strategy or get_settings().budget_strategy

    @property
    def counters(self) -> BudgetCounters:
        return self._counters

    def use_strategy(self, strategy: str | None) -> None:
        self._strategy = strategy
        self._counters = BudgetCounters()

    async def used(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        period: Period,
        today: date,
        user_id: str | None = None,
    ) -> float:
        start, end = period_range(period, today)
        if self.strategy == "memory":
            counters = self._counters
            if user_id is None:
                return counters.tenant_cost(tenant_id, start, end)
            return counters.user_cost(tenant_id, user_id, start, end)
        return await cost_for_range(session, tenant_id, start, end, user_id)

    async def admit(self, session: AsyncSession, resolution: Resolution) -> None:
        """Raise ``BudgetExceeded`` for the first ceiling already reached.

        Checks daily, weekly, then monthly; project scope before user scope.
        """
        tenant = resolution.tenant
        today = utctoday()
        check_user = _user_scope_applies(resolution)

        for period in Period:
            limit = tenant.project_limit(period)
            if limit is not None:
                spent = await self.used(session, tenant.id, period, today)
                if spent >= limit:
                    raise BudgetExceeded(period, Scope.PROJECT, limit, spent)

            limit = tenant.user_limit(period)
            if check_user and limit is not None:
                spent = await self.used(session, tenant.id, period, today, resolution.user_id)
                if spent >= limit:
                    raise BudgetExceeded(period, Scope.USER, limit, spent)

    def record(self, tenant_id: uuid.UUID, user_id: str | None, day: date, cost: float) -> None:
        """Mirror a durable increment into the in-memory counters."""
        if self.strategy == "memory":
            self._counters.add(tenant_id, user_id, day, cost)

    async def reconcile(self, session: AsyncSession) -> None:
        """Replace the in-memory counters with a snapshot built from the store."""
        today = utctoday()
        fresh = BudgetCounters()
        for row in await usage_rows(session, start=reconcile_window_start(today), end=today):
            fresh.add(row.tenant_id, row.user_id, row.day, row.total_cost)
        self._counters = fresh
        logger.debug("Budget counters reconciled: %d tenant buckets", len(fresh.tenants))


def _user_scope_applies(resolution: Resolution) -> bool:
    if resolution.user_id is None:
        return False
    if resolution.personal:
        return True
    return get_settings().enforce_user_budgets_for_header_users


async def run_reconcile_loop(
    ledger: BudgetLedger,
    session_factory: sessionmaker,
    interval_seconds: float,
) -> None:
    """Background task for the ``memory`` strategy."""
    while True:
        try:
            async with session_factory() as session:
                await ledger.reconcile(session)
        except Exception:
            logger.exception("Budget counter reconciliation failed; keeping current counters")
        await asyncio.sleep(interval_seconds)


budget_ledger = BudgetLedger()
