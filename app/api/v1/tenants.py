"""Tenant administration: create, inspect, reconfigure, deactivate, rotate the shared key."""

import uuid
from datetime import date

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func
from sqlmodel import select

from app.api.deps import AdminAuth, Session
from app.core.security import encrypt_value, generate_api_key, hash_api_key, key_prefix
from app.models.api_key import ApiKey, ApiKeyCreated, ApiKeyRead
from app.models.base import utcnow, utctoday
from app.models.tenant import Tenant, TenantRead, TenantSummary
from app.models.usage import RequestLog, RequestLogRead, UsageDaily, UsageDailyRead
from app.services.directory import tenant_directory
from app.services.ledger import usage_rows

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[AdminAuth])


# ── Request / response schemas ───────────────────────────────

class TenantCreate(BaseModel):
    name: str = Field(max_length=255)
    slug: str = Field(max_length=100, pattern=r"^[a-z0-9\-]+$")
    budget_daily: float | None = Field(default=None, ge=0)
    budget_weekly: float | None = Field(default=None, ge=0)
    budget_monthly: float | None = Field(default=None, ge=0)
    default_user_budget_daily: float | None = Field(default=None, ge=0)
    default_user_budget_weekly: float | None = Field(default=None, ge=0)
    default_user_budget_monthly: float | None = Field(default=None, ge=0)
    allow_user_keys: bool = False
    endpoint_url: str | None = Field(default=None, max_length=500)
    endpoint_key: str | None = None


class TenantUpdate(BaseModel):
    """Partial update; only fields present in the request are applied."""
    name: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None
    budget_daily: float | None = Field(default=None, ge=0)
    budget_weekly: float | None = Field(default=None, ge=0)
    budget_monthly: float | None = Field(default=None, ge=0)
    default_user_budget_daily: float | None = Field(default=None, ge=0)
    default_user_budget_weekly: float | None = Field(default=None, ge=0)
    default_user_budget_monthly: float | None = Field(default=None, ge=0)
    allow_user_keys: bool | None = None
    endpoint_url: str | None = Field(default=None, max_length=500)
    endpoint_key: str | None = None

    @field_validator("name", "is_active", "allow_user_keys", mode="before")
    @classmethod
    def reject_null(cls, value):
        # Omit the field to leave it unchanged; null only clears budgets and the endpoint
        if value is None:
            raise ValueError("must not be null")
        return value


class TenantCreated(BaseModel):
    tenant: TenantRead
    api_key: str = Field(description="Shown once; store it securely")
    key_prefix: str


class TenantUsage(BaseModel):
    tenant_id: uuid.UUID
    start: date
    end: date
    total_cost: float
    request_count: int
    days: list[UsageDailyRead]


class RequestLogPage(BaseModel):
    items: list[RequestLogRead]
    page: int
    per_page: int
    total: int


# ── Routes ────────────────────────────────────────────────────

@router.post(
    "",
    response_model=TenantCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tenant and its shared API key",
)
async def create_tenant(body: TenantCreate, session: Session) -> TenantCreated:
    """The raw API key is returned once; the caller must store it."""
    existing = await session.execute(select(Tenant).where(Tenant.slug == body.slug))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Slug '{body.slug}' is already taken",
        )

    fields = body.model_dump(exclude={"endpoint_key"})
    tenant = Tenant(**fields)
    if body.endpoint_key:
        tenant.endpoint_key_encrypted = encrypt_value(body.endpoint_key)
    session.add(tenant)
    await session.flush()  # populate tenant.id

    raw_key, key = new_key(tenant.id)
    session.add(key)
    await session.commit()
    await session.refresh(tenant)
    await tenant_directory.reload(session)

    return TenantCreated(
        tenant=TenantRead.from_tenant(tenant),
        api_key=raw_key,
        key_prefix=key.key_prefix,
    )


@router.get("", response_model=list[TenantSummary], summary="List tenants with today's spend")
async def list_tenants(session: Session) -> list[TenantSummary]:
    tenants = (await session.execute(
        select(Tenant).order_by(Tenant.created_at)  # type: ignore[arg-type]
    )).scalars().all()

    spend_stmt = (
        select(UsageDaily.tenant_id, func.sum(UsageDaily.total_cost))
        .where(UsageDaily.day == utctoday())
        .group_by(UsageDaily.tenant_id)
    )
    spend = {tid: float(total) for tid, total in (await session.execute(spend_stmt)).all()}

    return [TenantSummary.from_tenant(t, usage_today=spend.get(t.id, 0.0)) for t in tenants]


@router.get("/{tenant_id}", response_model=TenantRead)
async def get_tenant(tenant_id: uuid.UUID, session: Session) -> TenantRead:
    return TenantRead.from_tenant(await get_tenant_or_404(tenant_id, session))


@router.patch("/{tenant_id}", response_model=TenantRead)
async def update_tenant(tenant_id: uuid.UUID, body: TenantUpdate, session: Session) -> TenantRead:
    """Apply the given fields. Sending ``endpoint_key: null`` clears the stored key."""
    tenant = await get_tenant_or_404(tenant_id, session)
    changes = body.model_dump(exclude_unset=True)

    if "endpoint_key" in changes:
        raw = changes.pop("endpoint_key")
        tenant.endpoint_key_encrypted = encrypt_value(raw) if raw else None
    for field, value in changes.items():
        setattr(tenant, field, value)
    tenant.updated_at = utcnow()

    session.add(tenant)
    await session.commit()
    await session.refresh(tenant)
    await tenant_directory.reload(session)
    return TenantRead.from_tenant(tenant)


@router.delete(
    "/{tenant_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Deactivate a tenant",
)
async def deactivate_tenant(tenant_id: uuid.UUID, session: Session) -> None:
    """Soft-delete: keys keep resolving, but every request gets 403."""
    tenant = await get_tenant_or_404(tenant_id, session)
    tenant.is_active = False
    tenant.updated_at = utcnow()
    session.add(tenant)
    await session.commit()
    await tenant_directory.reload(session)


@router.post(
    "/{tenant_id}/rotate-key",
    response_model=ApiKeyCreated,
    summary="Replace the tenant's shared API key",
)
async def rotate_key(tenant_id: uuid.UUID, session: Session) -> ApiKeyCreated:
    """Revokes every active shared key and returns a new one, once."""
    tenant = await get_tenant_or_404(tenant_id, session)
    await revoke_keys(session, tenant.id, user_id=None)

    raw_key, key = new_key(tenant.id)
    session.add(key)
    await session.commit()
    await session.refresh(key)
    await tenant_directory.reload(session)

    return ApiKeyCreated(**ApiKeyRead.model_validate(key).model_dump(), api_key=raw_key)


@router.get("/{tenant_id}/usage", response_model=TenantUsage)
async def get_usage(
    tenant_id: uuid.UUID,
    session: Session,
    start: date | None = Query(default=None, alias="from"),
    end: date | None = Query(default=None, alias="to"),
) -> TenantUsage:
    """Daily aggregates per user. Defaults to the current month."""
    await get_tenant_or_404(tenant_id, session)
    end = end or utctoday()
    start = start or end.replace(day=1)
    if start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'from' must not be after 'to'",
        )

    rows = await usage_rows(session, tenant_id, start, end)
    return TenantUsage(
        tenant_id=tenant_id,
        start=start,
        end=end,
        total_cost=sum(r.total_cost for r in rows),
        request_count=sum(r.request_count for r in rows),
        days=[UsageDailyRead.model_validate(r) for r in rows],
    )


@router.get("/{tenant_id}/logs", response_model=RequestLogPage)
async def get_logs(
    tenant_id: uuid.UUID,
    session: Session,
    user: str | None = None,
    model: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=500),
) -> RequestLogPage:
    await get_tenant_or_404(tenant_id, session)

    stmt = select(RequestLog).where(RequestLog.tenant_id == tenant_id)
    if user:
        stmt = stmt.where(RequestLog.user_id == user)
    if model:
        stmt = stmt.where(RequestLog.model == model)

    total = (await session.execute(
        select(func.count()).select_from(stmt.subquery())
    )).scalar_one()
    items = (await session.execute(
        stmt
        .order_by(RequestLog.created_at.desc(), RequestLog.id.desc())  # type: ignore[union-attr]
        .limit(per_page)
        .offset((page - 1) * per_page)
    )).scalars().all()

    return RequestLogPage(
        items=[RequestLogRead.model_validate(r) for r in items],
        page=page,
        per_page=per_page,
        total=total,
    )


# ── Helpers ───────────────────────────────────────────────────

async def get_tenant_or_404(tenant_id: uuid.UUID, session) -> Tenant:
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


def new_key(tenant_id: uuid.UUID, user_id: str | None = None) -> tuple[str, ApiKey]:
    raw_key = generate_api_key()
    return raw_key, ApiKey(
        tenant_id=tenant_id,
        user_id=user_id,
        key_hash=hash_api_key(raw_key),
        key_prefix=key_prefix(raw_key),
    )


async def revoke_keys(session, tenant_id: uuid.UUID, user_id: str | None) -> int:
    """Deactivate the active shared (user_id=None) or personal keys. Does not commit."""
    stmt = select(ApiKey).where(
        ApiKey.tenant_id == tenant_id,
        ApiKey.is_active.is_(True),  # type: ignore[union-attr]
    )
    if user_id is None:
        stmt = stmt.where(ApiKey.user_id.is_(None))  # type: ignore[union-attr]
    else:
        stmt = stmt.where(ApiKey.user_id == user_id)

    keys = (await session.execute(stmt)).scalars().all()
    now = utcnow()
    for key in keys:
        key.is_active = False
        key.revoked_at = now
        session.add(key)
    return len(keys)
