"""Tenant model: the billing and isolation unit."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    slug: str = Field(max_length=100, unique=True, nullable=False, index=True)
    is_active: bool = Field(default=True)

    # Spend ceilings in USD; None means unlimited
    budget_daily: float | None = Field(default=None)
    budget_weekly: float | None = Field(default=None)
    budget_monthly: float | None = Field(default=None)
    default_user_budget_daily: float | None = Field(default=None)
    default_user_budget_weekly: float | None = Field(default=None)
    default_user_budget_monthly: float | None = Field(default=None)

    # Registered users may mint personal keys for this tenant
    allow_user_keys: bool = Field(default=False)

    # Optional per-tenant upstream; falls back to the global upstream when unset
    endpoint_url: str | None = Field(default=None, max_length=500)
    endpoint_key_encrypted: str | None = Field(default=None)

    def project_limit(self, period: str) -> float | None:
        return getattr(self, f"budget_{period}")

    def user_limit(self, period: str) -> float | None:
        return getattr(self, f"default_user_budget_{period}")


# ── Pydantic schemas ─────────────────────────────────────────

class TenantRead(SQLModel):
    id: uuid.UUID
    name: str
    slug: str
    is_active: bool
    budget_daily: float | None
    budget_weekly: float | None
    budget_monthly: float | None
    default_user_budget_daily: float | None
    default_user_budget_weekly: float | None
    default_user_budget_monthly: float | None
    allow_user_keys: bool
    endpoint_url: str | None
    endpoint_key_configured: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_tenant(cls, tenant: Tenant, **extra):
        return cls.model_validate(
            tenant,
            update={"endpoint_key_configured": bool(tenant.endpoint_key_encrypted), **extra},
        )


class TenantSummary(TenantRead):
    usage_today: float = 0.0
