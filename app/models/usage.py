"""Usage models: daily spend aggregate and the immutable request log."""

import uuid
from datetime import date, datetime

from sqlmodel import Field, SQLModel

from app.models.base import ANONYMOUS_USER, utcnow


class UsageDaily(SQLModel, table=True):
    """One row per (tenant, user, UTC day); only ever incremented."""

    __tablename__ = "usage_daily"

    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", primary_key=True)
    user_id: str = Field(default=ANONYMOUS_USER, primary_key=True, max_length=320)
    day: date = Field(primary_key=True, index=True)

    total_cost: float = Field(default=0.0)
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    request_count: int = Field(default=0)


class RequestLog(SQLModel, table=True):
    """One row per completed proxied request; never mutated."""

    __tablename__ = "request_log"

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)
    user_id: str | None = Field(default=None, max_length=320, index=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)

    model: str = Field(default="", max_length=255)
    deployment: str = Field(max_length=255)
    endpoint: str = Field(max_length=255)

    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    cost_usd: float = Field(default=0.0)
    status_code: int = Field(nullable=False)

    # Latency split, see app.services.forwarding.Timings
    overhead_ms: int = Field(default=0)
    upstream_ms: int = Field(default=0)
    transfer_ms: int = Field(default=0)
    total_ms: int = Field(default=0)

    is_stream: bool = Field(default=False)
    # Model had no known price; cost_usd is 0 because of that, not because it was free
    used_fallback_pricing: bool = Field(default=False, index=True)


# ── Pydantic schemas ─────────────────────────────────────────

class UsageDailyRead(SQLModel):
    user_id: str
    day: date
    total_cost: float
    prompt_tokens: int
    completion_tokens: int
    request_count: int


class RequestLogRead(SQLModel):
    id: int
    user_id: str | None
    created_at: datetime
    model: str
    deployment: str
    endpoint: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    status_code: int
    overhead_ms: int
    upstream_ms: int
    transfer_ms: int
    total_ms: int
    is_stream: bool
    used_fallback_pricing: bool
