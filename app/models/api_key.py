"""API key model: shared tenant credentials and personal user credentials."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.base import TimestampMixin, new_uuid


class ApiKey(TimestampMixin, SQLModel, table=True):
    __tablename__ = "api_keys"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(foreign_key="tenants.id", nullable=False, index=True)

    # None = the tenant's shared key; set = a registered user's personal key
    user_id: str | None = Field(default=None, foreign_key="users.id", index=True)

    # SHA-256 hash of the raw key; the raw value is shown only once at creation.
    # Unique across shared and personal keys alike.
    key_hash: str = Field(nullable=False, unique=True, index=True)

    # Prefix stored for identification, e.g. "tb-3f9a1c"
    key_prefix: str = Field(max_length=16, nullable=False)

    is_active: bool = Field(default=True)
    revoked_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class ApiKeyRead(SQLModel):
    """Returned on list / detail; never includes the raw key."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    user_id: str | None
    key_prefix: str
    is_active: bool
    created_at: datetime


class ApiKeyCreated(ApiKeyRead):
    """Returned exactly once at creation time; includes the raw key."""
    api_key: str
