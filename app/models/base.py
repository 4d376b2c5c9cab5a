"""Shared base fields and clock helpers for all models."""

import uuid
from datetime import date, datetime, timezone

from sqlmodel import Field, SQLModel

# Aggregate rows need a non-null user component in their primary key.
ANONYMOUS_USER = "_anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utctoday() -> date:
    return datetime.now(timezone.utc).date()


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class TimestampMixin(SQLModel):
    """Created / updated timestamps injected into mutable tables."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)
