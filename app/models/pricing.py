"""Pricing tables: admin overrides and the persisted catalog snapshot."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.base import utcnow


class ModelPriceOverride(SQLModel, table=True):
    """Administrator-supplied price; always wins over the catalog."""

    __tablename__ = "model_pricing"

    model: str = Field(primary_key=True, max_length=255)
    input_per_million: float = Field(nullable=False, ge=0)
    output_per_million: float = Field(nullable=False, ge=0)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class CatalogPrice(SQLModel, table=True):
    """Last successfully fetched catalog, used when the source is unreachable."""

    __tablename__ = "catalog_prices"

    model: str = Field(primary_key=True, max_length=255)
    input_per_token: float = Field(nullable=False)
    output_per_token: float = Field(nullable=False)
    fetched_at: datetime = Field(default_factory=utcnow, nullable=False)


# ── Pydantic schemas ─────────────────────────────────────────

class PriceOverrideUpsert(SQLModel):
    input_per_million: float = Field(ge=0)
    output_per_million: float = Field(ge=0)


class PriceEntryRead(SQLModel):
    model: str
    input_per_million: float
    output_per_million: float
    source: str  # "admin" or "catalog"
