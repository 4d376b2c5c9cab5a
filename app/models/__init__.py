"""Import all models so SQLModel.metadata picks them up."""

from app.models.api_key import ApiKey, ApiKeyCreated, ApiKeyRead
from app.models.pricing import (
    CatalogPrice,
    ModelPriceOverride,
    PriceEntryRead,
    PriceOverrideUpsert,
)
from app.models.tenant import Tenant, TenantRead
from app.models.usage import RequestLog, RequestLogRead, UsageDaily, UsageDailyRead
from app.models.user import User, UserCreate, UserRead

__all__ = [
    "ApiKey",
    "ApiKeyCreated",
    "ApiKeyRead",
    "CatalogPrice",
    "ModelPriceOverride",
    "PriceEntryRead",
    "PriceOverrideUpsert",
    "RequestLog",
    "RequestLogRead",
    "Tenant",
    "TenantRead",
    "UsageDaily",
    "UsageDailyRead",
    "User",
    "UserCreate",
    "UserRead",
]
