"""V1 API router aggregation."""

from fastapi import APIRouter

from app.api.v1.diagnostics import router as diagnostics_router
from app.api.v1.pricing import router as pricing_router
from app.api.v1.tenants import router as tenants_router
from app.api.v1.users import router as users_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(tenants_router)
v1_router.include_router(users_router)
v1_router.include_router(pricing_router)
v1_router.include_router(diagnostics_router)
