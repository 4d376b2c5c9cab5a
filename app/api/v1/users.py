"""Registered users and their personal API keys."""

import uuid

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import select

from app.api.deps import AdminAuth, Session
from app.api.v1.tenants import get_tenant_or_404, new_key, revoke_keys
from app.core.config import get_settings
from app.core.security import derive_user_id
from app.models.api_key import ApiKey, ApiKeyCreated, ApiKeyRead
from app.models.base import utctoday
from app.models.usage import UsageDaily
from app.models.user import User, UserCreate, UserRead
from app.services.directory import tenant_directory

router = APIRouter(tags=["users"], dependencies=[AdminAuth])


class TenantUserSummary(BaseModel):
    user_id: str
    cost_today: float
    requests_today: int
    has_personal_key: bool


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(body: UserCreate, session: Session) -> UserRead:
    """Register an identity; its id is derived from the email address."""
    email = body.email.strip().lower()
    user_id = derive_user_id(email, get_settings().corporate_domain)

    existing = await session.execute(
        select(User).where((User.id == user_id) | (User.email == email))
    )
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"User '{user_id}' is already registered",
        )

    user = User(id=user_id, email=email, display_name=body.display_name)
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return UserRead.model_validate(user)


@router.get("/users/{user_id}", response_model=UserRead)
async def get_user(user_id: str, session: Session) -> UserRead:
    return UserRead.model_validate(await _get_user(user_id, session))


@router.get("/tenants/{tenant_id}/users", response_model=list[TenantUserSummary])
async def list_tenant_users(tenant_id: uuid.UUID, session: Session) -> list[TenantUserSummary]:
    """Everyone with spend today or an active personal key, highest spend first."""
    await get_tenant_or_404(tenant_id, session)

    usage_stmt = (
        select(UsageDaily.user_id, func.sum(UsageDaily.total_cost), func.sum(UsageDaily.request_count))
        .where(UsageDaily.tenant_id == tenant_id, UsageDaily.day == utctoday())
        .group_by(UsageDaily.user_id)
    )
    today = {
        uid: (float(cost), int(count))
        for uid, cost, count in (await session.execute(usage_stmt)).all()
    }

    key_stmt = select(ApiKey.user_id).where(
        ApiKey.tenant_id == tenant_id,
        ApiKey.user_id.is_not(None),  # type: ignore[union-attr]
        ApiKey.is_active.is_(True),  # type: ignore[union-attr]
    )
    key_holders = set((await session.execute(key_stmt)).scalars().all())

    summaries = [
        TenantUserSummary(
            user_id=uid,
            cost_today=today.get(uid, (0.0, 0))[0],
            requests_today=today.get(uid, (0.0, 0))[1],
            has_personal_key=uid in key_holders,
        )
        for uid in set(today) | key_holders
    ]
    summaries.sort(key=lambda s: (-s.cost_today, s.user_id))
    return summaries


@router.post(
    "/tenants/{tenant_id}/users/{user_id}/keys",
    response_model=ApiKeyCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Mint a personal API key",
)
async def create_personal_key(
    tenant_id: uuid.UUID,
    user_id: str,
    session: Session,
) -> ApiKeyCreated:
    """Any previous personal key of this user for this tenant is revoked.

    The raw key is returned once; store it securely.
    """
    tenant = await get_tenant_or_404(tenant_id, session)
    if not tenant.allow_user_keys:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This tenant does not allow personal keys",
        )
    user = await _get_user(user_id, session)

    await revoke_keys(session, tenant.id, user_id=user.id)
    raw_key, key = new_key(tenant.id, user_id=user.id)
    session.add(key)
    await session.commit()
    await session.refresh(key)
    await tenant_directory.reload(session)

    return ApiKeyCreated(**ApiKeyRead.model_validate(key).model_dump(), api_key=raw_key)


@router.delete(
    "/tenants/{tenant_id}/users/{user_id}/keys",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke a personal API key",
)
async def revoke_personal_key(tenant_id: uuid.UUID, user_id: str, session: Session) -> None:
    await get_tenant_or_404(tenant_id, session)
    if not await revoke_keys(session, tenant_id, user_id=user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active personal key for this user",
        )
    await session.commit()
    await tenant_directory.reload(session)


async def _get_user(user_id: str, session) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user
