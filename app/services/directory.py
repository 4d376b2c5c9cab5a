"""Tenant directory: resolves a raw credential to (tenant, user).

The hot path never touches the database: credentials are looked up in an
immutable ``{key_hash: DirectoryEntry}`` snapshot that is rebuilt from the
store and published by a single reference swap. Admin handlers call
``reload()`` after any mutation to tenants or keys.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import InvalidCredential, TenantDeactivated
from app.core.security import hash_api_key
from app.models.api_key import ApiKey
from app.models.base import ANONYMOUS_USER
from app.models.tenant import Tenant

logger = logging.getLogger(__name__)

MAX_USER_HEADER_LENGTH = 255


@dataclass(frozen=True, slots=True)
class DirectoryEntry:
    tenant: Tenant
    user_id: str | None  # set only for personal keys


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of resolving a credential for one request."""

    tenant: Tenant
    user_id: str | None
    personal: bool


class TenantDirectory:
    def __init__(self) -> None:
        self._index: Mapping[str, DirectoryEntry] | None = None
        # (tenant, user) pairs that hold an active personal key
        self._personal_users: frozenset[tuple[uuid.UUID, str]] = frozenset()

    @property
    def loaded(self) -> bool:
        return self._index is not None

    async def reload(self, session: AsyncSession) -> None:
        """Rebuild the credential index from the store and swap it in."""
        tenants = {
            t.id: t for t in (await session.execute(select(Tenant))).scalars().all()
        }
        keys = (await session.execute(
            select(ApiKey).where(ApiKey.is_active.is_(True))  # type: ignore[union-attr]
        )).scalars().all()

        index: dict[str, DirectoryEntry] = {}
        for key in keys:
            tenant = tenants.get(key.tenant_id)
            if tenant is None:
                continue
            # Detach a copy so later session activity cannot mutate the snapshot
            index[key.key_hash] = DirectoryEntry(
                tenant=Tenant.model_validate(tenant),
                user_id=key.user_id,
            )
        self._personal_users = frozenset(
            (key.tenant_id, key.user_id) for key in keys if key.user_id is not None
        )
        self._index = MappingProxyType(index)
        logger.info("Tenant directory loaded: %d tenants, %d keys", len(tenants), len(index))

    def invalidate(self) -> None:
        self._index = None
        self._personal_users = frozenset()

    async def ensure_loaded(self, session: AsyncSession) -> None:
        if self._index is None:
            await self.reload(session)

    def lookup(self, raw_key: str) -> DirectoryEntry | None:
        index = self._index
        if not raw_key or index is None:
            return None
        return index.get(hash_api_key(raw_key))

    async def resolve(
        self,
        raw_key: str,
        session: AsyncSession,
        user_header: str | None = None,
    ) -> Resolution:
        """Map a credential to its tenant and attributed user.

        Raises ``InvalidCredential`` for unknown or revoked keys and
        ``TenantDeactivated`` when the key is valid but its tenant is not.
        """
        await self.ensure_loaded(session)
        entry = self.lookup(raw_key)
        if entry is None:
            raise InvalidCredential()
        if not entry.tenant.is_active:
            raise TenantDeactivated(entry.tenant.slug)

        if entry.user_id is not None:
            # Personal key: identity comes from the key, never from a header
            return Resolution(tenant=entry.tenant, user_id=entry.user_id, personal=True)

        user_id = normalize_user_header(user_header)
        if user_id is not None and (entry.tenant.id, user_id) in self._personal_users:
            # A header cannot claim the spend bucket of a personal-key holder
            logger.warning(
                "Shared key for tenant %s sent user header %r, which belongs to a "
                "personal-key holder; attributing to anonymous", entry.tenant.slug, user_id,
            )
            user_id = None
        return Resolution(tenant=entry.tenant, user_id=user_id, personal=False)


def normalize_user_header(value: str | None) -> str | None:
    """Free-text attribution label; blank means anonymous."""
    if value is None:
        return None
    value = value.strip()[:MAX_USER_HEADER_LENGTH]
    if not value or value == ANONYMOUS_USER:
        return None
    return value


tenant_directory = TenantDirectory()
