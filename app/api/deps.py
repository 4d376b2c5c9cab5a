"""FastAPI dependencies for sessions, the upstream client, and admin authentication."""

from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from app.core.database import get_session, get_session_factory
from app.core.security import admin_token_matches
from app.services.forwarding import get_upstream_client

bearer_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Gate the management API behind the configured admin token."""
    if credentials is None or not admin_token_matches(credentials.credentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Typed shorthand for use in route signatures
Session = Annotated[AsyncSession, Depends(get_session)]
SessionFactory = Annotated[sessionmaker, Depends(get_session_factory)]
UpstreamClient = Annotated[httpx.AsyncClient, Depends(get_upstream_client)]
AdminAuth = Depends(require_admin)
