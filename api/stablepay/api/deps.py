from typing import AsyncIterator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from stablepay.container import ServiceContainer, get_container
from stablepay.core.config import settings
from stablepay.db.session import get_session


async def get_db() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


def get_services() -> ServiceContainer:
    return get_container()


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Guard admin routes with the shared ``X-Admin-Token``.

    Without a configured token the routes stay open only in development and test.
    """
    expected = settings.admin_api_token
    if not expected:
        if settings.environment.lower() in ("development", "test"):
            return
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token not configured")
    if x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
