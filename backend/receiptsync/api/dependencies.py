"""Common dependencies for FastAPI routes.

Authentication happens in the gateway in front of this service; it
forwards the caller's organisation in the ``X-Org-Id`` header.  Every
org-scoped route resolves that header to an ``Organisation`` through
:func:`get_org`.
"""

from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.core.database import get_db
from receiptsync.core.errors import NotFoundError
from receiptsync.models.tables import Organisation


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


async def get_org(
    x_org_id: str = Header(..., alias="X-Org-Id"),
    db: AsyncSession = Depends(get_db_session),
) -> Organisation:
    org = await db.get(Organisation, x_org_id)
    if org is None:
        raise NotFoundError("Organization not found")
    return org
