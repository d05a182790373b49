"""Route-level dependencies shared across the protected routers."""

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from artifyme.auth.dependencies import CurrentUser, get_current_user
from artifyme.db.engine import get_db
from artifyme.db.models import User
from artifyme.services.user_service import UserService


async def current_account(
    identity: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> User:
    """The caller's local row, created with the signup bonus on first use."""
    return await UserService(db).get_or_create(identity)


class PageParams:
    def __init__(
        self,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        self.page = page
        self.limit = limit
