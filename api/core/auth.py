"""
Authentication dependencies for FastAPI routes
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from services.auth_service import auth_service
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from database.models import UserAccount, UserRole
from middleware.logging_middleware import bind_user_id

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> UserAccount:
    """
    Dependency to get the current authenticated account.
    Raises 401 if not authenticated.
    """
    if not credentials:
        raise _unauthorized("Not authenticated")

    payload = auth_service.decode_token(credentials.credentials)
    if not payload:
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")

    user = await auth_service.get_user_by_id(db, user_id)
    if not user:
        raise _unauthorized("User not found")

    if not user.is_active:
        raise _unauthorized("User is inactive")

    bind_user_id(user.id)
    return user


async def require_admin(
    current_user: UserAccount = Depends(get_current_user),
) -> UserAccount:
    """
    Dependency that requires the admin role.
    Raises 403 if user doesn't have sufficient permissions.
    """
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user
