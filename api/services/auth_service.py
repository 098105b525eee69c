"""
Authentication service: JWT verification and account lookup
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from database.models import UserAccount

logger = logging.getLogger(__name__)


class AuthService:
    """Service for authentication operations"""

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token (used by operator tooling and tests)"""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)

    def decode_token(self, token: str) -> Optional[dict]:
        """Decode and validate a JWT token"""
        try:
            return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        except JWTError as e:
            logger.warning(f"JWT decode error: {e}")
            return None

    async def get_user_by_id(self, db: AsyncSession, user_id: str) -> Optional[UserAccount]:
        """Get account by ID"""
        result = await db.execute(select(UserAccount).where(UserAccount.id == user_id))
        return result.scalar_one_or_none()


auth_service = AuthService()
