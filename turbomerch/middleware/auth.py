"""
Authentication dependencies
Resolves the calling user from a bearer JWT issued by the identity provider
"""
import uuid
import logging
from typing import Any, Dict

import jwt
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from turbomerch.config.settings import get_settings
from turbomerch.models.user import User
from turbomerch.utils.database import get_db

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token, raising 401 on any failure"""
    settings = get_settings()
    if not settings.auth_jwt_secret:
        logger.error("AUTH_JWT_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Authentication not configured")

    try:
        return jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get the currently authenticated user (by external id, then by internal id)"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = verify_token(credentials.credentials)
    subject = str(payload["sub"])

    result = await db.execute(select(User).where(User.clerk_id == subject))
    user = result.scalar_one_or_none()

    if not user:
        try:
            user = await db.get(User, uuid.UUID(subject))
        except ValueError:
            user = None

    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require an admin account, raise 403 otherwise"""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
