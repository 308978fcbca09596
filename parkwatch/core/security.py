import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from parkwatch.core.config import settings
from parkwatch.core.constants import UserRole
from parkwatch.core.database import aget_db
from parkwatch.models.user import User

logger = logging.getLogger(__name__)


def create_jwt_token(data: dict, expires_delta: timedelta = timedelta(hours=1)) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({
        "exp": now + expires_delta,
        "iat": now,
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_jwt_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info("JWT decode error: %s", e)
        raise


def token_from_request(request: Request) -> Optional[str]:
    """Session cookie first, then an ``Authorization: Bearer`` header."""
    token = request.cookies.get("auth_token")
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


async def user_from_token(token: Optional[str], db: AsyncSession) -> Optional[User]:
    if not token:
        return None
    try:
        payload = decode_jwt_token(token)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        return None
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


async def get_current_user(request: Request, db: AsyncSession = Depends(aget_db)) -> User:
    """Helper function to get current user from token"""
    token = token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await user_from_token(token, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


async def check_admin_access(request: Request, db: AsyncSession) -> User:
    user = await get_current_user(request, db)
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def check_staff_access(request: Request, db: AsyncSession) -> User:
    user = await get_current_user(request, db)
    if user.role not in (UserRole.ADMIN, UserRole.SECURITY):
        raise HTTPException(status_code=403, detail="Security or admin access required")
    return user


async def check_owner_access(request: Request, db: AsyncSession) -> User:
    user = await get_current_user(request, db)
    if user.role != UserRole.OWNER:
        raise HTTPException(status_code=403, detail="Only vehicle owners can do this")
    return user


async def authenticate_websocket(websocket: WebSocket, db: AsyncSession) -> Optional[User]:
    token = websocket.query_params.get("token") or websocket.cookies.get("auth_token")
    return await user_from_token(token, db)


def verify_cron_secret(request: Request) -> bool:
    if not settings.CRON_SECRET:
        return False
    return request.headers.get("authorization", "") == f"Bearer {settings.CRON_SECRET}"
