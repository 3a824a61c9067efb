"""
=============================================================================
DX - Autenticación (bcrypt + JWT)
=============================================================================
- Contraseñas: passlib con bcrypt
- Tokens: JWT HS256 con claims sub, username, is_admin, exp (7 días)
- Dependencias FastAPI: get_current_user / get_current_admin
=============================================================================
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db_session
from .errors import AuthError, PermissionDeniedError
from .models import User, utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# auto_error=False: la ausencia de token se reporta como AuthError (401)
bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def create_access_token(user: User, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "is_admin": bool(user.is_admin),
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """Decodifica y valida firma/expiración. Lanza AuthError si no es válido."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired") from None
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token") from None


def user_id_from_token(token: str) -> UUID:
    claims = decode_token(token)
    try:
        return UUID(str(claims.get("sub")))
    except ValueError:
        raise AuthError("Invalid token") from None


# =============================================================================
# DEPENDENCIAS FASTAPI
# =============================================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthError("Access token required")

    user_id = user_id_from_token(credentials.credentials)
    user = await db.get(User, user_id)
    if user is None:
        raise AuthError("User not found")
    return user


async def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        logger.warning("[ADMIN] Acceso denegado a %s", user.username)
        raise PermissionDeniedError("Admin access required")
    return user
