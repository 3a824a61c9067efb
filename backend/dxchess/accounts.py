"""
=============================================================================
DX - Cuentas de Usuario
=============================================================================
Registro, login, perfil y vinculación de la cuenta de Lichess.
=============================================================================
"""

import logging
import re
from typing import Any, Dict

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import AuthError, ValidationError
from .models import User
from .security import hash_password, verify_password

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,20}$")
# Lichess: 2-30 caracteres, letras, dígitos, guion y guion bajo
LICHESS_USERNAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{1,29}$")
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15
MIN_PASSWORD_LENGTH = 6


def _phone_digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


class AccountService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        phone: str,
        full_name: str,
    ) -> User:
        if not all([username, email, password, phone, full_name]):
            raise ValidationError("All fields are required")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not USERNAME_RE.match(username):
            raise ValidationError("Username must be 3-20 alphanumeric characters or underscores")
        digits = _phone_digits(phone)
        if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
            raise ValidationError("Invalid phone number format")
        if not 2 <= len(full_name.strip()) <= 100:
            raise ValidationError("Full name must be 2-100 characters")
        email = email.strip().lower()
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise ValidationError("Invalid email address")

        existing = (
            await self.session.execute(
                select(User).where(
                    or_(User.username == username, User.email == email, User.phone == digits)
                )
            )
        ).scalars().first()
        if existing is not None:
            if existing.username == username:
                raise ValidationError("Username already taken")
            if existing.email == email:
                raise ValidationError("Email already registered")
            raise ValidationError("Phone number already registered")

        user = User(
            username=username,
            email=email,
            phone=digits,
            full_name=full_name.strip(),
            password_hash=hash_password(password),
            is_admin=username.lower() in settings.admin_username_list,
        )
        self.session.add(user)
        await self.session.flush()

        logger.info("[AUTH] Usuario registrado: %s%s", username, " (admin)" if user.is_admin else "")
        return user

    async def authenticate(self, login: str, password: str) -> User:
        """Login por username o email; el mismo mensaje para ambos fallos."""
        if not login or not password:
            raise AuthError("Invalid credentials")
        user = (
            await self.session.execute(
                select(User).where(or_(User.username == login, User.email == login.strip().lower()))
            )
        ).scalars().first()
        if user is None or not verify_password(password, user.password_hash):
            raise AuthError("Invalid credentials")
        return user

    async def link_lichess(self, user: User, lichess_username: str) -> User:
        handle = (lichess_username or "").strip()
        if not handle:
            raise ValidationError("Lichess username required")
        if not LICHESS_USERNAME_RE.match(handle):
            raise ValidationError("Invalid Lichess username format")

        taken = (
            await self.session.execute(
                select(User.id).where(
                    func.lower(User.lichess_username) == handle.lower(),
                    User.id != user.id,
                )
            )
        ).first()
        if taken is not None:
            raise ValidationError("This Lichess account is already linked to another user")

        user.lichess_username = handle
        user.lichess_verified = True
        await self.session.flush()
        logger.info("[AUTH] %s vinculó Lichess: %s", user.username, handle)
        return user


def public_user(user: User) -> Dict[str, Any]:
    """Datos mínimos devueltos tras registro/login."""
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "phone": user.phone,
        "full_name": user.full_name,
        "lichess_username": user.lichess_username,
        "lichess_verified": user.lichess_verified,
        "wallet_balance": user.available_balance,
        "is_admin": user.is_admin,
    }


def profile(user: User) -> Dict[str, Any]:
    return {
        **public_user(user),
        "available_balance": user.available_balance,
        "locked_balance": user.locked_balance,
        "total_staked": user.total_staked,
        "total_winnings": user.total_winnings,
        "matches_won": user.matches_won,
        "matches_lost": user.matches_lost,
        "matches_draw": user.matches_draw,
        "total_matches": user.total_matches,
        "win_rate": user.win_rate,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
