"""Tests for registration, login, Lichess linking and tokens."""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from dxchess.accounts import AccountService, profile
from dxchess.config import settings
from dxchess.errors import AuthError, ValidationError
from dxchess.security import (
    create_access_token,
    decode_token,
    hash_password,
    user_id_from_token,
    verify_password,
)
from tests.helpers import T0

VALID = {
    "username": "ada_l",
    "email": "Ada@Example.com",
    "password": "secret123",
    "phone": "+234 803 123 4567",
    "full_name": "Ada Lovelace",
}


class TestRegister:
    async def test_register(self, session):
        user = await AccountService(session).register(**VALID)
        await session.commit()

        assert user.username == "ada_l"
        assert user.email == "ada@example.com"
        assert user.available_balance == 0
        assert user.locked_balance == 0
        assert not user.is_admin
        assert user.password_hash != "secret123"
        assert verify_password("secret123", user.password_hash)

    @pytest.mark.parametrize(
        "field,value,message",
        [
            ("username", "", "All fields are required"),
            ("password", "12345", "at least 6"),
            ("username", "ab", "3-20"),
            ("username", "bad name!", "3-20"),
            ("phone", "12345", "phone"),
            ("phone", "1" * 16, "phone"),
            ("full_name", " A ", "Full name"),
            ("email", "not-an-email", "email"),
        ],
    )
    async def test_validation(self, session, field, value, message):
        data = {**VALID, field: value}
        with pytest.raises(ValidationError, match=message):
            await AccountService(session).register(**data)

    @pytest.mark.parametrize(
        "field,value,message",
        [
            ("username", "ada_l", "Username already taken"),
            ("email", "ada@example.com", "Email already registered"),
            ("phone", "+234 803 123 4567", "Phone number already registered"),
        ],
    )
    async def test_duplicates(self, session, field, value, message):
        await AccountService(session).register(**VALID)
        await session.commit()

        other = {
            "username": "grace_h",
            "email": "grace@example.com",
            "password": "secret123",
            "phone": "08099999999",
            "full_name": "Grace Hopper",
            field: value,
        }
        with pytest.raises(ValidationError, match=message):
            await AccountService(session).register(**other)

    async def test_phone_formatting_does_not_bypass_uniqueness(self, session):
        user = await AccountService(session).register(**{**VALID, "phone": "0803 123 4567"})
        await session.commit()
        assert user.phone == "08031234567"

        other = {
            "username": "grace_h",
            "email": "grace@example.com",
            "password": "secret123",
            "phone": "08031234567",
            "full_name": "Grace Hopper",
        }
        with pytest.raises(ValidationError, match="Phone number already registered"):
            await AccountService(session).register(**other)

    async def test_admin_bootstrap(self, session, monkeypatch):
        monkeypatch.setattr(settings, "admin_usernames", "root, Ada_L")
        user = await AccountService(session).register(**VALID)
        assert user.is_admin


class TestLogin:
    async def test_by_username_or_email(self, session):
        await AccountService(session).register(**VALID)
        await session.commit()
        service = AccountService(session)

        assert (await service.authenticate("ada_l", "secret123")).username == "ada_l"
        assert (await service.authenticate("ada@example.com", "secret123")).username == "ada_l"

    async def test_wrong_password(self, session):
        await AccountService(session).register(**VALID)
        await session.commit()
        with pytest.raises(AuthError, match="Invalid credentials"):
            await AccountService(session).authenticate("ada_l", "nope-nope")

    async def test_unknown_user(self, session):
        with pytest.raises(AuthError, match="Invalid credentials"):
            await AccountService(session).authenticate("ghost", "secret123")


class TestLichessLink:
    async def test_link(self, session, make_user):
        user = await make_user("alice")
        await AccountService(session).link_lichess(user, "Alice-Chess")
        assert user.lichess_username == "Alice-Chess"
        assert user.lichess_verified

    @pytest.mark.parametrize("handle", ["", "a", "has space", "x" * 31, "_leading"])
    async def test_invalid_handle(self, session, make_user, handle):
        user = await make_user("alice")
        with pytest.raises(ValidationError):
            await AccountService(session).link_lichess(user, handle)

    async def test_handle_unique_ignoring_case(self, session, make_user):
        await make_user("alice", lichess="MagnusFan")
        bob = await make_user("bob")
        with pytest.raises(ValidationError, match="already linked"):
            await AccountService(session).link_lichess(bob, "magnusfan")

    async def test_relink_own_handle(self, session, make_user):
        alice = await make_user("alice", lichess="MagnusFan")
        await AccountService(session).link_lichess(alice, "magnusfan")
        assert alice.lichess_username == "magnusfan"


class TestProfile:
    async def test_win_rate_one_decimal(self, session, make_user):
        user = await make_user("alice")
        user.matches_won, user.matches_lost, user.matches_draw = 2, 1, 0
        data = profile(user)
        assert data["total_matches"] == 3
        assert data["win_rate"] == 66.7
        assert "password_hash" not in data

    async def test_no_matches(self, session, make_user):
        assert profile(await make_user("alice"))["win_rate"] == 0.0


class TestTokens:
    async def test_round_trip(self, session, make_user):
        user = await make_user("alice", is_admin=True)
        claims = decode_token(create_access_token(user))
        assert claims["sub"] == str(user.id)
        assert claims["username"] == "alice"
        assert claims["is_admin"] is True
        assert user_id_from_token(create_access_token(user)) == user.id

    async def test_expired(self, session, make_user):
        user = await make_user("alice")
        token = create_access_token(user, now=T0 - timedelta(days=30))
        with pytest.raises(AuthError, match="expired"):
            decode_token(token)

    def test_tampered(self):
        token = jwt.encode({"sub": "x"}, "some-other-secret", algorithm="HS256")
        with pytest.raises(AuthError, match="Invalid"):
            decode_token(token)

    def test_password_hashing(self):
        hashed = hash_password("hunter22")
        assert verify_password("hunter22", hashed)
        assert not verify_password("hunter23", hashed)
        assert not verify_password("hunter22", "not-a-bcrypt-hash")
