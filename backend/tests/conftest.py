"""Shared fixtures: in-memory database per test, users, mocked Lichess."""

from __future__ import annotations

from typing import Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dxchess.database import init_models
from dxchess.ledger import account_locks
from dxchess.lichess import LichessClient, ResultVerifier
from dxchess.models import User
from tests.helpers import LICHESS_BASE, FakeLichess, password_hash


@pytest.fixture(autouse=True)
def _fresh_account_locks():
    # asyncio.Lock binds to the loop of its first waiter; each test has its own loop
    account_locks._locks.clear()
    account_locks._owners.clear()
    yield
    account_locks._locks.clear()
    account_locks._owners.clear()


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    async def _make(
        username: str,
        balance: int = 0,
        lichess: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        counter["n"] += 1
        user = User(
            username=username,
            email=f"{username.lower()}@example.com",
            phone=f"0803{counter['n']:07d}",
            full_name=f"{username} Player",
            password_hash=password_hash(),
            available_balance=balance,
            lichess_username=lichess,
            lichess_verified=lichess is not None,
            is_admin=is_admin,
        )
        session.add(user)
        await session.commit()
        return user

    return _make


@pytest.fixture
async def players(make_user):
    """Two funded players with linked Lichess handles."""
    alice = await make_user("alice", balance=500_000, lichess="AliceChess")
    bob = await make_user("bob", balance=500_000, lichess="bobby_b")
    return alice, bob


@pytest.fixture
def fake_lichess():
    return FakeLichess()


@pytest.fixture
async def lichess_client(fake_lichess):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_lichess.handler))
    client = LichessClient(client=http, base_url=LICHESS_BASE, token="")
    yield client
    await http.aclose()


@pytest.fixture
def verifier(lichess_client):
    return ResultVerifier(lichess_client)
