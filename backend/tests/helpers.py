"""Shared test helpers: import in test files with `from tests.helpers import ...`."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

import httpx

from dxchess.challenges import ChallengeRegistry
from dxchess.models import Challenge, Match, User
from dxchess.security import hash_password

LICHESS_BASE = "https://lichess.test/api"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
STAKE = 100_000  # ₦1,000

_password_hash: Optional[str] = None


def password_hash() -> str:
    """bcrypt is slow; hash the shared test password once."""
    global _password_hash
    if _password_hash is None:
        _password_hash = hash_password("secret123")
    return _password_hash


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


async def open_match(
    session,
    creator: User,
    opponent: User,
    stake: int = STAKE,
    now: datetime = T0,
) -> Tuple[Challenge, Match]:
    """Send and accept a challenge, committing like the API does."""
    registry = ChallengeRegistry(session)
    challenge = await registry.send(creator, opponent.username, stake, "5+3", now=now)
    await session.commit()
    challenge, match = await registry.accept(challenge.code, opponent, now=now + minutes(1))
    await session.commit()
    return challenge, match


# =============================================================================
# Lichess mock
# =============================================================================

def lichess_game(
    game_id: str,
    white: Optional[str],
    black: Optional[str],
    status: str = "mate",
    winner: Optional[str] = "white",
) -> Dict:
    """Minimal /game/export JSON. A None side is an anonymous (AI) player."""

    def side(name):
        return {"user": {"id": name.lower(), "name": name}, "rating": 1500} if name else {"aiLevel": 3}

    data = {
        "id": game_id,
        "rated": False,
        "variant": "standard",
        "status": status,
        "players": {"white": side(white), "black": side(black)},
    }
    if winner is not None:
        data["winner"] = winner
    return data


class FakeLichess:
    """Exported games served through httpx.MockTransport."""

    def __init__(self):
        self.games: Dict[str, Dict] = {}
        self.requests = []
        self.fail_with: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def add(self, game_id: str, *args, **kwargs) -> Dict:
        self.games[game_id] = lichess_game(game_id, *args, **kwargs)
        return self.games[game_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with(request)
        game_id = request.url.path.rstrip("/").split("/")[-1]
        game = self.games.get(game_id)
        if game is None:
            return httpx.Response(404, text="Not found")
        return httpx.Response(
            200,
            content=json.dumps(game),
            headers={"Content-Type": "application/json"},
        )
