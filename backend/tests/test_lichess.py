"""Tests for the Lichess result verifier."""

from __future__ import annotations

import uuid

import httpx
import pytest

from dxchess.errors import ExternalVerificationError, ValidationError
from dxchess.lichess import (
    GameOutcome,
    GameRecord,
    LichessClient,
    extract_game_id,
)
from dxchess.models import User
from tests.helpers import LICHESS_BASE, lichess_game

GAME = "Xy12Zw34"


def _user(username, lichess):
    return User(id=uuid.uuid4(), username=username, lichess_username=lichess)


@pytest.fixture
def pair():
    return _user("alice", "AliceChess"), _user("bob", "bobby_b")


class TestExtractGameId:
    @pytest.mark.parametrize(
        "value",
        [
            GAME,
            f"https://lichess.org/{GAME}",
            f"https://lichess.org/{GAME}/white",
            f"https://lichess.org/{GAME}abcd",
            f"lichess.org/{GAME}",
            f"  {GAME}  ",
        ],
    )
    def test_valid(self, value):
        assert extract_game_id(value) == GAME

    @pytest.mark.parametrize("value", ["", "abc", "abc-defg", "https://lichess.org/", None])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            extract_game_id(value)


class TestGameRecord:
    def test_parses_players_lowercase(self):
        record = GameRecord.from_export(lichess_game(GAME, "AliceChess", "Bobby_B"))
        assert record.white == "alicechess"
        assert record.black == "bobby_b"
        assert record.outcome == GameOutcome.WHITE_WON

    @pytest.mark.parametrize("status", ["created", "started", "aborted", "noStart", "unknownFinish", ""])
    def test_unresolved_statuses(self, status):
        record = GameRecord.from_export(lichess_game(GAME, "a", "b", status=status, winner=None))
        assert record.outcome == GameOutcome.UNRESOLVED

    @pytest.mark.parametrize("status", ["mate", "resign", "outoftime", "timeout"])
    def test_decisive(self, status):
        record = GameRecord.from_export(lichess_game(GAME, "a", "b", status=status, winner="black"))
        assert record.outcome == GameOutcome.BLACK_WON

    @pytest.mark.parametrize("status", ["draw", "stalemate"])
    def test_draw(self, status):
        record = GameRecord.from_export(lichess_game(GAME, "a", "b", status=status, winner=None))
        assert record.outcome == GameOutcome.DRAW

    def test_anonymous_side(self):
        record = GameRecord.from_export(lichess_game(GAME, "a", None))
        assert record.black is None


class TestClient:
    async def test_request_shape(self, lichess_client, fake_lichess):
        fake_lichess.add(GAME, "a", "b")
        data = await lichess_client.fetch_game(GAME)

        assert data["id"] == GAME
        request = fake_lichess.requests[0]
        assert str(request.url).startswith(f"{LICHESS_BASE}/game/export/{GAME}")
        assert request.headers["Accept"] == "application/json"
        assert "Authorization" not in request.headers

    async def test_bearer_token(self, fake_lichess):
        fake_lichess.add(GAME, "a", "b")
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake_lichess.handler)) as http:
            client = LichessClient(client=http, base_url=LICHESS_BASE, token="lip_secret")
            await client.fetch_game(GAME)
        assert fake_lichess.requests[0].headers["Authorization"] == "Bearer lip_secret"

    async def test_not_found(self, lichess_client):
        with pytest.raises(ExternalVerificationError, match="not found"):
            await lichess_client.fetch_game(GAME)

    async def test_server_error(self, lichess_client, fake_lichess):
        fake_lichess.fail_with = lambda request: httpx.Response(500)
        with pytest.raises(ExternalVerificationError, match="HTTP 500"):
            await lichess_client.fetch_game(GAME)

    async def test_network_error(self, lichess_client, fake_lichess):
        def boom(request):
            raise httpx.ConnectError("unreachable", request=request)

        fake_lichess.fail_with = boom
        with pytest.raises(ExternalVerificationError, match="Could not reach"):
            await lichess_client.fetch_game(GAME)

    async def test_malformed_body(self, lichess_client, fake_lichess):
        fake_lichess.fail_with = lambda request: httpx.Response(200, text="<html>")
        with pytest.raises(ExternalVerificationError, match="unreadable"):
            await lichess_client.fetch_game(GAME)


class TestVerify:
    async def test_white_wins(self, verifier, fake_lichess, pair):
        alice, bob = pair
        fake_lichess.add(GAME, "AliceChess", "bobby_b", winner="white")

        result = await verifier.verify(GAME, alice, bob)
        assert result.winner_id == alice.id
        assert result.white_id == alice.id
        assert result.black_id == bob.id
        assert not result.is_draw

    async def test_mapping_ignores_case_and_creator_color(self, verifier, fake_lichess, pair):
        alice, bob = pair
        fake_lichess.add(GAME, "BOBBY_B", "alicechess", winner="black")

        result = await verifier.verify(GAME, alice, bob)
        assert result.winner_id == alice.id

    async def test_draw(self, verifier, fake_lichess, pair):
        alice, bob = pair
        fake_lichess.add(GAME, "AliceChess", "bobby_b", status="draw", winner=None)

        result = await verifier.verify(GAME, alice, bob)
        assert result.is_draw
        assert result.winner_id is None

    async def test_unfinished_game(self, verifier, fake_lichess, pair):
        fake_lichess.add(GAME, "AliceChess", "bobby_b", status="started", winner=None)
        with pytest.raises(ExternalVerificationError, match="not finished"):
            await verifier.verify(GAME, *pair)

    async def test_stranger_in_game(self, verifier, fake_lichess, pair):
        fake_lichess.add(GAME, "AliceChess", "someone_else", winner="white")
        with pytest.raises(ExternalVerificationError, match="do not match"):
            await verifier.verify(GAME, *pair)

    async def test_same_player_both_sides(self, verifier, fake_lichess, pair):
        fake_lichess.add(GAME, "AliceChess", "AliceChess", winner="white")
        with pytest.raises(ExternalVerificationError):
            await verifier.verify(GAME, *pair)

    async def test_unlinked_participant(self, verifier, fake_lichess):
        fake_lichess.add(GAME, "AliceChess", "bobby_b")
        with pytest.raises(ExternalVerificationError, match="link"):
            await verifier.verify(GAME, _user("alice", "AliceChess"), _user("bob", None))

    async def test_shared_handle(self, verifier, fake_lichess):
        fake_lichess.add(GAME, "AliceChess", "bobby_b")
        with pytest.raises(ExternalVerificationError, match="ambiguous"):
            await verifier.verify(GAME, _user("alice", "AliceChess"), _user("bob", "alicechess"))
