"""
=============================================================================
DX - Verificador de Resultados (Lichess)
=============================================================================
Adaptador del servicio externo. Traduce el registro inmutable de una
partida de Lichess en un resultado: ganador (participante) o empate.

Reglas:
- Lichess inaccesible, partida inexistente o respuesta inválida: no verificable
- Partida sin terminar (created, started, aborted...): no verificable
- Ambos lados deben corresponder (sin distinguir mayúsculas) a los dos
  participantes. Nunca se adivina un ganador.
=============================================================================
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlparse
from uuid import UUID

import httpx

from .config import settings
from .errors import ExternalVerificationError, ValidationError
from .models import User

logger = logging.getLogger(__name__)

GAME_ID_RE = re.compile(r"^[A-Za-z0-9]{8}$")

# Estados de Lichess que no representan una partida terminada
UNRESOLVED_STATUSES = {"created", "started", "aborted", "noStart", "unknownFinish"}


class GameOutcome(Enum):
    WHITE_WON = "white"
    BLACK_WON = "black"
    DRAW = "draw"
    UNRESOLVED = "unresolved"


@dataclass
class GameRecord:
    """Metadatos de una partida exportada desde Lichess."""
    game_id: str
    status: str
    outcome: GameOutcome
    white: Optional[str]  # handle en minúsculas (None = anónimo)
    black: Optional[str]

    @classmethod
    def from_export(cls, data: Dict[str, Any]) -> "GameRecord":
        status = str(data.get("status") or "")
        winner = data.get("winner")

        if not status or status in UNRESOLVED_STATUSES:
            outcome = GameOutcome.UNRESOLVED
        elif winner == "white":
            outcome = GameOutcome.WHITE_WON
        elif winner == "black":
            outcome = GameOutcome.BLACK_WON
        elif winner is None:
            outcome = GameOutcome.DRAW
        else:
            outcome = GameOutcome.UNRESOLVED

        players = data.get("players") or {}
        return cls(
            game_id=str(data.get("id") or ""),
            status=status,
            outcome=outcome,
            white=_player_handle(players.get("white")),
            black=_player_handle(players.get("black")),
        )


@dataclass
class VerifiedResult:
    game_id: str
    outcome: GameOutcome
    winner_id: Optional[UUID]
    white_id: UUID
    black_id: UUID

    @property
    def is_draw(self) -> bool:
        return self.outcome == GameOutcome.DRAW


def _player_handle(player: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(player, dict):
        return None
    user = player.get("user") or {}
    handle = user.get("id") or user.get("name")
    return str(handle).lower() if handle else None


def extract_game_id(value: str) -> str:
    """
    Acepta un id (abcdEFGH) o una URL de Lichess
    (https://lichess.org/abcdEFGH, .../abcdEFGHijkl, .../abcdEFGH/black).
    """
    raw = (value or "").strip()
    if "/" in raw:
        path = urlparse(raw if "://" in raw else f"https://{raw}").path
        segments = [s for s in path.split("/") if s]
        raw = segments[0] if segments else ""
    candidate = raw[:8]
    if not GAME_ID_RE.match(candidate):
        raise ValidationError("Invalid Lichess game ID")
    return candidate


def game_url(game_id: str) -> str:
    return f"{settings.lichess_site_url.rstrip('/')}/{game_id}"


# =============================================================================
# CLIENTE HTTP
# =============================================================================

class LichessClient:
    """Cliente mínimo de la API pública de Lichess con timeout estricto."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._owns_client = client is None
        self.timeout = timeout if timeout is not None else settings.lichess_timeout_seconds
        self.client = client or httpx.AsyncClient(timeout=self.timeout)
        self.base_url = (base_url or settings.lichess_api_base).rstrip("/")
        self.token = token if token is not None else settings.lichess_api_token

    async def fetch_game(self, game_id: str) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = await self.client.get(
                f"{self.base_url}/game/export/{game_id}",
                params={"moves": "false", "clocks": "false", "evals": "false"},
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("[LICHESS] Error de red para %s: %s", game_id, e)
            raise ExternalVerificationError("Could not reach Lichess to verify the game") from e

        if resp.status_code == 404:
            raise ExternalVerificationError("Game not found on Lichess")
        if resp.status_code != 200:
            logger.warning("[LICHESS] HTTP %s para %s", resp.status_code, game_id)
            raise ExternalVerificationError(f"Lichess returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise ExternalVerificationError("Lichess returned an unreadable response") from e
        if not isinstance(data, dict):
            raise ExternalVerificationError("Lichess returned an unreadable response")
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


# =============================================================================
# VERIFICADOR
# =============================================================================

class ResultVerifier:
    """Resuelve ganador/empate de una partida Lichess para dos participantes."""

    def __init__(self, client: LichessClient):
        self.client = client

    async def verify(self, game_id: str, creator: User, opponent: User) -> VerifiedResult:
        data = await self.client.fetch_game(game_id)
        record = GameRecord.from_export(data)

        if record.outcome == GameOutcome.UNRESOLVED:
            raise ExternalVerificationError(
                f"Game {game_id} is not finished on Lichess (status: {record.status or 'unknown'})"
            )

        handles = self._participant_handles(creator, opponent)
        white_id = handles.get(record.white) if record.white else None
        black_id = handles.get(record.black) if record.black else None
        if white_id is None or black_id is None or white_id == black_id:
            logger.info(
                "[LICHESS] %s: jugadores %s/%s no corresponden a la partida",
                game_id, record.white, record.black,
            )
            raise ExternalVerificationError("Lichess game players do not match this match's participants")

        winner_id = None
        if record.outcome == GameOutcome.WHITE_WON:
            winner_id = white_id
        elif record.outcome == GameOutcome.BLACK_WON:
            winner_id = black_id

        return VerifiedResult(
            game_id=game_id,
            outcome=record.outcome,
            winner_id=winner_id,
            white_id=white_id,
            black_id=black_id,
        )

    @staticmethod
    def _participant_handles(creator: User, opponent: User) -> Dict[str, UUID]:
        creator_handle = (creator.lichess_username or "").lower()
        opponent_handle = (opponent.lichess_username or "").lower()
        if not creator_handle or not opponent_handle:
            raise ExternalVerificationError("Both players must link their Lichess accounts")
        if creator_handle == opponent_handle:
            raise ExternalVerificationError("Players share the same Lichess handle; result is ambiguous")
        return {creator_handle: creator.id, opponent_handle: opponent.id}
