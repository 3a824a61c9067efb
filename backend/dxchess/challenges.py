"""
=============================================================================
DX - Registro de Desafíos
=============================================================================
Propuestas de partida entre dos usuarios con stake y expiración.

FLUJO:
1. send:    el retador propone stake y control de tiempo (sin bloquear fondos)
2. accept:  el retado acepta; se bloquean AMBOS stakes y se abre la partida
3. decline / cancel: estados terminales, no hay fondos que liberar

La expiración se evalúa de forma perezosa comparando expires_at con la hora
actual; no existe barrido en segundo plano.
=============================================================================
"""

import logging
import re
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import (
    InsufficientFundsError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from .fees import FeeCalculator, format_naira
from .ledger import MAX_AMOUNT, Ledger, account_locks
from .models import Challenge, ChallengeStatus, Match, MatchStatus, User, utcnow

logger = logging.getLogger(__name__)

TIME_CONTROL_RE = re.compile(r"^\d{1,3}\+\d{1,3}$")
_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_challenge_code() -> str:
    """DX + timestamp en base36 + 4 caracteres aleatorios (fácil de compartir)."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"DX{_to_base36(int(time.time() * 1000))}{suffix}"


class ChallengeRegistry:
    """Operaciones del ciclo de vida de un desafío."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = Ledger(session)

    async def send(
        self,
        proposer: User,
        opponent_username: str,
        stake: int,
        time_control: str,
        rated: bool = False,
        now: Optional[datetime] = None,
    ) -> Challenge:
        now = now or utcnow()

        if not opponent_username:
            raise ValidationError("Opponent username required")
        if isinstance(stake, bool) or not isinstance(stake, int) or stake < settings.min_stake:
            raise ValidationError(f"Minimum stake is {format_naira(settings.min_stake)}")
        if stake > MAX_AMOUNT:
            raise ValidationError(f"Maximum stake is {format_naira(MAX_AMOUNT)}")
        if not TIME_CONTROL_RE.match(time_control or ""):
            raise ValidationError("Time control must look like '5+3' (minutes+increment)")

        opponent = (
            await self.session.execute(select(User).where(User.username == opponent_username))
        ).scalar_one_or_none()
        if opponent is None:
            raise NotFoundError("User not found")
        if opponent.id == proposer.id:
            raise ValidationError("Cannot challenge yourself")

        if proposer.available_balance < stake:
            raise InsufficientFundsError("Insufficient wallet balance")

        existing = (
            await self.session.execute(
                select(Challenge.id).where(
                    Challenge.creator_id == proposer.id,
                    Challenge.opponent_id == opponent.id,
                    Challenge.status == ChallengeStatus.PENDING,
                    Challenge.expires_at > now,
                )
            )
        ).first()
        if existing is not None:
            raise StateError("You already have a pending challenge to this user")

        preview = FeeCalculator.calculate(stake)
        challenge = Challenge(
            id=uuid4(),
            code=generate_challenge_code(),
            creator_id=proposer.id,
            opponent_id=opponent.id,
            stake=stake,
            time_control=time_control,
            is_rated=bool(rated),
            status=ChallengeStatus.PENDING,
            expires_at=now + timedelta(minutes=settings.challenge_expiry_minutes),
            total_pot=preview.total_pot,
            platform_fee=preview.platform_fee,
            winner_payout=preview.winner_payout,
            created_at=now,
        )
        self.session.add(challenge)
        await self.session.flush()

        logger.info(
            "[CHALLENGE] %s: %s -> %s, stake %s",
            challenge.code, proposer.username, opponent.username, format_naira(stake),
        )
        logger.debug("[CHALLENGE] %s\n%s", challenge.code, FeeCalculator.breakdown_text(stake))
        return challenge

    async def get_by_code(self, code: str, for_update: bool = False) -> Challenge:
        stmt = select(Challenge).where(Challenge.code == code)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        challenge = (await self.session.execute(stmt)).scalar_one_or_none()
        if challenge is None:
            raise NotFoundError("Challenge not found")
        return challenge

    @staticmethod
    def _require_pending(challenge: Challenge, now: datetime) -> None:
        status = challenge.current_status(now)
        if status == ChallengeStatus.EXPIRED:
            raise StateError("Challenge has expired")
        if status != ChallengeStatus.PENDING:
            raise StateError(f"Challenge is already {status.value}")

    async def accept(
        self,
        code: str,
        accepter: User,
        now: Optional[datetime] = None,
    ) -> Tuple[Challenge, Match]:
        """
        Acepta el desafío y abre la partida.

        PROCESO ATÓMICO:
        1. Bloquea ambas cuentas (orden estable) y las recarga FOR UPDATE
        2. Verifica ambos saldos ANTES de mutar cualquiera
        3. Crea la partida y bloquea ambos stakes
        4. Marca el desafío como aceptado
        Todo en la transacción del llamador: o se aplican ambos locks o ninguno.
        """
        now = now or utcnow()
        challenge = await self.get_by_code(code, for_update=True)

        if challenge.opponent_id != accepter.id:
            raise PermissionDeniedError("Only the challenged player can accept this challenge")
        self._require_pending(challenge, now)

        async with account_locks.hold(challenge.creator_id, challenge.opponent_id):
            opponent = await self.ledger.load_account(challenge.opponent_id)
            creator = await self.ledger.load_account(challenge.creator_id)

            if opponent.available_balance < challenge.stake:
                raise InsufficientFundsError("Insufficient balance to accept challenge")
            if creator.available_balance < challenge.stake:
                raise InsufficientFundsError("Challenger no longer has enough balance for this stake")

            preview = FeeCalculator.calculate(challenge.stake)
            match = Match(
                id=uuid4(),
                challenge_id=challenge.id,
                creator_id=challenge.creator_id,
                opponent_id=challenge.opponent_id,
                stake=challenge.stake,
                time_control=challenge.time_control,
                is_rated=challenge.is_rated,
                status=MatchStatus.IN_PROGRESS,
                platform_fee=preview.platform_fee,
                payout_amount=preview.winner_payout,
                created_at=now,
            )
            self.session.add(match)
            await self.session.flush()

            self.ledger.lock(opponent, challenge.stake, match.id, f"Stake locked vs {creator.username}")
            self.ledger.lock(creator, challenge.stake, match.id, f"Stake locked vs {opponent.username}")

            challenge.status = ChallengeStatus.ACCEPTED
            challenge.accepted_at = now
            await self.session.flush()

        logger.info("[CHALLENGE] %s aceptado, partida %s abierta", challenge.code, match.id)
        return challenge, match

    async def decline(
        self,
        code: str,
        user: User,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Challenge:
        now = now or utcnow()
        challenge = await self.get_by_code(code, for_update=True)
        if challenge.opponent_id != user.id:
            raise PermissionDeniedError("Only the challenged player can decline this challenge")
        self._require_pending(challenge, now)

        challenge.status = ChallengeStatus.DECLINED
        challenge.declined_at = now
        challenge.decline_reason = reason
        await self.session.flush()
        logger.info("[CHALLENGE] %s rechazado", challenge.code)
        return challenge

    async def cancel(self, code: str, user: User, now: Optional[datetime] = None) -> Challenge:
        now = now or utcnow()
        challenge = await self.get_by_code(code, for_update=True)
        if challenge.creator_id != user.id:
            raise PermissionDeniedError("Only the challenger can cancel this challenge")
        self._require_pending(challenge, now)

        challenge.status = ChallengeStatus.CANCELLED
        challenge.cancelled_at = now
        await self.session.flush()
        logger.info("[CHALLENGE] %s cancelado", challenge.code)
        return challenge

    # -------------------------------------------------------------------------
    # CONSULTAS
    # -------------------------------------------------------------------------

    async def pending_for(self, user: User, now: Optional[datetime] = None) -> List[Challenge]:
        """Desafíos recibidos todavía vigentes."""
        now = now or utcnow()
        stmt = (
            select(Challenge)
            .where(
                Challenge.opponent_id == user.id,
                Challenge.status == ChallengeStatus.PENDING,
                Challenge.expires_at > now,
            )
            .order_by(Challenge.created_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars())

    async def sent_by(self, user: User) -> List[Challenge]:
        stmt = select(Challenge).where(Challenge.creator_id == user.id).order_by(Challenge.created_at.desc())
        return list((await self.session.execute(stmt)).scalars())

    async def list_all(self, offset: int = 0, limit: int = 50) -> List[Challenge]:
        stmt = select(Challenge).order_by(Challenge.created_at.desc()).offset(offset).limit(limit)
        return list((await self.session.execute(stmt)).scalars())
