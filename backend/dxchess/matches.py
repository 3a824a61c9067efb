"""
=============================================================================
DX - Máquina de Estados de Partidas y Liquidación
=============================================================================
Ciclo de vida: IN_PROGRESS -> {AWAITING_APPEAL, DRAW} -> APPEALED -> DISPUTED
               o -> DISBURSED

- submit_result: verifica en Lichess, fija ganador y plazo de apelación
- appeal:        un participante impugna dentro del plazo
- disburse:      liquida tras el plazo y sin apelaciones pendientes
- resolve_appeal / reopen / settle_disputed: acciones administrativas

La expiración del plazo se evalúa al liquidar; no hay tareas programadas.
=============================================================================
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import NotFoundError, PermissionDeniedError, StateError, ValidationError
from .fees import FeeCalculator, format_naira
from .ledger import Ledger, account_locks
from .lichess import ResultVerifier, extract_game_id, game_url
from .models import (
    Appeal,
    AppealStatus,
    Match,
    MatchStatus,
    TransactionType,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# TABLA DE TRANSICIONES (FSM)
# =============================================================================

class MatchEvent(Enum):
    RESULT_WIN = "result_win"
    RESULT_DRAW = "result_draw"
    APPEAL = "appeal"
    APPEAL_UPHELD = "appeal_upheld"
    REOPEN = "reopen"
    REOPEN_DRAW = "reopen_draw"
    DISBURSE = "disburse"
    ADMIN_SETTLE = "admin_settle"


MATCH_TRANSITIONS: Dict[Tuple[MatchStatus, MatchEvent], MatchStatus] = {
    (MatchStatus.IN_PROGRESS, MatchEvent.RESULT_WIN): MatchStatus.AWAITING_APPEAL,
    (MatchStatus.IN_PROGRESS, MatchEvent.RESULT_DRAW): MatchStatus.DRAW,
    (MatchStatus.AWAITING_APPEAL, MatchEvent.APPEAL): MatchStatus.APPEALED,
    (MatchStatus.DRAW, MatchEvent.APPEAL): MatchStatus.APPEALED,
    (MatchStatus.APPEALED, MatchEvent.APPEAL_UPHELD): MatchStatus.DISPUTED,
    (MatchStatus.APPEALED, MatchEvent.REOPEN): MatchStatus.AWAITING_APPEAL,
    (MatchStatus.APPEALED, MatchEvent.REOPEN_DRAW): MatchStatus.DRAW,
    (MatchStatus.AWAITING_APPEAL, MatchEvent.DISBURSE): MatchStatus.DISBURSED,
    (MatchStatus.DRAW, MatchEvent.DISBURSE): MatchStatus.DISBURSED,
    (MatchStatus.DISPUTED, MatchEvent.ADMIN_SETTLE): MatchStatus.DISBURSED,
}

ACTIVE_STATUSES = (MatchStatus.IN_PROGRESS,)
COMPLETED_STATUSES = (
    MatchStatus.AWAITING_APPEAL,
    MatchStatus.APPEALED,
    MatchStatus.DRAW,
    MatchStatus.DISPUTED,
    MatchStatus.DISBURSED,
)


def next_status(current: MatchStatus, event: MatchEvent) -> MatchStatus:
    """Rechaza cualquier par (estado, evento) que no esté en la tabla."""
    try:
        return MATCH_TRANSITIONS[(current, event)]
    except KeyError:
        raise StateError(f"Cannot {event.value.replace('_', ' ')} a match that is {current.value}") from None


def transition(match: Match, event: MatchEvent) -> MatchStatus:
    previous = match.status
    match.status = next_status(match.status, event)
    logger.info("[MATCH] %s: %s -> %s (%s)", match.id, previous.value, match.status.value, event.value)
    return match.status


# =============================================================================
# MÁQUINA DE ESTADOS
# =============================================================================

class MatchStateMachine:
    """Operaciones del ciclo de vida de una partida sobre una sesión."""

    def __init__(
        self,
        session: AsyncSession,
        verifier: Optional[ResultVerifier] = None,
        draw_appeal_window: Optional[bool] = None,
    ):
        self.session = session
        self.ledger = Ledger(session)
        self.verifier = verifier
        self.draw_appeal_window = (
            settings.draw_appeal_window if draw_appeal_window is None else draw_appeal_window
        )

    async def get(self, match_id: UUID, for_update: bool = False) -> Match:
        stmt = select(Match).where(Match.id == match_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        match = (await self.session.execute(stmt)).scalar_one_or_none()
        if match is None:
            raise NotFoundError("Match not found")
        return match

    async def get_appeal(self, appeal_id: UUID, for_update: bool = False) -> Appeal:
        stmt = select(Appeal).where(Appeal.id == appeal_id)
        if for_update:
            stmt = stmt.with_for_update()
        appeal = (await self.session.execute(stmt)).scalar_one_or_none()
        if appeal is None:
            raise NotFoundError("Appeal not found")
        return appeal

    async def appeals_for(self, match_id: UUID) -> List[Appeal]:
        stmt = select(Appeal).where(Appeal.match_id == match_id).order_by(Appeal.created_at)
        return list((await self.session.execute(stmt)).scalars())

    def _appeal_window_applies(self, match: Match) -> bool:
        return match.status != MatchStatus.DRAW or self.draw_appeal_window

    # -------------------------------------------------------------------------
    # RESULTADO
    # -------------------------------------------------------------------------

    async def submit_result(
        self,
        match_id: UUID,
        submitter: User,
        lichess_game: str,
        lichess_game_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Match:
        """
        Registra el resultado verificado en Lichess.

        Si el verificador no puede resolver la partida, se propaga
        ExternalVerificationError y la partida sigue IN_PROGRESS.
        """
        if self.verifier is None:
            raise RuntimeError("MatchStateMachine necesita un ResultVerifier para submit_result")
        now = now or utcnow()
        game_id = extract_game_id(lichess_game)

        match = await self.get(match_id, for_update=True)
        if not match.is_participant(submitter.id):
            raise PermissionDeniedError("Not authorized")
        if match.status != MatchStatus.IN_PROGRESS:
            raise StateError("Match is not in progress")

        reused = (
            await self.session.execute(
                select(Match.id).where(Match.lichess_game_id == game_id, Match.id != match.id)
            )
        ).first()
        if reused is not None:
            raise StateError("This Lichess game has already been submitted for another match")

        creator = await self.ledger.load_account(match.creator_id, for_update=False)
        opponent = await self.ledger.load_account(match.opponent_id, for_update=False)
        result = await self.verifier.verify(game_id, creator, opponent)

        event = MatchEvent.RESULT_DRAW if result.is_draw else MatchEvent.RESULT_WIN
        transition(match, event)
        match.lichess_game_id = game_id
        match.lichess_game_url = lichess_game_url or game_url(game_id)
        match.winner_id = result.winner_id
        match.appeal_deadline = now + timedelta(minutes=settings.appeal_period_minutes)
        match.result_submitted_by = submitter.id
        match.result_submitted_at = now
        await self.session.flush()

        logger.info(
            "[MATCH] %s: resultado %s (juego %s), plazo de apelación hasta %s",
            match.id, result.outcome.value, game_id, match.appeal_deadline.isoformat(),
        )
        return match

    # -------------------------------------------------------------------------
    # APELACIONES
    # -------------------------------------------------------------------------

    async def appeal(
        self,
        match_id: UUID,
        filer: User,
        reason: Optional[str] = None,
        evidence: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appeal:
        now = now or utcnow()
        match = await self.get(match_id, for_update=True)

        if not match.is_participant(filer.id):
            raise PermissionDeniedError("Not authorized")
        if match.status == MatchStatus.DRAW and not self.draw_appeal_window:
            raise StateError("Draws are refunded without an appeal period")
        if match.status not in (MatchStatus.AWAITING_APPEAL, MatchStatus.DRAW):
            raise StateError("Match is not awaiting appeal")
        if match.appeal_deadline is None or match.appeal_deadline <= now:
            raise StateError("Appeal deadline has passed")

        already = (
            await self.session.execute(
                select(Appeal.id).where(Appeal.match_id == match.id, Appeal.user_id == filer.id)
            )
        ).first()
        if already is not None:
            raise StateError("You have already submitted an appeal")

        appeal = Appeal(
            id=uuid4(),
            match_id=match.id,
            user_id=filer.id,
            reason=(reason or "").strip() or "Disputed result",
            evidence=evidence or None,
            status=AppealStatus.PENDING,
            created_at=now,
        )
        self.session.add(appeal)
        transition(match, MatchEvent.APPEAL)
        await self.session.flush()

        logger.info("[MATCH] Apelación %s registrada por %s", appeal.id, filer.username)
        return appeal

    async def resolve_appeal(
        self,
        appeal_id: UUID,
        admin: User,
        decision: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Appeal, Match]:
        """
        upheld:   apelación aceptada, la partida pasa a DISPUTED (corrección manual)
        rejected: apelación rechazada; la partida NO cambia. Reabrirla para
                  liquidar es una acción separada (reopen).
        """
        now = now or utcnow()
        if decision not in (AppealStatus.UPHELD.value, AppealStatus.REJECTED.value):
            raise ValidationError("Decision must be 'upheld' or 'rejected'")

        appeal = await self.get_appeal(appeal_id, for_update=True)
        if appeal.status != AppealStatus.PENDING:
            raise StateError(f"Appeal already {appeal.status.value}")
        match = await self.get(appeal.match_id, for_update=True)

        appeal.status = AppealStatus(decision)
        appeal.resolved_at = now
        appeal.resolved_by = admin.id

        if appeal.status == AppealStatus.UPHELD:
            transition(match, MatchEvent.APPEAL_UPHELD)
        await self.session.flush()

        logger.info("[ADMIN] Apelación %s resuelta: %s por %s", appeal.id, decision, admin.username)
        return appeal, match

    async def reopen(self, match_id: UUID, admin: User) -> Match:
        """
        Devuelve una partida APPEALED a su estado liquidable cuando todas sus
        apelaciones fueron rechazadas. No liquida: disburse sigue siendo aparte.
        """
        match = await self.get(match_id, for_update=True)
        appeals = await self.appeals_for(match.id)
        if any(a.status != AppealStatus.REJECTED for a in appeals):
            raise StateError("Match still has pending or upheld appeals")

        # Sin ganador el resultado verificado fue empate
        event = MatchEvent.REOPEN_DRAW if match.winner_id is None else MatchEvent.REOPEN
        transition(match, event)
        await self.session.flush()
        logger.info("[ADMIN] Partida %s reabierta por %s", match.id, admin.username)
        return match

    # -------------------------------------------------------------------------
    # LIQUIDACIÓN
    # -------------------------------------------------------------------------

    async def disburse(self, match_id: UUID, now: Optional[datetime] = None) -> Match:
        """
        Liquida la partida.

        DRAW:            ambos stakes vuelven a disponible, sin comisión
        AWAITING_APPEAL: el ganador recibe pot - fee, el perdedor pierde su
                         stake bloqueado, la comisión va a la plataforma

        Una segunda llamada falla con StateError sin tocar saldos.
        """
        now = now or utcnow()
        match = await self.get(match_id, for_update=True)

        if match.status not in (MatchStatus.AWAITING_APPEAL, MatchStatus.DRAW):
            raise StateError("Match is not ready for disbursement")

        if self._appeal_window_applies(match):
            if match.appeal_deadline is not None and match.appeal_deadline > now:
                raise StateError("Appeal deadline has not passed yet")
            pending = (
                await self.session.execute(
                    select(Appeal.id).where(
                        Appeal.match_id == match.id, Appeal.status == AppealStatus.PENDING
                    )
                )
            ).first()
            if pending is not None:
                raise StateError("There are pending appeals for this match")

        await self._settle(match, match.winner_id if match.status != MatchStatus.DRAW else None)
        transition(match, MatchEvent.DISBURSE)
        match.disbursed_at = now
        await self.session.flush()
        return match

    async def settle_disputed(
        self,
        match_id: UUID,
        admin: User,
        winner_id: Optional[UUID],
        now: Optional[datetime] = None,
    ) -> Match:
        """Corrección manual de una partida DISPUTED: el admin fija el resultado."""
        now = now or utcnow()
        match = await self.get(match_id, for_update=True)
        if match.status != MatchStatus.DISPUTED:
            raise StateError("Only disputed matches can be settled manually")
        if winner_id is not None and not match.is_participant(winner_id):
            raise ValidationError("Winner must be one of the match participants")

        match.winner_id = winner_id
        await self._settle(match, winner_id)
        transition(match, MatchEvent.ADMIN_SETTLE)
        match.disbursed_at = now
        await self.session.flush()
        logger.info("[ADMIN] Partida %s liquidada manualmente por %s", match.id, admin.username)
        return match

    async def _settle(self, match: Match, winner_id: Optional[UUID]) -> None:
        async with account_locks.hold(match.creator_id, match.opponent_id):
            creator = await self.ledger.load_account(match.creator_id)
            opponent = await self.ledger.load_account(match.opponent_id)

            if winner_id is None:
                for account in (creator, opponent):
                    self.ledger.unlock_to_credit(
                        account,
                        match.stake,
                        match.stake,
                        kind=TransactionType.REFUND,
                        match_id=match.id,
                        description="Draw - stake refunded",
                        reference=f"REF{match.id.hex[:12].upper()}",
                    )
                    account.matches_draw += 1
                match.platform_fee = 0
                match.payout_amount = 0
                logger.info("[MATCH] %s: empate, %s reembolsado a cada jugador", match.id, format_naira(match.stake))
            else:
                fees = FeeCalculator.calculate(match.stake)
                winner, loser = (creator, opponent) if winner_id == creator.id else (opponent, creator)

                self.ledger.unlock_to_credit(
                    winner,
                    match.stake,
                    fees.winner_payout,
                    kind=TransactionType.WINNING,
                    match_id=match.id,
                    description=f"Match winnings (minus {format_naira(fees.platform_fee)} fee)",
                    reference=f"WIN{match.id.hex[:12].upper()}",
                )
                self.ledger.unlock_to_credit(loser, match.stake, 0)
                self.ledger.record_platform_fee(fees.platform_fee, match.id)

                winner.total_winnings += fees.winner_payout
                winner.matches_won += 1
                loser.matches_lost += 1
                match.platform_fee = fees.platform_fee
                match.payout_amount = fees.winner_payout
                logger.info(
                    "[MATCH] %s: %s gana %s, comisión %s",
                    match.id, winner.username, format_naira(fees.winner_payout), format_naira(fees.platform_fee),
                )
            await self.session.flush()

    # -------------------------------------------------------------------------
    # CONSULTAS
    # -------------------------------------------------------------------------

    async def _for_user(self, user: User, statuses) -> List[Match]:
        stmt = (
            select(Match)
            .where(
                or_(Match.creator_id == user.id, Match.opponent_id == user.id),
                Match.status.in_(statuses),
            )
            .order_by(Match.updated_at.desc())
        )
        return list((await self.session.execute(stmt)).scalars())

    async def active_for(self, user: User) -> List[Match]:
        return await self._for_user(user, ACTIVE_STATUSES)

    async def completed_for(self, user: User) -> List[Match]:
        return await self._for_user(user, COMPLETED_STATUSES)

    async def list_all(
        self,
        status: Optional[MatchStatus] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> List[Match]:
        stmt = select(Match).order_by(Match.created_at.desc()).offset(offset).limit(limit)
        if status is not None:
            stmt = stmt.where(Match.status == status)
        return list((await self.session.execute(stmt)).scalars())
