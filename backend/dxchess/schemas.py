"""
=============================================================================
DX - Schemas de la API
=============================================================================
Requests validados con pydantic y serializadores de respuesta de los modelos.
Montos siempre en kobo (enteros).
=============================================================================
"""

import math
from datetime import datetime
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .fees import FeeCalculator
from .ledger import MAX_AMOUNT
from .models import Appeal, Challenge, Match, Transaction, User, utcnow


# =============================================================================
# REQUESTS
# =============================================================================

class RegisterRequest(BaseModel):
    username: str = Field("", max_length=50)
    email: str = Field("", max_length=255)
    password: str = Field("", max_length=128)
    phone: str = Field("", max_length=30)
    full_name: str = Field("", max_length=200)


class LoginRequest(BaseModel):
    """username acepta también el email."""
    username: str
    password: str


class LichessLinkRequest(BaseModel):
    lichess_username: str = ""


class AmountRequest(BaseModel):
    amount: int = Field(..., le=MAX_AMOUNT, description="Monto en kobo")


class WithdrawRequest(AmountRequest):
    bank_details: Optional[str] = Field(None, max_length=500)


class SendChallengeRequest(BaseModel):
    opponent_username: str = ""
    stake: int = Field(..., le=MAX_AMOUNT, description="Stake por jugador en kobo")
    time_control: str = "5+3"
    rated: bool = False


class DeclineRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class SubmitResultRequest(BaseModel):
    lichess_game_id: str = Field(..., min_length=1, max_length=255)
    lichess_game_url: Optional[str] = Field(None, max_length=255)


class AppealRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    evidence: Optional[str] = Field(None, max_length=5000)


class ResolveAppealRequest(BaseModel):
    decision: str = Field(..., pattern="^(upheld|rejected)$")


class SettleRequest(BaseModel):
    """winner_id None = empate, ambos stakes se reembolsan."""
    winner_id: Optional[UUID] = None


class RejectWithdrawalRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# SERIALIZADORES
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _id(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value else None


async def username_map(session: AsyncSession, ids: Iterable[Optional[UUID]]) -> Dict[UUID, str]:
    wanted = {i for i in ids if i is not None}
    if not wanted:
        return {}
    rows = await session.execute(select(User.id, User.username).where(User.id.in_(wanted)))
    return {row.id: row.username for row in rows}


def challenge_dict(
    challenge: Challenge,
    names: Optional[Dict[UUID, str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    names = names or {}
    status = challenge.current_status(now)
    minutes_left = max(0, math.ceil((challenge.expires_at - now).total_seconds() / 60))
    return {
        "id": str(challenge.id),
        "code": challenge.code,
        "creator_id": str(challenge.creator_id),
        "creator_username": names.get(challenge.creator_id),
        "opponent_id": str(challenge.opponent_id),
        "opponent_username": names.get(challenge.opponent_id),
        "stake": challenge.stake,
        "time_control": challenge.time_control,
        "rated": challenge.is_rated,
        "status": status.value,
        "expires_at": _iso(challenge.expires_at),
        "minutes_until_expiry": minutes_left if status.value == "pending" else 0,
        "total_pot": challenge.total_pot,
        "platform_fee": challenge.platform_fee,
        "winner_payout": challenge.winner_payout,
        "decline_reason": challenge.decline_reason,
        "created_at": _iso(challenge.created_at),
    }


def match_dict(match: Match, names: Optional[Dict[UUID, str]] = None) -> Dict[str, Any]:
    names = names or {}
    fees = FeeCalculator.calculate(match.stake)
    return {
        "id": str(match.id),
        "challenge_id": str(match.challenge_id),
        "creator_id": str(match.creator_id),
        "creator_username": names.get(match.creator_id),
        "opponent_id": str(match.opponent_id),
        "opponent_username": names.get(match.opponent_id),
        "stake": match.stake,
        "total_pot": fees.total_pot,
        "time_control": match.time_control,
        "rated": match.is_rated,
        "status": match.status.value,
        "lichess_game_id": match.lichess_game_id,
        "lichess_game_url": match.lichess_game_url,
        "winner_id": _id(match.winner_id),
        "winner_username": names.get(match.winner_id) if match.winner_id else None,
        "platform_fee": match.platform_fee,
        "payout_amount": match.payout_amount,
        "appeal_deadline": _iso(match.appeal_deadline),
        "result_submitted_at": _iso(match.result_submitted_at),
        "disbursed_at": _iso(match.disbursed_at),
        "created_at": _iso(match.created_at),
    }


def appeal_dict(appeal: Appeal, names: Optional[Dict[UUID, str]] = None) -> Dict[str, Any]:
    names = names or {}
    return {
        "id": str(appeal.id),
        "match_id": str(appeal.match_id),
        "user_id": str(appeal.user_id),
        "username": names.get(appeal.user_id),
        "reason": appeal.reason,
        "evidence": appeal.evidence,
        "status": appeal.status.value,
        "resolved_at": _iso(appeal.resolved_at),
        "created_at": _iso(appeal.created_at),
    }


def transaction_dict(tx: Transaction, names: Optional[Dict[UUID, str]] = None) -> Dict[str, Any]:
    names = names or {}
    return {
        "id": str(tx.id),
        "user_id": _id(tx.user_id),
        "username": names.get(tx.user_id) if tx.user_id else None,
        "match_id": _id(tx.match_id),
        "type": tx.kind.value,
        "amount": tx.amount,
        "description": tx.description,
        "reference": tx.reference,
        "status": tx.status.value,
        "bank_details": tx.bank_details,
        "processed_at": _iso(tx.processed_at),
        "rejection_reason": tx.rejection_reason,
        "created_at": _iso(tx.created_at),
    }


def admin_user_dict(user: User) -> Dict[str, Any]:
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "phone": user.phone,
        "full_name": user.full_name,
        "lichess_username": user.lichess_username,
        "available_balance": user.available_balance,
        "locked_balance": user.locked_balance,
        "total_staked": user.total_staked,
        "total_winnings": user.total_winnings,
        "matches_won": user.matches_won,
        "matches_lost": user.matches_lost,
        "matches_draw": user.matches_draw,
        "is_admin": user.is_admin,
        "balance_ok": user.verify_balance_integrity(),
        "created_at": _iso(user.created_at),
    }
