"""
=============================================================================
DX - Endpoints de Administración
=============================================================================
API REST para el panel de administración (solo is_admin):
- Estadísticas de la plataforma
- Consultas paginadas de usuarios, partidas, desafíos y transacciones
- Resolución de apelaciones y liquidación manual de disputas
- Aprobación / rechazo de retiros
=============================================================================
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .challenges import ChallengeRegistry
from .database import get_db_session
from .ledger import Ledger, account_locks
from .matches import MatchStateMachine
from .models import (
    Appeal,
    AppealStatus,
    Challenge,
    ChallengeStatus,
    Match,
    MatchStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    utcnow,
)
from .realtime import notify_user
from .schemas import (
    RejectWithdrawalRequest,
    ResolveAppealRequest,
    SettleRequest,
    admin_user_dict,
    appeal_dict,
    challenge_dict,
    match_dict,
    transaction_dict,
    username_map,
)
from .security import get_current_admin


router = APIRouter(prefix="/admin", tags=["Admin"])


def _offset(page: int, limit: int) -> int:
    return (page - 1) * limit


async def _count(db: AsyncSession, stmt) -> int:
    return int((await db.execute(stmt)).scalar_one())


# =============================================================================
# ENDPOINT: ESTADÍSTICAS DEL DASHBOARD
# =============================================================================

@router.get("/stats")
async def get_admin_stats(
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Totales de la plataforma: usuarios, partidas, fondos y comisiones."""
    now = utcnow()
    total_users = await _count(db, select(func.count(User.id)))
    total_matches = await _count(db, select(func.count(Match.id)))
    active_matches = await _count(
        db, select(func.count(Match.id)).where(Match.status == MatchStatus.IN_PROGRESS)
    )
    pending_challenges = await _count(
        db,
        select(func.count(Challenge.id)).where(
            Challenge.status == ChallengeStatus.PENDING, Challenge.expires_at > now
        ),
    )
    pending_appeals = await _count(
        db, select(func.count(Appeal.id)).where(Appeal.status == AppealStatus.PENDING)
    )
    pending_withdrawals = await _count(
        db,
        select(func.count(Transaction.id)).where(
            Transaction.kind == TransactionType.WITHDRAWAL,
            Transaction.status == TransactionStatus.PENDING,
        ),
    )
    balances = (
        await db.execute(
            select(
                func.coalesce(func.sum(User.available_balance), 0),
                func.coalesce(func.sum(User.locked_balance), 0),
            )
        )
    ).one()

    return {
        "total_users": total_users,
        "total_matches": total_matches,
        "active_matches": active_matches,
        "pending_challenges": pending_challenges,
        "pending_appeals": pending_appeals,
        "pending_withdrawals": pending_withdrawals,
        "total_available_balance": int(balances[0]),
        "total_locked_balance": int(balances[1]),
        "platform_revenue": await Ledger(db).platform_revenue(),
    }


# =============================================================================
# ENDPOINTS: CONSULTAS
# =============================================================================

@router.get("/users")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    total = await _count(db, select(func.count(User.id)))
    users = (
        await db.execute(
            select(User).order_by(User.created_at.desc()).offset(_offset(page, limit)).limit(limit)
        )
    ).scalars()
    return {"users": [admin_user_dict(u) for u in users], "total": total, "page": page, "limit": limit}


@router.get("/matches")
async def list_matches(
    status: Optional[MatchStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    matches = await MatchStateMachine(db).list_all(status, offset=_offset(page, limit), limit=limit)
    names = await username_map(db, [pid for m in matches for pid in m.participant_ids])
    return {"matches": [match_dict(m, names) for m in matches], "page": page, "limit": limit}


@router.get("/challenges")
async def list_challenges(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    challenges = await ChallengeRegistry(db).list_all(offset=_offset(page, limit), limit=limit)
    names = await username_map(db, [uid for c in challenges for uid in (c.creator_id, c.opponent_id)])
    now = utcnow()
    return {
        "challenges": [challenge_dict(c, names, now) for c in challenges],
        "page": page,
        "limit": limit,
    }


@router.get("/appeals")
async def list_appeals(
    status: Optional[AppealStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Appeal).order_by(Appeal.created_at.desc())
    if status is not None:
        stmt = stmt.where(Appeal.status == status)
    appeals = list((await db.execute(stmt.offset(_offset(page, limit)).limit(limit))).scalars())
    names = await username_map(db, [a.user_id for a in appeals])
    return {"appeals": [appeal_dict(a, names) for a in appeals], "page": page, "limit": limit}


@router.get("/withdrawals")
async def list_withdrawals(
    status: Optional[TransactionStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(Transaction)
        .where(Transaction.kind == TransactionType.WITHDRAWAL)
        .order_by(Transaction.created_at.desc())
    )
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    txs = list((await db.execute(stmt.offset(_offset(page, limit)).limit(limit))).scalars())
    names = await username_map(db, [tx.user_id for tx in txs])
    return {"withdrawals": [transaction_dict(tx, names) for tx in txs], "page": page, "limit": limit}


@router.get("/transactions")
async def list_transactions(
    kind: Optional[TransactionType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Transaction).order_by(Transaction.created_at.desc())
    if kind is not None:
        stmt = stmt.where(Transaction.kind == kind)
    txs = list((await db.execute(stmt.offset(_offset(page, limit)).limit(limit))).scalars())
    names = await username_map(db, [tx.user_id for tx in txs])
    return {"transactions": [transaction_dict(tx, names) for tx in txs], "page": page, "limit": limit}


# =============================================================================
# ENDPOINTS: APELACIONES Y DISPUTAS
# =============================================================================

@router.post("/appeals/{appeal_id}/resolve")
async def resolve_appeal(
    appeal_id: UUID,
    body: ResolveAppealRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    appeal, match = await MatchStateMachine(db).resolve_appeal(appeal_id, admin, body.decision)
    await db.commit()
    return {
        "message": f"Appeal {appeal.status.value}",
        "appeal": appeal_dict(appeal),
        "match_status": match.status.value,
    }


@router.post("/matches/{match_id}/reopen")
async def reopen_match(
    match_id: UUID,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    match = await MatchStateMachine(db).reopen(match_id, admin)
    await db.commit()
    return {"message": "Match reopened for disbursement", "match": match_dict(match)}


@router.post("/matches/{match_id}/settle")
async def settle_match(
    match_id: UUID,
    body: SettleRequest,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    machine = MatchStateMachine(db)
    disputed = await machine.get(match_id)
    async with account_locks.hold(*disputed.participant_ids):
        match = await machine.settle_disputed(match_id, admin, body.winner_id)
        await db.commit()

    names = await username_map(db, match.participant_ids)
    payload = match_dict(match, names)
    for participant in match.participant_ids:
        await notify_user(participant, "match_disbursed", payload)
    return {"message": "Disputed match settled", "match": payload}


# =============================================================================
# ENDPOINTS: RETIROS
# =============================================================================

@router.post("/withdrawals/{transaction_id}/approve")
async def approve_withdrawal(
    transaction_id: UUID,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    ledger = Ledger(db)
    withdrawal = await ledger.get_withdrawal(transaction_id)
    async with account_locks.hold(withdrawal.user_id):
        tx = await ledger.approve_withdrawal(transaction_id, admin.id)
        await db.commit()
    await notify_user(tx.user_id, "withdrawal_processed", transaction_dict(tx))
    return {"message": "Withdrawal approved", "transaction": transaction_dict(tx)}


@router.post("/withdrawals/{transaction_id}/reject")
async def reject_withdrawal(
    transaction_id: UUID,
    body: Optional[RejectWithdrawalRequest] = None,
    admin: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db_session),
):
    reason = body.reason if body else None
    ledger = Ledger(db)
    withdrawal = await ledger.get_withdrawal(transaction_id)
    async with account_locks.hold(withdrawal.user_id):
        tx = await ledger.reject_withdrawal(transaction_id, admin.id, reason)
        await db.commit()
    await notify_user(tx.user_id, "withdrawal_processed", transaction_dict(tx))
    return {"message": "Withdrawal rejected, funds returned", "transaction": transaction_dict(tx)}
