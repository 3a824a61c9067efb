"""
=============================================================================
DX - API de Usuarios (auth, wallet, desafíos, partidas)
=============================================================================
Cada endpoint: servicio de dominio -> commit único -> notificación.
Cualquier excepción antes del commit revierte la petición completa.
=============================================================================
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .accounts import AccountService, profile, public_user
from .challenges import ChallengeRegistry
from .database import get_db_session
from .errors import PermissionDeniedError
from .fees import FeeCalculator
from .ledger import Ledger, account_locks
from .lichess import LichessClient, ResultVerifier
from .matches import MatchStateMachine
from .models import User
from .realtime import notify_user
from .schemas import (
    AmountRequest,
    AppealRequest,
    DeclineRequest,
    LichessLinkRequest,
    LoginRequest,
    RegisterRequest,
    SendChallengeRequest,
    SubmitResultRequest,
    WithdrawRequest,
    appeal_dict,
    challenge_dict,
    match_dict,
    transaction_dict,
    username_map,
)
from .security import create_access_token, get_current_user


auth_router = APIRouter(prefix="/auth", tags=["Auth"])
user_router = APIRouter(prefix="/user", tags=["User"])
wallet_router = APIRouter(prefix="/wallet", tags=["Wallet"])
challenge_router = APIRouter(prefix="/challenges", tags=["Challenges"])
match_router = APIRouter(prefix="/matches", tags=["Matches"])


def get_result_verifier(request: Request) -> ResultVerifier:
    """Usa el cliente Lichess compartido creado en el lifespan."""
    client = getattr(request.app.state, "lichess", None)
    if client is None:
        client = LichessClient()
        request.app.state.lichess = client
    return ResultVerifier(client)


# =============================================================================
# AUTH
# =============================================================================

@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db_session)):
    user = await AccountService(db).register(
        username=body.username,
        email=body.email,
        password=body.password,
        phone=body.phone,
        full_name=body.full_name,
    )
    await db.commit()
    return {
        "message": "Registration successful",
        "token": create_access_token(user),
        "user": public_user(user),
    }


@auth_router.post("/login")
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db_session)):
    user = await AccountService(db).authenticate(body.username, body.password)
    return {
        "message": "Login successful",
        "token": create_access_token(user),
        "user": public_user(user),
    }


# =============================================================================
# USUARIO
# =============================================================================

@user_router.get("/profile")
async def get_profile(user: User = Depends(get_current_user)):
    return profile(user)


@user_router.post("/lichess-link")
async def link_lichess(
    body: LichessLinkRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await AccountService(db).link_lichess(user, body.lichess_username)
    await db.commit()
    return {"message": "Lichess account linked", "lichess_username": user.lichess_username}


# =============================================================================
# WALLET
# =============================================================================

@wallet_router.get("/balance")
async def get_balance(user: User = Depends(get_current_user)):
    return {"available": user.available_balance, "locked": user.locked_balance}


@wallet_router.get("/transactions")
async def get_transactions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    txs = await Ledger(db).history(user.id, limit=50)
    return [transaction_dict(tx) for tx in txs]


@wallet_router.post("/deposit")
async def deposit(
    body: AmountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ledger = Ledger(db)
    async with account_locks.hold(user.id):
        account = await ledger.load_account(user.id)
        tx = ledger.deposit(account, body.amount)
        await db.commit()
    return {
        "message": "Deposit successful",
        "new_balance": account.available_balance,
        "reference": tx.reference,
    }


@wallet_router.post("/withdraw")
async def withdraw(
    body: WithdrawRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ledger = Ledger(db)
    async with account_locks.hold(user.id):
        account = await ledger.load_account(user.id)
        tx = ledger.withdraw(account, body.amount, body.bank_details)
        await db.commit()
    return {
        "message": "Withdrawal request submitted",
        "new_balance": account.available_balance,
        "reference": tx.reference,
        "status": tx.status.value,
    }


# =============================================================================
# DESAFÍOS
# =============================================================================

@challenge_router.post("/send", status_code=status.HTTP_201_CREATED)
async def send_challenge(
    body: SendChallengeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    challenge = await ChallengeRegistry(db).send(
        user, body.opponent_username, body.stake, body.time_control, body.rated
    )
    await db.commit()

    names = {challenge.creator_id: user.username, challenge.opponent_id: body.opponent_username}
    payload = challenge_dict(challenge, names)
    await notify_user(challenge.opponent_id, "challenge_received", payload)
    return {
        "message": "Challenge sent",
        "challenge": payload,
        "fees": FeeCalculator.calculate(challenge.stake).to_dict(),
    }


@challenge_router.get("/pending")
async def pending_challenges(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    challenges = await ChallengeRegistry(db).pending_for(user)
    names = await username_map(db, [c.creator_id for c in challenges] + [user.id])
    return [challenge_dict(c, names) for c in challenges]


@challenge_router.get("/sent")
async def sent_challenges(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    challenges = await ChallengeRegistry(db).sent_by(user)
    names = await username_map(db, [c.opponent_id for c in challenges] + [user.id])
    return [challenge_dict(c, names) for c in challenges]


@challenge_router.post("/{code}/accept")
async def accept_challenge(
    code: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    registry = ChallengeRegistry(db)
    pending = await registry.get_by_code(code)
    # Las cuentas quedan bloqueadas hasta el commit, no solo hasta el flush
    async with account_locks.hold(pending.creator_id, pending.opponent_id):
        challenge, match = await registry.accept(code, user)
        await db.commit()

    names = await username_map(db, match.participant_ids)
    payload = match_dict(match, names)
    await notify_user(challenge.creator_id, "challenge_accepted", payload)
    return {
        "message": "Challenge accepted. Play your game on Lichess and submit the game ID.",
        "match": payload,
    }


@challenge_router.post("/{code}/decline")
async def decline_challenge(
    code: str,
    body: Optional[DeclineRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    reason = body.reason if body else None
    challenge = await ChallengeRegistry(db).decline(code, user, reason)
    await db.commit()
    await notify_user(challenge.creator_id, "challenge_declined", challenge_dict(challenge))
    return {"message": "Challenge declined"}


@challenge_router.post("/{code}/cancel")
async def cancel_challenge(
    code: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await ChallengeRegistry(db).cancel(code, user)
    await db.commit()
    return {"message": "Challenge cancelled"}


# =============================================================================
# PARTIDAS
# =============================================================================

@match_router.get("/active")
async def active_matches(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    matches = await MatchStateMachine(db).active_for(user)
    names = await username_map(db, [pid for m in matches for pid in m.participant_ids])
    return [match_dict(m, names) for m in matches]


@match_router.get("/completed")
async def completed_matches(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    matches = await MatchStateMachine(db).completed_for(user)
    names = await username_map(db, [pid for m in matches for pid in m.participant_ids])
    return [match_dict(m, names) for m in matches]


@match_router.post("/{match_id}/submit-result")
async def submit_result(
    match_id: UUID,
    body: SubmitResultRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    verifier: ResultVerifier = Depends(get_result_verifier),
):
    match = await MatchStateMachine(db, verifier).submit_result(
        match_id, user, body.lichess_game_id, body.lichess_game_url
    )
    await db.commit()

    names = await username_map(db, match.participant_ids)
    payload = match_dict(match, names)
    for participant in match.participant_ids:
        await notify_user(participant, "match_result", payload)
    return {"message": "Result verified", "match": payload}


@match_router.post("/{match_id}/appeal", status_code=status.HTTP_201_CREATED)
async def file_appeal(
    match_id: UUID,
    body: Optional[AppealRequest] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    body = body or AppealRequest()
    machine = MatchStateMachine(db)
    appeal = await machine.appeal(match_id, user, body.reason, body.evidence)
    match = await machine.get(match_id)
    await db.commit()

    await notify_user(match.other_participant(user.id), "appeal_filed", appeal_dict(appeal))
    return {"message": "Appeal submitted", "appeal": appeal_dict(appeal)}


@match_router.post("/{match_id}/process-disbursement")
async def process_disbursement(
    match_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    machine = MatchStateMachine(db)
    match = await machine.get(match_id)
    if not match.is_participant(user.id) and not user.is_admin:
        raise PermissionDeniedError("Not authorized")

    async with account_locks.hold(*match.participant_ids):
        match = await machine.disburse(match_id)
        await db.commit()

    names = await username_map(db, match.participant_ids)
    payload = match_dict(match, names)
    for participant in match.participant_ids:
        await notify_user(participant, "match_disbursed", payload)
    return {"message": "Disbursement complete", "match": payload}
