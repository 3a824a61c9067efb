"""
=============================================================================
DX - Ledger (Balances Disponible / Bloqueado)
=============================================================================
Única vía para mutar saldos. Cada operación valida antes de tocar nada y
registra su movimiento en el libro de transacciones.

Operaciones:
- lock:             disponible -> bloqueado (stake de partida)
- unlock_to_credit: retira de bloqueado y acredita a disponible
                    (más, igual o menos que lo bloqueado: premio, reembolso, pérdida)
- deposit:          acredita disponible
- withdraw:         debita disponible hacia un retiro PENDING

Atomicidad: todas las operaciones trabajan sobre la sesión del llamador, que
hace un único commit. Serialización por cuenta: AccountLocks en el proceso y
balance_version (concurrencia optimista) entre procesos.
=============================================================================
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .errors import (
    BalanceIntegrityError,
    InsufficientFundsError,
    NotFoundError,
    StateError,
    ValidationError,
)
from .fees import format_naira
from .models import Transaction, TransactionStatus, TransactionType, User, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# BLOQUEOS POR CUENTA
# =============================================================================

class AccountLocks:
    """
    Un asyncio.Lock por cuenta. Las operaciones de dos cuentas adquieren los
    locks en orden estable para no producir deadlocks.

    Es reentrante dentro de la misma tarea: una ruta puede sostener las
    cuentas hasta su commit mientras el servicio vuelve a pedirlas.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._owners: Dict[Hashable, asyncio.Task] = {}

    @asynccontextmanager
    async def hold(self, *account_ids: Hashable) -> AsyncIterator[None]:
        ordered = sorted({a for a in account_ids if a is not None}, key=str)
        task = asyncio.current_task()
        acquired: List[Hashable] = []
        try:
            for account_id in ordered:
                if self._owners.get(account_id) is task:
                    continue
                lock = self._locks.setdefault(account_id, asyncio.Lock())
                await lock.acquire()
                self._owners[account_id] = task
                acquired.append(account_id)
            yield
        finally:
            for account_id in reversed(acquired):
                self._owners.pop(account_id, None)
                self._locks[account_id].release()

    def is_locked(self, account_id: Hashable) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())


# Instancia global (un proceso = un registro de locks)
account_locks = AccountLocks()


def make_reference(prefix: str) -> str:
    """Código externo legible: DEP1718000000000A1B2"""
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"


# Tope por operación: mantiene saldos y sumas dentro de BIGINT
MAX_AMOUNT = 10 ** 15


def _require_positive(amount: int, what: str = "Amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"{what} must be a positive whole number of kobo")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{what} exceeds the maximum of {format_naira(MAX_AMOUNT)}")


# =============================================================================
# LEDGER
# =============================================================================

class Ledger:
    """Operaciones de saldo sobre una sesión de base de datos."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def load_account(self, account_id: UUID, for_update: bool = True) -> User:
        """
        Carga la cuenta (SELECT ... FOR UPDATE) y verifica su sello de
        integridad antes de permitir cualquier mutación.
        """
        stmt = select(User).where(User.id == account_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        account = (await self.session.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise NotFoundError("User not found")

        if not account.verify_balance_integrity():
            logger.error("[LEDGER] Sello de balance inválido para %s", account.id)
            raise BalanceIntegrityError("Balance integrity check failed; account requires review")
        return account

    # -------------------------------------------------------------------------
    # ESCROW
    # -------------------------------------------------------------------------

    def lock(
        self,
        account: User,
        amount: int,
        match_id: Optional[UUID] = None,
        description: str = "Match stake locked",
    ) -> Transaction:
        _require_positive(amount, "Stake")
        if account.available_balance < amount:
            raise InsufficientFundsError("Insufficient wallet balance")

        account.available_balance -= amount
        account.locked_balance += amount
        account.total_staked += amount

        tx = self._record(
            account.id,
            TransactionType.STAKE,
            amount,
            description,
            reference=make_reference("STK"),
            match_id=match_id,
        )
        logger.info("[LEDGER] Locked %s from %s", format_naira(amount), account.username)
        return tx

    def unlock_to_credit(
        self,
        account: User,
        locked_amount: int,
        credit_amount: int,
        kind: Optional[TransactionType] = None,
        match_id: Optional[UUID] = None,
        description: str = "",
        reference: Optional[str] = None,
    ) -> Optional[Transaction]:
        """
        Retira locked_amount de bloqueado y acredita credit_amount a disponible.
        credit_amount = 0 expresa un stake perdido.
        """
        if locked_amount < 0 or credit_amount < 0:
            raise ValidationError("Ledger amounts cannot be negative")
        if account.locked_balance < locked_amount:
            raise StateError("Locked balance is lower than the amount being released")

        account.locked_balance -= locked_amount
        account.available_balance += credit_amount

        logger.info(
            "[LEDGER] Unlocked %s for %s, credited %s",
            format_naira(locked_amount), account.username, format_naira(credit_amount),
        )
        if credit_amount > 0 and kind is not None:
            return self._record(
                account.id,
                kind,
                credit_amount,
                description,
                reference=reference or make_reference(kind.value[:3].upper()),
                match_id=match_id,
            )
        return None

    # -------------------------------------------------------------------------
    # FONDOS EXTERNOS
    # -------------------------------------------------------------------------

    def deposit(self, account: User, amount: int) -> Transaction:
        _require_positive(amount)
        if amount < settings.min_deposit:
            raise ValidationError(f"Minimum deposit is {format_naira(settings.min_deposit)}")

        account.available_balance += amount
        logger.info("[LEDGER] Deposit %s to %s", format_naira(amount), account.username)
        return self._record(
            account.id,
            TransactionType.DEPOSIT,
            amount,
            "Wallet deposit",
            reference=make_reference("DEP"),
        )

    def withdraw(self, account: User, amount: int, bank_details: Optional[str] = None) -> Transaction:
        """Debita disponible y deja el retiro PENDING hasta aprobación del admin."""
        _require_positive(amount)
        if amount < settings.min_withdrawal:
            raise ValidationError(f"Minimum withdrawal is {format_naira(settings.min_withdrawal)}")
        if account.available_balance < amount:
            raise InsufficientFundsError("Insufficient balance")

        account.available_balance -= amount
        logger.info("[LEDGER] Withdrawal request %s by %s", format_naira(amount), account.username)
        return self._record(
            account.id,
            TransactionType.WITHDRAWAL,
            amount,
            "Withdrawal request",
            reference=make_reference("WTH"),
            status=TransactionStatus.PENDING,
            bank_details=bank_details,
        )

    async def get_withdrawal(self, transaction_id: UUID, for_update: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.id == transaction_id, Transaction.kind == TransactionType.WITHDRAWAL
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        tx = (await self.session.execute(stmt)).scalar_one_or_none()
        if tx is None:
            raise NotFoundError("Withdrawal not found")
        return tx

    async def _load_pending_withdrawal(self, transaction_id: UUID) -> Transaction:
        tx = await self.get_withdrawal(transaction_id, for_update=True)
        if tx.status != TransactionStatus.PENDING:
            raise StateError(f"Withdrawal already processed: {tx.status.value}")
        return tx

    async def approve_withdrawal(self, transaction_id: UUID, admin_id: UUID) -> Transaction:
        """Los fondos ya salieron de disponible; aprobar solo cierra el registro."""
        tx = await self._load_pending_withdrawal(transaction_id)
        tx.status = TransactionStatus.APPROVED
        tx.processed_by = admin_id
        tx.processed_at = utcnow()
        logger.info("[LEDGER] Withdrawal %s approved by %s", tx.reference, admin_id)
        return tx

    async def reject_withdrawal(
        self,
        transaction_id: UUID,
        admin_id: UUID,
        reason: Optional[str] = None,
    ) -> Transaction:
        """Rechazar devuelve el monto al balance disponible."""
        tx = await self._load_pending_withdrawal(transaction_id)
        async with account_locks.hold(tx.user_id):
            account = await self.load_account(tx.user_id)
            account.available_balance += tx.amount
            tx.status = TransactionStatus.REJECTED
            tx.processed_by = admin_id
            tx.processed_at = utcnow()
            tx.rejection_reason = reason
            await self.session.flush()
        logger.info("[LEDGER] Withdrawal %s rejected, %s returned", tx.reference, format_naira(tx.amount))
        return tx

    # -------------------------------------------------------------------------
    # PLATAFORMA
    # -------------------------------------------------------------------------

    def record_platform_fee(self, amount: int, match_id: UUID) -> Optional[Transaction]:
        if amount <= 0:
            return None
        logger.info("[LEDGER] Platform fee %s for match %s", format_naira(amount), match_id)
        return self._record(
            None,
            TransactionType.PLATFORM_FEE,
            amount,
            "DX platform fee",
            reference=f"FEE{match_id.hex[:12].upper()}",
            match_id=match_id,
        )

    async def platform_revenue(self) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.kind == TransactionType.PLATFORM_FEE
        )
        return int((await self.session.execute(stmt)).scalar_one())

    async def history(self, user_id: UUID, limit: int = 50) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return list((await self.session.execute(stmt)).scalars())

    def _record(
        self,
        user_id: Optional[UUID],
        kind: TransactionType,
        amount: int,
        description: str,
        reference: str,
        match_id: Optional[UUID] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        bank_details: Optional[str] = None,
    ) -> Transaction:
        tx = Transaction(
            user_id=user_id,
            match_id=match_id,
            kind=kind,
            amount=amount,
            description=description,
            reference=reference,
            status=status,
            bank_details=bank_details,
            created_at=utcnow(),
        )
        self.session.add(tx)
        return tx
