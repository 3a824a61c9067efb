"""
=============================================================================
DX - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Cuentas con balance disponible y bloqueado, desafíos, partidas, apelaciones
y el libro de transacciones (append-only).

Principios de Diseño:
- Dinero en enteros: todos los montos son kobo (BigInteger), nunca float
- Integridad: balance_hash SHA-256 sobre (disponible, bloqueado)
- Concurrencia optimista: balance_version como version_id_col
=============================================================================
"""

import hashlib
import secrets
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime que siempre devuelve datetimes aware en UTC (SQLite los pierde)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class ChallengeStatus(str, PyEnum):
    """Estados de un desafío. EXPIRED se evalúa de forma perezosa."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class MatchStatus(str, PyEnum):
    """
    Máquina de Estados Finita (FSM) del ciclo de vida de una partida.
    Las transiciones válidas están en matches.MATCH_TRANSITIONS.
    """
    IN_PROGRESS = "in_progress"          # Stakes bloqueados, jugando en Lichess
    AWAITING_APPEAL = "awaiting_appeal"  # Ganador determinado, corre el plazo de apelación
    APPEALED = "appealed"                # Apelación pendiente de revisión
    DRAW = "draw"                        # Empate: se reembolsa sin comisión
    DISPUTED = "disputed"                # Apelación aceptada, requiere corrección manual
    DISBURSED = "disbursed"              # Fondos liquidados (terminal)


class AppealStatus(str, PyEnum):
    PENDING = "pending"
    UPHELD = "upheld"
    REJECTED = "rejected"


class TransactionType(str, PyEnum):
    """Tipos de movimiento en el libro de transacciones."""
    DEPOSIT = "deposit"            # Entrada de fondos
    WITHDRAWAL = "withdrawal"      # Salida de fondos (requiere aprobación)
    STAKE = "stake"                # Fondos bloqueados para partida
    WINNING = "winning"            # Premio neto al ganador
    REFUND = "refund"              # Devolución de stake (empate)
    PLATFORM_FEE = "platform_fee"  # Comisión de la plataforma


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: USERS (Cuentas y Balances)
# =============================================================================

class User(Base):
    """
    Cuenta de usuario con sub-balances disponible y bloqueado.

    SEGURIDAD: balance_hash = SHA256(id:disponible:bloqueado:salt). Si alguien
    modifica los saldos directamente en la BD sin recalcular el hash, el
    Ledger lo detecta al cargar la cuenta y se niega a operar.
    """
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Datos de autenticación
    username: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Cuenta externa de Lichess (se compara sin distinguir mayúsculas)
    lichess_username: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    lichess_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ==========================================================================
    # SALDOS (kobo)
    # ==========================================================================
    available_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    locked_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    balance_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    balance_salt: Mapped[str] = mapped_column(String(32), nullable=False)
    balance_version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Estadísticas
    total_staked: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_winnings: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    matches_won: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    matches_lost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    matches_draw: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": balance_version}

    __table_args__ = (
        Index("idx_users_lichess", "lichess_username"),
        CheckConstraint("available_balance >= 0", name="check_available_non_negative"),
        CheckConstraint("locked_balance >= 0", name="check_locked_non_negative"),
    )

    @property
    def total_matches(self) -> int:
        return (self.matches_won or 0) + (self.matches_lost or 0) + (self.matches_draw or 0)

    @property
    def win_rate(self) -> float:
        total = self.total_matches
        if total == 0:
            return 0.0
        return round(self.matches_won * 100 / total, 1)

    def compute_balance_hash(self) -> str:
        """
        Calcula el hash SHA-256 del balance.
        CRÍTICO: se recalcula en cada flush vía los event listeners de abajo.
        """
        hash_input = f"{self.id}:{self.available_balance}:{self.locked_balance}:{self.balance_salt}"
        return hashlib.sha256(hash_input.encode()).hexdigest()

    def verify_balance_integrity(self) -> bool:
        return secrets.compare_digest(self.balance_hash, self.compute_balance_hash())

    @staticmethod
    def generate_balance_salt() -> str:
        return secrets.token_hex(16)


# =============================================================================
# TABLA: CHALLENGES (Propuestas de Partida)
# =============================================================================

class Challenge(Base):
    """Desafío de un usuario a otro. No bloquea fondos hasta ser aceptado."""
    __tablename__ = "challenges"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    creator_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    opponent_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    stake: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_control: Mapped[str] = mapped_column(String(20), nullable=False)
    is_rated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    status: Mapped[ChallengeStatus] = mapped_column(
        _enum_column(ChallengeStatus), default=ChallengeStatus.PENDING, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Vista previa de comisiones (informativa; se recalcula al liquidar)
    total_pot: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    winner_payout: Mapped[int] = mapped_column(BigInteger, nullable=False)

    decline_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    declined_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_challenge_creator", "creator_id"),
        Index("idx_challenge_opponent", "opponent_id"),
        Index("idx_challenge_status", "status"),
        CheckConstraint("stake > 0", name="check_challenge_stake_positive"),
    )

    def current_status(self, now: Optional[datetime] = None) -> ChallengeStatus:
        """Estado efectivo: un PENDING vencido se reporta como EXPIRED."""
        now = now or utcnow()
        if self.status == ChallengeStatus.PENDING and self.expires_at <= now:
            return ChallengeStatus.EXPIRED
        return self.status


# =============================================================================
# TABLA: MATCHES (El Libro de Actas)
# =============================================================================

class Match(Base):
    """Partida abierta al aceptar un desafío, con ambos stakes bloqueados."""
    __tablename__ = "matches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    challenge_id: Mapped[UUID] = mapped_column(ForeignKey("challenges.id", ondelete="RESTRICT"), nullable=False)

    creator_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    opponent_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    stake: Mapped[int] = mapped_column(BigInteger, nullable=False)
    time_control: Mapped[str] = mapped_column(String(20), nullable=False)
    is_rated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ==========================================================================
    # ESTADO DE LA PARTIDA (FSM)
    # ==========================================================================
    status: Mapped[MatchStatus] = mapped_column(
        _enum_column(MatchStatus), default=MatchStatus.IN_PROGRESS, nullable=False
    )

    # Referencia externa (Lichess)
    lichess_game_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    lichess_game_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # ==========================================================================
    # RESULTADOS
    # ==========================================================================
    winner_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    platform_fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    payout_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    appeal_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    result_submitted_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    result_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    disbursed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("idx_match_status", "status"),
        Index("idx_match_creator", "creator_id"),
        Index("idx_match_opponent", "opponent_id"),
        # Una partida de Lichess liquida como máximo una partida DX
        Index("idx_match_lichess_game", "lichess_game_id", unique=True),
        CheckConstraint("stake > 0", name="check_match_stake_positive"),
    )

    @property
    def participant_ids(self) -> tuple:
        return (self.creator_id, self.opponent_id)

    def is_participant(self, user_id: UUID) -> bool:
        return user_id in self.participant_ids

    def other_participant(self, user_id: UUID) -> UUID:
        return self.opponent_id if user_id == self.creator_id else self.creator_id


# =============================================================================
# TABLA: APPEALS (Apelaciones)
# =============================================================================

class Appeal(Base):
    """Apelación de un participante durante la ventana de apelación."""
    __tablename__ = "appeals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    match_id: Mapped[UUID] = mapped_column(ForeignKey("matches.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[AppealStatus] = mapped_column(
        _enum_column(AppealStatus), default=AppealStatus.PENDING, nullable=False
    )

    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="unique_appeal_per_participant"),
        Index("idx_appeal_status", "status"),
    )


# =============================================================================
# TABLA: TRANSACTIONS (Libro de Movimientos)
# =============================================================================

class Transaction(Base):
    """
    Registro append-only de movimientos.

    user_id NULL identifica a la cuenta de la plataforma (comisiones).
    La única mutación permitida es un retiro PENDING que pasa a APPROVED
    o REJECTED.
    """
    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    match_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("matches.id", ondelete="SET NULL"), nullable=True)

    kind: Mapped[TransactionType] = mapped_column(_enum_column(TransactionType), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        _enum_column(TransactionStatus), default=TransactionStatus.COMPLETED, nullable=False
    )

    # Solo retiros
    bank_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_by: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_tx_user_id", "user_id"),
        Index("idx_tx_match_id", "match_id"),
        Index("idx_tx_kind", "kind"),
        Index("idx_tx_status", "status"),
        Index("idx_tx_created_at", "created_at"),
        CheckConstraint("amount > 0", name="check_positive_amount"),
    )


# =============================================================================
# EVENT LISTENERS PARA INTEGRIDAD AUTOMÁTICA
# =============================================================================

@event.listens_for(User, "before_insert")
def user_before_insert(mapper, connection, target: User):
    """Genera id, salt y hash inicial del balance antes de insertar."""
    if target.id is None:
        target.id = uuid4()
    if target.available_balance is None:
        target.available_balance = 0
    if target.locked_balance is None:
        target.locked_balance = 0
    if not target.balance_salt:
        target.balance_salt = User.generate_balance_salt()
    target.balance_hash = target.compute_balance_hash()


@event.listens_for(User, "before_update")
def user_before_update(mapper, connection, target: User):
    """Recalcula el hash del balance; balance_version lo incrementa el mapper."""
    target.balance_hash = target.compute_balance_hash()
