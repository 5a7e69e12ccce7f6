"""
=============================================================================
WORDLE WARS - Modelos (Enumeraciones + SQLAlchemy)
=============================================================================
Enumeraciones del ciclo de vida de una partida y tabla del Journal de
liquidaciones: cada interacción con el ledger externo queda registrada
con su clave de idempotencia para que un operador pueda remediar fallos
sin arriesgar una doble liquidación.

Principios de Diseño:
- El ledger externo es la autoridad: aquí solo se registra lo observado
- Inmutabilidad: una entrada CONFIRMED o FAILED no se reescribe
- Remediación manual: needs_attention marca lo que un humano debe revisar
=============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class LifecycleState(str, PyEnum):
    """
    Máquina de Estados Finita (FSM) de una partida.
    AWAITING_ESCROW -> WAITING -> PLAYING -> COMPLETED
    (CANCELLED desde AWAITING_ESCROW o WAITING)
    """
    AWAITING_ESCROW = "AWAITING_ESCROW"  # Creador debe confirmar su escrow
    WAITING = "WAITING"                  # Esperando oponente
    PLAYING = "PLAYING"                  # Partida activa
    COMPLETED = "COMPLETED"              # Terminada (ganador o casa)
    CANCELLED = "CANCELLED"              # Cancelada antes de empezar

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.COMPLETED, LifecycleState.CANCELLED)


class SettlementState(str, PyEnum):
    """Estado de una interacción con el ledger externo."""
    NOT_STARTED = "NOT_STARTED"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    @property
    def is_final(self) -> bool:
        return self in (SettlementState.CONFIRMED, SettlementState.FAILED)


class PlayerOutcome(str, PyEnum):
    """Resultado individual de cada jugador."""
    UNSET = "UNSET"
    WIN = "WIN"
    EXHAUSTED = "EXHAUSTED"      # Agotó sus 6 intentos
    TIMED_OUT = "TIMED_OUT"      # Se le acabó el reloj


class PayoutOutcome(str, PyEnum):
    """Tipo de reparto aplicado al concluir o cancelar una partida."""
    NORMAL_WIN = "NORMAL_WIN"
    FORFEIT_ACTIVE = "FORFEIT_ACTIVE"
    FORFEIT_WAITING = "FORFEIT_WAITING"
    BOTH_LOST = "BOTH_LOST"
    REFUND = "REFUND"            # Devolución completa (expiración, retiro)


class JournalKind(str, PyEnum):
    """Tipo de llamada al ledger externo."""
    ESCROW_REQUEST = "ESCROW_REQUEST"
    ESCROW_CONFIRM = "ESCROW_CONFIRM"
    SETTLE = "SETTLE"
    CANCEL = "CANCEL"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: SETTLEMENT_JOURNAL (Bitácora de llamadas al ledger)
# =============================================================================

class SettlementJournalEntry(Base):
    """
    Registro de una llamada al ledger externo.

    La clave de idempotencia (handle/cuenta de escrow) permite reintentar
    manualmente con el mismo contexto: el ledger deduplica por ella.
    """
    __tablename__ = "settlement_journal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    match_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[JournalKind] = mapped_column(Enum(JournalKind), nullable=False)
    participant: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Clave de idempotencia enviada al ledger
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    escrow_handle: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    escrow_account: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # ==========================================================================
    # MONTOS (SOL, 9 decimales)
    # ==========================================================================
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 9), nullable=True)
    to_winner: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 9), nullable=True)
    to_house: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 9), nullable=True)
    refund: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 9), nullable=True)
    winner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # ==========================================================================
    # RESULTADO
    # ==========================================================================
    status: Mapped[SettlementState] = mapped_column(Enum(SettlementState), nullable=False)
    signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Bandera para el operador
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    remediation_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_journal_match", "match_id"),
        Index("idx_journal_attention", "needs_attention"),
        Index("idx_journal_kind", "kind"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "kind": self.kind.value,
            "participant": self.participant,
            "idempotency_key": self.idempotency_key,
            "escrow_handle": self.escrow_handle,
            "escrow_account": self.escrow_account,
            "amount": str(self.amount) if self.amount is not None else None,
            "to_winner": str(self.to_winner) if self.to_winner is not None else None,
            "to_house": str(self.to_house) if self.to_house is not None else None,
            "refund": str(self.refund) if self.refund is not None else None,
            "winner": self.winner,
            "status": self.status.value,
            "signature": self.signature,
            "error_reason": self.error_reason,
            "needs_attention": self.needs_attention,
            "remediation_note": self.remediation_note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


# =============================================================================
# MOTOR Y SESIONES
# =============================================================================

def create_journal_engine(url: str) -> AsyncEngine:
    """Crea el motor async del journal (sqlite+aiosqlite por defecto)."""
    return create_async_engine(url, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Crea las tablas si no existen."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
