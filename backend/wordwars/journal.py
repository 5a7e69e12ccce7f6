"""
=============================================================================
WORDLE WARS - Journal de Liquidaciones
=============================================================================
Registro durable de cada llamada al ledger externo. Un fallo al escribir
el journal se registra en el log y NUNCA bloquea el ciclo de vida.
=============================================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .fee_policy import PayoutSplit
from .models import (
    JournalKind,
    SettlementJournalEntry,
    SettlementState,
    create_journal_engine,
    create_session_factory,
    create_tables,
)


logger = logging.getLogger(__name__)


class SettlementJournal:
    """Fachada async sobre la tabla settlement_journal."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory: async_sessionmaker = create_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "SettlementJournal":
        return cls(create_journal_engine(url))

    async def start(self) -> None:
        await create_tables(self.engine)

    async def close(self) -> None:
        await self.engine.dispose()

    async def record(
        self,
        match_id: str,
        kind: JournalKind,
        status: SettlementState,
        idempotency_key: str,
        participant: Optional[str] = None,
        escrow_handle: Optional[str] = None,
        escrow_account: Optional[str] = None,
        amount: Optional[Decimal] = None,
        split: Optional[PayoutSplit] = None,
        winner: Optional[str] = None,
        signature: Optional[str] = None,
        error_reason: Optional[str] = None,
    ) -> Optional[int]:
        """Inserta una entrada. Devuelve su id o None si la escritura falló."""
        entry = SettlementJournalEntry(
            match_id=match_id,
            kind=kind,
            participant=participant,
            idempotency_key=idempotency_key,
            escrow_handle=escrow_handle,
            escrow_account=escrow_account,
            amount=amount,
            to_winner=split.to_winner if split else None,
            to_house=split.to_house if split else None,
            refund=split.refund if split else None,
            winner=winner,
            status=status,
            signature=signature,
            error_reason=error_reason,
            needs_attention=status == SettlementState.FAILED and kind in (JournalKind.SETTLE, JournalKind.CANCEL),
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
                return entry.id
        except SQLAlchemyError as e:
            logger.error("[JOURNAL] No se pudo registrar %s de %s: %s", kind.value, match_id, e)
            return None

    async def entries_for(self, match_id: str) -> List[SettlementJournalEntry]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SettlementJournalEntry)
                    .where(SettlementJournalEntry.match_id == match_id)
                    .order_by(SettlementJournalEntry.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("[JOURNAL] No se pudieron leer las entradas de %s: %s", match_id, e)
            return []

    async def flagged(self) -> List[SettlementJournalEntry]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SettlementJournalEntry)
                    .where(SettlementJournalEntry.needs_attention.is_(True))
                    .order_by(SettlementJournalEntry.created_at, SettlementJournalEntry.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("[JOURNAL] No se pudieron leer las entradas señaladas: %s", e)
            return []

    async def resolve(self, match_id: str, note: str) -> int:
        """Marca como resueltas las entradas señaladas de una partida."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(SettlementJournalEntry)
                    .where(
                        SettlementJournalEntry.match_id == match_id,
                        SettlementJournalEntry.needs_attention.is_(True),
                    )
                    .values(
                        needs_attention=False,
                        remediation_note=note,
                        resolved_at=datetime.now(timezone.utc),
                    )
                )
                await session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.error("[JOURNAL] No se pudo resolver %s: %s", match_id, e)
            return 0
