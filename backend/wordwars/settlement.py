"""
=============================================================================
WORDLE WARS - Orquestador de Liquidaciones
=============================================================================
ÚNICO llamador del adaptador del ledger. Traduce las conclusiones del
ciclo de vida en llamadas externas y reconcilia sus resultados.

Protocolo de cada llamada:
1. Dentro de la sección exclusiva: estacionar el estado (PENDING)
2. Fuera de la sección: llamar al ledger (nunca con el lock tomado)
3. Re-entrar solo para registrar CONFIRMED / FAILED

Un FAILED se marca para el operador y NUNCA se reintenta automáticamente:
el ledger no se puede consultar transaccionalmente y un reintento ciego
arriesga una doble liquidación.
=============================================================================
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from .errors import (
    ErrorCode,
    ExternalLedgerFailure,
    InvariantViolation,
    MatchError,
    StaleMatch,
)
from .fee_policy import PayoutSplit
from .journal import SettlementJournal
from .ledger import EscrowHandle, LedgerAdapter, LedgerError
from .match_store import Match, MatchStore
from .models import JournalKind, LifecycleState, PayoutOutcome, SettlementState
from .notifications import EventType, NotificationFanout
from .security import validate_proof


logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """Resultado de una liquidación o cancelación."""
    match_id: str
    state: SettlementState
    outcome: Optional[PayoutOutcome] = None
    winner: Optional[str] = None
    split: Optional[PayoutSplit] = None
    signature: Optional[str] = None
    error: Optional[str] = None
    cached: bool = False

    @classmethod
    def from_match(cls, match: Match, cached: bool = False) -> "SettlementResult":
        return cls(
            match_id=match.id,
            state=match.settlement_state,
            outcome=match.outcome,
            winner=match.winner,
            split=match.split,
            signature=match.settlement_signature,
            error=match.settlement_error,
            cached=cached,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "winner": self.winner,
            "split": self.split.to_dict() if self.split else None,
            "signature": self.signature,
            "error": self.error,
            "cached": self.cached,
        }


def _describe(error: LedgerError) -> str:
    return f"{error.reason}: {error.message}"


class SettlementOrchestrator:
    """
    Conduce las llamadas al ledger externo.
    Llamadas concurrentes con la misma clave comparten una sola llamada
    externa (single-flight).
    """

    def __init__(
        self,
        store: MatchStore,
        adapter: LedgerAdapter,
        journal: Optional[SettlementJournal] = None,
        notifier: Optional[NotificationFanout] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.journal = journal
        self.notifier = notifier or NotificationFanout()
        self._in_flight: Dict[Hashable, asyncio.Future] = {}

    # ==========================================================================
    # UTILIDADES
    # ==========================================================================

    async def _single_flight(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda _: self._in_flight.pop(key, None))
        # shield: cancelar a un llamador no cancela la llamada al ledger
        return await asyncio.shield(task)

    def is_in_flight(self, kind: str, match_id: str, participant: Optional[str] = None) -> bool:
        key = (kind, match_id, participant) if participant else (kind, match_id)
        return key in self._in_flight

    async def _journal(self, match_id: str, kind: JournalKind, status: SettlementState, key: str, **fields) -> None:
        if self.journal is not None:
            await self.journal.record(match_id, kind, status, key, **fields)

    async def _update_if_active(self, match_id: str, fn: Callable[[Match], Any]) -> Any:
        try:
            return await self.store.with_match(match_id, fn)
        except MatchError as e:
            if e.code != ErrorCode.MATCH_NOT_FOUND:
                raise
            logger.warning("[SETTLEMENT] %s ya no está activa; resultado no aplicado", match_id)
            return None

    async def _refund_orphan(self, match_id: str, participant: str, handle: str, wager: Decimal) -> None:
        """Devuelve un depósito cuya partida desapareció durante la llamada."""
        split = PayoutSplit(refund=wager)
        key = f"cancel:{handle}"
        try:
            await self.adapter.cancel(handle, split)
            status, reason = SettlementState.CONFIRMED, None
        except LedgerError as e:
            status, reason = SettlementState.FAILED, _describe(e)
            logger.error("[SETTLEMENT] Reembolso huérfano fallido %s/%s: %s", match_id, participant, reason)
        await self._journal(
            match_id, JournalKind.CANCEL, status, key,
            participant=participant, escrow_handle=handle, amount=wager, split=split, error_reason=reason,
        )

    # ==========================================================================
    # ESCROW
    # ==========================================================================

    async def request_escrow(self, match_id: str, participant: str, wager: Decimal) -> EscrowHandle:
        """Solicita el escrow de un participante. Estado -> PENDING_CONFIRMATION."""
        def _park(match: Match) -> None:
            state = match.escrow_state.get(participant, SettlementState.NOT_STARTED)
            if state != SettlementState.NOT_STARTED:
                raise InvariantViolation(
                    ErrorCode.ESCROW_NOT_PENDING,
                    f"Escrow de {participant} ya está en {state.value}",
                )
            match.escrow_state[participant] = SettlementState.PENDING_CONFIRMATION

        await self.store.with_match(match_id, _park)
        key = f"escrow:{match_id}:{participant}"

        try:
            handle = await self.adapter.request_escrow(match_id, participant, wager)
        except LedgerError as e:
            def _fail(match: Match) -> None:
                match.escrow_state[participant] = SettlementState.FAILED

            await self._update_if_active(match_id, _fail)
            await self._journal(
                match_id, JournalKind.ESCROW_REQUEST, SettlementState.FAILED, key,
                participant=participant, amount=wager, error_reason=_describe(e),
            )
            logger.warning("[SETTLEMENT] Escrow rechazado %s/%s: %s", match_id, participant, _describe(e))
            raise ExternalLedgerFailure(ErrorCode.LEDGER_ERROR, e.message, {"reason": e.reason})

        def _record(match: Match) -> None:
            # El asiento pudo liberarse o la partida cancelarse durante la llamada
            seated = (
                (participant == match.creator and match.lifecycle_state == LifecycleState.AWAITING_ESCROW)
                or participant == match.pending_joiner
            )
            if match.lifecycle_state.is_terminal or not seated:
                raise StaleMatch(ErrorCode.STALE_MATCH, f"El asiento de {participant} ya no es válido")
            match.assign_escrow(participant, handle.handle, handle.account)

        try:
            await self.store.with_match(match_id, _record)
        except MatchError as e:
            if e.code not in (ErrorCode.MATCH_NOT_FOUND, ErrorCode.STALE_MATCH):
                raise
            await self._refund_orphan(match_id, participant, handle.handle, wager)
            raise StaleMatch(ErrorCode.STALE_MATCH, f"La partida {match_id} expiró durante el escrow")

        await self._journal(
            match_id, JournalKind.ESCROW_REQUEST, SettlementState.PENDING_CONFIRMATION, key,
            participant=participant, escrow_handle=handle.handle, escrow_account=handle.account, amount=wager,
        )
        logger.info("[SETTLEMENT] Escrow solicitado %s/%s -> %s", match_id, participant, handle.handle)
        return handle

    async def confirm_escrow(
        self,
        match_id: str,
        participant: str,
        proof: Optional[str],
        apply: Optional[Callable[[Match], Any]] = None,
        require_proof: bool = True,
    ) -> bool:
        """
        Confirma el escrow de un participante tras validar el formato de la
        prueba. `apply` se ejecuta en la misma sección exclusiva que marca
        CONFIRMED (la transición del ciclo de vida es atómica con ella).

        Returns:
            True si esta llamada confirmó; False si ya estaba confirmado.
        """
        if proof is not None or require_proof:
            proof = validate_proof(proof)

        return await self._single_flight(
            ("confirm", match_id, participant),
            lambda: self._confirm(match_id, participant, proof, apply),
        )

    async def _confirm(
        self,
        match_id: str,
        participant: str,
        proof: Optional[str],
        apply: Optional[Callable[[Match], Any]],
    ) -> bool:
        match = self.store.get(match_id)
        state = match.escrow_state.get(participant)
        if state is None:
            raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no participa en {match_id}")
        if state == SettlementState.CONFIRMED:
            return False
        handle = match.escrow_reference.get(participant)
        if state != SettlementState.PENDING_CONFIRMATION or handle is None:
            raise InvariantViolation(
                ErrorCode.ESCROW_NOT_PENDING,
                f"Escrow de {participant} en estado {state.value}",
            )

        key = f"confirm:{handle}"
        try:
            await self.adapter.confirm(handle, proof)
        except LedgerError as e:
            def _fail(current: Match) -> None:
                if current.escrow_state.get(participant) == SettlementState.PENDING_CONFIRMATION:
                    current.escrow_state[participant] = SettlementState.FAILED

            await self._update_if_active(match_id, _fail)
            await self._journal(
                match_id, JournalKind.ESCROW_CONFIRM, SettlementState.FAILED, key,
                participant=participant, escrow_handle=handle, error_reason=_describe(e),
            )
            raise ExternalLedgerFailure(ErrorCode.LEDGER_ERROR, e.message, {"reason": e.reason})

        def _confirmed(current: Match) -> None:
            current.escrow_state[participant] = SettlementState.CONFIRMED
            if apply is not None:
                apply(current)

        try:
            await self.store.with_match(match_id, _confirmed)
        except MatchError:
            # Fondos confirmados para una partida/asiento que ya no existe
            await self._journal(
                match_id, JournalKind.ESCROW_CONFIRM, SettlementState.CONFIRMED, key,
                participant=participant, escrow_handle=handle, amount=match.wager,
            )
            await self._refund_orphan(match_id, participant, handle, match.wager)
            raise

        await self._journal(
            match_id, JournalKind.ESCROW_CONFIRM, SettlementState.CONFIRMED, key,
            participant=participant, escrow_handle=handle, amount=match.wager,
        )
        logger.info("[SETTLEMENT] Escrow confirmado %s/%s", match_id, participant)
        return True

    # ==========================================================================
    # LIQUIDACIÓN
    # ==========================================================================

    async def settle(self, match_id: str) -> SettlementResult:
        """
        Liquidación exactly-once de una partida COMPLETED. Una segunda
        llamada devuelve el resultado en caché o espera la llamada en curso.
        """
        return await self._single_flight(("settle", match_id), lambda: self._settle(match_id))

    async def _settle(self, match_id: str) -> SettlementResult:
        snapshot = self.store.get(match_id)
        if snapshot.settlement_state.is_final:
            return SettlementResult.from_match(snapshot, cached=True)

        def _park(match: Match):
            if match.lifecycle_state != LifecycleState.COMPLETED:
                raise InvariantViolation(
                    ErrorCode.SETTLEMENT_NOT_READY,
                    f"La partida {match_id} está en {match.lifecycle_state.value}",
                )
            if match.settlement_state != SettlementState.NOT_STARTED:
                return None
            if match.split is None or match.escrow_account is None:
                raise InvariantViolation(ErrorCode.SETTLEMENT_NOT_READY, "Falta cuenta de escrow o reparto")
            match.settlement_state = SettlementState.PENDING_CONFIRMATION
            return match.escrow_account, match.winner, match.split

        plan = await self.store.with_match(match_id, _park)
        if plan is None:
            return SettlementResult.from_match(self.store.get(match_id), cached=True)

        account, winner, split = plan
        signature, error = await self._call_ledger(self.adapter.settle(account, winner, split), match_id)

        recorded = await self.store.with_match(match_id, lambda m: self._record(m, signature, error))
        await self._journal(
            match_id, JournalKind.SETTLE, recorded.settlement_state, f"settle:{account}",
            escrow_account=account, amount=recorded.wager, split=split, winner=winner,
            signature=signature, error_reason=recorded.settlement_error,
        )
        return await self._finish(recorded)

    async def _call_ledger(self, call: Awaitable[Any], match_id: str):
        try:
            return await call, None
        except LedgerError as e:
            return None, e
        except Exception as e:
            # Resultado desconocido: se trata como fallo para revisión manual
            logger.exception("[SETTLEMENT] Error inesperado del adaptador en %s", match_id)
            return None, LedgerError("ADAPTER_ERROR", repr(e))

    @staticmethod
    def _record(match: Match, signature: Optional[str], error: Optional[LedgerError]) -> Match:
        if error is None:
            match.settlement_state = SettlementState.CONFIRMED
            match.settlement_signature = signature
        else:
            match.settlement_state = SettlementState.FAILED
            match.settlement_error = _describe(error)
            match.needs_attention = True
        return copy.deepcopy(match)

    async def _finish(self, recorded: Match) -> SettlementResult:
        await self.store.archive(recorded.id)
        result = SettlementResult.from_match(recorded)

        if result.state == SettlementState.CONFIRMED:
            logger.info("[SETTLEMENT] %s confirmado (%s) firma %s", recorded.id, recorded.outcome.value, result.signature)
            await self.notifier.publish(EventType.SETTLEMENT_CONFIRMED, recorded.id, result.to_dict())
        else:
            logger.error("[SETTLEMENT] %s FALLIDO, requiere operador: %s", recorded.id, result.error)
            await self.notifier.publish(EventType.SETTLEMENT_FAILED, recorded.id, result.to_dict())
        return result

    # ==========================================================================
    # CANCELACIÓN Y RESERVAS
    # ==========================================================================

    async def cancel(self, match_id: str, participant: str) -> Optional[SettlementResult]:
        """
        Devuelve el escrow del creador de una partida CANCELLED según el
        reparto registrado. Si nunca se confirmó su escrow no hay acción en
        el ledger y la partida simplemente se elimina.
        """
        return await self._single_flight(("cancel", match_id), lambda: self._cancel(match_id, participant))

    async def _cancel(self, match_id: str, participant: str) -> Optional[SettlementResult]:
        snapshot = self.store.get(match_id)
        if snapshot.settlement_state.is_final:
            return SettlementResult.from_match(snapshot, cached=True)

        handle = snapshot.escrow_reference.get(participant)
        if snapshot.escrow_state.get(participant) != SettlementState.CONFIRMED or handle is None:
            if self.store.is_active(match_id):
                await self.store.remove(match_id)
            return None

        def _park(match: Match):
            if match.lifecycle_state != LifecycleState.CANCELLED:
                raise InvariantViolation(
                    ErrorCode.SETTLEMENT_NOT_READY,
                    f"La partida {match_id} está en {match.lifecycle_state.value}",
                )
            if match.settlement_state != SettlementState.NOT_STARTED:
                return None
            if match.split is None:
                raise InvariantViolation(ErrorCode.SETTLEMENT_NOT_READY, "Falta el reparto")
            match.settlement_state = SettlementState.PENDING_CONFIRMATION
            return match.split

        split = await self.store.with_match(match_id, _park)
        if split is None:
            return SettlementResult.from_match(self.store.get(match_id), cached=True)

        _, error = await self._call_ledger(self.adapter.cancel(handle, split), match_id)

        recorded = await self.store.with_match(match_id, lambda m: self._record(m, None, error))
        await self._journal(
            match_id, JournalKind.CANCEL, recorded.settlement_state, f"cancel:{handle}",
            participant=participant, escrow_handle=handle, amount=recorded.wager, split=split,
            error_reason=recorded.settlement_error,
        )
        return await self._finish(recorded)

    async def release_reservation(self, match_id: str, participant: str) -> Optional[SettlementState]:
        """Reembolso íntegro del depósito de un retador cuya reserva se liberó."""
        snapshot = self.store.get(match_id)
        handle = snapshot.escrow_reference.get(participant)
        if handle is None:
            return None

        split = PayoutSplit(refund=snapshot.wager)
        _, error = await self._call_ledger(self.adapter.cancel(handle, split), match_id)
        status = SettlementState.CONFIRMED if error is None else SettlementState.FAILED

        def _record(match: Match) -> None:
            match.released_joiners[participant] = status
            if error is not None:
                match.needs_attention = True
                match.settlement_error = f"Reembolso de reserva de {participant} fallido: {_describe(error)}"

        await self._update_if_active(match_id, _record)
        await self._journal(
            match_id, JournalKind.CANCEL, status, f"cancel:{handle}",
            participant=participant, escrow_handle=handle, amount=snapshot.wager, split=split,
            error_reason=_describe(error) if error else None,
        )
        if error is not None:
            logger.error("[SETTLEMENT] Reembolso de reserva fallido %s/%s: %s", match_id, participant, _describe(error))
        return status
