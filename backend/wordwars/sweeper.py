"""
=============================================================================
WORDLE WARS - Sweeper de Reconciliación
=============================================================================
Tarea periódica independiente de las solicitudes. Es la ÚNICA aplicación
de timeouts del lado del servidor; muestrea de forma gruesa, no en tiempo
real.

Reglas (en orden por partida):
1. Reparaciones: >2 jugadores, o WAITING con 2 jugadores
2. AWAITING_ESCROW sin confirmar tras el timeout -> CANCELLED y eliminada
3. WAITING expirada (30 min) -> CANCELLED con reembolso íntegro
4. Reserva de asiento sin confirmar tras el timeout -> liberada y reembolsada
5. PLAYING más allá de la duración máxima -> COMPLETED, ambos pierden
6. Terminada sin liquidación lanzada -> se lanza una vez
7. Historial más viejo que la retención -> descartado
=============================================================================
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .config import GameRules, Settings
from .errors import MatchError
from .lifecycle import MatchLifecycle
from .match_store import Match, MatchStore
from .models import LifecycleState, SettlementState
from .settlement import SettlementOrchestrator


logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Resultado de una pasada del sweeper."""
    repaired: List[str] = field(default_factory=list)
    expired_unfunded: List[str] = field(default_factory=list)
    expired_waiting: List[str] = field(default_factory=list)
    released_reservations: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    settlements_launched: List[str] = field(default_factory=list)
    archived: List[str] = field(default_factory=list)
    history_evicted: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return (
            len(self.repaired) + len(self.expired_unfunded) + len(self.expired_waiting)
            + len(self.released_reservations) + len(self.timed_out)
            + len(self.settlements_launched) + len(self.archived) + self.history_evicted
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationSweeper:
    def __init__(
        self,
        store: MatchStore,
        lifecycle: MatchLifecycle,
        orchestrator: SettlementOrchestrator,
        settings: Settings,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.orchestrator = orchestrator
        self.settings = settings
        self.last_report: Optional[SweepReport] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ==========================================================================
    # PASADA
    # ==========================================================================

    async def run_once(self, now: Optional[float] = None) -> SweepReport:
        now = self.store.clock() if now is None else now
        report = SweepReport()

        for match in self.store.list():
            try:
                await self._sweep_match(match, now, report)
            except MatchError as e:
                # La partida cambió entre el escaneo y la acción
                logger.info("[SWEEPER] %s omitida: %s", match.id, e)
            except Exception:
                logger.exception("[SWEEPER] Error procesando %s", match.id)
                report.errors.append(match.id)

        report.history_evicted = self.store.evict_history(now - self.settings.history_retention_sec)

        self.last_report = report
        if report.total_actions or report.errors:
            logger.info("[SWEEPER] Pasada completa: %s", report.to_dict())
        return report

    async def _sweep_match(self, match: Match, now: float, report: SweepReport) -> None:
        s = self.settings
        limit = GameRules.MAX_PLAYERS_PER_MATCH

        if len(match.players) > limit or (
            match.lifecycle_state == LifecycleState.WAITING and len(match.players) == limit
        ):
            if await self.lifecycle.repair(match.id):
                report.repaired.append(match.id)
            match = self.store.get(match.id)

        state = match.lifecycle_state

        if state == LifecycleState.AWAITING_ESCROW:
            if now - match.created_at > s.escrow_confirmation_timeout_sec and not self._confirming(match, match.creator):
                if await self.lifecycle.expire_unfunded(match.id):
                    report.expired_unfunded.append(match.id)

        elif state == LifecycleState.WAITING:
            joiner = match.pending_joiner
            if now - match.created_at > s.waiting_expiry_sec and not self._confirming(match, joiner):
                if await self.lifecycle.expire_waiting(match.id):
                    report.expired_waiting.append(match.id)
            elif (
                joiner is not None
                and match.pending_since is not None
                and now - match.pending_since > s.escrow_confirmation_timeout_sec
                and not self._confirming(match, joiner)
            ):
                if await self.lifecycle.release_stale_reservation(match.id, joiner):
                    report.released_reservations.append(match.id)

        elif state == LifecycleState.PLAYING:
            if match.started_at is not None and now - match.started_at > s.max_match_duration_sec:
                if await self.lifecycle.force_timeout(match.id):
                    report.timed_out.append(match.id)

        elif match.settlement_state.is_final:
            await self.store.archive(match.id)
            report.archived.append(match.id)

        elif match.settlement_state == SettlementState.NOT_STARTED:
            if state == LifecycleState.COMPLETED:
                await self.orchestrator.settle(match.id)
            else:
                await self.orchestrator.cancel(match.id, match.creator)
            report.settlements_launched.append(match.id)

    def _confirming(self, match: Match, participant: Optional[str]) -> bool:
        return participant is not None and self.orchestrator.is_in_flight("confirm", match.id, participant)

    # ==========================================================================
    # TAREA PERIÓDICA
    # ==========================================================================

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._loop())
            logger.info("[SWEEPER] Iniciado (cada %ss)", self.settings.sweep_interval_sec)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SWEEPER] Detenido")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.sweep_interval_sec)
            try:
                await self.run_once()
            except Exception:
                logger.exception("[SWEEPER] Pasada fallida")
