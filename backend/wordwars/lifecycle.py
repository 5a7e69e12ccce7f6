"""
=============================================================================
WORDLE WARS - Máquina de Estados del Ciclo de Vida
=============================================================================
Valida y aplica cada transición de una partida. Toda mutación ocurre
dentro de MatchStore.with_match(); las llamadas al ledger se delegan al
orquestador de liquidaciones FUERA de la sección exclusiva.

FSM:
  AWAITING_ESCROW -> WAITING -> PLAYING -> COMPLETED
  AWAITING_ESCROW -> CANCELLED (eliminada)
  WAITING -> CANCELLED

Algoritmo de intentos:
  normalizar -> formato -> partida activa -> jugador en partida ->
  jugador sin resultado -> registrar -> acierto gana (incluso en el 6º) ->
  6º fallo = EXHAUSTED -> concluye cuando todos tienen resultado
=============================================================================
"""

import copy
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import GameRules
from .dictionary import pick_target
from .errors import (
    ErrorCode,
    ExternalLedgerFailure,
    InvariantViolation,
    MatchError,
    StaleMatch,
    game_not_active,
)
from .fee_policy import compute_split
from .match_store import GuessRecord, Match, MatchStore
from .models import LifecycleState, PayoutOutcome, PlayerOutcome, SettlementState
from .notifications import EventType, NotificationFanout
from .security import normalize_guess, validate_match_id, validate_wager, validate_wallet_address
from .settlement import SettlementOrchestrator


logger = logging.getLogger(__name__)


# Transiciones permitidas de la FSM
VALID_TRANSITIONS = {
    LifecycleState.AWAITING_ESCROW: [LifecycleState.WAITING, LifecycleState.CANCELLED],
    LifecycleState.WAITING: [LifecycleState.PLAYING, LifecycleState.CANCELLED],
    LifecycleState.PLAYING: [LifecycleState.COMPLETED],
    LifecycleState.COMPLETED: [],
    LifecycleState.CANCELLED: [],
}


class MatchLifecycle:
    """Superficie de solicitudes sobre las partidas."""

    def __init__(
        self,
        store: MatchStore,
        orchestrator: SettlementOrchestrator,
        notifier: Optional[NotificationFanout] = None,
        target_source: Callable[[], str] = pick_target,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.notifier = notifier or orchestrator.notifier
        self.target_source = target_source

    # ==========================================================================
    # TRANSICIONES
    # ==========================================================================

    def _transition(self, match: Match, new_state: LifecycleState) -> None:
        if new_state not in VALID_TRANSITIONS[match.lifecycle_state]:
            raise game_not_active(match.id)
        if new_state == LifecycleState.PLAYING and len(match.players) != GameRules.MAX_PLAYERS_PER_MATCH:
            raise InvariantViolation(ErrorCode.GAME_NOT_ACTIVE, "Se requieren 2 jugadores para empezar")

        now = self.store.clock()
        match.lifecycle_state = new_state
        if new_state == LifecycleState.PLAYING and match.started_at is None:
            match.started_at = now
        elif new_state.is_terminal and match.completed_at is None:
            match.completed_at = now

    def _conclude(self, match: Match, winner: str, outcome: PayoutOutcome, reason: str) -> None:
        self._transition(match, LifecycleState.COMPLETED)
        match.winner = winner
        match.outcome = outcome
        match.split = compute_split(match.wager, outcome)
        match.end_reason = reason

    def _cancel(self, match: Match, outcome: Optional[PayoutOutcome], reason: str) -> None:
        self._transition(match, LifecycleState.CANCELLED)
        match.outcome = outcome
        match.split = compute_split(match.wager, outcome) if outcome else None
        match.end_reason = reason

    def _conclude_if_all_resolved(self, match: Match) -> None:
        if match.lifecycle_state == LifecycleState.PLAYING and match.all_resolved():
            self._conclude(match, GameRules.HOUSE, PayoutOutcome.BOTH_LOST, "BOTH_LOST")

    @staticmethod
    def _clear_reservation(match: Match, participant: str) -> bool:
        """Libera el asiento reservado. Si hubo handle queda registrado para reembolso."""
        if match.pending_joiner != participant:
            return False
        match.pending_joiner = None
        match.pending_since = None
        if participant in match.escrow_reference:
            match.released_joiners[participant] = SettlementState.NOT_STARTED
        else:
            match.escrow_state.pop(participant, None)
        return True

    async def _mutate(self, match_id: str, fn: Callable[[Match], Any]) -> Any:
        """with_match para solicitudes: una partida archivada ya no está activa."""
        try:
            return await self.store.with_match(match_id, fn)
        except MatchError as e:
            if e.code == ErrorCode.MATCH_NOT_FOUND and self.store.in_history(match_id):
                raise game_not_active(match_id)
            raise

    def _snapshot(self, match_id: str, fallback: Optional[Match] = None) -> Dict[str, Any]:
        try:
            return self.store.get(match_id).to_dict()
        except MatchError:
            if fallback is None:
                raise
            return fallback.to_dict()

    async def _publish(self, event_type: str, match_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.notifier.publish(event_type, match_id, payload)

    # ==========================================================================
    # CREAR
    # ==========================================================================

    async def create_match(self, wager: Any, participant: Any) -> Dict[str, Any]:
        wager = validate_wager(wager)
        participant = validate_wallet_address(participant)

        match = await self.store.create(wager, participant, self.target_source())
        await self._publish(EventType.MATCH_CREATED, match.id, match.summary())

        try:
            handle = await self.orchestrator.request_escrow(match.id, participant, wager)
        except MatchError:
            await self._discard_unfunded(match.id, "LEDGER_ERROR")
            raise

        if not handle.requires_proof:
            return await self._confirm(match.id, participant, None, require_proof=False)
        return self._snapshot(match.id)

    async def _discard_unfunded(self, match_id: str, reason: str, event: str = EventType.MATCH_CANCELLED) -> bool:
        """AWAITING_ESCROW -> CANCELLED y eliminación (sin acción en el ledger)."""
        def _apply(match: Match) -> bool:
            if match.lifecycle_state != LifecycleState.AWAITING_ESCROW:
                return False
            self._cancel(match, None, reason)
            return True

        try:
            discarded = await self.store.with_match(match_id, _apply)
        except MatchError as e:
            if e.code != ErrorCode.MATCH_NOT_FOUND:
                raise
            return False
        if discarded:
            await self.store.remove(match_id)
            await self._publish(event, match_id, {"reason": reason})
        return discarded

    # ==========================================================================
    # UNIRSE (RESERVA DE ASIENTO)
    # ==========================================================================

    async def join_match(self, match_id: Any, participant: Any) -> Dict[str, Any]:
        match_id = validate_match_id(match_id)
        participant = validate_wallet_address(participant)

        claimed = self.store.active_match_of(participant) != match_id
        await self.store.claim_participant(match_id, participant)

        def _reserve(match: Match) -> Decimal:
            if participant in match.players:
                raise InvariantViolation(ErrorCode.CANNOT_JOIN_OWN_MATCH, "No puedes unirte a tu propia partida")
            if participant in match.released_joiners:
                raise InvariantViolation(ErrorCode.RESERVATION_RELEASED, "Tu reserva en esta partida fue liberada")
            if match.is_full() or match.pending_joiner is not None:
                raise InvariantViolation(ErrorCode.MATCH_FULL, "La partida está llena")
            if match.lifecycle_state != LifecycleState.WAITING:
                raise game_not_active(match.id)

            match.pending_joiner = participant
            match.pending_since = self.store.clock()
            match.escrow_state[participant] = SettlementState.NOT_STARTED
            return match.wager

        try:
            wager = await self._mutate(match_id, _reserve)
        except MatchError:
            if claimed:
                self.store.release_participant(participant, match_id)
            raise

        await self._publish(EventType.JOIN_PENDING, match_id, {"participant": participant})

        try:
            handle = await self.orchestrator.request_escrow(match_id, participant, wager)
        except ExternalLedgerFailure:
            await self._drop_reservation(match_id, participant)
            raise

        if not handle.requires_proof:
            return await self._confirm(match_id, participant, None, require_proof=False)
        return self._snapshot(match_id)

    async def _drop_reservation(self, match_id: str, participant: str) -> bool:
        """Libera la reserva y reembolsa el depósito si se emitió un handle."""
        try:
            dropped = await self.store.with_match(match_id, lambda m: self._clear_reservation(m, participant))
        except MatchError as e:
            if e.code != ErrorCode.MATCH_NOT_FOUND:
                raise
            return False

        if dropped:
            await self.orchestrator.release_reservation(match_id, participant)
            await self._publish(EventType.MATCH_OPENED, match_id, {"released": participant})
        return dropped

    async def release_stale_reservation(self, match_id: str, participant: str) -> bool:
        return await self._drop_reservation(match_id, participant)

    # ==========================================================================
    # CONFIRMAR ESCROW
    # ==========================================================================

    async def confirm_escrow(self, match_id: Any, participant: Any, proof: Any) -> Dict[str, Any]:
        match_id = validate_match_id(match_id)
        participant = validate_wallet_address(participant)

        match = self.store.get(match_id)
        if participant in match.released_joiners:
            raise InvariantViolation(ErrorCode.RESERVATION_RELEASED, "Tu reserva en esta partida fue liberada")
        if participant not in match.escrow_state:
            raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no participa en {match_id}")

        return await self._confirm(match_id, participant, proof, require_proof=True)

    async def _confirm(self, match_id: str, participant: str, proof: Optional[str], require_proof: bool) -> Dict[str, Any]:
        def _advance(match: Match) -> None:
            if match.lifecycle_state == LifecycleState.AWAITING_ESCROW and participant == match.creator:
                self._transition(match, LifecycleState.WAITING)
                return
            if match.lifecycle_state == LifecycleState.WAITING and match.pending_joiner == participant:
                match.players.append(participant)
                match.pending_joiner = None
                match.pending_since = None
                for player in match.players:
                    match.player_outcome[player] = PlayerOutcome.UNSET
                self._transition(match, LifecycleState.PLAYING)
                return
            raise StaleMatch(ErrorCode.STALE_MATCH, f"El asiento de {participant} ya no es válido")

        try:
            fresh = await self.orchestrator.confirm_escrow(
                match_id, participant, proof, apply=_advance, require_proof=require_proof,
            )
        except ExternalLedgerFailure:
            await self._handle_confirm_failure(match_id, participant)
            raise

        snapshot = self._snapshot(match_id)
        if fresh:
            if snapshot["lifecycle_state"] == LifecycleState.WAITING.value:
                await self._publish(EventType.MATCH_OPENED, match_id, self.store.get(match_id).summary())
            elif snapshot["lifecycle_state"] == LifecycleState.PLAYING.value:
                await self._publish(EventType.MATCH_STARTED, match_id, {"players": snapshot["players"]})
        return snapshot

    async def _handle_confirm_failure(self, match_id: str, participant: str) -> None:
        try:
            match = self.store.get(match_id)
        except MatchError:
            return
        if match.lifecycle_state == LifecycleState.AWAITING_ESCROW and participant == match.creator:
            await self._discard_unfunded(match_id, "LEDGER_ERROR")
        elif match.pending_joiner == participant:
            await self._drop_reservation(match_id, participant)

    # ==========================================================================
    # INTENTOS
    # ==========================================================================

    async def submit_guess(self, match_id: Any, participant: Any, text: Any) -> Dict[str, Any]:
        match_id = validate_match_id(match_id)
        participant = validate_wallet_address(participant)
        guess = normalize_guess(text)

        def _apply(match: Match) -> Tuple[int, PlayerOutcome, bool]:
            if match.lifecycle_state != LifecycleState.PLAYING:
                raise game_not_active(match.id)
            if participant not in match.players:
                raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no juega en {match.id}")
            if match.player_outcome.get(participant, PlayerOutcome.UNSET) != PlayerOutcome.UNSET:
                raise InvariantViolation(ErrorCode.PLAYER_ALREADY_RESOLVED, "Ya no tienes intentos en esta partida")

            match.guesses.append(GuessRecord(participant, guess, self.store.clock()))
            number = match.guess_count(participant)

            if guess == match.secret_target:
                # Primer acierto gana; el otro jugador queda sin efecto
                match.player_outcome[participant] = PlayerOutcome.WIN
                self._conclude(match, participant, PayoutOutcome.NORMAL_WIN, "WORD_GUESSED")
            elif number >= GameRules.MAX_GUESSES_PER_PLAYER:
                match.player_outcome[participant] = PlayerOutcome.EXHAUSTED
                self._conclude_if_all_resolved(match)

            return number, match.player_outcome[participant], match.lifecycle_state == LifecycleState.COMPLETED

        number, outcome, concluded = await self._mutate(match_id, _apply)

        await self._publish(EventType.GUESS_SUBMITTED, match_id, {"player": participant, "guess_number": number})
        if outcome != PlayerOutcome.UNSET:
            await self._publish(EventType.PLAYER_RESOLVED, match_id, {"player": participant, "outcome": outcome.value})
        if concluded:
            await self._complete(match_id)
        return self._snapshot(match_id)

    async def report_timeout(self, match_id: Any, participant: Any) -> Dict[str, Any]:
        """El reloj del jugador expiró (reportado por el cliente)."""
        match_id = validate_match_id(match_id)
        participant = validate_wallet_address(participant)

        def _apply(match: Match) -> bool:
            if match.lifecycle_state != LifecycleState.PLAYING:
                raise game_not_active(match.id)
            if participant not in match.players:
                raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no juega en {match.id}")
            if match.player_outcome.get(participant, PlayerOutcome.UNSET) != PlayerOutcome.UNSET:
                raise InvariantViolation(ErrorCode.PLAYER_ALREADY_RESOLVED, "Ya tienes un resultado")

            match.player_outcome[participant] = PlayerOutcome.TIMED_OUT
            self._conclude_if_all_resolved(match)
            return match.lifecycle_state == LifecycleState.COMPLETED

        concluded = await self._mutate(match_id, _apply)

        await self._publish(
            EventType.PLAYER_RESOLVED, match_id,
            {"player": participant, "outcome": PlayerOutcome.TIMED_OUT.value},
        )
        if concluded:
            await self._complete(match_id)
        return self._snapshot(match_id)

    async def _complete(self, match_id: str) -> None:
        match = self.store.get(match_id)
        await self._publish(EventType.MATCH_COMPLETED, match_id, {
            "winner": match.winner,
            "outcome": match.outcome.value,
            "target": match.secret_target,
            "reason": match.end_reason,
        })
        await self.orchestrator.settle(match_id)

    # ==========================================================================
    # ABANDONO
    # ==========================================================================

    async def forfeit(self, match_id: Any, participant: Any) -> Dict[str, Any]:
        match_id = validate_match_id(match_id)
        participant = validate_wallet_address(participant)

        def _apply(match: Match) -> Tuple[str, Optional[str], Match]:
            state = match.lifecycle_state

            if state == LifecycleState.AWAITING_ESCROW:
                if participant != match.creator:
                    raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no participa")
                self._cancel(match, None, "FORFEIT")
                return "unfunded", None, copy.deepcopy(match)

            if state == LifecycleState.WAITING:
                if participant == match.pending_joiner:
                    self._clear_reservation(match, participant)
                    return "withdrawn", participant, copy.deepcopy(match)
                if participant != match.creator:
                    raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no participa")
                joiner = match.pending_joiner
                if joiner is not None:
                    self._clear_reservation(match, joiner)
                self._cancel(match, PayoutOutcome.FORFEIT_WAITING, "FORFEIT")
                return "waiting", joiner, copy.deepcopy(match)

            if state == LifecycleState.PLAYING:
                if participant not in match.players:
                    raise InvariantViolation(ErrorCode.PLAYER_NOT_IN_MATCH, f"{participant} no juega en {match.id}")
                self._conclude(match, match.opponent_of(participant), PayoutOutcome.FORFEIT_ACTIVE, "FORFEIT")
                return "active", None, copy.deepcopy(match)

            raise game_not_active(match.id)

        kind, joiner, after = await self._mutate(match_id, _apply)
        logger.info("[LIFECYCLE] %s abandona %s (%s)", participant, match_id, kind)

        if kind == "unfunded":
            await self.orchestrator.cancel(match_id, participant)
            await self._publish(EventType.MATCH_CANCELLED, match_id, {"reason": "FORFEIT"})
        elif kind == "withdrawn":
            await self.orchestrator.release_reservation(match_id, participant)
            await self._publish(EventType.MATCH_OPENED, match_id, {"released": participant})
        elif kind == "waiting":
            if joiner is not None:
                await self.orchestrator.release_reservation(match_id, joiner)
            await self.orchestrator.cancel(match_id, participant)
            await self._publish(EventType.MATCH_CANCELLED, match_id, {"reason": "FORFEIT", "split": after.split.to_dict()})
            await self._publish(EventType.MATCH_REMOVED, match_id)
        else:
            await self._complete(match_id)

        return self._snapshot(match_id, fallback=after)

    # ==========================================================================
    # OPERACIONES DEL SWEEPER
    # ==========================================================================

    async def expire_unfunded(self, match_id: str) -> bool:
        return await self._discard_unfunded(match_id, ErrorCode.STALE_MATCH.value, EventType.MATCH_EXPIRED)

    async def expire_waiting(self, match_id: str) -> bool:
        """WAITING demasiado tiempo -> CANCELLED con reembolso íntegro."""
        def _apply(match: Match) -> Tuple[bool, Optional[str]]:
            if match.lifecycle_state != LifecycleState.WAITING:
                return False, None
            joiner = match.pending_joiner
            if joiner is not None:
                self._clear_reservation(match, joiner)
            self._cancel(match, PayoutOutcome.REFUND, ErrorCode.STALE_MATCH.value)
            return True, joiner

        expired, joiner = await self.store.with_match(match_id, _apply)
        if not expired:
            return False

        creator = self.store.get(match_id).creator
        if joiner is not None:
            await self.orchestrator.release_reservation(match_id, joiner)
        await self.orchestrator.cancel(match_id, creator)
        await self._publish(EventType.MATCH_EXPIRED, match_id, {"reason": ErrorCode.STALE_MATCH.value})
        await self._publish(EventType.MATCH_REMOVED, match_id)
        return True

    async def force_timeout(self, match_id: str) -> bool:
        """PLAYING más allá de la duración máxima: ambos pierden."""
        def _apply(match: Match) -> bool:
            if match.lifecycle_state != LifecycleState.PLAYING:
                return False
            for player in match.players:
                if match.player_outcome.get(player, PlayerOutcome.UNSET) == PlayerOutcome.UNSET:
                    match.player_outcome[player] = PlayerOutcome.TIMED_OUT
            self._conclude(match, GameRules.HOUSE, PayoutOutcome.BOTH_LOST, ErrorCode.STALE_MATCH.value)
            return True

        if not await self.store.with_match(match_id, _apply):
            return False
        await self._complete(match_id)
        return True

    async def repair(self, match_id: str) -> List[str]:
        """Corrige registros estructuralmente inválidos."""
        def _apply(match: Match) -> Tuple[List[str], Optional[str]]:
            changes = []
            released = None
            limit = GameRules.MAX_PLAYERS_PER_MATCH
            if len(match.players) > limit:
                for extra in match.players[limit:]:
                    match.player_outcome.pop(extra, None)
                match.players = match.players[:limit]
                changes.append("players_truncated")
            if match.lifecycle_state == LifecycleState.WAITING and len(match.players) == limit:
                if match.pending_joiner is not None:
                    released = match.pending_joiner
                    self._clear_reservation(match, released)
                for player in match.players:
                    match.player_outcome.setdefault(player, PlayerOutcome.UNSET)
                self._transition(match, LifecycleState.PLAYING)
                changes.append("waiting_promoted_to_playing")
            return changes, released

        changes, released = await self.store.with_match(match_id, _apply)
        if released is not None:
            await self.orchestrator.release_reservation(match_id, released)
        if changes:
            logger.warning("[LIFECYCLE] Partida %s reparada: %s", match_id, ", ".join(changes))
            await self._publish(EventType.MATCH_REPAIRED, match_id, {"changes": changes})
        return changes

    # ==========================================================================
    # CONSULTAS
    # ==========================================================================

    def get_match(self, match_id: Any) -> Dict[str, Any]:
        return self.store.get(validate_match_id(match_id)).to_dict()

    def list_open_matches(self) -> List[Dict[str, Any]]:
        """Partidas en WAITING con asiento libre."""
        open_matches = self.store.list(
            lambda m: m.lifecycle_state == LifecycleState.WAITING
            and m.pending_joiner is None
            and len(m.players) == 1
        )
        return [match.summary() for match in sorted(open_matches, key=lambda m: m.created_at)]
