"""
=============================================================================
WORDLE WARS - Almacén de Partidas (Match Store)
=============================================================================
Mapa autoritativo match_id -> Match. Toda mutación de una partida pasa por
with_match(), que serializa los cambios con un asyncio.Lock por partida.
Partidas distintas avanzan en paralelo.

Estructuras:
- Registros activos + locks por partida
- Registro de participantes activos (un jugador, una partida no terminal)
- Historial acotado de partidas concluidas
- Lista de atención (liquidaciones fallidas para el operador)
=============================================================================
"""

import asyncio
import copy
import logging
import secrets
import string
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, TypeVar

from .config import GameRules
from .errors import ErrorCode, InvariantViolation, match_not_found
from .fee_policy import PayoutSplit
from .models import LifecycleState, PayoutOutcome, PlayerOutcome, SettlementState


logger = logging.getLogger(__name__)

T = TypeVar("T")

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_match_id(now: float) -> str:
    """match_<epoch_ms>_<9 caracteres base36>"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"match_{int(now * 1000)}_{suffix}"


# =============================================================================
# ESTRUCTURAS DE DATOS
# =============================================================================

@dataclass
class GuessRecord:
    """Intento registrado (append-only)."""
    player: str
    guess: str
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {"player": self.player, "guess": self.guess, "timestamp": self.timestamp}


@dataclass
class Match:
    """Partida de Wordle Wars."""
    id: str
    wager: Decimal
    secret_target: str
    created_at: float

    # Jugadores (índice 0 = creador)
    players: List[str] = field(default_factory=list)

    # Reserva del segundo asiento (escrow del retador aún sin confirmar)
    pending_joiner: Optional[str] = None
    pending_since: Optional[float] = None
    released_joiners: Dict[str, SettlementState] = field(default_factory=dict)

    # Juego
    guesses: List[GuessRecord] = field(default_factory=list)
    player_outcome: Dict[str, PlayerOutcome] = field(default_factory=dict)

    # Estado FSM
    lifecycle_state: LifecycleState = LifecycleState.AWAITING_ESCROW

    # Escrow por participante + liquidación final
    escrow_state: Dict[str, SettlementState] = field(default_factory=dict)
    escrow_reference: Dict[str, str] = field(default_factory=dict)
    escrow_account: Optional[str] = None
    settlement_state: SettlementState = SettlementState.NOT_STARTED

    # Timing
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Resultado
    winner: Optional[str] = None
    outcome: Optional[PayoutOutcome] = None
    split: Optional[PayoutSplit] = None
    end_reason: Optional[str] = None

    # Liquidación
    settlement_signature: Optional[str] = None
    settlement_error: Optional[str] = None
    needs_attention: bool = False
    remediation_note: Optional[str] = None

    @property
    def creator(self) -> str:
        return self.players[0]

    def is_full(self) -> bool:
        return len(self.players) >= GameRules.MAX_PLAYERS_PER_MATCH

    def participants(self) -> Set[str]:
        """Jugadores + retador con reserva."""
        members = set(self.players)
        if self.pending_joiner:
            members.add(self.pending_joiner)
        return members

    def opponent_of(self, player: str) -> Optional[str]:
        for other in self.players:
            if other != player:
                return other
        return None

    def guess_count(self, player: str) -> int:
        return sum(1 for record in self.guesses if record.player == player)

    def all_resolved(self) -> bool:
        return all(
            self.player_outcome.get(player, PlayerOutcome.UNSET) != PlayerOutcome.UNSET
            for player in self.players
        )

    def assign_escrow(self, participant: str, handle: str, account: str) -> None:
        """Registra el handle de escrow (write-once)."""
        existing = self.escrow_reference.get(participant)
        if existing is not None and existing != handle:
            raise InvariantViolation(
                ErrorCode.IMMUTABLE_FIELD,
                f"Escrow reference already set for {participant}",
            )
        if self.escrow_account is not None and self.escrow_account != account:
            raise InvariantViolation(ErrorCode.IMMUTABLE_FIELD, "Escrow account already set")
        self.escrow_reference[participant] = handle
        self.escrow_account = account

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot público. El objetivo solo se revela al terminar."""
        revealed = self.lifecycle_state.is_terminal
        return {
            "id": self.id,
            "wager": str(self.wager),
            "players": list(self.players),
            "pending_joiner": self.pending_joiner,
            "lifecycle_state": self.lifecycle_state.value,
            "settlement_state": self.settlement_state.value,
            "escrow_state": {p: s.value for p, s in self.escrow_state.items()},
            "escrow_reference": dict(self.escrow_reference),
            "escrow_account": self.escrow_account,
            "guesses": [record.to_dict() for record in self.guesses],
            "guess_counts": {p: self.guess_count(p) for p in self.players},
            "player_outcome": {p: o.value for p, o in self.player_outcome.items()},
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "winner": self.winner,
            "outcome": self.outcome.value if self.outcome else None,
            "split": self.split.to_dict() if self.split else None,
            "end_reason": self.end_reason,
            "settlement_signature": self.settlement_signature,
            "settlement_error": self.settlement_error,
            "needs_attention": self.needs_attention,
            "remediation_note": self.remediation_note,
            "target": self.secret_target if revealed else None,
        }

    def summary(self) -> Dict[str, Any]:
        """Versión corta para el lobby."""
        return {
            "id": self.id,
            "wager": str(self.wager),
            "creator": self.players[0] if self.players else None,
            "lifecycle_state": self.lifecycle_state.value,
            "created_at": self.created_at,
        }


# =============================================================================
# ALMACÉN
# =============================================================================

class MatchStore:
    """
    Almacén de partidas en memoria.
    Un asyncio.Lock por partida; el lock del registro solo cubre las
    verificaciones cruzadas de participantes (crear / unirse).
    """

    def __init__(self, history_size: int = 200, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._matches: Dict[str, Match] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._active_participants: Dict[str, str] = {}  # participant -> match_id
        self._history: Deque[Tuple[float, Match]] = deque(maxlen=history_size)
        self._attention: Dict[str, Match] = {}

    # ==========================================================================
    # CREACIÓN Y REGISTRO DE PARTICIPANTES
    # ==========================================================================

    async def create(self, wager: Decimal, creator: str, target: str) -> Match:
        """Crea una partida en AWAITING_ESCROW."""
        async with self._registry_lock:
            if creator in self._active_participants:
                raise InvariantViolation(
                    ErrorCode.DUPLICATE_ACTIVE_PARTICIPANT,
                    f"{creator} ya tiene una partida activa",
                    {"match_id": self._active_participants[creator]},
                )

            now = self.clock()
            match = Match(
                id=generate_match_id(now),
                wager=wager,
                secret_target=target,
                created_at=now,
                players=[creator],
                escrow_state={creator: SettlementState.NOT_STARTED},
            )
            self._matches[match.id] = match
            self._locks[match.id] = asyncio.Lock()
            self._active_participants[creator] = match.id

        logger.info("[STORE] Partida %s creada por %s (%s SOL)", match.id, creator, wager)
        return copy.deepcopy(match)

    async def claim_participant(self, match_id: str, participant: str) -> None:
        """Reserva al participante para una partida (regla cruzada)."""
        async with self._registry_lock:
            current = self._active_participants.get(participant)
            if current is not None and current != match_id:
                raise InvariantViolation(
                    ErrorCode.DUPLICATE_ACTIVE_PARTICIPANT,
                    f"{participant} ya tiene una partida activa",
                    {"match_id": current},
                )
            self._active_participants[participant] = match_id

    def release_participant(self, participant: str, match_id: str) -> None:
        if self._active_participants.get(participant) == match_id:
            del self._active_participants[participant]

    def active_match_of(self, participant: str) -> Optional[str]:
        return self._active_participants.get(participant)

    def _sync_registry(self, before: Match, after: Match) -> None:
        keep = set() if after.lifecycle_state.is_terminal else after.participants()
        for participant in before.participants() | after.participants():
            if participant not in keep:
                self.release_participant(participant, after.id)

    # ==========================================================================
    # MUTACIÓN
    # ==========================================================================

    async def with_match(self, match_id: str, fn: Callable[[Match], T]) -> T:
        """
        Aplica fn a una copia de trabajo bajo el lock de la partida.
        La copia solo se confirma si fn retorna normalmente.
        """
        lock = self._locks.get(match_id)
        if lock is None:
            raise match_not_found(match_id)

        async with lock:
            current = self._matches.get(match_id)
            if current is None:
                # Eliminada mientras esperábamos el lock
                raise match_not_found(match_id)

            working = copy.deepcopy(current)
            result = fn(working)
            self._matches[match_id] = working
            self._sync_registry(current, working)
            return result

    async def remove(self, match_id: str, force: bool = False) -> Match:
        """Elimina una partida. Solo desde estados terminales salvo force."""
        lock = self._locks.get(match_id)
        if lock is None:
            raise match_not_found(match_id)

        async with lock:
            match = self._matches.get(match_id)
            if match is None:
                raise match_not_found(match_id)
            if not force and not match.lifecycle_state.is_terminal:
                raise InvariantViolation(
                    ErrorCode.MATCH_NOT_REMOVABLE,
                    f"La partida {match_id} está en {match.lifecycle_state.value}",
                )
            del self._matches[match_id]
            del self._locks[match_id]
            for participant in match.participants():
                self.release_participant(participant, match_id)

        logger.info("[STORE] Partida %s eliminada (force=%s)", match_id, force)
        return copy.deepcopy(match)

    async def archive(self, match_id: str) -> Match:
        """Mueve una partida concluida al historial."""
        match = await self.remove(match_id)
        self._history.append((self.clock(), match))
        if match.needs_attention:
            self._attention[match_id] = match
        return copy.deepcopy(match)

    # ==========================================================================
    # LECTURA
    # ==========================================================================

    def get(self, match_id: str) -> Match:
        """Snapshot de una partida activa o del historial."""
        match = self._matches.get(match_id)
        if match is None:
            match = self._find_in_history(match_id)
        if match is None:
            raise match_not_found(match_id)
        return copy.deepcopy(match)

    def _find_in_history(self, match_id: str) -> Optional[Match]:
        for _, match in reversed(self._history):
            if match.id == match_id:
                return match
        return None

    def is_active(self, match_id: str) -> bool:
        return match_id in self._matches

    def in_history(self, match_id: str) -> bool:
        return self._find_in_history(match_id) is not None

    def list(self, predicate: Optional[Callable[[Match], bool]] = None) -> List[Match]:
        """Escaneo de solo lectura sobre las partidas activas."""
        return [
            copy.deepcopy(match)
            for match in list(self._matches.values())
            if predicate is None or predicate(match)
        ]

    def history(self) -> List[Match]:
        return [copy.deepcopy(match) for _, match in self._history]

    def evict_history(self, older_than: float) -> int:
        """Descarta entradas del historial archivadas antes de older_than."""
        evicted = 0
        while self._history and self._history[0][0] < older_than:
            self._history.popleft()
            evicted += 1
        return evicted

    # ==========================================================================
    # LISTA DE ATENCIÓN (OPERADOR)
    # ==========================================================================

    def flagged(self) -> List[Match]:
        """Partidas con liquidación fallida pendientes de remediación."""
        flagged = {match.id: match for match in self._matches.values() if match.needs_attention}
        flagged.update(self._attention)
        return [copy.deepcopy(match) for match in flagged.values()]

    async def resolve_attention(self, match_id: str, note: str) -> Match:
        """Registra la nota del operador. No reintenta la liquidación."""
        if match_id in self._matches:
            def _resolve(match: Match) -> Match:
                match.needs_attention = False
                match.remediation_note = note
                return copy.deepcopy(match)
            return await self.with_match(match_id, _resolve)

        match = self._attention.pop(match_id, None)
        if match is None:
            raise match_not_found(match_id)
        match.needs_attention = False
        match.remediation_note = note
        return copy.deepcopy(match)

    def stats(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in LifecycleState}
        for match in self._matches.values():
            counts[match.lifecycle_state.value] += 1
        counts["history"] = len(self._history)
        counts["needs_attention"] = len(self.flagged())
        return counts
