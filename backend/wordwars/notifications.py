"""
=============================================================================
WORDLE WARS - Difusión de Notificaciones
=============================================================================
Entrega best-effort de eventos del ciclo de vida. Un fallo de entrega se
registra y nunca interrumpe la operación; los clientes recuperan eventos
perdidos consultando el estado de la partida.
=============================================================================
"""

import logging
import time
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType:
    """Eventos emitidos a los clientes."""

    MATCH_CREATED = "match_created"
    MATCH_OPENED = "match_opened"
    JOIN_PENDING = "join_pending"
    MATCH_STARTED = "match_started"
    GUESS_SUBMITTED = "guess_submitted"
    PLAYER_RESOLVED = "player_resolved"
    MATCH_COMPLETED = "match_completed"
    MATCH_CANCELLED = "match_cancelled"
    MATCH_EXPIRED = "match_expired"
    MATCH_REMOVED = "match_removed"
    MATCH_REPAIRED = "match_repaired"
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_FAILED = "settlement_failed"

    # Eventos de lobby (se difunden a todos)
    LOBBY = (MATCH_OPENED, MATCH_REMOVED)


class NotificationSink:
    """Destino de eventos (transporte)."""

    async def emit(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError


class RecordingSink(NotificationSink):
    """Guarda los eventos en memoria."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event["type"] for event in self.events]


class NotificationFanout:
    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink
        self.delivered = 0
        self.failed = 0

    async def publish(self, event_type: str, match_id: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if self.sink is None:
            return

        event = {
            "type": event_type,
            "matchId": match_id,
            "payload": payload or {},
            "timestamp": time.time(),
        }
        try:
            await self.sink.emit(event)
            self.delivered += 1
        except Exception as e:
            self.failed += 1
            logger.warning("[NOTIFY] No se pudo entregar %s de %s: %s", event_type, match_id, e)
