"""
=============================================================================
WORDLE WARS - Manejador de WebSockets (Socket.IO)
=============================================================================
Transporte de eventos en tiempo real. Los clientes se suscriben a la sala
de una partida y reciben los eventos del ciclo de vida; los eventos de
lobby se difunden a todos.

Las acciones de juego (crear, unirse, adivinar...) van por la API REST;
un evento perdido aquí se recupera consultando GET /api/v1/matches/{id}.
=============================================================================
"""

import logging
import time
from typing import Any, Dict, Optional, Set

import socketio

from .errors import MatchError
from .notifications import EventType, NotificationSink


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURACIÓN DEL SOCKET
# =============================================================================

class SocketConfig:
    """Configuración del servidor de WebSockets."""

    HEARTBEAT_INTERVAL = 25          # Segundos entre pings
    HEARTBEAT_TIMEOUT = 20           # Timeout para considerar desconexión
    MAX_SUBSCRIPTIONS_PER_SID = 10   # Salas por conexión


def get_room_name(match_id: str) -> str:
    return f"room_{match_id}"


# =============================================================================
# SERVIDOR SOCKET.IO
# =============================================================================

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    ping_timeout=SocketConfig.HEARTBEAT_TIMEOUT,
    ping_interval=SocketConfig.HEARTBEAT_INTERVAL,
)

# Servicios enlazados al arrancar la aplicación (ver main.create_app)
_services: Dict[str, Any] = {}
_subscriptions: Dict[str, Set[str]] = {}  # sid -> match_ids


def bind_services(lifecycle) -> None:
    _services["lifecycle"] = lifecycle


class SocketIONotificationSink(NotificationSink):
    """Emite los eventos del ciclo de vida a las salas de Socket.IO."""

    def __init__(self, server: socketio.AsyncServer):
        self.server = server

    async def emit(self, event: Dict[str, Any]) -> None:
        if event["type"] in EventType.LOBBY:
            await self.server.emit(event["type"], event)
        else:
            await self.server.emit(event["type"], event, room=get_room_name(event["matchId"]))


# =============================================================================
# HANDLERS DE EVENTOS
# =============================================================================

@sio.event
async def connect(sid: str, environ: dict, auth: Optional[dict] = None):
    logger.info("[WS] Nueva conexión: %s", sid)
    _subscriptions[sid] = set()
    await sio.emit("connected", {
        "sid": sid,
        "message": "Conectado a Wordle Wars",
        "server_time": time.time(),
    }, room=sid)


@sio.event
async def disconnect(sid: str, *args):
    logger.info("[WS] Desconexión: %s", sid)
    _subscriptions.pop(sid, None)


@sio.event
async def subscribe_match(sid: str, data: dict):
    """
    Suscribe la conexión a la sala de una partida.

    data = {'match_id': str}
    Responde (ack) con el snapshot actual de la partida.
    """
    lifecycle = _services.get("lifecycle")
    match_id = (data or {}).get("match_id") if isinstance(data, dict) else None

    try:
        snapshot = lifecycle.get_match(match_id)
    except MatchError as e:
        return {"ok": False, "error": e.to_dict()}

    rooms = _subscriptions.setdefault(sid, set())
    if snapshot["id"] not in rooms and len(rooms) >= SocketConfig.MAX_SUBSCRIPTIONS_PER_SID:
        return {"ok": False, "error": {"code": "TOO_MANY_SUBSCRIPTIONS", "message": "Límite de salas alcanzado"}}

    await sio.enter_room(sid, get_room_name(snapshot["id"]))
    rooms.add(snapshot["id"])
    logger.debug("[WS] %s suscrito a %s", sid, snapshot["id"])
    return {"ok": True, "match": snapshot}


@sio.event
async def unsubscribe_match(sid: str, data: dict):
    """data = {'match_id': str}"""
    match_id = (data or {}).get("match_id") if isinstance(data, dict) else None
    rooms = _subscriptions.get(sid, set())
    if match_id not in rooms:
        return {"ok": False, "error": {"code": "NOT_SUBSCRIBED", "message": "No estabas suscrito"}}

    await sio.leave_room(sid, get_room_name(match_id))
    rooms.discard(match_id)
    return {"ok": True}


# =============================================================================
# APLICACIÓN ASGI
# =============================================================================

def create_socket_app(other_asgi_app=None) -> socketio.ASGIApp:
    """Envuelve la app FastAPI: /socket.io lo atiende Socket.IO, el resto FastAPI."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app)
