"""
=============================================================================
WORDLE WARS - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Servidor del orquestador de partidas y liquidaciones.

Integra:
- FastAPI para REST API
- Socket.IO para eventos en tiempo real
- Sweeper de reconciliación como tarea de fondo
- Journal de liquidaciones (SQLAlchemy async)
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import admin_router, match_error_handler, router as match_router, validation_error_handler
from .config import GameRules, Settings, get_settings
from .errors import MatchError
from .journal import SettlementJournal
from .ledger import build_ledger_adapter
from .lifecycle import MatchLifecycle
from .match_store import MatchStore
from .notifications import NotificationFanout
from .security import RequestRateLimiter
from .settlement import SettlementOrchestrator
from .sweeper import ReconciliationSweeper
from .websocket_handler import SocketIONotificationSink, bind_services, create_socket_app, sio


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Construye la aplicación con todos sus componentes."""
    settings = settings or get_settings()
    if settings.debug:
        logging.getLogger("wordwars").setLevel(logging.DEBUG)

    # ==========================================================================
    # COMPONENTES
    # ==========================================================================
    store = MatchStore(history_size=settings.history_size)
    notifier = NotificationFanout(SocketIONotificationSink(sio))
    journal = SettlementJournal.from_url(settings.journal_url) if settings.journal_url else None
    adapter = build_ledger_adapter(settings)
    orchestrator = SettlementOrchestrator(store, adapter, journal, notifier)
    lifecycle = MatchLifecycle(store, orchestrator, notifier)
    sweeper = ReconciliationSweeper(store, lifecycle, orchestrator, settings)
    rate_limiter = RequestRateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_sec)

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("[WORDWARS] Iniciando servidor (ledger: %s)...", adapter.name)
        if journal is not None:
            await journal.start()
            logger.info("[WORDWARS] Journal listo")
        sweeper.start()
        yield
        logger.info("[WORDWARS] Cerrando servidor...")
        await sweeper.stop()
        await adapter.close()
        if journal is not None:
            await journal.close()

    app = FastAPI(
        title="Wordle Wars API",
        description="""
        ## Orquestador de partidas de Wordle con apuesta

        ### Estados de Partida (FSM):
        AWAITING_ESCROW → WAITING → PLAYING → COMPLETED (o CANCELLED)

        ### Liquidación:
        El ledger externo es la autoridad; los fallos quedan señalados para
        remediación manual y nunca se reintentan automáticamente.
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.journal = journal
    app.state.ledger = adapter
    app.state.orchestrator = orchestrator
    app.state.lifecycle = lifecycle
    app.state.sweeper = sweeper
    app.state.notifier = notifier
    app.state.rate_limiter = rate_limiter

    # ==========================================================================
    # MIDDLEWARE
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    app.add_exception_handler(MatchError, match_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # ==========================================================================
    # ENDPOINTS - HEALTH & STATUS
    # ==========================================================================

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "wordwars-backend",
            "version": __version__,
            "timestamp": time.time(),
        }

    @app.get("/api/v1/status")
    async def server_status():
        """Estado detallado del servidor."""
        last = sweeper.last_report
        return {
            "server": "online",
            "matches": store.stats(),
            "ledger": adapter.name,
            "rules": {
                "min_wager": str(GameRules.MIN_WAGER),
                "max_wager": str(GameRules.MAX_WAGER),
                "max_guesses": GameRules.MAX_GUESSES_PER_PLAYER,
                "winner_fee_bps": GameRules.WINNER_FEE_BPS,
                "waiting_forfeit_fee_bps": GameRules.WAITING_FORFEIT_FEE_BPS,
            },
            "notifications": {"delivered": notifier.delivered, "failed": notifier.failed},
            "last_sweep": last.to_dict() if last else None,
            "timestamp": time.time(),
        }

    app.include_router(match_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    bind_services(lifecycle)
    return app


# =============================================================================
# MONTAR SOCKET.IO
# =============================================================================

# Socket.IO envuelve a FastAPI para que los upgrades de WebSocket funcionen
app = create_app()
combined_app = create_socket_app(app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("wordwars.main:combined_app", host="0.0.0.0", port=8000)
