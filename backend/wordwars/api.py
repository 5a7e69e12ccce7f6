"""
=============================================================================
WORDLE WARS - API REST
=============================================================================
Superficie HTTP del ciclo de vida de partidas.
Incluye:
- Crear, listar, consultar, unirse, confirmar escrow
- Intentos, abandono y timeout reportado por el cliente
- Administración: listado de depuración, liquidaciones señaladas,
  remediación manual y pasada manual del sweeper

Errores: {"error": {"code", "category", "message"}}
=============================================================================
"""

import logging
import secrets
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .errors import ErrorCategory, ErrorCode, MatchError


logger = logging.getLogger(__name__)


# =============================================================================
# DEPENDENCIAS
# =============================================================================

def get_lifecycle(request: Request):
    return request.app.state.lifecycle


async def enforce_rate_limit(request: Request) -> None:
    """Ventana deslizante por IP del cliente."""
    client = request.client.host if request.client else "unknown"
    request.app.state.rate_limiter.hit(client)


security = HTTPBearer(auto_error=False)


async def get_current_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    """
    Verifica el token de administrador (ADMIN_TOKEN).
    Sin token configurado, la administración queda deshabilitada.
    """
    expected = request.app.state.settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API disabled")
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")
    return {"role": "admin"}


# =============================================================================
# SCHEMAS
# =============================================================================

class CreateMatchRequest(BaseModel):
    """Request para crear una partida."""
    wager: Union[str, float, int]
    participant: str = Field(..., max_length=64)


class ParticipantRequest(BaseModel):
    participant: str = Field(..., max_length=64)


class ConfirmEscrowRequest(BaseModel):
    """Firma de la transacción de depósito enviada por el cliente."""
    participant: str = Field(..., max_length=64)
    proof: str = Field(..., max_length=128)


class GuessRequest(BaseModel):
    participant: str = Field(..., max_length=64)
    guess: str = Field(..., max_length=32)


class ResolveRequest(BaseModel):
    """Nota de remediación del operador."""
    note: str = Field(..., min_length=3, max_length=500)


# =============================================================================
# MANEJADORES DE ERRORES
# =============================================================================

async def match_error_handler(request: Request, exc: MatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("[API] %s %s -> %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {
            "code": ErrorCode.INVALID_REQUEST.value,
            "category": ErrorCategory.INVALID_INPUT.value,
            "message": "Cuerpo de solicitud inválido",
            "details": {"errors": [
                {"loc": list(error.get("loc", [])), "msg": error.get("msg", "")}
                for error in exc.errors()
            ]},
        }},
    )


# =============================================================================
# ENDPOINTS - PARTIDAS
# =============================================================================

router = APIRouter(prefix="/matches", tags=["Matches"], dependencies=[Depends(enforce_rate_limit)])


@router.get("")
async def list_open_matches(lifecycle=Depends(get_lifecycle)):
    """Partidas esperando oponente."""
    matches = lifecycle.list_open_matches()
    return {"matches": matches, "count": len(matches)}


@router.post("", status_code=201)
async def create_match(body: CreateMatchRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.create_match(body.wager, body.participant)}


@router.get("/{match_id}")
async def get_match(match_id: str, lifecycle=Depends(get_lifecycle)):
    return {"match": lifecycle.get_match(match_id)}


@router.post("/{match_id}/join")
async def join_match(match_id: str, body: ParticipantRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.join_match(match_id, body.participant)}


@router.post("/{match_id}/escrow/confirm")
async def confirm_escrow(match_id: str, body: ConfirmEscrowRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.confirm_escrow(match_id, body.participant, body.proof)}


@router.post("/{match_id}/guess")
async def submit_guess(match_id: str, body: GuessRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.submit_guess(match_id, body.participant, body.guess)}


@router.post("/{match_id}/forfeit")
async def forfeit(match_id: str, body: ParticipantRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.forfeit(match_id, body.participant)}


@router.post("/{match_id}/timeout")
async def report_timeout(match_id: str, body: ParticipantRequest, lifecycle=Depends(get_lifecycle)):
    return {"match": await lifecycle.report_timeout(match_id, body.participant)}


# =============================================================================
# ENDPOINTS - ADMINISTRACIÓN
# =============================================================================

admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(get_current_admin)])


@admin_router.get("/matches")
async def debug_matches(request: Request):
    """Listado de depuración: partidas activas e historial."""
    store = request.app.state.store
    return {
        "active": [match.to_dict() for match in store.list()],
        "history": [match.to_dict() for match in store.history()],
        "stats": store.stats(),
        "ledger": request.app.state.ledger.audit(),
    }


@admin_router.get("/settlements/flagged")
async def flagged_settlements(request: Request):
    """Liquidaciones fallidas pendientes de remediación."""
    store = request.app.state.store
    journal = request.app.state.journal
    entries = [entry.to_dict() for entry in await journal.flagged()] if journal else []
    return {
        "matches": [match.to_dict() for match in store.flagged()],
        "journal": entries,
    }


@admin_router.post("/matches/{match_id}/resolve")
async def resolve_flagged(match_id: str, body: ResolveRequest, request: Request):
    """
    Registra la remediación manual de una liquidación fallida.
    NO reintenta la llamada al ledger.
    """
    store = request.app.state.store
    journal = request.app.state.journal

    match = await store.resolve_attention(match_id, body.note)
    resolved_entries = await journal.resolve(match_id, body.note) if journal else 0
    logger.info("[ADMIN] %s marcada como resuelta: %s", match_id, body.note)
    return {"match": match.to_dict(), "journal_entries_resolved": resolved_entries}


@admin_router.post("/sweep")
async def manual_sweep(request: Request):
    """Ejecuta una pasada del sweeper inmediatamente."""
    report = await request.app.state.sweeper.run_once()
    return {"report": report.to_dict()}
