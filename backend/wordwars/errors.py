"""
=============================================================================
WORDLE WARS - Taxonomía de Errores
=============================================================================
Toda solicitud rechazada devuelve un código legible por máquina.

Categorías:
- INVALID_INPUT: datos mal formados (rechazados antes de tocar el estado)
- INVARIANT_VIOLATION: la operación rompería una regla de la partida
- EXTERNAL_LEDGER_FAILURE: el ledger externo falló (estado preservado)
- STALE_MATCH: partida resuelta forzosamente por el Sweeper
- RATE_LIMITED: demasiadas solicitudes
=============================================================================
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categoría del error (determina el status HTTP)."""
    INVALID_INPUT = "INVALID_INPUT"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    EXTERNAL_LEDGER_FAILURE = "EXTERNAL_LEDGER_FAILURE"
    STALE_MATCH = "STALE_MATCH"
    RATE_LIMITED = "RATE_LIMITED"


class ErrorCode(str, Enum):
    """Códigos específicos de rechazo."""
    # Entrada inválida
    INVALID_WAGER = "INVALID_WAGER"
    INVALID_PARTICIPANT = "INVALID_PARTICIPANT"
    INVALID_MATCH_ID = "INVALID_MATCH_ID"
    INVALID_GUESS_FORMAT = "INVALID_GUESS_FORMAT"
    INVALID_PROOF = "INVALID_PROOF"
    INVALID_REQUEST = "INVALID_REQUEST"

    # Violaciones de invariantes
    MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
    DUPLICATE_ACTIVE_PARTICIPANT = "DUPLICATE_ACTIVE_PARTICIPANT"
    GAME_NOT_ACTIVE = "GAME_NOT_ACTIVE"
    PLAYER_NOT_IN_MATCH = "PLAYER_NOT_IN_MATCH"
    MATCH_FULL = "MATCH_FULL"
    CANNOT_JOIN_OWN_MATCH = "CANNOT_JOIN_OWN_MATCH"
    PLAYER_ALREADY_RESOLVED = "PLAYER_ALREADY_RESOLVED"
    ESCROW_NOT_PENDING = "ESCROW_NOT_PENDING"
    MATCH_NOT_REMOVABLE = "MATCH_NOT_REMOVABLE"
    SETTLEMENT_NOT_READY = "SETTLEMENT_NOT_READY"
    RESERVATION_RELEASED = "RESERVATION_RELEASED"
    IMMUTABLE_FIELD = "IMMUTABLE_FIELD"

    # Externos
    LEDGER_ERROR = "LEDGER_ERROR"
    STALE_MATCH = "STALE_MATCH"
    RATE_LIMITED = "RATE_LIMITED"


class MatchError(Exception):
    """Error base de la capa de partidas."""

    category: ErrorCategory = ErrorCategory.INVARIANT_VIOLATION
    status_code: int = 409

    def __init__(self, code: ErrorCode, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message or code.value
        self.details = details or {}
        super().__init__(f"{code.value}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(MatchError):
    category = ErrorCategory.INVALID_INPUT
    status_code = 400


class InvariantViolation(MatchError):
    category = ErrorCategory.INVARIANT_VIOLATION
    status_code = 409

    def __init__(self, code: ErrorCode, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)
        if code == ErrorCode.MATCH_NOT_FOUND:
            self.status_code = 404
        elif code == ErrorCode.PLAYER_NOT_IN_MATCH:
            self.status_code = 403


class ExternalLedgerFailure(MatchError):
    category = ErrorCategory.EXTERNAL_LEDGER_FAILURE
    status_code = 502


class StaleMatch(MatchError):
    category = ErrorCategory.STALE_MATCH
    status_code = 410


class RateLimited(MatchError):
    category = ErrorCategory.RATE_LIMITED
    status_code = 429


def match_not_found(match_id: str) -> InvariantViolation:
    return InvariantViolation(ErrorCode.MATCH_NOT_FOUND, f"Partida no encontrada: {match_id}")


def game_not_active(match_id: str) -> InvariantViolation:
    return InvariantViolation(ErrorCode.GAME_NOT_ACTIVE, f"La partida {match_id} no está activa")
