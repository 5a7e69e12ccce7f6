"""
=============================================================================
WORDLE WARS - Validación de Entradas y Rate Limiting
=============================================================================
Toda entrada se valida ANTES de tocar el estado de una partida.

Implementa:
- Formato de direcciones de wallet (base58, 32-44 caracteres)
- Rango de apuesta [0.022, 10] SOL
- Formato de IDs de partida, intentos y pruebas de escrow
- Sanitización de strings
- Rate limiting por IP (ventana deslizante)
=============================================================================
"""

import re
import time
from collections import defaultdict
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List

from .config import GameRules
from .errors import ErrorCode, InvalidInput, RateLimited


# =============================================================================
# PATRONES
# =============================================================================

class SecurityConfig:
    """Patrones y umbrales de validación."""

    WALLET_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
    MATCH_ID_PATTERN = re.compile(r"^match_\d+_[a-z0-9]{9}$")
    GUESS_PATTERN = re.compile(r"^[A-Z]{%d}$" % GameRules.WORD_LENGTH)
    PROOF_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")
    UNSAFE_CHARS = re.compile(r"[<>\"'&]")


# =============================================================================
# VALIDADORES
# =============================================================================

def sanitize_string(value: Any) -> str:
    """Elimina caracteres peligrosos y espacios externos."""
    if not isinstance(value, str):
        return ""
    return SecurityConfig.UNSAFE_CHARS.sub("", value).strip()


def validate_wallet_address(address: Any) -> str:
    cleaned = sanitize_string(address)
    if not SecurityConfig.WALLET_PATTERN.match(cleaned):
        raise InvalidInput(ErrorCode.INVALID_PARTICIPANT, "Dirección de wallet inválida")
    return cleaned


def validate_wager(wager: Any) -> Decimal:
    """
    Valida la apuesta. Acepta str, int, float o Decimal.
    Los floats se convierten vía str para no arrastrar error binario.
    """
    if isinstance(wager, bool):
        raise InvalidInput(ErrorCode.INVALID_WAGER, "Apuesta inválida")
    try:
        amount = Decimal(str(wager))
    except (InvalidOperation, ValueError):
        raise InvalidInput(ErrorCode.INVALID_WAGER, "Apuesta inválida")

    if not amount.is_finite() or amount < GameRules.MIN_WAGER or amount > GameRules.MAX_WAGER:
        raise InvalidInput(
            ErrorCode.INVALID_WAGER,
            f"La apuesta debe estar entre {GameRules.MIN_WAGER} y {GameRules.MAX_WAGER} SOL",
        )
    if amount.normalize().as_tuple().exponent < -GameRules.AMOUNT_DECIMALS:
        raise InvalidInput(
            ErrorCode.INVALID_WAGER,
            f"La apuesta admite como máximo {GameRules.AMOUNT_DECIMALS} decimales",
        )
    return amount


def validate_match_id(match_id: Any) -> str:
    cleaned = sanitize_string(match_id)
    if not SecurityConfig.MATCH_ID_PATTERN.match(cleaned):
        raise InvalidInput(ErrorCode.INVALID_MATCH_ID, "ID de partida inválido")
    return cleaned


def normalize_guess(text: Any) -> str:
    """Normaliza a mayúsculas y valida longitud/charset."""
    guess = text.strip().upper() if isinstance(text, str) else ""
    if not SecurityConfig.GUESS_PATTERN.match(guess):
        raise InvalidInput(
            ErrorCode.INVALID_GUESS_FORMAT,
            f"El intento debe tener {GameRules.WORD_LENGTH} letras",
        )
    return guess


def validate_proof(proof: Any) -> str:
    """Firma de transacción en base58 (formato, no verificación)."""
    cleaned = proof.strip() if isinstance(proof, str) else ""
    if not SecurityConfig.PROOF_PATTERN.match(cleaned):
        raise InvalidInput(ErrorCode.INVALID_PROOF, "Prueba de escrow inválida")
    return cleaned


# =============================================================================
# RATE LIMITING
# =============================================================================

class RequestRateLimiter:
    """
    Ventana deslizante por clave (IP del cliente).
    En memoria; en producción debería vivir en Redis.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_sec: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_sec = window_sec
        self.clock = clock
        self.requests: Dict[str, List[float]] = defaultdict(list)
        self._last_prune = clock()

    def hit(self, key: str) -> None:
        """Registra una solicitud; lanza RateLimited si excede el límite."""
        now = self.clock()
        if now - self._last_prune >= self.window_sec:
            self.prune()
        cutoff = now - self.window_sec
        recent = [ts for ts in self.requests[key] if ts > cutoff]

        if len(recent) >= self.max_requests:
            self.requests[key] = recent
            retry_after = int(recent[0] + self.window_sec - now) + 1
            raise RateLimited(
                ErrorCode.RATE_LIMITED,
                "Demasiadas solicitudes",
                {"retry_after": retry_after},
            )

        recent.append(now)
        self.requests[key] = recent

    def prune(self) -> None:
        """Elimina claves sin actividad en la ventana actual."""
        self._last_prune = self.clock()
        cutoff = self._last_prune - self.window_sec
        for key in list(self.requests):
            if not any(ts > cutoff for ts in self.requests[key]):
                del self.requests[key]
