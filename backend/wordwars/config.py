"""
=============================================================================
WORDLE WARS - Configuración
=============================================================================
Reglas del juego (constantes de negocio) y configuración del servidor
tomada de variables de entorno.
=============================================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import List


# =============================================================================
# REGLAS DEL JUEGO
# =============================================================================

class GameRules:
    """Reglas fijas de una partida."""

    MIN_WAGER = Decimal("0.022")       # SOL
    MAX_WAGER = Decimal("10")          # SOL
    MAX_PLAYERS_PER_MATCH = 2
    MAX_GUESSES_PER_PLAYER = 6
    WORD_LENGTH = 5

    # Comisiones en basis points (igual que el programa on-chain)
    WINNER_FEE_BPS = 200               # 2% del pot al ganar
    WAITING_FORFEIT_FEE_BPS = 500      # 5% al abandonar sin oponente
    ACTIVE_FORFEIT_PENALTY_BPS = 10000 # 100% al abandonar con oponente

    # Precisión del ledger (lamports)
    AMOUNT_DECIMALS = 9

    HOUSE = "HOUSE"                    # Centinela de ganador "casa"


# =============================================================================
# CONFIGURACIÓN DEL SERVIDOR
# =============================================================================

def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, "1" if default else "0").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    """Configuración del servidor (valores por defecto = desarrollo)."""

    debug: bool = False
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    # Timers del Sweeper (segundos)
    sweep_interval_sec: int = 60
    escrow_confirmation_timeout_sec: int = 120
    waiting_expiry_sec: int = 30 * 60
    max_match_duration_sec: int = 5 * 60

    # Historial de partidas terminadas
    history_size: int = 200
    history_retention_sec: int = 10 * 60

    # Rate limiting
    rate_limit_window_sec: int = 60
    rate_limit_max_requests: int = 100

    # Ledger externo
    ledger_backend: str = "simulated"          # simulated | http
    ledger_url: str = "http://localhost:8899"
    ledger_timeout_sec: int = 15
    ledger_credentials: str = "ephemeral"      # env | file | ephemeral
    ledger_key_env: str = "LEDGER_AUTHORITY_KEY"
    ledger_key_path: str = ""
    house_wallet: str = "FRG1E6NiJ9UVN4T4v2r9hN1JzqB9r1uPuetCLXuqiRjT"

    # Journal de liquidaciones
    journal_url: str = "sqlite+aiosqlite:///./wordwars_journal.db"

    # Administración
    admin_token: str = ""


def load_settings() -> Settings:
    """Construye Settings a partir de las variables de entorno."""
    return Settings(
        debug=_env_bool("DEBUG", False),
        allowed_origins=os.environ.get("ALLOWED_ORIGINS", "*").split(","),
        sweep_interval_sec=_env_int("SWEEP_INTERVAL_SEC", 60),
        escrow_confirmation_timeout_sec=_env_int("ESCROW_CONFIRMATION_TIMEOUT_SEC", 120),
        waiting_expiry_sec=_env_int("WAITING_EXPIRY_SEC", 30 * 60),
        max_match_duration_sec=_env_int("MAX_MATCH_DURATION_SEC", 5 * 60),
        history_size=_env_int("HISTORY_SIZE", 200),
        history_retention_sec=_env_int("HISTORY_RETENTION_SEC", 10 * 60),
        rate_limit_window_sec=_env_int("RATE_LIMIT_WINDOW_SEC", 60),
        rate_limit_max_requests=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
        ledger_backend=os.environ.get("LEDGER_BACKEND", "simulated"),
        ledger_url=os.environ.get("LEDGER_URL", "http://localhost:8899"),
        ledger_timeout_sec=_env_int("LEDGER_TIMEOUT_SEC", 15),
        ledger_credentials=os.environ.get("LEDGER_CREDENTIALS", "ephemeral"),
        ledger_key_env=os.environ.get("LEDGER_KEY_ENV", "LEDGER_AUTHORITY_KEY"),
        ledger_key_path=os.environ.get("LEDGER_KEY_PATH", ""),
        house_wallet=os.environ.get("HOUSE_WALLET", "FRG1E6NiJ9UVN4T4v2r9hN1JzqB9r1uPuetCLXuqiRjT"),
        journal_url=os.environ.get("JOURNAL_URL", "sqlite+aiosqlite:///./wordwars_journal.db"),
        admin_token=os.environ.get("ADMIN_TOKEN", ""),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
