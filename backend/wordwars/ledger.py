"""
=============================================================================
WORDLE WARS - Adaptador del Ledger Externo
=============================================================================
Interfaz estrecha hacia el servicio de liquidación (programa de escrow).
El orquestador de liquidaciones es su ÚNICO llamador.

Contrato:
- request_escrow(match_key, participant, amount) -> EscrowHandle
- confirm(handle, proof)
- settle(account, winner, split) -> signature
- cancel(handle, split)

Todas las llamadas son idempotentes por handle/cuenta. Los errores se
reportan como LedgerError(reason) sin estado parcial.

Implementaciones:
- SimulatedLedgerAdapter: escrow en memoria con auditoría de triple entrada
- HttpLedgerAdapter: cliente aiohttp firmado con un CredentialProvider
=============================================================================
"""

import asyncio
import hashlib
import json
import logging
import secrets
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .config import GameRules, Settings
from .credentials import CredentialProvider, build_credential_provider
from .fee_policy import PayoutSplit


logger = logging.getLogger(__name__)


# =============================================================================
# CONTRATO
# =============================================================================

class LedgerError(Exception):
    """Fallo del ledger con motivo legible por máquina."""

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason
        self.message = message or reason
        super().__init__(f"{reason}: {self.message}")


@dataclass(frozen=True)
class EscrowHandle:
    handle: str
    account: str
    requires_proof: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"handle": self.handle, "account": self.account, "requires_proof": self.requires_proof}


class LedgerAdapter:
    """Interfaz base del ledger externo."""

    name = "base"

    async def request_escrow(self, match_key: str, participant: str, amount: Decimal) -> EscrowHandle:
        raise NotImplementedError

    async def confirm(self, handle: str, proof: Optional[str]) -> None:
        raise NotImplementedError

    async def settle(self, account: str, winner: str, split: PayoutSplit) -> str:
        raise NotImplementedError

    async def cancel(self, handle: str, split: PayoutSplit) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    def audit(self) -> Optional[Dict[str, Any]]:
        """Resumen de auditoría local; None si el ledger es remoto."""
        return None


# =============================================================================
# AUDITORÍA - TRIPLE ENTRADA
# =============================================================================

@dataclass
class LedgerEntry:
    """
    Entrada del libro mayor con triple entrada.

    1. Débito: fondos que salen del escrow
    2. Crédito: fondos que recibe el ganador o el reembolsado
    3. Rake: lo que va a la casa
    """
    entry_id: str
    account: str
    timestamp: float

    debitor_id: str         # Cuenta de escrow
    creditor_id: str        # Ganador / reembolsado / casa

    debit_amount: Decimal
    credit_amount: Decimal
    rake_amount: Decimal

    house_id: str = GameRules.HOUSE
    status: str = "COMMITTED"

    def validate_balance_equation(self) -> bool:
        """Débito = Crédito + Rake"""
        return self.debit_amount == (self.credit_amount + self.rake_amount)


@dataclass
class EscrowAccount:
    """Cuenta de escrow simulada (una por partida)."""
    account: str
    match_key: str
    requested: Dict[str, Decimal] = field(default_factory=dict)
    deposits: Dict[str, Decimal] = field(default_factory=dict)  # confirmados
    status: str = "OPEN"  # OPEN, SETTLED
    signature: Optional[str] = None

    @property
    def balance(self) -> Decimal:
        return sum(self.deposits.values(), Decimal("0"))


# =============================================================================
# LEDGER SIMULADO
# =============================================================================

class SimulatedLedgerAdapter(LedgerAdapter):
    """
    Ledger en memoria para desarrollo y pruebas.

    Permite inyectar fallos (fail_next) y latencia para ejercitar los
    caminos de error del orquestador.
    """

    name = "simulated"

    def __init__(self, latency: float = 0.0, requires_proof: bool = True):
        self.latency = latency
        self.requires_proof = requires_proof
        self.accounts: Dict[str, EscrowAccount] = {}
        self.handles: Dict[str, tuple] = {}           # handle -> (account, participant)
        self.cancelled: Dict[str, PayoutSplit] = {}   # handle -> split aplicado
        self.entries: List[LedgerEntry] = []
        self.treasury_balance: Decimal = Decimal("0")
        self.payouts: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[str]] = defaultdict(list)

    # ==========================================================================
    # INYECCIÓN DE FALLOS
    # ==========================================================================

    def fail_next(self, operation: str, reason: str = "SIMULATED_FAILURE", times: int = 1) -> None:
        """Hace fallar las próximas `times` llamadas a operation."""
        self._failures[operation].extend([reason] * times)

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failures[operation]:
            raise LedgerError(self._failures[operation].pop(0), f"{operation} failed")

    # ==========================================================================
    # OPERACIONES
    # ==========================================================================

    async def request_escrow(self, match_key: str, participant: str, amount: Decimal) -> EscrowHandle:
        await self._enter("request_escrow")

        account_id = "acct_" + hashlib.sha256(match_key.encode()).hexdigest()[:24]
        handle = "esc_" + hashlib.sha256(f"{match_key}:{participant}".encode()).hexdigest()[:24]

        account = self.accounts.setdefault(account_id, EscrowAccount(account=account_id, match_key=match_key))
        account.requested.setdefault(participant, Decimal(amount))
        self.handles[handle] = (account_id, participant)

        return EscrowHandle(handle=handle, account=account_id, requires_proof=self.requires_proof)

    async def confirm(self, handle: str, proof: Optional[str]) -> None:
        await self._enter("confirm")

        account, participant = self._resolve(handle)
        if handle in self.cancelled:
            raise LedgerError("ESCROW_CANCELLED", f"Escrow {handle} was cancelled")
        account.deposits[participant] = account.requested[participant]

    async def settle(self, account_id: str, winner: str, split: PayoutSplit) -> str:
        await self._enter("settle")

        account = self.accounts.get(account_id)
        if account is None:
            raise LedgerError("UNKNOWN_ACCOUNT", account_id)
        if account.status == "SETTLED":
            return account.signature

        if split.distributed != account.balance:
            raise LedgerError(
                "SPLIT_MISMATCH",
                f"split distributes {split.distributed}, escrow holds {account.balance}",
            )

        creditor = winner if split.to_winner else GameRules.HOUSE
        entry = self._record_entry(account_id, creditor, account.balance, split.to_winner, split.to_house)
        if split.to_winner:
            self.payouts[winner] += split.to_winner

        account.status = "SETTLED"
        account.signature = "sim_" + secrets.token_hex(32)
        logger.info("[LEDGER] Liquidado %s: ganador %s, casa +%s", account_id, creditor, entry.rake_amount)
        return account.signature

    async def cancel(self, handle: str, split: PayoutSplit) -> None:
        await self._enter("cancel")

        account, participant = self._resolve(handle)
        if handle in self.cancelled:
            return

        deposit = account.deposits.pop(participant, Decimal("0"))
        if deposit:
            if split.refund + split.to_house != deposit:
                account.deposits[participant] = deposit
                raise LedgerError("SPLIT_MISMATCH", f"cancel split does not match deposit {deposit}")
            self._record_entry(account.account, participant, deposit, split.refund, split.to_house)
            self.payouts[participant] += split.refund

        self.cancelled[handle] = split

    # ==========================================================================
    # AUDITORÍA
    # ==========================================================================

    def _resolve(self, handle: str):
        if handle not in self.handles:
            raise LedgerError("UNKNOWN_HANDLE", handle)
        account_id, participant = self.handles[handle]
        return self.accounts[account_id], participant

    def _record_entry(
        self,
        account_id: str,
        creditor: str,
        debit: Decimal,
        credit: Decimal,
        rake: Decimal,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            entry_id=f"LED-{account_id[5:13]}-{len(self.entries) + 1}",
            account=account_id,
            timestamp=time.time(),
            debitor_id=account_id,
            creditor_id=creditor,
            debit_amount=debit,
            credit_amount=credit,
            rake_amount=rake,
        )
        if not entry.validate_balance_equation():
            raise LedgerError("BALANCE_EQUATION", f"Balance equation failed for entry {entry.entry_id}")

        self.entries.append(entry)
        self.treasury_balance += rake
        return entry

    def audit(self) -> Dict[str, Any]:
        """Recalcula la tesorería desde los asientos y detecta descuadres."""
        unbalanced = [e.entry_id for e in self.entries if not e.validate_balance_equation()]
        rake = sum((e.rake_amount for e in self.entries), Decimal("0"))
        return {
            "entries": len(self.entries),
            "open_accounts": sum(1 for a in self.accounts.values() if a.status == "OPEN"),
            "treasury": str(self.treasury_balance),
            "unbalanced_entries": unbalanced,
            "consistent": rake == self.treasury_balance and not unbalanced,
        }


# =============================================================================
# LEDGER HTTP
# =============================================================================

class HttpLedgerAdapter(LedgerAdapter):
    """
    Cliente del servicio de liquidación.
    Cada solicitud lleva Idempotency-Key y la firma HMAC del cuerpo.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        house_wallet: str,
        timeout_sec: float = 15,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.house_wallet = house_wallet
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, path: str, body: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        payload = json.dumps(body, sort_keys=True).encode()
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
            "X-Ledger-Authority": self.credentials.authority_id,
            "X-Ledger-Signature": self.credentials.sign(payload),
        }

        try:
            async with self._get_session().post(f"{self.base_url}{path}", data=payload, headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    data = {}
                if resp.status >= 400:
                    raise LedgerError(
                        data.get("reason") or f"HTTP_{resp.status}",
                        data.get("message", ""),
                    )
                return data
        except asyncio.TimeoutError:
            raise LedgerError("TIMEOUT", f"POST {path} timed out")
        except aiohttp.ClientError as e:
            raise LedgerError("TRANSPORT_ERROR", str(e))

    async def request_escrow(self, match_key: str, participant: str, amount: Decimal) -> EscrowHandle:
        data = await self._post(
            "/escrow",
            {"match_key": match_key, "participant": participant, "amount": str(amount)},
            f"escrow:{match_key}:{participant}",
        )
        try:
            return EscrowHandle(
                handle=data["handle"],
                account=data["account"],
                requires_proof=bool(data.get("requires_proof", True)),
            )
        except KeyError as e:
            raise LedgerError("MALFORMED_RESPONSE", f"missing {e}")

    async def confirm(self, handle: str, proof: Optional[str]) -> None:
        await self._post(f"/escrow/{handle}/confirm", {"proof": proof}, f"confirm:{handle}")

    async def settle(self, account: str, winner: str, split: PayoutSplit) -> str:
        recipient = self.house_wallet if winner == GameRules.HOUSE else winner
        data = await self._post(
            "/settlements",
            {"account": account, "winner": recipient, "split": split.to_dict()},
            f"settle:{account}",
        )
        signature = data.get("signature")
        if not signature:
            raise LedgerError("MALFORMED_RESPONSE", "missing signature")
        return signature

    async def cancel(self, handle: str, split: PayoutSplit) -> None:
        await self._post(
            f"/escrow/{handle}/cancel",
            {"split": split.to_dict(), "house": self.house_wallet},
            f"cancel:{handle}",
        )


def build_ledger_adapter(settings: Settings) -> LedgerAdapter:
    """Selecciona la implementación del ledger según configuración."""
    if settings.ledger_backend == "simulated":
        return SimulatedLedgerAdapter()
    if settings.ledger_backend == "http":
        credentials = build_credential_provider(
            settings.ledger_credentials,
            key_env=settings.ledger_key_env,
            key_path=settings.ledger_key_path,
        )
        return HttpLedgerAdapter(
            settings.ledger_url,
            credentials,
            house_wallet=settings.house_wallet,
            timeout_sec=settings.ledger_timeout_sec,
        )
    raise ValueError(f"Unknown ledger backend: {settings.ledger_backend}")
