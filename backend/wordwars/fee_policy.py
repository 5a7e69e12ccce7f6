"""
=============================================================================
WORDLE WARS - Política de Comisiones y Reparto (Fee Policy)
=============================================================================
Función pura que calcula el reparto de fondos en escrow según el tipo de
conclusión de la partida. Sin efectos secundarios.

Reglas de negocio (idénticas al programa de escrow):
- Victoria normal: ganador recibe pot*(1-2%), casa recibe pot*2%
- Abandono en partida activa: el que abandona pierde el 100% de su apuesta
- Abandono esperando oponente: penalización del 5%, resto reembolsado
- Ambos pierden: todo el pot va a la casa
- Reembolso: devolución íntegra (expiración o retiro sin culpa)

Los montos se cuantizan a 9 decimales (lamports). La parte de la casa se
redondea hacia abajo; el resto siempre va al beneficiario.
=============================================================================
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Dict

from .config import GameRules
from .models import PayoutOutcome


BPS_DENOMINATOR = Decimal("10000")
QUANTUM = Decimal(1).scaleb(-GameRules.AMOUNT_DECIMALS)  # 0.000000001
ZERO = Decimal("0")


def quantize_amount(amount: Decimal) -> Decimal:
    """Cuantiza un monto a la precisión del ledger (hacia abajo)."""
    return Decimal(amount).quantize(QUANTUM, rounding=ROUND_DOWN)


@dataclass(frozen=True)
class PayoutSplit:
    """
    Resultado del reparto.

    penalty es informativo: indica cuánto perdió el jugador que abandona.
    Los fondos efectivamente distribuidos son refund + to_winner + to_house.
    """
    refund: Decimal = ZERO
    penalty: Decimal = ZERO
    to_winner: Decimal = ZERO
    to_house: Decimal = ZERO

    @property
    def distributed(self) -> Decimal:
        return self.refund + self.to_winner + self.to_house

    def to_dict(self) -> Dict[str, str]:
        return {
            "refund": str(self.refund),
            "penalty": str(self.penalty),
            "to_winner": str(self.to_winner),
            "to_house": str(self.to_house),
        }


class PayoutPolicy:
    """
    Calculadora de repartos por partida.

    Tasas en basis points, igual que el programa on-chain:
    - WINNER_FEE_BPS = 200 (2%)
    - WAITING_FORFEIT_FEE_BPS = 500 (5%)
    - ACTIVE_FORFEIT_PENALTY_BPS = 10000 (100%)
    """

    WINNER_FEE_BPS = GameRules.WINNER_FEE_BPS
    WAITING_FORFEIT_FEE_BPS = GameRules.WAITING_FORFEIT_FEE_BPS
    ACTIVE_FORFEIT_PENALTY_BPS = GameRules.ACTIVE_FORFEIT_PENALTY_BPS

    @classmethod
    def rate(cls, bps: int) -> Decimal:
        """Convierte basis points a tasa decimal (200 -> 0.02)."""
        return Decimal(bps) / BPS_DENOMINATOR

    @classmethod
    def compute_split(cls, wager: Decimal, outcome: PayoutOutcome) -> PayoutSplit:
        """
        Calcula el reparto para una apuesta por jugador.

        Args:
            wager: Apuesta de cada jugador en SOL
            outcome: Tipo de conclusión de la partida

        Returns:
            PayoutSplit con refund, penalty, to_winner y to_house

        Ejemplo apuesta 1.0 SOL:
            - NORMAL_WIN: to_winner 1.96, to_house 0.04
            - FORFEIT_WAITING: refund 0.95, penalty 0.05
            - BOTH_LOST: to_house 2.0
        """
        wager = Decimal(str(wager))
        if wager <= 0:
            raise ValueError(f"wager must be positive, got {wager}")

        pot = wager * GameRules.MAX_PLAYERS_PER_MATCH

        if outcome == PayoutOutcome.NORMAL_WIN:
            fee = quantize_amount(pot * cls.rate(cls.WINNER_FEE_BPS))
            return PayoutSplit(to_winner=pot - fee, to_house=fee)

        if outcome == PayoutOutcome.FORFEIT_ACTIVE:
            # El oponente se lleva el pot completo, sin comisión
            penalty = quantize_amount(wager * cls.rate(cls.ACTIVE_FORFEIT_PENALTY_BPS))
            return PayoutSplit(penalty=penalty, to_winner=wager + penalty)

        if outcome == PayoutOutcome.FORFEIT_WAITING:
            penalty = quantize_amount(wager * cls.rate(cls.WAITING_FORFEIT_FEE_BPS))
            return PayoutSplit(refund=wager - penalty, penalty=penalty, to_house=penalty)

        if outcome == PayoutOutcome.BOTH_LOST:
            return PayoutSplit(to_house=pot)

        if outcome == PayoutOutcome.REFUND:
            return PayoutSplit(refund=wager)

        raise ValueError(f"unknown payout outcome: {outcome}")


def compute_split(wager: Decimal, outcome: PayoutOutcome) -> PayoutSplit:
    return PayoutPolicy.compute_split(wager, outcome)
