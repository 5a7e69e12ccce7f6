"""
Tests del reparto de fondos por tipo de conclusión.
"""

from decimal import Decimal

import pytest

from wordwars.fee_policy import PayoutPolicy, PayoutSplit, compute_split, quantize_amount
from wordwars.models import PayoutOutcome


class TestNormalWin:
    """Victoria normal: 2% del pot para la casa."""

    def test_one_sol_wager(self):
        split = compute_split(Decimal("1"), PayoutOutcome.NORMAL_WIN)
        assert split.to_winner == Decimal("1.96")
        assert split.to_house == Decimal("0.04")
        assert split.refund == 0
        assert split.penalty == 0

    def test_small_wager(self):
        split = compute_split(Decimal("0.1"), PayoutOutcome.NORMAL_WIN)
        assert split.to_house == Decimal("0.004")
        assert split.to_winner == Decimal("0.196")

    def test_house_share_rounds_down_and_nothing_is_lost(self):
        wager = Decimal("0.022000001")
        split = compute_split(wager, PayoutOutcome.NORMAL_WIN)
        assert split.to_house == Decimal("0.00088")
        assert split.distributed == wager * 2


class TestForfeits:
    def test_active_forfeit_gives_whole_pot_to_opponent(self):
        split = compute_split(Decimal("0.5"), PayoutOutcome.FORFEIT_ACTIVE)
        assert split.to_winner == Decimal("1.0")
        assert split.penalty == Decimal("0.5")
        assert split.to_house == 0

    def test_waiting_forfeit_keeps_five_percent(self):
        split = compute_split(Decimal("1"), PayoutOutcome.FORFEIT_WAITING)
        assert split.refund == Decimal("0.95")
        assert split.penalty == Decimal("0.05")
        assert split.to_house == Decimal("0.05")
        assert split.distributed == Decimal("1")


class TestOtherOutcomes:
    def test_both_lost_sends_pot_to_house(self):
        split = compute_split(Decimal("1"), PayoutOutcome.BOTH_LOST)
        assert split.to_house == Decimal("2")
        assert split.to_winner == 0

    def test_refund_returns_the_wager(self):
        split = compute_split(Decimal("0.3"), PayoutOutcome.REFUND)
        assert split == PayoutSplit(refund=Decimal("0.3"))

    def test_float_wager_carries_no_binary_error(self):
        split = compute_split(0.1, PayoutOutcome.NORMAL_WIN)
        assert split.to_winner == Decimal("0.196")
        assert split.to_house == Decimal("0.004")

    @pytest.mark.parametrize("wager", [Decimal("0"), Decimal("-1")])
    def test_non_positive_wager_is_rejected(self, wager):
        with pytest.raises(ValueError):
            compute_split(wager, PayoutOutcome.NORMAL_WIN)


class TestHelpers:
    def test_rate_from_basis_points(self):
        assert PayoutPolicy.rate(200) == Decimal("0.02")
        assert PayoutPolicy.rate(500) == Decimal("0.05")

    def test_quantize_truncates_to_nine_decimals(self):
        assert quantize_amount(Decimal("0.1234567899")) == Decimal("0.123456789")

    def test_split_serializes_amounts_as_strings(self):
        payload = compute_split(Decimal("1"), PayoutOutcome.FORFEIT_WAITING).to_dict()
        assert Decimal(payload["refund"]) == Decimal("0.95")
        assert set(payload) == {"refund", "penalty", "to_winner", "to_house"}
