"""
Tests del sweeper de reconciliación. Cada regla se dispara pasando un
`now` posterior a su umbral.
"""

import asyncio
from decimal import Decimal

import pytest

from wordwars.config import GameRules
from wordwars.models import LifecycleState, PayoutOutcome, PlayerOutcome, SettlementState
from wordwars.notifications import EventType


class TestUnfundedExpiry:
    @pytest.mark.asyncio
    async def test_unconfirmed_creator_escrow_expires(self, sweeper, lifecycle, store, ledger, clock, alice, sink):
        created = await lifecycle.create_match("0.1", alice)

        report = await sweeper.run_once(now=clock.now + 60)
        assert report.total_actions == 0

        report = await sweeper.run_once(now=clock.now + 121)
        assert report.expired_unfunded == [created["id"]]
        assert not store.is_active(created["id"])
        assert store.active_match_of(alice) is None
        assert ledger.calls["cancel"] == 0
        assert EventType.MATCH_EXPIRED in sink.types()


class TestWaitingExpiry:
    @pytest.mark.asyncio
    async def test_stale_waiting_match_is_refunded_in_full(self, sweeper, open_match, store, ledger, clock, alice):
        opened = await open_match(wager="0.1")

        report = await sweeper.run_once(now=clock.now + 29 * 60)
        assert report.expired_waiting == []

        report = await sweeper.run_once(now=clock.now + 30 * 60 + 1)
        assert report.expired_waiting == [opened["id"]]

        match = store.get(opened["id"])
        assert match.lifecycle_state == LifecycleState.CANCELLED
        assert match.outcome == PayoutOutcome.REFUND
        assert match.end_reason == "STALE_MATCH"
        assert match.settlement_state == SettlementState.CONFIRMED
        assert ledger.payouts[alice] == Decimal("0.1")
        assert ledger.treasury_balance == 0

    @pytest.mark.asyncio
    async def test_stale_reservation_is_released(self, sweeper, lifecycle, open_match, store, ledger, clock, bob):
        opened = await open_match()
        await lifecycle.join_match(opened["id"], bob)

        report = await sweeper.run_once(now=clock.now + 121)
        assert report.released_reservations == [opened["id"]]

        match = store.get(opened["id"])
        assert match.lifecycle_state == LifecycleState.WAITING
        assert match.pending_joiner is None
        assert match.released_joiners[bob] == SettlementState.CONFIRMED
        assert ledger.calls["cancel"] == 1
        assert store.active_match_of(bob) is None

    @pytest.mark.asyncio
    async def test_in_flight_confirmation_is_left_alone(self, store, lifecycle, sweeper, alice, proof, clock):
        created = await lifecycle.create_match("0.1", alice)
        gate = asyncio.Event()

        async def _slow_confirm(handle, proof):
            await gate.wait()

        lifecycle.orchestrator.adapter.confirm = _slow_confirm
        confirming = asyncio.ensure_future(lifecycle.confirm_escrow(created["id"], alice, proof))
        await asyncio.sleep(0)

        report = await sweeper.run_once(now=clock.now + 121)
        assert report.expired_unfunded == []

        gate.set()
        opened = await confirming
        assert opened["lifecycle_state"] == LifecycleState.WAITING.value


class TestPlayingTimeout:
    @pytest.mark.asyncio
    async def test_overdue_match_ends_with_both_lost(self, sweeper, start_match, store, ledger, clock, alice, bob):
        started = await start_match(wager="0.1")

        report = await sweeper.run_once(now=clock.now + 5 * 60 + 1)
        assert report.timed_out == [started["id"]]

        match = store.get(started["id"])
        assert match.lifecycle_state == LifecycleState.COMPLETED
        assert match.winner == GameRules.HOUSE
        assert match.outcome == PayoutOutcome.BOTH_LOST
        assert match.end_reason == "STALE_MATCH"
        assert match.player_outcome == {alice: PlayerOutcome.TIMED_OUT, bob: PlayerOutcome.TIMED_OUT}
        assert match.settlement_state == SettlementState.CONFIRMED
        assert ledger.treasury_balance == Decimal("0.2")

    @pytest.mark.asyncio
    async def test_resolved_player_keeps_outcome(self, sweeper, lifecycle, start_match, store, clock, alice, bob):
        started = await start_match()
        for word in ["SLATE", "MOUNT", "PRIDE", "GHOST", "BLIND", "GRAPE"]:
            await lifecycle.submit_guess(started["id"], alice, word)

        await sweeper.run_once(now=clock.now + 5 * 60 + 1)
        match = store.get(started["id"])
        assert match.player_outcome[alice] == PlayerOutcome.EXHAUSTED
        assert match.player_outcome[bob] == PlayerOutcome.TIMED_OUT


class TestRepairs:
    @pytest.mark.asyncio
    async def test_extra_players_are_truncated(self, sweeper, start_match, store, alice, bob, carol):
        started = await start_match()
        await store.with_match(started["id"], lambda m: m.players.append(carol))

        report = await sweeper.run_once()
        assert report.repaired == [started["id"]]
        assert store.get(started["id"]).players == [alice, bob]

    @pytest.mark.asyncio
    async def test_waiting_match_with_two_players_is_promoted(self, sweeper, open_match, store, alice, bob, sink):
        opened = await open_match()
        await store.with_match(opened["id"], lambda m: m.players.append(bob))

        report = await sweeper.run_once()
        assert report.repaired == [opened["id"]]

        match = store.get(opened["id"])
        assert match.lifecycle_state == LifecycleState.PLAYING
        assert match.started_at is not None
        assert match.player_outcome == {alice: PlayerOutcome.UNSET, bob: PlayerOutcome.UNSET}
        assert EventType.MATCH_REPAIRED in sink.types()


class TestSettlementRecovery:
    @pytest.mark.asyncio
    async def test_unsettled_completed_match_is_settled_once(self, sweeper, start_match, conclude, store, ledger, alice):
        started = await start_match()
        await conclude(started["id"], alice, PayoutOutcome.NORMAL_WIN)

        report = await sweeper.run_once()
        assert report.settlements_launched == [started["id"]]
        assert store.get(started["id"]).settlement_state == SettlementState.CONFIRMED
        assert not store.is_active(started["id"])

        report = await sweeper.run_once()
        assert report.settlements_launched == []
        assert ledger.calls["settle"] == 1

    @pytest.mark.asyncio
    async def test_failed_settlement_is_not_relaunched(self, sweeper, start_match, conclude, store, ledger, alice):
        started = await start_match()
        await conclude(started["id"], alice)
        await store.with_match(started["id"], lambda m: setattr(m, "settlement_state", SettlementState.FAILED))

        report = await sweeper.run_once()
        assert report.archived == [started["id"]]
        assert report.settlements_launched == []
        assert ledger.calls["settle"] == 0

    @pytest.mark.asyncio
    async def test_history_is_evicted_after_retention(self, sweeper, lifecycle, start_match, store, clock, alice):
        started = await start_match()
        await lifecycle.submit_guess(started["id"], alice, "CRANE")

        report = await sweeper.run_once(now=clock.now + 60)
        assert report.history_evicted == 0

        report = await sweeper.run_once(now=clock.now + 10 * 60 + 1)
        assert report.history_evicted == 1
        assert store.history() == []


class TestBackgroundTask:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper):
        sweeper.start()
        assert sweeper._task is not None
        await asyncio.sleep(0)
        await sweeper.stop()
        assert sweeper._task is None
