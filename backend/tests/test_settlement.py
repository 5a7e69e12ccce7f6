"""
Tests del orquestador de liquidaciones: exactly-once, single-flight,
fallos sin reintento y registro en el journal.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from wordwars.errors import ErrorCode, MatchError
from wordwars.fee_policy import compute_split
from wordwars.journal import SettlementJournal
from wordwars.ledger import SimulatedLedgerAdapter
from wordwars.lifecycle import MatchLifecycle
from wordwars.models import JournalKind, LifecycleState, PayoutOutcome, SettlementState
from wordwars.settlement import SettlementOrchestrator


@pytest_asyncio.fixture
async def journal(tmp_path):
    journal = SettlementJournal.from_url(f"sqlite+aiosqlite:///{tmp_path / 'journal.db'}")
    await journal.start()
    yield journal
    await journal.close()


class TestSettle:
    """Liquidación de partidas COMPLETED."""

    @pytest.mark.asyncio
    async def test_second_settle_returns_cached_result(self, orchestrator, start_match, conclude, ledger, alice):
        started = await start_match()
        await conclude(started["id"], alice)

        first = await orchestrator.settle(started["id"])
        second = await orchestrator.settle(started["id"])

        assert first.state == SettlementState.CONFIRMED
        assert not first.cached
        assert second.cached
        assert second.signature == first.signature
        assert ledger.calls["settle"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_settles_share_one_call(self, store, alice, bob, proof, conclude):
        adapter = SimulatedLedgerAdapter(latency=0.01)
        orchestrator = SettlementOrchestrator(store, adapter)
        lifecycle = MatchLifecycle(store, orchestrator, target_source=lambda: "CRANE")
        created = await lifecycle.create_match("0.5", alice)
        await lifecycle.confirm_escrow(created["id"], alice, proof)
        await lifecycle.join_match(created["id"], bob)
        await lifecycle.confirm_escrow(created["id"], bob, proof)
        await conclude(created["id"], bob)

        results = await asyncio.gather(*(orchestrator.settle(created["id"]) for _ in range(5)))

        assert adapter.calls["settle"] == 1
        assert {r.state for r in results} == {SettlementState.CONFIRMED}
        assert len({r.signature for r in results}) == 1
        assert adapter.payouts[bob] == Decimal("0.98")

    @pytest.mark.asyncio
    async def test_settle_requires_completed_match(self, orchestrator, start_match):
        started = await start_match()
        with pytest.raises(MatchError) as exc:
            await orchestrator.settle(started["id"])
        assert exc.value.code == ErrorCode.SETTLEMENT_NOT_READY
        assert orchestrator.store.get(started["id"]).settlement_state == SettlementState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_failed_settlement_is_never_retried(self, orchestrator, start_match, conclude, ledger, store, alice):
        started = await start_match()
        await conclude(started["id"], alice)
        ledger.fail_next("settle", "NODE_UNREACHABLE")

        failed = await orchestrator.settle(started["id"])
        assert failed.state == SettlementState.FAILED
        assert failed.error.startswith("NODE_UNREACHABLE")

        again = await orchestrator.settle(started["id"])
        assert again.cached
        assert again.state == SettlementState.FAILED
        assert ledger.calls["settle"] == 1
        assert store.get(started["id"]).needs_attention

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_is_recorded_as_failure(self, store, start_match, conclude, alice):
        class ExplodingLedger(SimulatedLedgerAdapter):
            async def settle(self, account, winner, split):
                raise RuntimeError("connection reset")

        started = await start_match()
        await conclude(started["id"], alice)
        orchestrator = SettlementOrchestrator(store, ExplodingLedger())

        result = await orchestrator.settle(started["id"])
        assert result.state == SettlementState.FAILED
        assert result.error.startswith("ADAPTER_ERROR")
        assert [m.id for m in store.flagged()] == [started["id"]]

    @pytest.mark.asyncio
    async def test_ledger_rejects_mismatched_split(self, orchestrator, start_match, store, ledger, alice):
        started = await start_match()

        def _conclude_with_wrong_split(match):
            match.lifecycle_state = LifecycleState.COMPLETED
            match.winner = alice
            match.outcome = PayoutOutcome.NORMAL_WIN
            match.split = compute_split(match.wager * 2, PayoutOutcome.NORMAL_WIN)

        await store.with_match(started["id"], _conclude_with_wrong_split)
        result = await orchestrator.settle(started["id"])

        assert result.state == SettlementState.FAILED
        assert "SPLIT_MISMATCH" in result.error
        assert ledger.treasury_balance == 0


class TestEscrowRequests:
    @pytest.mark.asyncio
    async def test_escrow_cannot_be_requested_twice(self, orchestrator, lifecycle, alice):
        created = await lifecycle.create_match("0.1", alice)
        with pytest.raises(MatchError) as exc:
            await orchestrator.request_escrow(created["id"], alice, Decimal("0.1"))
        assert exc.value.code == ErrorCode.ESCROW_NOT_PENDING

    @pytest.mark.asyncio
    async def test_confirm_without_request(self, orchestrator, store, alice, proof):
        match = await store.create(Decimal("0.1"), alice, "CRANE")
        with pytest.raises(MatchError) as exc:
            await orchestrator.confirm_escrow(match.id, alice, proof)
        assert exc.value.code == ErrorCode.ESCROW_NOT_PENDING

    @pytest.mark.asyncio
    async def test_orphaned_deposit_is_refunded(self, store, alice):
        class RacingLedger(SimulatedLedgerAdapter):
            async def request_escrow(self, match_key, participant, amount):
                handle = await super().request_escrow(match_key, participant, amount)
                await store.remove(match_key, force=True)
                return handle

        adapter = RacingLedger()
        orchestrator = SettlementOrchestrator(store, adapter)
        match = await store.create(Decimal("0.1"), alice, "CRANE")

        with pytest.raises(MatchError) as exc:
            await orchestrator.request_escrow(match.id, alice, Decimal("0.1"))
        assert exc.value.code == ErrorCode.STALE_MATCH
        assert adapter.calls["cancel"] == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_of_unfunded_match_only_removes_it(self, orchestrator, lifecycle, store, ledger, alice):
        created = await lifecycle.create_match("0.1", alice)
        await store.with_match(created["id"], lambda m: setattr(m, "lifecycle_state", LifecycleState.CANCELLED))

        assert await orchestrator.cancel(created["id"], alice) is None
        assert not store.is_active(created["id"])
        assert ledger.calls["cancel"] == 0

    @pytest.mark.asyncio
    async def test_cancel_requires_cancelled_match(self, orchestrator, open_match, alice):
        opened = await open_match()
        with pytest.raises(MatchError) as exc:
            await orchestrator.cancel(opened["id"], alice)
        assert exc.value.code == ErrorCode.SETTLEMENT_NOT_READY

    @pytest.mark.asyncio
    async def test_failed_reservation_refund_is_flagged(self, lifecycle, open_match, ledger, store, bob):
        opened = await open_match()
        await lifecycle.join_match(opened["id"], bob)
        ledger.fail_next("cancel", "RPC_DOWN")

        await lifecycle.forfeit(opened["id"], bob)
        match = store.get(opened["id"])
        assert match.released_joiners[bob] == SettlementState.FAILED
        assert match.needs_attention
        assert "RPC_DOWN" in match.settlement_error


class TestJournal:
    """Cada llamada al ledger deja una entrada durable."""

    @pytest.mark.asyncio
    async def test_full_match_is_journaled(self, store, ledger, journal, alice, bob, proof):
        orchestrator = SettlementOrchestrator(store, ledger, journal)
        lifecycle = MatchLifecycle(store, orchestrator, target_source=lambda: "CRANE")
        created = await lifecycle.create_match("0.1", alice)
        await lifecycle.confirm_escrow(created["id"], alice, proof)
        await lifecycle.join_match(created["id"], bob)
        await lifecycle.confirm_escrow(created["id"], bob, proof)
        final = await lifecycle.submit_guess(created["id"], alice, "CRANE")

        entries = await journal.entries_for(created["id"])
        assert [e.kind for e in entries] == [
            JournalKind.ESCROW_REQUEST,
            JournalKind.ESCROW_CONFIRM,
            JournalKind.ESCROW_REQUEST,
            JournalKind.ESCROW_CONFIRM,
            JournalKind.SETTLE,
        ]
        settle_entry = entries[-1]
        assert settle_entry.status == SettlementState.CONFIRMED
        assert settle_entry.signature == final["settlement_signature"]
        assert settle_entry.idempotency_key == f"settle:{final['escrow_account']}"
        assert settle_entry.to_house == Decimal("0.004")
        assert not settle_entry.needs_attention

    @pytest.mark.asyncio
    async def test_failed_settlement_is_flagged_in_journal(self, store, ledger, journal, start_match, conclude, alice):
        orchestrator = SettlementOrchestrator(store, ledger, journal)
        started = await start_match()
        await conclude(started["id"], alice)
        ledger.fail_next("settle")

        await orchestrator.settle(started["id"])
        flagged = await journal.flagged()
        assert [(e.match_id, e.kind) for e in flagged] == [(started["id"], JournalKind.SETTLE)]

        assert await journal.resolve(started["id"], "manual transfer") == 1
        assert await journal.flagged() == []
