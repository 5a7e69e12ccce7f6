"""
Tests del almacén de partidas: exclusión por partida, registro de
participantes, historial y lista de atención.
"""

import asyncio
import re
from decimal import Decimal

import pytest

from wordwars.errors import ErrorCode, MatchError
from wordwars.match_store import GuessRecord, generate_match_id
from wordwars.models import LifecycleState, SettlementState


async def _create(store, creator, wager="0.1"):
    return await store.create(Decimal(wager), creator, "CRANE")


class TestCreate:
    """Creación y regla de una partida activa por participante."""

    @pytest.mark.asyncio
    async def test_new_match_awaits_escrow(self, store, alice, clock):
        match = await _create(store, alice)

        assert re.match(r"^match_\d+_[a-z0-9]{9}$", match.id)
        assert match.lifecycle_state == LifecycleState.AWAITING_ESCROW
        assert match.players == [alice]
        assert match.escrow_state == {alice: SettlementState.NOT_STARTED}
        assert match.created_at == clock.now
        assert store.active_match_of(alice) == match.id

    @pytest.mark.asyncio
    async def test_duplicate_active_participant(self, store, alice):
        first = await _create(store, alice)
        with pytest.raises(MatchError) as exc:
            await _create(store, alice)
        assert exc.value.code == ErrorCode.DUPLICATE_ACTIVE_PARTICIPANT
        assert exc.value.details["match_id"] == first.id

    @pytest.mark.asyncio
    async def test_claim_participant_for_other_match(self, store, alice, bob):
        first = await _create(store, alice)
        second = await _create(store, bob)
        with pytest.raises(MatchError) as exc:
            await store.claim_participant(second.id, alice)
        assert exc.value.code == ErrorCode.DUPLICATE_ACTIVE_PARTICIPANT
        # Reclamar la misma partida es idempotente
        await store.claim_participant(first.id, alice)

    def test_generated_ids_are_unique(self):
        ids = {generate_match_id(1700000000.0) for _ in range(200)}
        assert len(ids) == 200


class TestWithMatch:
    @pytest.mark.asyncio
    async def test_failed_mutation_leaves_record_untouched(self, store, alice):
        match = await _create(store, alice)

        def _broken(m):
            m.lifecycle_state = LifecycleState.WAITING
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await store.with_match(match.id, _broken)
        assert store.get(match.id).lifecycle_state == LifecycleState.AWAITING_ESCROW

    @pytest.mark.asyncio
    async def test_unknown_match(self, store):
        with pytest.raises(MatchError) as exc:
            await store.with_match("match_1_aaaaaaaaa", lambda m: None)
        assert exc.value.code == ErrorCode.MATCH_NOT_FOUND
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_concurrent_mutations_are_all_applied(self, store, alice):
        match = await _create(store, alice)

        async def _append(i):
            await store.with_match(match.id, lambda m: m.guesses.append(GuessRecord(alice, "CRANE", i)))

        await asyncio.gather(*(_append(i) for i in range(20)))
        assert len(store.get(match.id).guesses) == 20

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, store, alice):
        match = await _create(store, alice)
        snapshot = store.get(match.id)
        snapshot.players.append("tampered")
        assert store.get(match.id).players == [alice]

    @pytest.mark.asyncio
    async def test_registry_follows_pending_joiner(self, store, alice, bob):
        match = await _create(store, alice)
        await store.claim_participant(match.id, bob)

        def _reserve(m):
            m.pending_joiner = bob

        def _release(m):
            m.pending_joiner = None

        await store.with_match(match.id, _reserve)
        assert store.active_match_of(bob) == match.id
        await store.with_match(match.id, _release)
        assert store.active_match_of(bob) is None
        assert store.active_match_of(alice) == match.id


class TestEscrowReference:
    @pytest.mark.asyncio
    async def test_escrow_reference_is_write_once(self, store, alice):
        match = await _create(store, alice)
        await store.with_match(match.id, lambda m: m.assign_escrow(alice, "esc_1", "acct_1"))
        # Reasignar el mismo valor no es un cambio
        await store.with_match(match.id, lambda m: m.assign_escrow(alice, "esc_1", "acct_1"))

        with pytest.raises(MatchError) as exc:
            await store.with_match(match.id, lambda m: m.assign_escrow(alice, "esc_2", "acct_1"))
        assert exc.value.code == ErrorCode.IMMUTABLE_FIELD
        assert store.get(match.id).escrow_reference == {alice: "esc_1"}


class TestRemoveAndArchive:
    @pytest.mark.asyncio
    async def test_non_terminal_match_is_not_removable(self, store, alice):
        match = await _create(store, alice)
        with pytest.raises(MatchError) as exc:
            await store.remove(match.id)
        assert exc.value.code == ErrorCode.MATCH_NOT_REMOVABLE

        await store.remove(match.id, force=True)
        assert not store.is_active(match.id)
        assert store.active_match_of(alice) is None

    @pytest.mark.asyncio
    async def test_archive_keeps_match_readable(self, store, alice):
        match = await _create(store, alice)

        def _finish(m):
            m.lifecycle_state = LifecycleState.CANCELLED
            m.needs_attention = True

        await store.with_match(match.id, _finish)
        assert store.active_match_of(alice) is None

        await store.archive(match.id)
        assert not store.is_active(match.id)
        assert store.in_history(match.id)
        assert store.get(match.id).lifecycle_state == LifecycleState.CANCELLED
        assert [m.id for m in store.flagged()] == [match.id]

    @pytest.mark.asyncio
    async def test_history_eviction(self, store, alice, clock):
        match = await _create(store, alice)
        await store.with_match(match.id, lambda m: setattr(m, "lifecycle_state", LifecycleState.CANCELLED))
        await store.archive(match.id)

        assert store.evict_history(older_than=clock.now - 1) == 0
        assert store.evict_history(older_than=clock.now + 1) == 1
        assert store.history() == []

    @pytest.mark.asyncio
    async def test_target_hidden_until_terminal(self, store, alice):
        match = await _create(store, alice)
        assert store.get(match.id).to_dict()["target"] is None

        await store.with_match(match.id, lambda m: setattr(m, "lifecycle_state", LifecycleState.CANCELLED))
        assert store.get(match.id).to_dict()["target"] == "CRANE"


class TestAttention:
    @pytest.mark.asyncio
    async def test_resolve_records_note(self, store, alice):
        match = await _create(store, alice)

        def _flag(m):
            m.lifecycle_state = LifecycleState.COMPLETED
            m.settlement_state = SettlementState.FAILED
            m.needs_attention = True

        await store.with_match(match.id, _flag)
        await store.archive(match.id)

        resolved = await store.resolve_attention(match.id, "paid out by hand")
        assert resolved.remediation_note == "paid out by hand"
        assert not resolved.needs_attention
        assert store.flagged() == []
        assert store.get(match.id).settlement_state == SettlementState.FAILED

    @pytest.mark.asyncio
    async def test_resolve_unknown_match(self, store):
        with pytest.raises(MatchError) as exc:
            await store.resolve_attention("match_1_aaaaaaaaa", "note")
        assert exc.value.code == ErrorCode.MATCH_NOT_FOUND

    @pytest.mark.asyncio
    async def test_stats(self, store, alice, bob):
        await _create(store, alice)
        await _create(store, bob)
        stats = store.stats()
        assert stats[LifecycleState.AWAITING_ESCROW.value] == 2
        assert stats["history"] == 0
        assert stats["needs_attention"] == 0
