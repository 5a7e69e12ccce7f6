"""
Fixtures compartidas: almacén con reloj controlable, ledger simulado,
notificaciones grabadas y atajos para llevar una partida a cada estado.
"""

import pytest

from wordwars.config import Settings
from wordwars.fee_policy import compute_split
from wordwars.ledger import SimulatedLedgerAdapter
from wordwars.lifecycle import MatchLifecycle
from wordwars.match_store import MatchStore
from wordwars.models import LifecycleState, PayoutOutcome
from wordwars.notifications import NotificationFanout, RecordingSink
from wordwars.settlement import SettlementOrchestrator
from wordwars.sweeper import ReconciliationSweeper


ALICE = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
BOB = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
CAROL = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"
DAVE = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
PROOF = "5J" * 40
TARGET = "CRANE"


class FakeClock:
    """Reloj manual para los timers del sweeper."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# IDENTIDADES
# =============================================================================

@pytest.fixture
def alice():
    return ALICE


@pytest.fixture
def bob():
    return BOB


@pytest.fixture
def carol():
    return CAROL


@pytest.fixture
def dave():
    return DAVE


@pytest.fixture
def proof():
    return PROOF


@pytest.fixture
def target():
    return TARGET


# =============================================================================
# COMPONENTES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return SimulatedLedgerAdapter()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store(clock):
    return MatchStore(history_size=50, clock=clock)


@pytest.fixture
def orchestrator(store, ledger, sink):
    return SettlementOrchestrator(store, ledger, None, NotificationFanout(sink))


@pytest.fixture
def lifecycle(store, orchestrator):
    return MatchLifecycle(store, orchestrator, target_source=lambda: TARGET)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        journal_url=f"sqlite+aiosqlite:///{tmp_path / 'journal.db'}",
        admin_token="test-admin-token",
    )


@pytest.fixture
def sweeper(store, lifecycle, orchestrator, settings):
    return ReconciliationSweeper(store, lifecycle, orchestrator, settings)


# =============================================================================
# ATAJOS DE ESTADO
# =============================================================================

@pytest.fixture
def open_match(lifecycle):
    """Partida en WAITING con el escrow del creador confirmado."""
    async def _open(wager="0.1", creator=ALICE):
        created = await lifecycle.create_match(wager, creator)
        return await lifecycle.confirm_escrow(created["id"], creator, PROOF)
    return _open


@pytest.fixture
def start_match(lifecycle, open_match):
    """Partida en PLAYING con ambos escrows confirmados."""
    async def _start(wager="0.1", creator=ALICE, joiner=BOB):
        opened = await open_match(wager, creator)
        await lifecycle.join_match(opened["id"], joiner)
        return await lifecycle.confirm_escrow(opened["id"], joiner, PROOF)
    return _start


@pytest.fixture
def conclude(store):
    """Deja una partida COMPLETED sin lanzar la liquidación."""
    async def _conclude(match_id, winner, outcome=PayoutOutcome.NORMAL_WIN):
        def _apply(match):
            match.lifecycle_state = LifecycleState.COMPLETED
            match.completed_at = store.clock()
            match.winner = winner
            match.outcome = outcome
            match.split = compute_split(match.wager, outcome)
            match.end_reason = "WORD_GUESSED"
        await store.with_match(match_id, _apply)
    return _conclude
