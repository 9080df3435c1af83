"""Shared fixtures: in-memory database, paper venue and a state machine harness."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from goalhedge.database import create_db_and_tables
from goalhedge.engine.gateway import VenueGateway
from goalhedge.engine.paper_venue import PaperVenue
from goalhedge.engine.phase_state import load_phase_state
from goalhedge.engine.state_machine import TradeStateMachine
from goalhedge.engine.trade_store import TradeStore
from goalhedge.models.trade import Trade
from goalhedge.schemas.strategy_config import StrategyConfig

KICKOFF = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)
MARKET = "1.234567"
SELECTION = 47972


def at(minutes: float, seconds: float = 0) -> datetime:
    """A moment relative to kickoff."""
    return KICKOFF + timedelta(minutes=minutes, seconds=seconds)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(eng)
    return eng


@pytest.fixture
def store(engine):
    return TradeStore(engine)


@pytest.fixture
def venue():
    return PaperVenue()


@pytest.fixture
def gateway(venue):
    return VenueGateway(venue)


@pytest.fixture
def config():
    # Zero verification waits: the paper venue matches synchronously
    return StrategyConfig(
        entry_verify_seconds=0,
        cancel_confirm_seconds=0,
        verify_poll_seconds=0.01,
    )


@pytest.fixture
def make_trade(store):
    counter = iter(range(1, 1000))

    def _make(state=None, **overrides) -> Trade:
        n = next(counter)
        values = {
            "strategy_key": "goalreact",
            "venue_event_id": f"evt-{n}",
            "event_name": "Arsenal v Spurs",
            "competition": "Premier League",
            "kickoff_at": KICKOFF,
            "venue_market_id": MARKET,
            "venue_selection_id": SELECTION,
            "target_stake": 200.0,
        }
        values.update(overrides)
        trade = store.add(Trade(**values))
        if state is not None:
            trade = store.commit(trade.id, state)
        return trade

    return _make


class Harness:
    """One trade driven through the state machine against the paper venue."""

    def __init__(self, store: TradeStore, venue: PaperVenue, machine: TradeStateMachine, trade: Trade):
        self.store = store
        self.venue = venue
        self.machine = machine
        self.trade_id = trade.id

    def book(self, back=None, lay=None, **kwargs):
        self.venue.set_book(MARKET, SELECTION, back=back, lay=lay, **kwargs)

    async def tick(self, now: datetime):
        trade = self.store.get(self.trade_id)
        quote = await self.machine.gateway.get_quote(MARKET, SELECTION)
        return await self.machine.tick(trade, quote, now)

    @property
    def trade(self) -> Trade:
        return self.store.get(self.trade_id)

    @property
    def state(self):
        return load_phase_state(self.trade.phase_state)

    def event_types(self) -> list[str]:
        return [e.event_type for e in self.store.events_for(self.trade_id)]

    def events(self, event_type: str) -> list:
        return [e for e in self.store.events_for(self.trade_id) if e.event_type == event_type]


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def machine(config, gateway, store, notify):
    return TradeStateMachine(config, gateway, store, notify=notify)


@pytest.fixture
def harness(store, venue, machine, make_trade):
    def _build(state=None, **overrides) -> Harness:
        trade = make_trade(state=state, **overrides)
        return Harness(store, venue, machine, trade)

    return _build
