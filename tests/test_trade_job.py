"""Tests for the per-strategy trade cycle."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from goalhedge.engine.trade_job import SKIPPED, TradeRunner
from goalhedge.engine.venue import TransientVenueError

from conftest import MARKET, SELECTION, at


@pytest.fixture
def runner(config, gateway, store, machine):
    return TradeRunner(config, gateway, store, machine=machine)


@pytest.fixture
def open_book(venue):
    venue.set_book(MARKET, SELECTION, back=[(2.0, 500)], lay=[(2.02, 500)])


# ---------------------------------------------------------------------------
# 1. Cycle selection
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cycle_ticks_started_trades(runner, make_trade, store, open_book):
    trade = make_trade()

    summary = await runner.run_cycle(at(5))

    assert summary.ticked == 1
    assert summary.trade_ids == [trade.id]
    assert store.get(trade.id).status == "watching"


@pytest.mark.asyncio
async def test_trades_before_kickoff_not_ticked(runner, make_trade, venue, open_book):
    make_trade()

    summary = await runner.run_cycle(at(-10))

    assert summary.to_dict()["ticked"] == 0
    assert "list_market_book" not in venue.calls


@pytest.mark.asyncio
async def test_trades_without_market_not_ticked(runner, make_trade, open_book):
    make_trade(venue_market_id=None, venue_selection_id=None)

    summary = await runner.run_cycle(at(5))

    assert summary.ticked == 0
    assert summary.skipped == 0


@pytest.mark.asyncio
async def test_missing_book_is_skipped(runner, make_trade):
    make_trade()

    summary = await runner.run_cycle(at(5))

    assert summary.skipped == 1


@pytest.mark.asyncio
async def test_unwatched_trade_cancelled_after_match_window(runner, make_trade, store, open_book):
    trade = make_trade()

    summary = await runner.run_cycle(at(121))

    updated = store.get(trade.id)
    assert summary.expired == 1
    assert updated.status == "cancelled"
    assert updated.last_error == "GAME_ENDED"
    assert [e.event_type for e in store.events_for(trade.id)] == ["GAME_ENDED"]


# ---------------------------------------------------------------------------
# 2. Isolation and failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overlapping_tick_skipped(runner, make_trade, open_book):
    trade = make_trade()
    lock = await runner._get_trade_lock(trade.id)

    async with lock:
        result = await runner._guarded_tick(trade.id, at(5))

    assert result == SKIPPED


@pytest.mark.asyncio
async def test_tick_error_recorded_on_trade(runner, make_trade, store, open_book, notify):
    trade = make_trade()
    runner.machine.tick = AsyncMock(side_effect=RuntimeError("boom"))

    summary = await runner.run_cycle(at(5))

    updated = store.get(trade.id)
    assert summary.failed == 1
    assert updated.last_error == "TICK_ERROR: boom"
    events = store.events_for(trade.id)
    assert events[-1].event_type == "TICK_FAILED"
    assert events[-1].payload == {"error": "boom", "type": "RuntimeError"}
    notify.assert_called_once()
    assert notify.call_args.args[0].endswith("ERROR: boom")


@pytest.mark.asyncio
async def test_one_failing_trade_does_not_block_others(runner, make_trade, store, open_book):
    bad = make_trade()
    good = make_trade()
    real_tick = runner.machine.tick

    async def tick(trade, quote, now):
        if trade.id == bad.id:
            raise RuntimeError("boom")
        return await real_tick(trade, quote, now)

    runner.machine.tick = tick

    summary = await runner.run_cycle(at(5))

    assert summary.failed == 1
    assert summary.ticked == 1
    assert store.get(good.id).status == "watching"


@pytest.mark.asyncio
async def test_venue_outage_abandons_tick(runner, make_trade, store, venue, open_book):
    trade = make_trade()
    venue.fail_next("list_market_book", TransientVenueError("timeout"), times=2)

    summary = await runner.run_cycle(at(5))

    updated = store.get(trade.id)
    assert summary.failed == 1
    assert updated.status == "scheduled"
    assert updated.last_error is None


# ---------------------------------------------------------------------------
# 3. Draining
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_drain_with_nothing_in_flight(runner):
    assert await runner.drain(timeout=1)
    assert runner.stopping

    summary = await runner.run_cycle(at(5))
    assert summary.ticked == 0


@pytest.mark.asyncio
async def test_drain_waits_for_short_ticks(runner, make_trade, open_book):
    make_trade()

    async def tick(trade, quote, now):
        await asyncio.sleep(0.01)

    runner.machine.tick = tick
    cycle = asyncio.create_task(runner.run_cycle(at(5)))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert await runner.drain(timeout=1)
    summary = await cycle
    assert summary.ticked == 1


@pytest.mark.asyncio
async def test_drain_cancels_ticks_after_timeout(runner, make_trade, open_book):
    trade = make_trade()

    async def tick(trade, quote, now):
        await asyncio.sleep(10)

    runner.machine.tick = tick
    cycle = asyncio.create_task(runner.run_cycle(at(5)))
    await asyncio.sleep(0.05)
    assert runner.in_flight == [trade.id]

    assert not await runner.drain(timeout=0.05)

    with pytest.raises(asyncio.CancelledError):
        await cycle
    assert runner.in_flight == []
