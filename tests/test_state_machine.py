"""End-to-end tests for the trade state machine against the paper venue."""

import asyncio

import pytest

from goalhedge.engine.phase_state import (
    Cancelled,
    Completed,
    ConfirmWait,
    Entering,
    Live,
    PostTradeMonitor,
    RecoveryPending,
    Settling,
    Skipped,
    TriggerWait,
    Watching,
)
from goalhedge.engine.settlement import lay_stake_for, settle
from goalhedge.engine.venue import Side, TransientVenueError, VenueUnavailableError
from goalhedge.utils.constants import (
    OUTCOME_MARKET_CLOSED,
    OUTCOME_STOP_LOSS,
    OUTCOME_WIN,
    PNL_REALISED,
    PNL_UNKNOWN,
    SKIP_AFTER_CUTOFF,
    SKIP_ILLIQUID,
    SKIP_NOT_MATCHED,
    SKIP_PRICE_ABOVE_MAX,
    SKIP_PRICE_BELOW_MIN,
)

from conftest import at

COMMISSION = 0.0175
TRIGGERED = at(20)


def trigger_wait(baseline=1.5, trigger=2.0, **kwargs) -> TriggerWait:
    return TriggerWait(baseline_price=baseline, trigger_price=trigger, triggered_at=TRIGGERED, **kwargs)


async def enter_live(h):
    """Drive a trade from TRIGGER_WAIT to LIVE with a full 200@2.0 entry."""
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    await h.tick(at(20, 91))
    assert isinstance(h.state, Live)
    return h.state


async def second_trigger(h):
    await enter_live(h)
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])
    await h.tick(at(30))
    assert isinstance(h.state, ConfirmWait)
    return h.state


# ---------------------------------------------------------------------------
# 1. WATCHING
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_reading_sets_baseline(harness):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])

    await h.tick(at(5))

    assert h.state == Watching(baseline_price=2.0, last_price=2.0, recent_prices=(2.0,))
    assert h.trade.status == "watching"
    assert "WATCHING_STARTED" in h.event_types()


@pytest.mark.asyncio
async def test_trigger_before_cutoff_waits(harness):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    await h.tick(at(19))

    h.book(back=[(2.7, 500)], lay=[(2.72, 500)])
    await h.tick(at(20))

    state = h.state
    assert isinstance(state, TriggerWait)
    assert state.baseline_price == 2.0
    assert state.trigger_price == 2.7
    assert h.trade.status == "watching"
    assert "TRIGGER_DETECTED" in h.event_types()


@pytest.mark.asyncio
async def test_trigger_after_cutoff_skips(harness, venue):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    await h.tick(at(49))

    h.book(back=[(2.7, 500)], lay=[(2.72, 500)])
    await h.tick(at(50))

    state = h.state
    trade = h.trade
    assert isinstance(state, Skipped)
    assert state.reason == SKIP_AFTER_CUTOFF
    assert trade.status == "skipped"
    assert trade.back_matched_size == 0
    assert trade.monitor_active
    assert venue.orders() == []
    assert {"TRIGGER_AFTER_CUTOFF", "TRADE_SKIPPED"} <= set(h.event_types())


@pytest.mark.asyncio
async def test_illiquid_market_skipped_without_entry(harness):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)], total_matched=500)

    await h.tick(at(5))

    state = h.state
    assert isinstance(state, Skipped)
    assert state.reason == SKIP_ILLIQUID
    assert state.shadow.entry_price is None
    assert "MARKET_LIQUIDITY_TOO_LOW" in h.event_types()


@pytest.mark.asyncio
async def test_baseline_moves_only_after_stable_readings(harness):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    await h.tick(at(1))

    h.book(back=[(2.1, 500)], lay=[(2.12, 500)])
    await h.tick(at(2))
    await h.tick(at(3))
    assert h.state.baseline_price == 2.0

    await h.tick(at(4))
    assert h.state.baseline_price == 2.1
    assert "BASELINE_UPDATED" in h.event_types()


@pytest.mark.asyncio
async def test_market_closed_while_watching_cancels(harness):
    h = harness(state=Watching(baseline_price=2.0, last_price=2.0, recent_prices=(2.0,)))
    h.book(back=[(2.0, 5)], lay=[], status="CLOSED")

    await h.tick(at(95))

    assert isinstance(h.state, Cancelled)
    assert h.trade.status == "cancelled"
    assert "MARKET_CLOSED" in h.event_types()


# ---------------------------------------------------------------------------
# 2. TRIGGER_WAIT
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_waits_for_settle_time(harness, venue):
    h = harness(state=trigger_wait())
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])

    await h.tick(at(20, 45))

    assert isinstance(h.state, TriggerWait)
    assert h.state.snapshots_logged == (30,)
    assert venue.orders() == []


@pytest.mark.asyncio
async def test_false_alarm_returns_to_watching(harness):
    h = harness(state=trigger_wait(baseline=2.0, trigger=2.7))
    h.book(back=[(2.2, 500)], lay=[(2.22, 500)])

    await h.tick(at(20, 30))

    assert h.state == Watching(baseline_price=2.2, last_price=2.2, recent_prices=(2.2,))
    assert "FALSE_ALARM" in h.event_types()


@pytest.mark.asyncio
async def test_price_above_band_skips(harness, venue):
    h = harness(state=trigger_wait(baseline=4.5, trigger=6.0))
    h.book(back=[(6.0, 500)], lay=[(6.2, 500)])

    await h.tick(at(20, 91))

    state = h.state
    assert isinstance(state, Skipped)
    assert state.reason == SKIP_PRICE_ABOVE_MAX
    assert state.shadow.entry_price == 6.0
    assert venue.orders() == []


@pytest.mark.asyncio
async def test_price_below_band_rechecked_once(harness):
    h = harness(state=trigger_wait(baseline=1.4, trigger=1.9))
    h.book(back=[(1.9, 500)], lay=[(1.91, 500)])

    await h.tick(at(20, 91))
    assert isinstance(h.state, TriggerWait)
    assert h.state.below_min_since == at(20, 91)

    await h.tick(at(20, 125))
    assert isinstance(h.state, Skipped)
    assert h.state.reason == SKIP_PRICE_BELOW_MIN


@pytest.mark.asyncio
async def test_rejected_entry_stays_in_trigger_wait(harness):
    h = harness(state=trigger_wait())
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)], status="SUSPENDED")

    await h.tick(at(20, 91))

    trade = h.trade
    assert isinstance(h.state, TriggerWait)
    assert trade.status == "watching"
    assert trade.last_error == "ENTRY_REJECTED: MARKET_NOT_OPEN_FOR_BETTING"
    assert trade.back_matched_size == 0
    assert "ENTRY_FAILED" in h.event_types()


@pytest.mark.asyncio
async def test_unmatched_entry_skips_after_retry(harness, venue):
    h = harness(state=trigger_wait(baseline=1.9, trigger=2.5))
    h.book(back=[(2.5, 500)], lay=[(2.7, 500)])

    await h.tick(at(20, 91))

    state = h.state
    assert isinstance(state, Skipped)
    assert state.reason == SKIP_NOT_MATCHED
    assert h.trade.back_matched_size == 0
    orders = venue.orders()
    assert [o.price for o in orders] == [2.6, 2.68]
    assert all(o.size_matched == 0 and o.size_remaining == 0 for o in orders)


# ---------------------------------------------------------------------------
# 3. Entry and the protective hedge
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_entry_goes_live_with_protective_lay(harness, venue):
    h = harness(state=trigger_wait())

    state = await enter_live(h)

    trade = h.trade
    assert trade.status == "live"
    assert trade.back_matched_size == 200
    assert trade.back_price == 2.0
    assert trade.lay_price == 1.82
    assert trade.lay_size == 219.78
    assert state.target_lay_price == 1.82
    assert venue.order(state.protective_bet_id).side == Side.LAY
    assert f"{h.trade_id}-entry-0" in venue._refs
    assert f"{h.trade_id}-hedge-1" in venue._refs
    assert h.event_types().count("TRIGGER_PRICE_SNAPSHOT") == 3
    assert {"ENTRY_PLACED", "POSITION_ENTERED", "HEDGE_PLACED"} <= set(h.event_types())


@pytest.mark.asyncio
async def test_partial_entry_hedges_matched_size(harness):
    h = harness(state=trigger_wait())
    h.book(back=[(2.0, 100)], lay=[(2.02, 500)])

    await h.tick(at(20, 91))

    trade = h.trade
    assert isinstance(h.state, Live)
    assert trade.back_matched_size == 100
    assert trade.lay_size == lay_stake_for(100, 2.0, 1.82)


@pytest.mark.asyncio
async def test_entry_checkpointed_before_verification(harness, venue):
    h = harness(state=trigger_wait())
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    venue.fail_next("list_orders", TransientVenueError("timeout"), times=2)

    with pytest.raises(VenueUnavailableError):
        await h.tick(at(20, 91))

    state = h.state
    assert isinstance(state, Entering)
    assert state.current_bet_id == "paper-1"
    assert h.trade.status == "entering"

    await h.tick(at(20, 106))

    assert isinstance(h.state, Live)
    assert h.trade.back_matched_size == 200
    assert len([o for o in venue.orders() if o.side == Side.BACK]) == 1


@pytest.mark.asyncio
async def test_entering_with_vanished_order_stays_unconfirmed(harness):
    h = harness(state=Entering(
        baseline_price=1.5,
        trigger_price=2.0,
        triggered_at=TRIGGERED,
        stake=200,
        entry_price=2.0,
        current_bet_id="paper-404",
        current_size=200,
        current_price=2.0,
        bet_ids=("paper-404",),
    ))
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])

    await h.tick(at(21))

    assert isinstance(h.state, Entering)
    assert h.trade.last_error == "ENTRY_UNCONFIRMED"
    assert h.trade.back_matched_size == 0


# ---------------------------------------------------------------------------
# 4. LIVE outcomes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_profit_target_hit_settles_win(harness):
    h = harness(state=trigger_wait())
    await enter_live(h)

    h.book(back=[(1.81, 500)], lay=[(1.82, 500)])
    await h.tick(at(25))

    trade = h.trade
    lay_stake = lay_stake_for(200, 2.0, 1.82)
    gross = min(200 * (2.0 - 1) - lay_stake * (1.82 - 1), lay_stake - 200)
    assert isinstance(h.state, PostTradeMonitor)
    assert h.state.outcome == OUTCOME_WIN
    assert trade.status == "completed"
    assert trade.realised_pnl == round(gross * (1 - COMMISSION), 2)
    assert trade.pnl_status == PNL_REALISED
    assert trade.lay_matched_size == lay_stake
    assert trade.settled_at is not None
    assert trade.monitor_active
    assert {"PROFIT_TARGET_HIT", "TRADE_SETTLED"} <= set(h.event_types())


@pytest.mark.asyncio
async def test_post_trade_monitor_finishes_after_window(harness):
    h = harness(state=trigger_wait())
    await enter_live(h)
    h.book(back=[(1.81, 500)], lay=[(1.82, 500)])
    await h.tick(at(25))

    await h.tick(at(126))

    assert h.state == Completed(outcome=OUTCOME_WIN)
    assert not h.trade.monitor_active
    assert "POST_TRADE_MONITOR_COMPLETED" in h.event_types()


@pytest.mark.asyncio
async def test_cancelled_protective_with_no_price_stays_live(harness, venue, notify):
    h = harness(state=trigger_wait())
    live = await enter_live(h)
    venue.lapse_order(live.protective_bet_id)
    h.book(back=[(2.1, 100)], lay=[])

    await h.tick(at(25))

    trade = h.trade
    assert isinstance(h.state, Live)
    assert h.state.hedge_failed
    assert trade.status == "live"
    assert trade.last_error == "EMERGENCY_HEDGE_FAILED_NO_PRICE"
    assert trade.realised_pnl is None
    assert trade.settled_at is None
    notify.assert_called_once()

    await h.tick(at(25, 15))

    assert h.state.emergency_attempts == 2
    notify.assert_called_once()


@pytest.mark.asyncio
async def test_emergency_hedge_at_market_price(harness, venue):
    h = harness(state=trigger_wait())
    live = await enter_live(h)
    venue.lapse_order(live.protective_bet_id)
    h.book(back=[(2.08, 500)], lay=[(2.1, 500)])

    await h.tick(at(25))

    state = h.state
    assert isinstance(state, Live)
    assert state.emergency
    assert h.trade.lay_size == lay_stake_for(200, 2.0, 2.1)
    assert "EMERGENCY_HEDGE_PLACED" in h.event_types()

    await h.tick(at(25, 15))

    assert isinstance(h.state, PostTradeMonitor)
    assert h.trade.realised_pnl == settle(200, 2.0, lay_stake_for(200, 2.0, 2.1), 2.1, COMMISSION)


@pytest.mark.asyncio
async def test_unverified_protective_is_not_assumed_safe(harness, venue):
    h = harness(state=trigger_wait())
    live = await enter_live(h)
    venue.drop_order(live.protective_bet_id)

    await h.tick(at(25))

    assert isinstance(h.state, Live)
    assert h.state.protective_bet_id == live.protective_bet_id
    assert h.trade.last_error == "PROTECTIVE_ORDER_UNVERIFIED"


# ---------------------------------------------------------------------------
# 5. Second trigger, confirmation and recovery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_trigger_cancels_protective(harness, venue):
    h = harness(state=trigger_wait())

    state = await second_trigger(h)

    assert state.pre_trigger_price == 2.0
    assert state.original_target_price == 1.82
    assert h.trade.status == "live"
    assert "SECOND_TRIGGER_DETECTED" in h.event_types()
    lays = [o for o in venue.orders() if o.side == Side.LAY]
    assert all(o.size_remaining == 0 for o in lays)


@pytest.mark.asyncio
async def test_reversion_replaces_original_target(harness, venue):
    h = harness(state=trigger_wait())
    await second_trigger(h)

    h.book(back=[(2.04, 500)], lay=[(2.06, 500)])
    await h.tick(at(31, 31))

    state = h.state
    assert isinstance(state, Live)
    assert state.target_lay_price == 1.82
    assert state.last_stable_price == 2.04
    assert f"{h.trade_id}-hedge-2" in venue._refs
    assert "TRIGGER_REVERTED" in h.event_types()


@pytest.mark.asyncio
async def test_confirmed_trigger_places_recovery_and_settles_loss(harness):
    h = harness(state=trigger_wait())
    await second_trigger(h)

    await h.tick(at(30, 30))
    assert isinstance(h.state, ConfirmWait)

    await h.tick(at(31, 31))
    state = h.state
    assert isinstance(state, RecoveryPending)
    assert state.recovery_price == 2.4
    assert h.trade.lay_size == lay_stake_for(200, 2.0, 2.4)

    h.book(back=[(2.36, 500)], lay=[(2.38, 500)])
    await h.tick(at(32))

    trade = h.trade
    assert isinstance(h.state, PostTradeMonitor)
    assert h.state.outcome == OUTCOME_STOP_LOSS
    assert trade.realised_pnl == settle(200, 2.0, lay_stake_for(200, 2.0, 2.4), 2.38, COMMISSION)
    assert trade.realised_pnl < 0
    assert "RECOVERY_MATCHED" in h.event_types()


@pytest.mark.asyncio
async def test_lapsed_recovery_retried_at_market(harness, venue):
    h = harness(state=RecoveryPending(
        entry_price=2.0,
        back_matched=200,
        entered_at=at(20),
        pre_trigger_price=2.0,
        recovery_price=2.4,
    ))
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])

    await h.tick(at(32))
    first = h.state.recovery_bet_id
    venue.lapse_order(first)

    await h.tick(at(32, 15))

    state = h.state
    assert state.retries == 1
    assert state.recovery_price == 2.62
    assert state.recovery_bet_id != first

    await h.tick(at(32, 30))
    assert isinstance(h.state, PostTradeMonitor)
    assert h.trade.pnl_status == PNL_REALISED


@pytest.mark.asyncio
async def test_exhausted_recovery_flags_unresolved_exposure(harness, notify):
    h = harness(state=RecoveryPending(
        entry_price=2.0,
        back_matched=200,
        entered_at=at(20),
        pre_trigger_price=2.0,
        recovery_price=2.4,
        retries=4,
    ))
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])

    await h.tick(at(40))

    trade = h.trade
    assert trade.status == "settling"
    assert trade.realised_pnl is None
    assert trade.pnl_status == PNL_UNKNOWN
    assert trade.last_error == "UNRESOLVED_EXPOSURE"
    assert h.state.unresolved_exposure
    notify.assert_called_once()

    await h.tick(at(41))
    assert isinstance(h.state, Settling)
    assert "TRADE_SETTLED" not in h.event_types()


@pytest.mark.asyncio
async def test_unresolved_exposure_valued_when_market_closes(harness, venue):
    h = harness(state=RecoveryPending(
        entry_price=2.0,
        back_matched=200,
        entered_at=at(20),
        pre_trigger_price=2.0,
        recovery_price=2.4,
        retries=4,
    ))
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])
    await h.tick(at(40))

    venue.close_market("1.234567")
    await h.tick(at(95))

    trade = h.trade
    assert h.state == Completed(outcome=OUTCOME_STOP_LOSS)
    assert trade.realised_pnl == -200
    assert trade.pnl_status == PNL_REALISED
    assert trade.last_error == "UNRESOLVED_EXPOSURE"
    assert len(h.events("TRADE_SETTLED")) == 1


@pytest.mark.asyncio
async def test_rejected_recovery_is_bounded_and_escalated(harness, venue, notify):
    h = harness(state=RecoveryPending(
        entry_price=2.0,
        back_matched=200,
        entered_at=at(20),
        pre_trigger_price=2.0,
        recovery_price=2.4,
    ))
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])
    venue.suspend_market("1.234567")

    await h.tick(at(32))
    assert h.state.rejections == 1
    assert h.trade.last_error == "RECOVERY_FAILED: MARKET_NOT_OPEN_FOR_BETTING"
    notify.assert_called_once()

    for second in range(1, 10):
        await h.tick(at(32, second * 5))

    state = h.state
    assert isinstance(state, Settling)
    assert state.unresolved_exposure
    assert h.trade.last_error == "UNRESOLVED_EXPOSURE"
    assert len(h.events("RECOVERY_FAILED")) == 4
    assert len(h.events("RECOVERY_EXHAUSTED")) == 1
    assert notify.call_count == 2


@pytest.mark.asyncio
async def test_interrupted_second_trigger_resumes_into_confirm_wait(harness, venue, monkeypatch):
    h = harness(state=trigger_wait())
    live = await enter_live(h)
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])

    async def interrupted(bet_id, market_id, **kwargs):
        await venue.cancel_order(bet_id, market_id)
        raise asyncio.CancelledError()

    monkeypatch.setattr(h.machine.controller, "cancel_and_confirm", interrupted)
    with pytest.raises(asyncio.CancelledError):
        await h.tick(at(30))
    monkeypatch.undo()

    assert h.state.second_trigger_price == 2.6
    assert h.state.protective_bet_id == live.protective_bet_id

    await h.tick(at(30, 15))

    state = h.state
    assert isinstance(state, ConfirmWait)
    assert state.trigger_price == 2.6
    assert state.triggered_at == at(30)
    assert state.pre_trigger_price == 2.0
    assert "EMERGENCY_HEDGE_PLACED" not in h.event_types()
    assert f"{h.trade_id}-hedge-2" not in venue._refs


@pytest.mark.asyncio
async def test_second_trigger_cancel_retried_after_interruption(harness, venue, monkeypatch):
    h = harness(state=trigger_wait())
    await enter_live(h)
    h.book(back=[(2.6, 500)], lay=[(2.62, 500)])

    async def interrupted(bet_id, market_id, **kwargs):
        raise asyncio.CancelledError()

    monkeypatch.setattr(h.machine.controller, "cancel_and_confirm", interrupted)
    with pytest.raises(asyncio.CancelledError):
        await h.tick(at(30))
    monkeypatch.undo()

    # Price has settled back but the detected trigger still runs its course
    h.book(back=[(2.1, 500)], lay=[(2.12, 500)])
    await h.tick(at(30, 15))

    assert isinstance(h.state, ConfirmWait)
    lays = [o for o in venue.orders() if o.side == Side.LAY]
    assert all(o.size_remaining == 0 for o in lays)


# ---------------------------------------------------------------------------
# 6. Market closure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_closed_market_with_verified_zero_hedge_is_full_loss(harness, venue):
    h = harness(state=trigger_wait())
    await enter_live(h)
    venue.close_market("1.234567")

    await h.tick(at(95))

    trade = h.trade
    assert h.state == Completed(outcome=OUTCOME_MARKET_CLOSED)
    assert trade.realised_pnl == -200
    assert trade.pnl_status == PNL_REALISED


@pytest.mark.asyncio
async def test_closed_market_with_missing_hedge_is_unknown(harness, venue):
    h = harness(state=trigger_wait())
    live = await enter_live(h)
    venue.drop_order(live.protective_bet_id)
    venue.close_market("1.234567")

    await h.tick(at(95))

    trade = h.trade
    assert trade.status == "completed"
    assert trade.realised_pnl is None
    assert trade.pnl_status == PNL_UNKNOWN
    assert trade.last_error == "HEDGE_UNVERIFIED_AT_CLOSE"


@pytest.mark.asyncio
async def test_closed_market_finishes_skip_shadow(harness):
    h = harness()
    h.book(back=[(2.0, 500)], lay=[(2.02, 500)])
    await h.tick(at(49))
    h.book(back=[(2.7, 500)], lay=[(2.72, 500)])
    await h.tick(at(50))

    h.book(back=[(2.7, 5)], lay=[], status="CLOSED")
    await h.tick(at(95))

    assert isinstance(h.state, Skipped)
    assert not h.state.shadow.active
    assert not h.trade.monitor_active
    assert "SHADOW_MONITORING_COMPLETED" in h.event_types()
