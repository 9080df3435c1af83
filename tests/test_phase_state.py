"""Tests for phase state serialisation and status derivation."""

import pytest
from pydantic import ValidationError

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
    dump_phase_state,
    load_phase_state,
    monitor_active,
    status_for,
)
from goalhedge.engine.settlement import Fill
from goalhedge.engine.shadow import ShadowMonitor

from conftest import at

SHADOW = ShadowMonitor(trigger_pct=30, profit_target_pct=10, max_minutes=100)
POSITION = {"entry_price": 2.0, "back_matched": 200.0, "entered_at": at(20)}


@pytest.mark.parametrize("state, status", [
    (Watching(), "scheduled"),
    (Watching(baseline_price=2.0), "watching"),
    (TriggerWait(baseline_price=1.5, trigger_price=2.0, triggered_at=at(20)), "watching"),
    (Entering(baseline_price=1.5, trigger_price=2.0, triggered_at=at(20), stake=200, entry_price=2.0), "entering"),
    (Live(last_stable_price=2.0, **POSITION), "live"),
    (ConfirmWait(pre_trigger_price=2.0, trigger_price=2.6, triggered_at=at(30), **POSITION), "live"),
    (RecoveryPending(pre_trigger_price=2.0, recovery_price=2.4, **POSITION), "live"),
    (Settling(outcome="win", **POSITION), "settling"),
    (PostTradeMonitor(outcome="win", shadow=SHADOW.start(1.8, at(30), 2.0)), "completed"),
    (Completed(outcome="win"), "completed"),
    (Skipped(reason="entry not matched"), "skipped"),
    (Cancelled(reason="market closed before entry"), "cancelled"),
])
def test_status_for(state, status):
    assert status_for(state) == status


def test_round_trip_keeps_fills_and_datetimes():
    state = Live(
        last_stable_price=2.0,
        hedge_fills=(Fill(bet_id="paper-2", size=110.0, price=1.82),),
        hedge_seq=1,
        protective_bet_id="paper-3",
        **POSITION,
    )

    data = dump_phase_state(state)

    assert data["phase"] == "live"
    assert load_phase_state(data) == state


def test_empty_snapshot_is_watching():
    assert load_phase_state(None) == Watching()
    assert load_phase_state({}) == Watching()


def test_unknown_phase_rejected():
    with pytest.raises(ValidationError):
        load_phase_state({"phase": "dancing"})


def test_states_are_immutable():
    state = Watching(baseline_price=2.0)
    with pytest.raises(ValidationError):
        state.baseline_price = 3.0


def test_monitor_active():
    track = SHADOW.start(2.7, at(50), entry_price=2.7)
    assert monitor_active(Skipped(reason="trigger after cutoff", shadow=track))
    assert not monitor_active(Skipped(reason="trigger after cutoff"))
    assert not monitor_active(PostTradeMonitor(outcome="win", shadow=SHADOW.finish(track, "MARKET_CLOSED")))
    assert not monitor_active(Live(last_stable_price=2.0, **POSITION))
