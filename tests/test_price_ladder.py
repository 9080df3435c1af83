"""Tests for the exchange price ladder."""

import pytest

from goalhedge.engine.price_ladder import (
    LADDER,
    MAX_PRICE,
    MIN_PRICE,
    InvalidPriceError,
    is_valid_price,
    is_within_ticks,
    middle_price,
    snap_price,
    tick_index,
    ticks_above,
    ticks_below,
    ticks_between,
)


# ---------------------------------------------------------------------------
# 1. Ladder shape
# ---------------------------------------------------------------------------

def test_ladder_bounds_and_size():
    assert LADDER[0] == MIN_PRICE
    assert LADDER[-1] == MAX_PRICE
    assert len(LADDER) == 350


def test_ladder_strictly_increasing():
    assert all(a < b for a, b in zip(LADDER, LADDER[1:]))


def test_ladder_band_edges_present():
    for edge in (2.0, 3.0, 4.0, 6.0, 10.0, 20.0, 30.0, 50.0, 100.0):
        assert edge in LADDER


# ---------------------------------------------------------------------------
# 2. Snapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, snapped", [
    (2.0 / 1.10, 1.82),
    (1.004, 1.01),
    (0.5, 1.01),
    (2.031, 2.04),
    (4.57, 4.6),
    (7.35, 7.4),
    (2.0 * 1.2, 2.4),
    (2500, 1000.0),
])
def test_snap_price(raw, snapped):
    assert snap_price(raw) == snapped


def test_snap_is_fixed_point_for_every_ladder_price():
    for price in LADDER:
        assert snap_price(price) == price
        assert snap_price(snap_price(price)) == price


@pytest.mark.parametrize("bad", [None, "abc", -1, 0, float("nan")])
def test_snap_rejects_invalid_input(bad):
    with pytest.raises(InvalidPriceError):
        snap_price(bad)


def test_invalid_price_error_is_value_error():
    assert issubclass(InvalidPriceError, ValueError)


def test_is_valid_price():
    assert is_valid_price(2.02)
    assert not is_valid_price(2.03)
    assert not is_valid_price("abc")


# ---------------------------------------------------------------------------
# 3. Tick arithmetic
# ---------------------------------------------------------------------------

def test_ticks_across_band_boundary():
    assert ticks_above(2.0) == 2.02
    assert ticks_below(2.02) == 2.0
    assert ticks_above(1.99, 2) == 2.02


def test_ticks_clamped_at_ends():
    assert ticks_below(MIN_PRICE) == MIN_PRICE
    assert ticks_above(MAX_PRICE) == MAX_PRICE


def test_ticks_between_and_within():
    assert ticks_between(2.0, 2.1) == 5
    assert ticks_between(2.1, 2.0) == 5
    assert is_within_ticks(2.0, 2.02, 1)
    assert not is_within_ticks(2.0, 2.04, 1)


def test_tick_index_matches_ladder_position():
    assert LADDER[tick_index(3.05)] == 3.05


def test_middle_price_uses_lay_for_one_tick_spread():
    assert middle_price(2.0, 2.02) == 2.02


def test_middle_price_snaps_mid():
    assert middle_price(2.5, 2.7) == 2.6
