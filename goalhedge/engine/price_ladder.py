"""Exchange price ladder.

Valid odds run from 1.01 to 1000 with an increment that widens as the
price grows. Every price the engine sends to the venue goes through
snap_price() first.
"""

import bisect

MIN_PRICE = 1.01
MAX_PRICE = 1000.0

# (upper bound of band, increment inside the band)
LADDER_BANDS: tuple[tuple[float, float], ...] = (
    (2.0, 0.01),
    (3.0, 0.02),
    (4.0, 0.05),
    (6.0, 0.1),
    (10.0, 0.2),
    (20.0, 0.5),
    (30.0, 1.0),
    (50.0, 2.0),
    (100.0, 5.0),
    (1000.0, 10.0),
)


class InvalidPriceError(ValueError):
    """Raised when a price cannot be placed on the ladder."""


def _build_ladder() -> tuple[float, ...]:
    prices = [MIN_PRICE]
    lower = 1.0
    for upper, step in LADDER_BANDS:
        count = round((upper - lower) / step)
        for i in range(1, count + 1):
            price = round(lower + i * step, 2)
            if price > prices[-1]:
                prices.append(price)
        lower = upper
    return tuple(prices)


LADDER: tuple[float, ...] = _build_ladder()


def _check(price: float) -> float:
    if price is None:
        raise InvalidPriceError("price is required")
    try:
        value = float(price)
    except (TypeError, ValueError) as e:
        raise InvalidPriceError(f"not a number: {price!r}") from e
    if value != value or value <= 0:
        raise InvalidPriceError(f"price must be positive, got {price!r}")
    return value


def snap_price(price: float) -> float:
    """Round a price to the nearest valid tick, clamped to [1.01, 1000]."""
    value = min(max(_check(price), MIN_PRICE), MAX_PRICE)
    lower = 1.0
    for upper, step in LADDER_BANDS:
        if value <= upper + 1e-9:
            snapped = round(lower + round((value - lower) / step) * step, 2)
            return max(snapped, MIN_PRICE)
        lower = upper
    return MAX_PRICE


def tick_index(price: float) -> int:
    """Position of a price on the ladder after snapping."""
    snapped = snap_price(price)
    idx = bisect.bisect_left(LADDER, snapped - 1e-9)
    return min(idx, len(LADDER) - 1)


def is_valid_price(price: float) -> bool:
    try:
        return abs(snap_price(price) - float(price)) < 1e-9
    except InvalidPriceError:
        return False


def ticks_above(price: float, ticks: int = 1) -> float:
    return LADDER[min(tick_index(price) + ticks, len(LADDER) - 1)]


def ticks_below(price: float, ticks: int = 1) -> float:
    return LADDER[max(tick_index(price) - ticks, 0)]


def ticks_between(a: float, b: float) -> int:
    return abs(tick_index(a) - tick_index(b))


def is_within_ticks(a: float, b: float, ticks: int) -> bool:
    return ticks_between(a, b) <= ticks


def middle_price(back: float, lay: float) -> float:
    """Price between the best back and best lay offers.

    With a one-tick spread there is no price in between, so the lay side
    is used.
    """
    if ticks_between(back, lay) <= 1:
        return snap_price(lay)
    return snap_price((back + lay) / 2)
