"""Settlement calculator.

Works out realised profit/loss for a matched back position and whatever
lay hedge was matched against it. None means "unknown" and is only
returned when the inputs are genuinely incomplete. A hedge verified at
exactly zero on a closed market is a full loss of the back stake, not an
unknown.
"""

from typing import Iterable

from pydantic import BaseModel, ConfigDict


class Fill(BaseModel):
    """A verified matched amount on one bet."""

    model_config = ConfigDict(frozen=True)

    bet_id: str
    size: float
    price: float


def weighted_average(fills: Iterable[Fill]) -> tuple[float, float | None]:
    """Reduce fills to (total size, size-weighted price)."""
    fills = [f for f in fills if f.size > 0]
    total = sum(f.size for f in fills)
    if total <= 0:
        return 0.0, None
    price = sum(f.size * f.price for f in fills) / total
    return round(total, 2), round(price, 4)


def lay_stake_for(back_stake: float, back_price: float, lay_price: float) -> float:
    """Lay stake that equalises the outcome of a back position (green-up)."""
    return round(back_stake * back_price / lay_price, 2)


def hedged_back_equivalent(fills: Iterable[Fill], back_price: float) -> float:
    """How much of the back stake the given lay fills already cover."""
    return sum(f.size * f.price for f in fills if f.size > 0) / back_price


def remaining_exposure(back_matched: float, back_price: float, fills: Iterable[Fill]) -> float:
    """Back stake still without an offsetting lay."""
    remaining = back_matched - hedged_back_equivalent(fills, back_price)
    return round(max(remaining, 0.0), 2)


def settle(
    back_stake: float | None,
    back_price: float | None,
    lay_stake: float | None,
    lay_price: float | None,
    commission: float,
    *,
    hedge_verified: bool = True,
    market_closed: bool = False,
) -> float | None:
    """Commission-adjusted realised PnL, or None when it cannot be known.

    The worse of the two event outcomes is taken; commission applies only
    to a net win. Pure function: the same inputs always give the same
    result, so re-running a settlement never double counts.
    """
    if not back_stake or not back_price or back_stake <= 0 or back_price <= 1:
        return None
    if not hedge_verified or lay_stake is None:
        return None

    if lay_stake <= 0:
        if market_closed:
            return round(-back_stake, 2)
        return None
    if lay_price is None or lay_price <= 1:
        return None

    profit_if_wins = back_stake * (back_price - 1) - lay_stake * (lay_price - 1)
    profit_if_loses = lay_stake - back_stake
    gross = min(profit_if_wins, profit_if_loses)
    net = gross * (1 - commission) if gross >= 0 else gross
    return round(net, 2)
