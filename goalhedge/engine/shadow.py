"""Shadow monitor: what a trade would have seen, with no capital at risk.

Runs for skipped trades (from the theoretical entry point) and after a
real trade settles (from the exit point). Tracks the lowest back price
the market offered, freezes that minimum as soon as another trigger
fires, and finishes after a bounded window or when the market closes.
"""

import logging
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from goalhedge.engine.price_ladder import snap_price

logger = logging.getLogger(__name__)

FINISH_MAX_DURATION = "MAX_DURATION_REACHED"
FINISH_MARKET_CLOSED = "MARKET_CLOSED"


class ShadowTrack(BaseModel):
    model_config = ConfigDict(frozen=True)

    started_at: datetime
    reference_price: float
    entry_price: float | None = None  # None until a theoretical entry exists
    target_price: float | None = None
    last_price: float | None = None
    min_price: float | None = None
    min_price_at: datetime | None = None
    target_hit_at: datetime | None = None
    frozen: bool = False
    frozen_at: datetime | None = None
    observations: int = 0
    finished_reason: str | None = None

    @property
    def active(self) -> bool:
        return self.finished_reason is None


def pct_move(price: float, reference: float) -> float:
    """Relative move of price against reference, in percent."""
    if not reference:
        return 0.0
    return (price - reference) / reference * 100


class ShadowMonitor:
    def __init__(self, trigger_pct: float, profit_target_pct: float, max_minutes: float):
        self.trigger_pct = trigger_pct
        self.profit_target_pct = profit_target_pct
        self.max_minutes = max_minutes

    def _target(self, entry_price: float) -> float:
        return snap_price(entry_price / (1 + self.profit_target_pct / 100))

    def start(self, price: float, now: datetime, entry_price: float | None = None) -> ShadowTrack:
        return ShadowTrack(
            started_at=now,
            reference_price=price,
            entry_price=entry_price,
            target_price=self._target(entry_price) if entry_price else None,
            last_price=price,
            min_price=price if entry_price else None,
            min_price_at=now if entry_price else None,
        )

    def observe(self, track: ShadowTrack, price: float | None, now: datetime) -> ShadowTrack:
        if not track.active:
            return track
        if (now - track.started_at).total_seconds() / 60 >= self.max_minutes:
            return self.finish(track, FINISH_MAX_DURATION)
        if price is None:
            return track

        update: dict = {"observations": track.observations + 1, "last_price": price}
        spiked = track.last_price is not None and pct_move(price, track.last_price) >= self.trigger_pct

        if track.entry_price is None:
            # Illiquid skip: the first spike is the theoretical entry
            if spiked:
                update.update(
                    entry_price=price,
                    target_price=self._target(price),
                    min_price=price,
                    min_price_at=now,
                )
            return track.model_copy(update=update)

        if spiked and not track.frozen:
            update.update(frozen=True, frozen_at=now)
        elif not track.frozen and (track.min_price is None or price < track.min_price):
            update.update(min_price=price, min_price_at=now)
            if track.target_price and price <= track.target_price and track.target_hit_at is None:
                update["target_hit_at"] = now
        return track.model_copy(update=update)

    def finish(self, track: ShadowTrack, reason: str) -> ShadowTrack:
        if not track.active:
            return track
        return track.model_copy(update={"finished_reason": reason})

    @staticmethod
    def summary(track: ShadowTrack) -> dict:
        drop_pct = None
        if track.entry_price and track.min_price:
            drop_pct = round(-pct_move(track.min_price, track.entry_price), 2)
        return {
            "reason": track.finished_reason,
            "reference_price": track.reference_price,
            "entry_price": track.entry_price,
            "min_price": track.min_price,
            "max_drop_pct": drop_pct,
            "target_price": track.target_price,
            "target_hit": track.target_hit_at is not None,
            "frozen": track.frozen,
            "observations": track.observations,
        }
