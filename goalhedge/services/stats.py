"""Read-only dashboard aggregations over trades and their events."""

from collections import defaultdict

from goalhedge.models.trade import Trade
from goalhedge.models.trade_event import TradeEvent
from goalhedge.utils.clock import as_utc
from goalhedge.utils.constants import (
    ACTIVE_STATUSES,
    EVENT_POSITION_ENTERED,
    EVENT_PROFIT_TARGET_HIT,
    PNL_REALISED,
    PNL_UNKNOWN,
    STATUS_COMPLETED,
    STATUS_SKIPPED,
)


def stake_totals(trades: list[Trade]) -> dict:
    realised = [t for t in trades if t.pnl_status == PNL_REALISED and t.realised_pnl is not None]
    total_pnl = sum(t.realised_pnl for t in realised)
    winning = [t for t in realised if t.realised_pnl > 0]
    return {
        "total_trades": len(trades),
        "active_trades": sum(1 for t in trades if t.status in ACTIVE_STATUSES),
        "completed_trades": sum(1 for t in trades if t.status == STATUS_COMPLETED),
        "skipped_trades": sum(1 for t in trades if t.status == STATUS_SKIPPED),
        "total_back_stake": round(sum(t.back_matched_size or 0.0 for t in trades), 2),
        "total_lay_stake": round(sum(t.lay_matched_size or 0.0 for t in trades), 2),
        "total_pnl": round(total_pnl, 2),
        "unknown_pnl_trades": sum(1 for t in trades if t.pnl_status == PNL_UNKNOWN),
        "win_rate": round(len(winning) / len(realised) * 100, 1) if realised else 0.0,
    }


def pnl_by_competition(trades: list[Trade]) -> list[dict]:
    """Realised PnL per competition; unknown outcomes are counted, never summed as zero."""
    groups: dict[str, dict] = defaultdict(lambda: {"trades": 0, "pnl": 0.0, "unknown": 0})
    for trade in trades:
        if trade.pnl_status is None:
            continue
        group = groups[trade.competition or "Unknown"]
        group["trades"] += 1
        if trade.pnl_status == PNL_UNKNOWN or trade.realised_pnl is None:
            group["unknown"] += 1
        else:
            group["pnl"] += trade.realised_pnl

    return [
        {
            "competition": name,
            "trades": g["trades"],
            "pnl": round(g["pnl"], 2),
            "unknown_pnl_trades": g["unknown"],
        }
        for name, g in sorted(groups.items(), key=lambda item: item[1]["pnl"], reverse=True)
    ]


def exposure_by_profit_target(trades: list[Trade], events: list[TradeEvent]) -> list[dict]:
    """Average seconds between entry and profit-target hit, bucketed by realised target %.

    The realised target is back price / lay price - 1, rounded to a whole
    percent. Trades that never hit their target are left out.
    """
    entered: dict[int, object] = {}
    hit: dict[int, object] = {}
    for event in events:
        if event.event_type == EVENT_POSITION_ENTERED:
            entered.setdefault(event.trade_id, as_utc(event.occurred_at))
        elif event.event_type == EVENT_PROFIT_TARGET_HIT:
            hit.setdefault(event.trade_id, as_utc(event.occurred_at))

    buckets: dict[int, list[float]] = defaultdict(list)
    for trade in trades:
        if trade.id not in entered or trade.id not in hit:
            continue
        if not trade.back_price or not trade.lay_price:
            continue
        target_pct = round((trade.back_price / trade.lay_price - 1) * 100)
        buckets[target_pct].append((hit[trade.id] - entered[trade.id]).total_seconds())

    return [
        {
            "profit_target_pct": pct,
            "trades": len(seconds),
            "avg_exposure_seconds": round(sum(seconds) / len(seconds), 1),
        }
        for pct, seconds in sorted(buckets.items())
    ]
