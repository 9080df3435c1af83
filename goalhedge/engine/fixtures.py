"""Create trade records for discovered fixtures."""

import logging
from datetime import datetime, timedelta

from goalhedge.engine.phase_state import Cancelled, Watching, dump_phase_state
from goalhedge.engine.trade_store import TradeStore, trade_label
from goalhedge.models.trade import Trade
from goalhedge.schemas.strategy_config import StrategyConfig
from goalhedge.utils.clock import as_utc
from goalhedge.utils.constants import EVENT_GAME_ENDED, EVENT_TRADE_CREATED, STATUS_SCHEDULED

logger = logging.getLogger(__name__)


def sync_trades_from_fixtures(store: TradeStore, config: StrategyConfig, now: datetime) -> int:
    """Make sure every upcoming fixture has a trade for this strategy.

    Returns the number of trades created. Market ids resolved after the
    trade was created are copied across; scheduled trades whose match
    window has passed without ever being watched are cancelled.
    """
    created = 0
    window = timedelta(minutes=config.max_match_minutes)
    for fixture in store.fixtures_from(now - window):
        existing = store.trade_for_event(config.strategy_key, fixture.venue_event_id)
        if existing is None:
            trade = store.add(
                Trade(
                    strategy_key=config.strategy_key,
                    venue_event_id=fixture.venue_event_id,
                    event_name=fixture.event_name,
                    competition=fixture.competition,
                    kickoff_at=as_utc(fixture.kickoff_at),
                    venue_market_id=fixture.venue_market_id,
                    venue_selection_id=fixture.venue_selection_id,
                    target_stake=config.default_stake,
                    phase_state=dump_phase_state(Watching()),
                ),
                events=[(EVENT_TRADE_CREATED, {
                    "kickoff_at": as_utc(fixture.kickoff_at).isoformat(),
                    "target_stake": config.default_stake,
                })],
            )
            created += 1
            logger.info(f"[{trade_label(trade)}] Created for kickoff {fixture.kickoff_at}")
            continue

        if existing.status != STATUS_SCHEDULED:
            continue
        if existing.venue_market_id is None and fixture.venue_market_id:
            store.commit(existing.id, fields={
                "venue_market_id": fixture.venue_market_id,
                "venue_selection_id": fixture.venue_selection_id,
            })
            logger.info(f"[{trade_label(existing)}] Market resolved: {fixture.venue_market_id}")

    for trade in store.list_open(config.strategy_key):
        kickoff = as_utc(trade.kickoff_at)
        if trade.status == STATUS_SCHEDULED and kickoff and now - kickoff > window:
            store.commit(
                trade.id,
                Cancelled(reason="match window passed before watching started"),
                {"last_error": "GAME_ENDED"},
                [(EVENT_GAME_ENDED, {"kickoff_at": kickoff.isoformat()}, now)],
            )
            logger.info(f"[{trade_label(trade)}] Cancelled, never watched")

    return created
