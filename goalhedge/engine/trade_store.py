"""Trade persistence.

All engine writes go through TradeStore.commit(): a single-row
read-modify-write that stores the new phase snapshot, the derived status,
any changed trade fields and the events produced, in one transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_
from sqlmodel import Session, select

from goalhedge.engine.phase_state import (
    PhaseState,
    dump_phase_state,
    load_phase_state,
    monitor_active,
    status_for,
)
from goalhedge.models.fixture import Fixture
from goalhedge.models.trade import Trade
from goalhedge.models.trade_event import TradeEvent
from goalhedge.utils.clock import as_utc, utcnow
from goalhedge.utils.constants import ACTIVE_STATUSES, STATUS_SCHEDULED

logger = logging.getLogger(__name__)

# Columns commit() may touch; status/phase_state are derived from the state
WRITABLE_FIELDS = {
    "back_price",
    "back_stake",
    "back_matched_size",
    "lay_price",
    "lay_size",
    "lay_matched_size",
    "target_stake",
    "realised_pnl",
    "pnl_status",
    "last_error",
    "settled_at",
    "venue_market_id",
    "venue_selection_id",
}


@dataclass
class TradeTiming:
    status: str
    kickoff_at: datetime | None
    monitor_active: bool = False


def trade_label(trade: Trade) -> str:
    return f"trade {trade.id} {trade.event_name or trade.venue_event_id}"


class TradeStore:
    def __init__(self, engine=None):
        if engine is None:
            from goalhedge.database import engine as default_engine
            engine = default_engine
        self.engine = engine

    def session(self) -> Session:
        return Session(self.engine)

    def get(self, trade_id: int) -> Trade | None:
        with Session(self.engine) as session:
            return session.get(Trade, trade_id)

    def add(self, trade: Trade, events: list[tuple[str, dict]] = ()) -> Trade:
        with Session(self.engine) as session:
            if trade.phase_state is None:
                trade.phase_state = dump_phase_state(load_phase_state(None))
            session.add(trade)
            session.flush()
            for event_type, payload in events:
                session.add(TradeEvent(trade_id=trade.id, event_type=event_type, payload=payload))
            session.commit()
            session.refresh(trade)
            return trade

    def commit(
        self,
        trade_id: int,
        state: PhaseState | None = None,
        fields: dict[str, Any] | None = None,
        events: list[tuple[str, dict, datetime]] = (),
    ) -> Trade:
        fields = dict(fields or {})
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Not writable by the engine: {sorted(unknown)}")

        with Session(self.engine) as session:
            trade = session.get(Trade, trade_id)
            if trade is None:
                raise LookupError(f"Trade {trade_id} not found")

            if state is not None:
                trade.phase_state = dump_phase_state(state)
                trade.status = status_for(state)
                trade.monitor_active = monitor_active(state)

            matched = fields.pop("back_matched_size", None)
            if matched is not None:
                current = trade.back_matched_size or 0.0
                if matched < current - 1e-9:
                    # Matched stake never shrinks on the venue; a lower figure is a stale read
                    logger.error(
                        f"[{trade_label(trade)}] Refusing to lower back_matched_size "
                        f"{current} -> {matched}"
                    )
                else:
                    trade.back_matched_size = matched

            for name, value in fields.items():
                setattr(trade, name, value)
            trade.updated_at = utcnow()
            session.add(trade)

            for event_type, payload, occurred_at in events:
                session.add(TradeEvent(
                    trade_id=trade_id,
                    event_type=event_type,
                    payload=payload,
                    occurred_at=occurred_at,
                ))
            session.commit()
            session.refresh(trade)
            return trade

    def events_for(self, trade_id: int) -> list[TradeEvent]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(TradeEvent)
                .where(TradeEvent.trade_id == trade_id)
                .order_by(TradeEvent.occurred_at, TradeEvent.id)
            ).all())

    def list_open(self, strategy_key: str) -> list[Trade]:
        """Trades the poll loop must tick: scheduled, active, or still monitored."""
        with Session(self.engine) as session:
            return list(session.exec(
                select(Trade)
                .where(Trade.strategy_key == strategy_key)
                .where(or_(
                    Trade.status.in_((STATUS_SCHEDULED, *ACTIVE_STATUSES)),
                    Trade.monitor_active == True,  # noqa: E712
                ))
                .order_by(Trade.kickoff_at)
            ).all())

    def timings(self, strategy_key: str, now: datetime, horizon: timedelta) -> list[TradeTiming]:
        """Status/kickoff pairs the scheduler needs to decide when to wake."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(Trade.status, Trade.kickoff_at, Trade.monitor_active)
                .where(Trade.strategy_key == strategy_key)
                .where(or_(
                    Trade.status.in_(ACTIVE_STATUSES),
                    Trade.monitor_active == True,  # noqa: E712
                    Trade.kickoff_at >= now - horizon,
                ))
            ).all()
        return [TradeTiming(status, as_utc(kickoff), bool(active)) for status, kickoff, active in rows]

    def trade_for_event(self, strategy_key: str, venue_event_id: str) -> Trade | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Trade)
                .where(Trade.strategy_key == strategy_key)
                .where(Trade.venue_event_id == venue_event_id)
            ).first()

    def fixtures_from(self, since: datetime) -> list[Fixture]:
        with Session(self.engine) as session:
            return list(session.exec(
                select(Fixture).where(Fixture.kickoff_at >= since).order_by(Fixture.kickoff_at)
            ).all())
