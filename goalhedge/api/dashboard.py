"""Dashboard API: summary stats, PnL by competition and exposure times."""

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from goalhedge.database import get_session
from goalhedge.api.deps import require_api_token
from goalhedge.models.trade import Trade
from goalhedge.models.trade_event import TradeEvent
from goalhedge.services import stats
from goalhedge.utils.constants import EVENT_POSITION_ENTERED, EVENT_PROFIT_TARGET_HIT

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"], dependencies=[Depends(require_api_token)])


def _trades(session: Session, strategy_key: str | None) -> list[Trade]:
    stmt = select(Trade)
    if strategy_key is not None:
        stmt = stmt.where(Trade.strategy_key == strategy_key)
    return list(session.exec(stmt).all())


@router.get("/summary")
def dashboard_summary(strategy_key: str | None = None, session: Session = Depends(get_session)):
    """Aggregated stake and PnL totals."""
    return stats.stake_totals(_trades(session, strategy_key))


@router.get("/pnl-by-competition")
def pnl_by_competition(strategy_key: str | None = None, session: Session = Depends(get_session)):
    return stats.pnl_by_competition(_trades(session, strategy_key))


@router.get("/exposure")
def exposure_by_profit_target(strategy_key: str | None = None, session: Session = Depends(get_session)):
    trades = _trades(session, strategy_key)
    events = session.exec(
        select(TradeEvent).where(
            TradeEvent.event_type.in_((EVENT_POSITION_ENTERED, EVENT_PROFIT_TARGET_HIT))
        )
    ).all()
    return stats.exposure_by_profit_target(trades, list(events))
