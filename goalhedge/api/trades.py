"""Trade history API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from goalhedge.database import get_session
from goalhedge.models.trade import Trade
from goalhedge.models.trade_event import TradeEvent
from goalhedge.api.deps import require_api_token

router = APIRouter(prefix="/api/trades", tags=["trades"], dependencies=[Depends(require_api_token)])


@router.get("")
def list_trades(
    strategy_key: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Trade).order_by(Trade.kickoff_at.desc())
    if strategy_key is not None:
        stmt = stmt.where(Trade.strategy_key == strategy_key)
    if status is not None:
        stmt = stmt.where(Trade.status == status)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()


@router.get("/{trade_id}")
def get_trade(trade_id: int, session: Session = Depends(get_session)):
    trade = session.get(Trade, trade_id)
    if not trade:
        raise HTTPException(status_code=404, detail="Trade not found")
    return trade


@router.get("/{trade_id}/events")
def trade_events(trade_id: int, session: Session = Depends(get_session)):
    if not session.get(Trade, trade_id):
        raise HTTPException(status_code=404, detail="Trade not found")
    return session.exec(
        select(TradeEvent)
        .where(TradeEvent.trade_id == trade_id)
        .order_by(TradeEvent.occurred_at, TradeEvent.id)
    ).all()
