"""TradeEvent model: append-only audit log of transitions and order outcomes."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field, Column


class TradeEvent(SQLModel, table=True):
    __tablename__ = "trade_event"

    id: int | None = Field(default=None, primary_key=True)
    trade_id: int = Field(foreign_key="trade.id", index=True)
    event_type: str = Field(index=True)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
