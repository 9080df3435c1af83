"""Trade model: one market position lifecycle per (strategy, venue event)."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Column


class Trade(SQLModel, table=True):
    __tablename__ = "trade"
    __table_args__ = (UniqueConstraint("strategy_key", "venue_event_id", name="uq_trade_strategy_event"),)

    id: int | None = Field(default=None, primary_key=True)
    strategy_key: str = Field(index=True)
    venue_event_id: str = Field(index=True)
    event_name: str | None = None
    competition: str | None = None
    kickoff_at: datetime | None = None
    venue_market_id: str | None = None
    venue_selection_id: int | None = None

    # Coarse lifecycle; see goalhedge.engine.phase_state.status_for
    status: str = Field(default="scheduled", index=True)
    phase_state: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    monitor_active: bool = False

    target_stake: float | None = None
    back_price: float | None = None
    back_stake: float | None = None
    back_matched_size: float = 0.0
    lay_price: float | None = None
    lay_size: float | None = None
    lay_matched_size: float = 0.0

    realised_pnl: float | None = None
    pnl_status: str | None = None  # "realised" or "unknown" once settled
    last_error: str | None = None
    settled_at: datetime | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
