"""Fixture model: written by the discovery job, read by the engine."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class Fixture(SQLModel, table=True):
    __tablename__ = "fixture"

    id: int | None = Field(default=None, primary_key=True)
    venue_event_id: str = Field(unique=True, index=True)
    event_name: str
    competition: str | None = None
    kickoff_at: datetime = Field(index=True)
    # Filled in once the market catalogue has been resolved
    venue_market_id: str | None = None
    venue_selection_id: int | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
