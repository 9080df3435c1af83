"""StrategySetting model: per-strategy policy overrides stored as text."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class StrategySetting(SQLModel, table=True):
    __tablename__ = "strategy_setting"
    __table_args__ = (UniqueConstraint("strategy_key", "name", name="uq_setting_strategy_name"),)

    id: int | None = Field(default=None, primary_key=True)
    strategy_key: str = Field(index=True)
    name: str
    value: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
