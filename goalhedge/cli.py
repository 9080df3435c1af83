"""CLI tool for admin operations.

Usage:
    python -m goalhedge.cli init-db
    python -m goalhedge.cli show-config <strategy>
    python -m goalhedge.cli set <strategy> <name> <value>
    python -m goalhedge.cli add-fixture <event_id> <name> <kickoff ISO> [competition] [market_id] [selection_id]
    python -m goalhedge.cli serve
"""

import sys
from datetime import datetime

from pydantic import ValidationError
from sqlmodel import Session, select

from goalhedge.config import settings
from goalhedge.database import engine, create_db_and_tables
from goalhedge.models.fixture import Fixture
from goalhedge.models.strategy_setting import StrategySetting
from goalhedge.schemas.strategy_config import (
    StrategyConfig,
    default_setting_rows,
    load_strategy_config,
    resolve_strategy_config,
)
from goalhedge.utils.clock import as_utc, utcnow


def init_db():
    """Create tables and seed default settings for every configured strategy."""
    create_db_and_tables()
    with Session(engine) as session:
        for key in settings.strategies:
            existing = {
                row.name
                for row in session.exec(select(StrategySetting).where(StrategySetting.strategy_key == key)).all()
            }
            added = 0
            for row in default_setting_rows(key):
                if row.name not in existing:
                    session.add(row)
                    added += 1
            print(f"{key}: seeded {added} settings")
        session.commit()


def show_config(strategy_key: str):
    with Session(engine) as session:
        config = load_strategy_config(session, strategy_key)
    for name, value in config.model_dump().items():
        print(f"{name} = {value}")


def set_setting(strategy_key: str, name: str, value: str):
    """Validate the change against the merged config before storing it."""
    if name not in StrategyConfig.model_fields or name == "strategy_key":
        print(f"Unknown setting: {name}")
        sys.exit(1)

    with Session(engine) as session:
        rows = session.exec(select(StrategySetting).where(StrategySetting.strategy_key == strategy_key)).all()
        row = next((r for r in rows if r.name == name), None)
        candidate = [r for r in rows if r.name != name]
        candidate.append(StrategySetting(strategy_key=strategy_key, name=name, value=value))
        try:
            resolve_strategy_config(strategy_key, candidate)
        except ValidationError as e:
            print(f"Invalid value for {name}: {e}")
            sys.exit(1)

        if row is None:
            row = StrategySetting(strategy_key=strategy_key, name=name, value=value)
        else:
            row.value = value
            row.updated_at = utcnow()
        session.add(row)
        session.commit()
    print(f"{strategy_key}.{name} = {value}")


def add_fixture(args: list[str]):
    if len(args) < 3:
        print("Usage: add-fixture <event_id> <name> <kickoff ISO> [competition] [market_id] [selection_id]")
        sys.exit(1)
    event_id, name, kickoff = args[:3]
    competition = args[3] if len(args) > 3 else None
    market_id = args[4] if len(args) > 4 else None
    selection_id = int(args[5]) if len(args) > 5 else None

    create_db_and_tables()
    with Session(engine) as session:
        fixture = session.exec(select(Fixture).where(Fixture.venue_event_id == event_id)).first()
        if fixture is None:
            fixture = Fixture(venue_event_id=event_id)
        fixture.event_name = name
        fixture.kickoff_at = as_utc(datetime.fromisoformat(kickoff))
        fixture.competition = competition
        fixture.venue_market_id = market_id
        fixture.venue_selection_id = selection_id
        fixture.updated_at = utcnow()
        session.add(fixture)
        session.commit()
    print(f"Fixture {event_id} ({name}) kicks off {kickoff}")


def serve():
    import uvicorn

    uvicorn.run("goalhedge.main:app", host="0.0.0.0", port=8000)


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m goalhedge.cli <command>")
        print("Commands: init-db, show-config, set, add-fixture, serve")
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]
    if command == "init-db":
        init_db()
    elif command == "show-config" and len(args) == 1:
        show_config(args[0])
    elif command == "set" and len(args) == 3:
        set_setting(*args)
    elif command == "add-fixture":
        add_fixture(args)
    elif command == "serve":
        serve()
    else:
        print(f"Unknown command or wrong arguments: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
