"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect, text
from sqlmodel import SQLModel, create_engine, Session

from goalhedge.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
)


def _run_migrations(bind=None):
    """Run lightweight schema migrations for columns added after first release."""
    bind = bind or engine
    inspector = inspect(bind)

    if "trade" not in inspector.get_table_names():
        return

    columns = {col["name"] for col in inspector.get_columns("trade")}
    if "monitor_active" not in columns:
        logger.info("Migrating: adding trade.monitor_active")
        with bind.connect() as conn:
            conn.execute(text("ALTER TABLE trade ADD COLUMN monitor_active BOOLEAN DEFAULT FALSE"))
            conn.commit()
    if "pnl_status" not in columns:
        logger.info("Migrating: adding trade.pnl_status")
        with bind.connect() as conn:
            conn.execute(text("ALTER TABLE trade ADD COLUMN pnl_status VARCHAR"))
            conn.commit()


def create_db_and_tables(bind=None):
    """Create all tables. Called on startup."""
    import goalhedge.models  # noqa: F401  registers tables on the metadata

    SQLModel.metadata.create_all(bind or engine)
    _run_migrations(bind)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
