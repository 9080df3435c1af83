"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from goalhedge.config import settings
from goalhedge.database import create_db_and_tables
from goalhedge.utils.logging import setup_logging
from goalhedge.api import trades, dashboard, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    # Start Telegram bot first so escalations from the first cycle are delivered
    telegram_bot = None
    if settings.telegram_bot_token:
        from goalhedge.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    from goalhedge.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    yield

    # Drain in-flight ticks before the bot goes away
    await stop_scheduler()
    if telegram_bot:
        telegram_bot.stop()


app = FastAPI(
    title="Goal Hedge",
    description="In-play goal-reaction hedge trading engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(trades.router)
app.include_router(dashboard.router)
app.include_router(system.router)
