"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'goalhedge.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Read-only API guard; empty disables the check
    api_token: str = ""

    # Engine
    strategies: list[str] = ["goalreact"]
    venue_factory: str = "goalhedge.engine.paper_venue:PaperVenue"
    shutdown_grace_seconds: float = 120.0  # longer than one entry verification

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "GH_", "env_file": ".env"}


settings = Settings()
