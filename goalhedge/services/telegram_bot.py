"""Telegram bot for engine escalations and read-only status queries."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes
from sqlmodel import Session, select

from goalhedge.config import settings
from goalhedge.models.trade import Trade
from goalhedge.utils.constants import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


def format_status(status: dict, active_count: int) -> str:
    scheduler_str = "running" if status["running"] else "stopped"
    lines = [
        f"Scheduler: {scheduler_str}",
        f"Jobs: {status['job_count']}",
        f"Active trades: {active_count}",
    ]
    for key, strategy in status.get("strategies", {}).items():
        mode = "polling" if strategy["polling"] else f"sleeping until {strategy['next_wake_at']}"
        lines.append(f"{key}: {mode}")
    return "\n".join(lines)


def format_trades(trades: list[Trade]) -> str:
    if not trades:
        return "No active trades."
    lines = []
    for trade in trades:
        line = f"#{trade.id} {trade.event_name}: {trade.status}"
        if trade.back_matched_size:
            line += f" | back {trade.back_matched_size:.2f}@{trade.back_price}"
        if trade.last_error:
            line += f" | {trade.last_error}"
        lines.append(line)
    return "\n".join(lines)


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    def _active_trades(self) -> list[Trade]:
        from goalhedge.database import engine

        with Session(engine) as session:
            return list(session.exec(
                select(Trade).where(Trade.status.in_(ACTIVE_STATUSES)).order_by(Trade.kickoff_at)
            ).all())

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from goalhedge.engine.scheduler import get_scheduler_status

        text = format_status(get_scheduler_status(), len(self._active_trades()))
        await update.message.reply_text(text)

    async def _cmd_trades(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        await update.message.reply_text(format_trades(self._active_trades()))

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("trades", self._cmd_trades))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    """Initialize and return the bot singleton."""
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """Get the bot singleton, or None if not initialized."""
    return _bot_instance


def notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        bot = get_bot()
        if bot and bot._loop:
            asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    except Exception as e:
        logger.warning(f"Telegram notification failed: {e}")
