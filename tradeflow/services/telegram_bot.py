"""Telegram bot for trade lifecycle notifications."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from tradeflow.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Loop that owns the session registry (the API loop)
        self._api_loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _on_api_loop(self, func):
        """Run func on the API loop, which owns all session state."""
        if self._api_loop is None or self._api_loop is asyncio.get_running_loop():
            return func()

        async def _call():
            return func()

        return await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(_call(), self._api_loop))

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from tradeflow.engine.registry import registry

        summary = await self._on_api_loop(registry.summary)
        if not summary:
            await update.message.reply_text("No open sessions.")
            return

        lines = []
        for session_id, statuses in summary.items():
            settled = sum(1 for s in statuses.values() if s.value == "settled")
            lines.append(f"Session {session_id[:8]}: {settled}/{len(statuses)} settled")
            for trade_id, status in statuses.items():
                lines.append(f"  {trade_id[:10]}: {status.value}")
        await update.message.reply_text("\n".join(lines))

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

        self._app = Application.builder().token(self.token).build()
        self._app.add_handler(CommandHandler("status", self._cmd_status))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        # Called from the app lifespan, on the API loop
        self._api_loop = asyncio.get_running_loop()
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
