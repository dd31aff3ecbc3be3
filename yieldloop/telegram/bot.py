"""Telegram Bot: polling lifecycle and the published command menu."""

from __future__ import annotations

import structlog
from telegram import BotCommand, Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler

from yieldloop.shell.config import TelegramConfig
from yieldloop.telegram.commands import BotCommands

log = structlog.get_logger()


class TelegramBot:
    """Owns the python-telegram-bot Application. Disabled without a token."""

    def __init__(self, config: TelegramConfig, commands: BotCommands) -> None:
        self._config = config
        self._commands = commands
        self._app: Application | None = None

    async def start(self) -> None:
        if not self._config.enabled or not self._config.bot_token:
            log.info("telegram.disabled")
            return

        app = Application.builder().token(self._config.bot_token).build()
        menu = self._commands.menu()
        for name, _, handler in menu:
            app.add_handler(CommandHandler(name, handler))
        # Telegram clients send /start when a chat is opened
        app.add_handler(CommandHandler("start", self._commands.cmd_help))

        await app.initialize()
        try:
            await app.bot.set_my_commands([BotCommand(name, description) for name, description, _ in menu])
        except TelegramError as e:
            log.warning("telegram.menu_failed", error=str(e))
        await app.start()
        await app.updater.start_polling(drop_pending_updates=True, allowed_updates=[Update.MESSAGE])
        self._app = app
        log.info("telegram.started", commands=[name for name, _, _ in menu])

    async def stop(self) -> None:
        app, self._app = self._app, None
        if app is None:
            return
        if app.updater and app.updater.running:
            await app.updater.stop()
        await app.stop()
        await app.shutdown()
        log.info("telegram.stopped")

    @property
    def app(self) -> Application | None:
        return self._app
