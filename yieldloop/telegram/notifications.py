"""Notifications: social push of narratives to the configured Telegram chat."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from telegram.ext import Application

log = structlog.get_logger()

TELEGRAM_MAX_LEN = 4096


class Notifier:
    """Posts text to one chat with a short retry ladder."""

    def __init__(self, chat_id: str, app: Application | None = None) -> None:
        self._chat_id = chat_id
        self._app = app

    def set_app(self, app: Application | None) -> None:
        self._app = app

    @property
    def configured(self) -> bool:
        return bool(self._app and self._chat_id)

    async def send(self, text: str) -> bool:
        """Deliver text. Returns False after the last failed attempt."""
        if not self.configured:
            return False
        for attempt in range(3):
            try:
                await self._app.bot.send_message(chat_id=self._chat_id, text=text[:TELEGRAM_MAX_LEN])
                return True
            except Exception as e:
                if attempt < 2:
                    log.warning("notifier.send_retry", attempt=attempt + 1, error=str(e))
                    await asyncio.sleep(2 ** attempt)
                else:
                    log.error("notifier.send_failed", error=str(e))
        return False

    # --- System Events ---

    async def system_online(self, mode: str, interval_minutes: float) -> None:
        await self.send(f"Yield loop online ({mode} mode). Cycle every {interval_minutes:g} minutes.")

    async def system_shutdown(self) -> None:
        await self.send("Yield loop shutting down.")
