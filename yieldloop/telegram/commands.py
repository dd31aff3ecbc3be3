"""Telegram command handlers: read-only views plus a manual cycle trigger."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from yieldloop.shell.config import Config
from yieldloop.shell.ledger import LedgerStore, performance_summary

if TYPE_CHECKING:
    from yieldloop.cycle.orchestrator import CycleOrchestrator

log = structlog.get_logger()


class BotCommands:
    def __init__(self, config: Config, ledger: LedgerStore,
                 orchestrator: CycleOrchestrator | None = None) -> None:
        self._config = config
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._tasks: set[asyncio.Task] = set()

    def set_orchestrator(self, orchestrator: CycleOrchestrator) -> None:
        self._orchestrator = orchestrator

    def menu(self) -> list[tuple[str, str, Callable]]:
        """(command, description, handler) for every command shown to users."""
        return [
            ("status", "Loop health and treasury", self.cmd_status),
            ("ledger", "Performance summary and lessons", self.cmd_ledger),
            ("run", "Trigger one cycle now", self.cmd_run),
            ("help", "List commands", self.cmd_help),
        ]

    def _authorized(self, update: Update) -> bool:
        """Check if user is authorized. Rejects all users if no IDs configured."""
        allowed = self._config.telegram.allowed_user_ids
        if not allowed:
            return False  # No configured users = locked down
        return bool(update.effective_user and update.effective_user.id in allowed)

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        lines = ["Yield loop", f"Mode: {self._config.mode}", "", "Commands:"]
        lines += [f"/{name} - {description}" for name, description, _ in self.menu()]
        await update.message.reply_text("\n".join(lines))

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        ledger = self._ledger.load()
        lines = [f"Mode: {self._config.mode}"]
        if self._orchestrator:
            state = self._orchestrator.state
            lines.append(f"Status: {'RUNNING' if state.running else 'IDLE'}")
            lines.append(f"Cycles this session: {state.run_count}")
            if state.last_run:
                lines.append(f"Last cycle: {state.last_run:%Y-%m-%d %H:%M UTC}")
        lines.append(f"Treasury: ${ledger.current_value:.2f}")
        lines.append(f"Last action: {ledger.last_action}")
        await update.message.reply_text("\n".join(lines))

    async def cmd_ledger(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        ledger = self._ledger.load()
        text = performance_summary(ledger)
        if ledger.lessons:
            text += "\n\nRecent lessons:\n" + "\n".join(f"- {l}" for l in ledger.lessons[-5:])
        await update.message.reply_text(text)

    async def cmd_run(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not self._authorized(update):
            return
        if not self._orchestrator:
            await update.message.reply_text("Cycle runner not ready.")
            return
        if self._orchestrator.state.running:
            await update.message.reply_text("A cycle is already running.")
            return
        log.info("telegram.manual_run", user=update.effective_user.id)
        task = asyncio.create_task(self._orchestrator.run_cycle(trigger="telegram"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        await update.message.reply_text("Cycle started.")
