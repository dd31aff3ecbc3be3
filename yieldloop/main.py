"""Yield loop: unattended treasury yield cycle.

Main entry point. Wires all components, manages lifecycle, runs the cycle
on a timer or once on demand.

Startup: load config -> connect DB -> wallet + venues -> ledger + dashboard -> Telegram -> API -> scheduler
Shutdown: stop scheduler -> wait for in-flight cycle -> stop API -> stop Telegram -> close clients -> close DB
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from yieldloop.api.server import create_app as create_api_app
from yieldloop.cycle.collector import Collector
from yieldloop.cycle.executor import Executor
from yieldloop.cycle.narrator import Narrator
from yieldloop.cycle.orchestrator import CycleOrchestrator, CycleOutcome
from yieldloop.shell.activity import ActivityLogger
from yieldloop.shell.chain import RpcWallet, build_wallet
from yieldloop.shell.config import PROJECT_ROOT, Config, load_config
from yieldloop.shell.dashboard import DashboardStore
from yieldloop.shell.database import Database
from yieldloop.shell.ledger import LedgerStore
from yieldloop.shell.risk import SafetyGate
from yieldloop.shell.venues import ApyFeed, build_adapters
from yieldloop.telegram.bot import TelegramBot
from yieldloop.telegram.commands import BotCommands
from yieldloop.telegram.notifications import Notifier
from yieldloop.utils.logging import setup_logging

log = structlog.get_logger()

LOCK_FILE = PROJECT_ROOT / "data" / "yieldloop.pid"


class YieldLoop:
    """Main application: owns every component and the scheduler."""

    def __init__(self, config_dir: str | None = None) -> None:
        self._config_dir = config_dir
        self._config: Config | None = None
        self._db: Database | None = None
        self._activity: ActivityLogger | None = None
        self._wallet: RpcWallet | None = None
        self._apy_feed: ApyFeed | None = None
        self._ledger: LedgerStore | None = None
        self._dashboard: DashboardStore | None = None
        self._narrator: Narrator | None = None
        self._notifier: Notifier | None = None
        self._telegram: TelegramBot | None = None
        self._orchestrator: CycleOrchestrator | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._closed = False

    @property
    def running(self) -> bool:
        return self._running

    async def setup(self) -> None:
        """Build every component. Safe to call once per process."""
        self._config = load_config(self._config_dir)
        config = self._config
        setup_logging(config.log_level)
        log.info("config.loaded", mode=config.mode, wallet=config.chain.wallet_address or None,
                 lending=len(config.venues.lending), liquidity=len(config.venues.liquidity))

        # Database + activity timeline
        Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = Database(config.db_path)
        await self._db.connect()
        self._activity = ActivityLogger(self._db)

        # Chain + venues
        self._wallet = build_wallet(config.chain, paper=config.is_paper())
        self._apy_feed = ApyFeed(config.venues)
        adapters = build_adapters(config.venues, self._wallet, self._apy_feed, config.chain.stable_decimals)
        collector = Collector(self._wallet, adapters, self._apy_feed, config.collector, config.safety,
                              config.chain.stable_decimals)
        executor = Executor(self._wallet, adapters, SafetyGate(config.safety))

        # Memory + dashboard mirror
        self._ledger = LedgerStore(config.ledger.path, config.ledger.history_window)
        self._dashboard = DashboardStore(config.dashboard.state_path, config.dashboard.history_cap,
                                         config.dashboard.freshness_hours)

        # Telegram
        self._notifier = Notifier(config.telegram.chat_id)
        commands = BotCommands(config, self._ledger)
        self._telegram = TelegramBot(config.telegram, commands)
        await self._telegram.start()
        self._notifier.set_app(self._telegram.app)

        self._narrator = Narrator(self._dashboard, config.dashboard, self._notifier,
                                  explorer_link=self._wallet.explorer_link)
        self._orchestrator = CycleOrchestrator(
            collector, executor, self._ledger, self._narrator, config.policy, self._activity)
        commands.set_orchestrator(self._orchestrator)

        # REST API
        if config.api.enabled:
            api_app = create_api_app(config, self._ledger, self._dashboard, self._activity, self._orchestrator)
            self._api_runner = web.AppRunner(api_app)
            await self._api_runner.setup()
            site = web.TCPSite(self._api_runner, config.api.host, config.api.port)
            await site.start()
            log.info("api.started", host=config.api.host, port=config.api.port)

    async def start(self) -> None:
        """Run the scheduler until stop() is called."""
        log.info("loop.starting")
        await self.setup()
        if self._stop_event.is_set():
            return  # stop requested during startup
        config = self._config

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._scheduled_cycle,
            IntervalTrigger(minutes=config.scheduler.interval_minutes),
            id="cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=config.scheduler.first_run_delay_seconds),
        )
        self._scheduler.start()
        self._running = True
        log.info("loop.started", mode=config.mode, interval_minutes=config.scheduler.interval_minutes)

        await self._activity.system(f"Yield loop online ({config.mode} mode)")
        await self._notifier.system_online(config.mode, config.scheduler.interval_minutes)

        await self._stop_event.wait()

    async def _scheduled_cycle(self) -> None:
        await self._orchestrator.run_cycle(trigger="scheduled")

    async def run_once(self) -> CycleOutcome:
        """Single manual cycle, then close."""
        await self.setup()
        try:
            outcome = await self._orchestrator.run_cycle(trigger="manual")
            log.info("loop.once_complete", status=outcome.status,
                     action=outcome.decision.action.value if outcome.decision else None)
            return outcome
        finally:
            await self.close()

    async def stop(self) -> None:
        """Graceful shutdown: no new cycles, bounded wait for the in-flight one."""
        if not self._running:
            self._stop_event.set()
            return
        log.info("loop.stopping")
        self._running = False

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        if self._orchestrator:
            grace = self._config.scheduler.shutdown_grace_seconds
            if not await self._orchestrator.wait_idle(grace):
                log.error("loop.cycle_still_running", grace_seconds=grace,
                          note="closing with a cycle in flight; inspect pending transactions")

        if self._notifier:
            await self._notifier.system_shutdown()
        if self._activity:
            await self._activity.system("Yield loop shutting down")

        await self.close()
        self._stop_event.set()
        log.info("loop.stopped")

    async def close(self) -> None:
        """Release every resource opened by setup(). Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._api_runner:
            await self._api_runner.cleanup()
        if self._telegram:
            await self._telegram.stop()
        if self._narrator:
            await self._narrator.close()
        if self._apy_feed:
            await self._apy_feed.close()
        if self._wallet:
            await self._wallet.close()
        if self._db:
            await self._db.close()


def _acquire_lock() -> None:
    """Ensure only one instance runs against this data dir. Write PID to lockfile."""
    current_pid = os.getpid()
    if LOCK_FILE.exists():
        try:
            old_pid = int(LOCK_FILE.read_text().strip())
        except (ValueError, OSError):
            log.warning("lockfile.corrupt")
            LOCK_FILE.unlink(missing_ok=True)
            old_pid = None

        if old_pid is not None and old_pid != current_pid:
            try:
                os.kill(old_pid, 0)  # signal 0 = just check existence
                print(f"ERROR: Another instance is running (PID {old_pid}). Exiting.", file=sys.stderr)
                sys.exit(1)
            except (ProcessLookupError, PermissionError):
                log.warning("lockfile.stale", old_pid=old_pid)

    LOCK_FILE.parent.mkdir(parents=True, exist_ok=True)
    LOCK_FILE.write_text(str(current_pid))


def _release_lock() -> None:
    """Remove PID lockfile on exit."""
    try:
        if LOCK_FILE.exists() and LOCK_FILE.read_text().strip() == str(os.getpid()):
            LOCK_FILE.unlink()
    except OSError:
        pass


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="yieldloop", description="Unattended treasury yield loop")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--config-dir", default=None, help="directory holding settings.toml and risk_limits.toml")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    _acquire_lock()

    loop_app = YieldLoop(config_dir=args.config_dir)

    if args.once:
        try:
            await loop_app.run_once()
        finally:
            _release_lock()
        return

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()
    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(loop_app.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await loop_app.start()
    except KeyboardInterrupt:
        pass
    finally:
        if _stop_task is not None:
            await _stop_task
        if loop_app.running:
            await loop_app.stop()
        await loop_app.close()
        _release_lock()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
