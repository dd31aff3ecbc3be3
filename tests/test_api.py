"""Tests for the outer surfaces: REST API, metrics, Telegram commands, CLI entry."""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

SECRET = "test-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


def _app(tmpdir, activity_logger=None, orchestrator=None):
    from yieldloop.api.server import create_app
    from yieldloop.shell.config import Config
    from yieldloop.shell.dashboard import DashboardStore
    from yieldloop.shell.ledger import LedgerStore
    config = Config()
    ledger = LedgerStore(os.path.join(tmpdir, "ledger.json"))
    dashboard = DashboardStore(os.path.join(tmpdir, "agent-state.json"))
    return create_app(config, ledger, dashboard, activity_logger, orchestrator, api_key=SECRET)


def _payload(**overrides):
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": "deposit",
        "narrative": "Just deposited into Morpho!",
        "details": {"new_treasury_usd": 115.0, "apy_current": 5.5, "protocol": "morpho"},
    }
    payload.update(overrides)
    return payload


# --- REST API ---

@pytest.mark.asyncio
async def test_api_update_requires_auth():
    from aiohttp.test_utils import TestClient, TestServer
    with tempfile.TemporaryDirectory() as tmpdir:
        async with TestClient(TestServer(_app(tmpdir))) as client:
            resp = await client.post("/api/update", json=_payload())
            assert resp.status == 401
            body = await resp.json()
            assert body["error"]["code"] == "unauthorized"

            resp = await client.post("/api/update", json=_payload(),
                                     headers={"Authorization": "Bearer wrong"})
            assert resp.status == 401


@pytest.mark.asyncio
async def test_api_update_validates_fields():
    from aiohttp.test_utils import TestClient, TestServer
    with tempfile.TemporaryDirectory() as tmpdir:
        async with TestClient(TestServer(_app(tmpdir))) as client:
            payload = _payload()
            del payload["narrative"]
            resp = await client.post("/api/update", json=payload, headers=AUTH)
            assert resp.status == 400
            body = await resp.json()
            assert body["error"]["message"] == "Missing required fields: narrative"

            resp = await client.post("/api/update", data="not json", headers=AUTH)
            assert resp.status == 400


@pytest.mark.asyncio
async def test_api_update_then_status():
    from aiohttp.test_utils import TestClient, TestServer
    with tempfile.TemporaryDirectory() as tmpdir:
        async with TestClient(TestServer(_app(tmpdir))) as client:
            resp = await client.post("/api/update", json=_payload(milestone="first_action"), headers=AUTH)
            assert resp.status == 200
            body = await resp.json()
            assert body["success"] is True
            assert body["message"] == "Update received"

            # Status is public
            resp = await client.get("/api/status")
            assert resp.status == 200
            status = await resp.json()
            assert status["status"] == "Just deposited into Morpho!"
            assert status["treasury_usd"] == 115.0
            assert status["current_protocol"] == "morpho"
            assert status["milestones"] == ["first_action"]
            assert status["is_active"] is True
            assert status["total_actions"] == 1
            assert status["seconds_since_update"] < 60


@pytest.mark.asyncio
async def test_api_status_before_any_update():
    from aiohttp.test_utils import TestClient, TestServer
    with tempfile.TemporaryDirectory() as tmpdir:
        async with TestClient(TestServer(_app(tmpdir))) as client:
            resp = await client.get("/api/status")
            status = await resp.json()
            assert status["current_protocol"] == "Initializing"
            assert status["recent_history"] == []


@pytest.mark.asyncio
async def test_api_ledger_and_metrics():
    from aiohttp.test_utils import TestClient, TestServer
    with tempfile.TemporaryDirectory() as tmpdir:
        async with TestClient(TestServer(_app(tmpdir))) as client:
            resp = await client.get("/api/ledger")
            assert resp.status == 401

            resp = await client.get("/api/ledger", headers=AUTH)
            assert resp.status == 200
            body = await resp.json()
            assert body["data"]["last_action"] == "INIT"
            assert body["data"]["summary"].startswith("Performance Summary")
            assert body["meta"]["mode"] == "paper"

            resp = await client.get("/metrics")
            assert resp.status == 200
            text = await resp.text()
            assert "yl_treasury_value_usd" in text
            assert "yl_growth_pct" in text


@pytest.mark.asyncio
async def test_api_activity():
    from aiohttp.test_utils import TestClient, TestServer
    from yieldloop.shell.activity import ActivityLogger
    from yieldloop.shell.database import Database
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(os.path.join(tmpdir, "yieldloop.db"))
        await db.connect()
        try:
            activity = ActivityLogger(db)
            await activity.system("online")
            await activity.risk("Budget exceeded", "error")
            async with TestClient(TestServer(_app(tmpdir, activity_logger=activity))) as client:
                resp = await client.get("/api/activity?category=RISK", headers=AUTH)
                assert resp.status == 200
                rows = (await resp.json())["data"]
                assert [r["summary"] for r in rows] == ["Budget exceeded"]

                resp = await client.get("/api/activity?limit=abc", headers=AUTH)
                assert len((await resp.json())["data"]) == 2
        finally:
            await db.close()


@pytest.mark.asyncio
async def test_api_cycles():
    from aiohttp.test_utils import TestClient, TestServer
    from yieldloop.shell.activity import ActivityLogger
    from yieldloop.shell.database import Database
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(os.path.join(tmpdir, "yieldloop.db"))
        await db.connect()
        try:
            activity = ActivityLogger(db)
            await activity.cycle_started("c1", "scheduled")
            await activity.cycle_finished("c1", "completed", action="HOLD", success=True,
                                          value_before=100.0, value_after=100.0)
            async with TestClient(TestServer(_app(tmpdir, activity_logger=activity))) as client:
                resp = await client.get("/api/cycles")
                assert resp.status == 401

                resp = await client.get("/api/cycles?limit=5", headers=AUTH)
                assert resp.status == 200
                rows = (await resp.json())["data"]
                assert [r["id"] for r in rows] == ["c1"]
                assert rows[0]["status"] == "completed"
        finally:
            await db.close()


# --- Telegram Commands ---

def _commands(allowed=(42,), orchestrator=None):
    from yieldloop.shell.config import Config
    from yieldloop.shell.ledger import Ledger
    from yieldloop.telegram.commands import BotCommands
    config = Config()
    config.telegram.allowed_user_ids = list(allowed)
    ledger = MagicMock()
    ledger.load.return_value = Ledger(seed_value=100.0, current_value=115.0, growth_percent=15.0,
                                      lessons=("Growth reached the 10% tier - strategy working",))
    return BotCommands(config, ledger, orchestrator)


def _update(user_id=42):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    return update


@pytest.mark.asyncio
async def test_telegram_rejects_unauthorized():
    commands = _commands(allowed=(42,))
    update = _update(user_id=7)
    await commands.cmd_status(update, None)
    update.message.reply_text.assert_not_called()

    locked = _commands(allowed=())
    update = _update(user_id=42)
    await locked.cmd_ledger(update, None)
    update.message.reply_text.assert_not_called()


@pytest.mark.asyncio
async def test_telegram_status_and_ledger():
    commands = _commands()
    update = _update()
    await commands.cmd_status(update, None)
    text = update.message.reply_text.call_args.args[0]
    assert "Treasury: $115.00" in text
    assert "Mode: paper" in text

    update = _update()
    await commands.cmd_ledger(update, None)
    text = update.message.reply_text.call_args.args[0]
    assert "Growth: +15.00%" in text
    assert "Growth reached the 10% tier" in text


@pytest.mark.asyncio
async def test_telegram_help_lists_menu():
    commands = _commands()
    update = _update()
    await commands.cmd_help(update, None)
    text = update.message.reply_text.call_args.args[0]
    for name, description, _ in commands.menu():
        assert f"/{name} - {description}" in text


@pytest.mark.asyncio
async def test_telegram_bot_lifecycle(monkeypatch):
    import yieldloop.telegram.bot as bot_mod
    from yieldloop.shell.config import TelegramConfig

    commands = _commands()
    disabled = bot_mod.TelegramBot(TelegramConfig(enabled=True, bot_token=""), commands)
    await disabled.start()
    assert disabled.app is None
    await disabled.stop()

    app = MagicMock()
    for name in ("initialize", "start", "stop", "shutdown"):
        setattr(app, name, AsyncMock())
    app.bot.set_my_commands = AsyncMock()
    app.updater.start_polling = AsyncMock()
    app.updater.stop = AsyncMock()
    app.updater.running = True
    application = MagicMock()
    application.builder.return_value.token.return_value.build.return_value = app
    monkeypatch.setattr(bot_mod, "Application", application)

    bot = bot_mod.TelegramBot(TelegramConfig(enabled=True, bot_token="123:abc"), commands)
    await bot.start()
    assert bot.app is app
    registered = [c.args[0].commands for c in app.add_handler.call_args_list]
    assert registered == [frozenset({n}) for n, _, _ in commands.menu()] + [frozenset({"start"})]
    menu = app.bot.set_my_commands.call_args.args[0]
    assert [c.command for c in menu] == ["status", "ledger", "run", "help"]

    await bot.stop()
    app.updater.stop.assert_awaited_once()
    app.shutdown.assert_awaited_once()
    assert bot.app is None


@pytest.mark.asyncio
async def test_telegram_run_respects_single_flight():
    orchestrator = MagicMock()
    orchestrator.state.running = True
    orchestrator.run_cycle = AsyncMock()
    commands = _commands(orchestrator=orchestrator)
    update = _update()
    await commands.cmd_run(update, None)
    assert update.message.reply_text.call_args.args[0] == "A cycle is already running."
    orchestrator.run_cycle.assert_not_called()

    orchestrator.state.running = False
    update = _update()
    await commands.cmd_run(update, None)
    assert update.message.reply_text.call_args.args[0] == "Cycle started."
    for task in list(commands._tasks):
        await task
    orchestrator.run_cycle.assert_awaited_once_with(trigger="telegram")


# --- CLI ---

def test_parse_args():
    from yieldloop.main import parse_args
    args = parse_args(["--once", "--config-dir", "/tmp/conf"])
    assert args.once is True
    assert args.config_dir == "/tmp/conf"
    assert parse_args([]).once is False


def test_lockfile_stale_pid_is_replaced(monkeypatch):
    import yieldloop.main as main_mod
    with tempfile.TemporaryDirectory() as tmpdir:
        lock = Path(tmpdir) / "yieldloop.pid"
        lock.write_text("not-a-pid")
        monkeypatch.setattr(main_mod, "LOCK_FILE", lock)
        main_mod._acquire_lock()
        assert lock.read_text() == str(os.getpid())
        main_mod._release_lock()
        assert not lock.exists()


# --- Shutdown ---

def _stopping_loop(grace_seconds, liveness):
    from yieldloop.cycle.orchestrator import CycleOrchestrator
    from yieldloop.main import YieldLoop
    from yieldloop.shell.config import Config

    config = Config()
    config.scheduler.shutdown_grace_seconds = grace_seconds
    collector = MagicMock()
    collector.probe = AsyncMock(side_effect=liveness)
    narrator = MagicMock()
    narrator.publish = AsyncMock(return_value=True)
    orchestrator = CycleOrchestrator(collector, MagicMock(), MagicMock(), narrator, config.policy)

    loop_app = YieldLoop()
    loop_app._config = config
    loop_app._orchestrator = orchestrator
    loop_app._scheduler = MagicMock()
    loop_app._notifier = AsyncMock()
    loop_app._activity = AsyncMock()
    loop_app._running = True
    return loop_app, orchestrator


@pytest.mark.asyncio
async def test_stop_waits_for_inflight_cycle_before_closing():
    events = []

    async def slow_probe():
        await asyncio.sleep(0.3)
        events.append("cycle_done")
        return False

    loop_app, orchestrator = _stopping_loop(5.0, slow_probe)
    loop_app.close = AsyncMock(side_effect=lambda: events.append("closed"))

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await asyncio.sleep(0)
    assert orchestrator.state.running

    await loop_app.stop()
    assert events == ["cycle_done", "closed"]
    loop_app._scheduler.shutdown.assert_called_once_with(wait=False)
    assert not loop_app.running
    assert (await cycle).status == "probe_failed"


@pytest.mark.asyncio
async def test_stop_gives_up_after_grace_period(monkeypatch):
    import yieldloop.main as main_mod
    release = asyncio.Event()

    async def stuck_probe():
        await release.wait()
        return False

    logger = MagicMock()
    monkeypatch.setattr(main_mod, "log", logger)
    loop_app, orchestrator = _stopping_loop(0.2, stuck_probe)
    loop_app.close = AsyncMock()

    cycle = asyncio.create_task(orchestrator.run_cycle())
    await asyncio.sleep(0)
    await loop_app.stop()

    logged = [c.args[0] for c in logger.error.call_args_list]
    assert "loop.cycle_still_running" in logged
    loop_app.close.assert_awaited_once()
    assert orchestrator.state.running

    release.set()
    await cycle
