"""Tests for the rigid shell: config, storage, ledger, dashboard, safety, chain, venues, database."""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

WALLET = "0x" + "11" * 20
VAULT_A = "0x" + "22" * 20
TOKEN = "0x" + "44" * 20


def _snapshot(stable_usd: float = 100.0):
    from yieldloop.shell.contract import MarketSnapshot, TreasuryBalances
    return MarketSnapshot(
        treasury=TreasuryBalances(native_units=0, stable_units=int(stable_usd * 10 ** 6)),
        opportunities=(),
        positions=(),
        gas_price_wei=1_000_000,
        warnings=(),
        treasury_ok=True,
    )


def _deposit(amount_usd: float = 50.0, name: str = "Vault A"):
    from yieldloop.shell.contract import Action, Decision, DepositParams, Priority, VenueType
    return Decision(
        action=Action.DEPOSIT,
        reasoning=("No current position",),
        confidence=0.9,
        priority=Priority.HIGH,
        params=DepositParams(
            target=VAULT_A, target_name=name, venue_type=VenueType.LENDING,
            amount_units=int(amount_usd * 10 ** 6), amount_usd=amount_usd, expected_apy=5.0,
        ),
    )


# --- Config ---

def test_config_loading():
    from yieldloop.shell.config import load_config
    config = load_config()
    assert config.mode == "paper"
    assert config.is_paper()
    assert config.policy.apy_delta_threshold_pct == 3.0
    assert config.policy.deposit_fraction == 0.8
    assert config.safety.max_cycle_spend_usd == 1000.0
    assert len(config.venues.lending) == 1
    assert config.venues.lending[0].protocol == "morpho"
    assert config.venues.liquidity[0].stable_index == 1
    assert config.ledger.path.endswith("ledger.json")
    assert config.scheduler.interval_minutes == 240


def test_config_env_overrides(monkeypatch):
    from yieldloop.shell.config import load_config
    monkeypatch.setenv("YIELDLOOP_RPC_URL", "http://localhost:8545")
    monkeypatch.setenv("API_SECRET", "s3cret")
    config = load_config()
    assert config.chain.rpc_url == "http://localhost:8545"
    assert config.api.secret == "s3cret"


def test_config_validation_collects_errors(monkeypatch):
    from yieldloop.shell.config import load_config
    monkeypatch.delenv("YIELDLOOP_WALLET_ADDRESS", raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        Path(tmpdir, "settings.toml").write_text('[general]\nmode = "live"\n')
        Path(tmpdir, "risk_limits.toml").write_text("[policy]\ndeposit_fraction = 1.5\n")
        with pytest.raises(ValueError) as exc:
            load_config(tmpdir)
    message = str(exc.value)
    assert "deposit_fraction" in message
    assert "YIELDLOOP_WALLET_ADDRESS" in message


# --- Storage ---

def test_atomic_write_replaces_and_leaves_no_temp():
    from yieldloop.shell.storage import atomic_write_json, read_json
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "doc.json"
        assert read_json(path) is None
        atomic_write_json(path, {"a": 1})
        atomic_write_json(path, {"a": 2})
        assert read_json(path) == {"a": 2}
        assert os.listdir(tmpdir) == ["doc.json"]


def test_read_json_rejects_non_object():
    from yieldloop.shell.storage import read_json
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "doc.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            read_json(path)


# --- Ledger ---

def test_ledger_seed_growth_and_lesson():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"))
        ledger = store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT, "0xabc"),
                              115.0, "c1")

        assert ledger.seed_value == 100.0
        assert ledger.current_value == 115.0
        assert ledger.growth_percent == 15.0
        assert ledger.total_compounded == 15.0
        assert ledger.successful_actions == 1
        assert ledger.last_action == "DEPOSIT"
        assert ledger.entries[-1].pnl_delta == "+$15.00"
        assert ledger.entries[-1].tx_ref == "0xabc"
        assert ledger.lessons == ("Growth reached the 10% tier - strategy working",)

        # Survives a restart
        reloaded = LedgerStore(os.path.join(tmpdir, "ledger.json")).load()
        assert reloaded.growth_percent == 15.0
        assert reloaded.entries[0].cycle_id == "c1"


def test_ledger_replayed_cycle_is_ignored():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"))
        result = ActionResult.ok(Action.DEPOSIT, "0xabc")
        store.record(_snapshot(100.0), _deposit(), result, 101.0, "c1")
        ledger = store.record(_snapshot(100.0), _deposit(), result, 101.0, "c1")
        assert ledger.successful_actions == 1
        assert len(ledger.entries) == 1


def test_ledger_history_window():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"), history_window=3)
        for i in range(5):
            ledger = store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT), 100.0, f"c{i}")
        assert [e.cycle_id for e in ledger.entries] == ["c2", "c3", "c4"]
        assert ledger.successful_actions == 5


def test_ledger_failures_and_repeated_failure_lesson():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"))
        failed = ActionResult.failed(Action.DEPOSIT, "slippage")
        store.record(_snapshot(100.0), _deposit(), failed, 99.5, "c1")
        ledger = store.record(_snapshot(99.5), _deposit(), failed, 99.0, "c2")
        assert ledger.failed_actions == 2
        assert ledger.successful_actions == 0
        assert ledger.total_compounded == 0.0
        assert ledger.entries[-1].notes == "failed: slippage"
        assert ledger.entries[-1].pnl_delta == "-$0.50"
        assert "Repeated failures on Vault A - investigate slippage or venue health" in ledger.lessons


def test_ledger_consecutive_success_lesson():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"))
        for i in range(3):
            ledger = store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT), 100.0, f"c{i}")
        assert ledger.lessons[-1] == "3 consecutive successful moves into Vault A - consider increasing allocation"
        # Lessons are not repeated
        ledger = store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT), 100.0, "c3")
        assert len(ledger.lessons) == 1


def test_ledger_corrupt_read_falls_back():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import Ledger, LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "ledger.json")
        Path(path).write_text("{not json")
        fresh = LedgerStore(path)
        assert fresh.load() == Ledger()

        store = LedgerStore(path)
        store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT), 110.0, "c1")
        Path(path).write_text("{still not json")
        assert store.load().current_value == 110.0


def test_ledger_milestone_claimed_once():
    from yieldloop.shell.contract import ActionResult, Action
    from yieldloop.shell.ledger import LedgerStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LedgerStore(os.path.join(tmpdir, "ledger.json"))
        assert store.claim_milestones() == []  # no seed yet
        store.record(_snapshot(100.0), _deposit(), ActionResult.ok(Action.DEPOSIT), 125.0, "c1")
        claimed = store.claim_milestones()
        assert [t for t, _ in claimed] == [10, 20]
        assert store.claim_milestones() == []
        assert store.load().milestones_reached == (10, 20)


def test_format_pnl():
    from yieldloop.shell.ledger import format_pnl
    assert format_pnl(15) == "+$15.00"
    assert format_pnl(0) == "+$0.00"
    assert format_pnl(-2.5) == "-$2.50"


def test_performance_summary():
    from yieldloop.shell.ledger import Ledger, performance_summary
    text = performance_summary(Ledger(current_value=115.0, growth_percent=15.0,
                                      successful_actions=3, failed_actions=1))
    assert "Treasury: $115.00" in text
    assert "Growth: +15.00%" in text
    assert "Success rate: 75%" in text


# --- Dashboard ---

def _update(action="deposit", narrative="Just deposited!", **extra):
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "narrative": narrative,
        "details": {"new_treasury_usd": 115.0, "apy_current": 5.2, "protocol": "morpho"},
    }
    payload.update(extra)
    return payload


def test_dashboard_rejects_missing_fields():
    from yieldloop.shell.dashboard import DashboardStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DashboardStore(os.path.join(tmpdir, "state.json"))
        with pytest.raises(ValueError, match="narrative"):
            store.apply_update({"timestamp": "2026-01-01T00:00:00+00:00", "action": "hold"})
        assert not os.path.exists(os.path.join(tmpdir, "state.json"))


def test_dashboard_history_and_milestones():
    from yieldloop.shell.dashboard import DashboardStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DashboardStore(os.path.join(tmpdir, "state.json"), history_cap=3)
        for i in range(5):
            store.apply_update(_update(narrative=f"update {i}", milestone="first_action"))
        state = store.load()
        assert [h["narrative"] for h in state["history"]] == ["update 4", "update 3", "update 2"]
        assert state["milestones"] == ["first_action"]
        assert state["treasury_usd"] == 115.0
        assert state["current_apy"] == 5.2
        assert state["current_protocol"] == "morpho"
        assert state["status"] == "update 4"


def test_dashboard_status_freshness():
    from yieldloop.shell.dashboard import DashboardStore
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DashboardStore(os.path.join(tmpdir, "state.json"), freshness_hours=6)
        store.apply_update(_update())

        view = store.status_view()
        assert view["is_active"] is True
        assert view["seconds_since_update"] < 60
        assert view["total_actions"] == 1
        assert len(view["recent_history"]) == 1

        stale = store.status_view(now=datetime.now(timezone.utc) + timedelta(hours=7))
        assert stale["is_active"] is False


# --- Safety Gate ---

def test_safety_gate_ceiling():
    from yieldloop.shell.config import SafetyConfig
    from yieldloop.shell.risk import BudgetExceeded, SafetyGate
    gate = SafetyGate(SafetyConfig(max_cycle_spend_usd=1000.0))
    gate.authorize(_deposit(), 1000.0)  # equal passes

    with pytest.raises(BudgetExceeded) as exc:
        gate.authorize(_deposit(), 1001.0, step="approve")
    assert exc.value.ceiling_usd == 1000.0
    assert exc.value.estimated_cost_usd == 1001.0
    assert "approve" in str(exc.value)


# --- Chain ---

def test_encode_call():
    from yieldloop.shell.chain import decode_uint, encode_call
    data = encode_call("approve(address,uint256)", TOKEN, 5)
    assert data.startswith("0x095ea7b3")
    assert data[10:74] == "0" * 24 + "44" * 20
    assert data[74:] == "0" * 63 + "5"
    assert decode_uint("0x" + format(123, "064x")) == 123


def _rpc_client(handler):
    from yieldloop.shell.chain import RpcClient
    return RpcClient("http://node.test", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_rpc_client_result_and_errors():
    from yieldloop.shell.chain import RpcError

    def handler(request):
        body = json.loads(request.content)
        if body["method"] == "eth_blockNumber":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x10"})
        if body["method"] == "eth_gasPrice":
            return httpx.Response(500, text="upstream down")
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                         "error": {"code": -32601, "message": "method not found"}})

    rpc = _rpc_client(handler)
    try:
        assert await rpc.call("eth_blockNumber") == "0x10"
        with pytest.raises(RpcError, match="transport failure"):
            await rpc.call("eth_gasPrice")
        with pytest.raises(RpcError) as exc:
            await rpc.call("eth_foo")
        assert exc.value.code == -32601
    finally:
        await rpc.close()


@pytest.mark.asyncio
async def test_wallet_reads_and_receipts():
    from yieldloop.shell.chain import ConfirmationTimeout, RpcWallet, TransactionReverted
    from yieldloop.shell.config import ChainConfig

    def handler(request):
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        result = None
        if method == "eth_call":
            result = "0x" + format(42_000_000, "064x")
        elif method == "eth_getTransactionReceipt":
            result = {"status": "0x0"} if params[0] == "0xbad" else None
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    config = ChainConfig(wallet_address=WALLET, confirmation_timeout_seconds=0)
    wallet = RpcWallet(_rpc_client(handler), config, poll_interval=0)
    try:
        assert await wallet.token_balance(TOKEN) == 42_000_000
        with pytest.raises(TransactionReverted):
            await wallet.wait_for_receipt("0xbad")
        with pytest.raises(ConfirmationTimeout):
            await wallet.wait_for_receipt("0xpending")
        assert wallet.explorer_link("0xabc") == "https://basescan.org/tx/0xabc"
    finally:
        await wallet.close()


@pytest.mark.asyncio
async def test_paper_wallet_simulates_writes():
    from yieldloop.shell.chain import PaperWallet
    from yieldloop.shell.config import ChainConfig

    def handler(request):
        raise AssertionError("paper writes must not reach the node")

    wallet = PaperWallet(_rpc_client(handler), ChainConfig(wallet_address=WALLET))
    try:
        ref = await wallet.send_and_confirm(TOKEN, "0x095ea7b3")
        assert ref.startswith("paper-")
        assert wallet.explorer_link(ref) == ""
    finally:
        await wallet.close()


# --- Venues ---

@pytest.mark.asyncio
async def test_apy_feed_live_last_known_and_placeholder():
    from yieldloop.shell.config import VenuesConfig
    from yieldloop.shell.venues import ApyFeed

    up = {"value": True}

    def handler(request):
        if not up["value"]:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": [
            {"pool": f"{VAULT_A}-base", "chain": "Base", "apy": 7.5},
        ]})

    feed = ApyFeed(VenuesConfig(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        assert await feed.lookup(VAULT_A, 5.0) == (7.5, None)

        apy, warning = await feed.lookup(TOKEN, 5.0)
        assert apy == 5.0
        assert "placeholder" in warning

        up["value"] = False
        feed.invalidate()
        apy, warning = await feed.lookup(VAULT_A, 5.0)
        assert apy == 7.5
        assert "last-known" in warning
    finally:
        await feed.close()


@pytest.mark.asyncio
async def test_lending_adapter_lists_position():
    from yieldloop.shell.chain import SELECTORS
    from yieldloop.shell.config import VenueConfig
    from yieldloop.shell.contract import VenueType
    from yieldloop.shell.venues import LendingVaultAdapter

    async def call(to, data):
        if data.startswith(SELECTORS["totalAssets()"]):
            return "0x" + format(10_000_000 * 10 ** 6, "064x")
        return "0x" + format(50 * 10 ** 6, "064x")  # convertToAssets

    wallet = MagicMock()
    wallet.address = WALLET
    wallet.call = AsyncMock(side_effect=call)
    wallet.token_balance = AsyncMock(return_value=48 * 10 ** 6)
    feed = MagicMock()
    feed.lookup = AsyncMock(return_value=(6.0, None))

    adapter = LendingVaultAdapter([VenueConfig(address=VAULT_A, name="Vault A", protocol="morpho")],
                                  wallet, feed, placeholder_apy=5.0)
    opportunities, warnings = await adapter.list_opportunities()
    assert warnings == []
    opp = opportunities[0]
    assert opp.venue_type == VenueType.LENDING
    assert opp.tvl_usd == 10_000_000
    assert opp.user_stake_units == 50 * 10 ** 6
    assert opp.user_stake_usd == 50.0
    assert adapter.knows(VAULT_A)
    assert not adapter.knows(TOKEN)


def test_liquidity_adapter_refuses_deposits():
    from yieldloop.shell.config import VenueConfig
    from yieldloop.shell.venues import LiquidityPoolAdapter
    adapter = LiquidityPoolAdapter([VenueConfig(address=VAULT_A, name="USDC/WETH")],
                                   MagicMock(), MagicMock(), placeholder_apy=8.0)
    with pytest.raises(NotImplementedError, match="router path"):
        adapter.encode_deposit(VAULT_A, 1, WALLET)


# --- Database + Activity ---

@pytest.mark.asyncio
async def test_database_schema_and_activity():
    from yieldloop.shell.activity import ActivityLogger
    from yieldloop.shell.database import Database
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(os.path.join(tmpdir, "yieldloop.db"))
        await db.connect()
        try:
            rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = [r["name"] for r in rows]
            assert "activity_log" in tables
            assert "cycles" in tables

            activity = ActivityLogger(db)
            await activity.system("online")
            await activity.action("DEPOSIT Vault A failed", "error", detail={"tx": None})
            await activity.cycle_started("c1", "manual")
            await activity.cycle_finished("c1", "completed", action="HOLD", success=True,
                                          value_before=100.0, value_after=100.0)

            recent = await activity.query()
            assert [r["category"] for r in recent] == ["ACTION", "SYSTEM"]
            errors = await activity.query(severity="error")
            assert len(errors) == 1
            assert json.loads(errors[0]["detail"]) == {"tx": None}

            cycles = await activity.recent_cycles()
            assert cycles[0]["status"] == "completed"
            assert cycles[0]["success"] == 1
            assert cycles[0]["finished_at"] is not None
        finally:
            await db.close()
