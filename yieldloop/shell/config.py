"""Configuration loading: merges settings.toml, risk_limits.toml, and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"


@dataclass
class VenueConfig:
    address: str
    name: str
    protocol: str = ""
    stable_index: int = 0       # liquidity pairs: which reserve is the stable token


@dataclass
class ChainConfig:
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453
    wallet_address: str = ""
    stable_token: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    stable_decimals: int = 6
    explorer_url: str = "https://basescan.org"
    request_timeout_seconds: float = 15.0
    confirmation_timeout_seconds: float = 180.0


@dataclass
class VenuesConfig:
    apy_feed_url: str = "https://yields.llama.fi/pools"
    apy_chain: str = "base"
    lending_placeholder_apy: float = 5.0
    liquidity_placeholder_apy: float = 8.0
    lending: list[VenueConfig] = field(default_factory=list)
    liquidity: list[VenueConfig] = field(default_factory=list)


@dataclass
class PolicyConfig:
    """Decision thresholds. APY figures are in percentage points (5.0 = 5%)."""
    apy_delta_threshold_pct: float = 3.0
    min_tvl_usd: float = 5_000_000.0
    deposit_fraction: float = 0.8
    min_usable_treasury_usd: float = 10.0
    max_liquidity_allocation: float = 0.20
    assumed_price_move_pct: float = 10.0
    min_reward_usd: float = 1.0
    # Lifetime growth tiers as fractions of the seed (0.20 = +20%)
    deploy_token_growth: float = 0.20
    deploy_vault_growth: float = 0.50


@dataclass
class SafetyConfig:
    max_cycle_spend_usd: float = 1000.0
    max_gas_gwei: float = 1_000_000.0
    low_treasury_usd: float = 10.0


@dataclass
class CollectorConfig:
    fetch_timeout_seconds: float = 20.0


@dataclass
class LedgerConfig:
    path: str = ""
    history_window: int = 20


@dataclass
class DashboardConfig:
    state_path: str = ""
    history_cap: int = 100
    freshness_hours: float = 6.0
    public_url: str = ""
    remote_url: str = ""
    remote_secret: str = ""


@dataclass
class SchedulerConfig:
    interval_minutes: float = 240.0
    first_run_delay_seconds: int = 10
    shutdown_grace_seconds: float = 120.0


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    secret: str = ""


@dataclass
class TelegramConfig:
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    allowed_user_ids: list[int] = field(default_factory=list)


@dataclass
class Config:
    mode: str = "paper"
    log_level: str = "INFO"
    chain: ChainConfig = field(default_factory=ChainConfig)
    venues: VenuesConfig = field(default_factory=VenuesConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    db_path: str = ""

    def is_paper(self) -> bool:
        return self.mode == "paper"


def _apply(section: dict, target: object) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key in vars(target):
        if key in section:
            setattr(target, key, section[key])


def _resolve(path: str) -> str:
    p = Path(path)
    return str(p if p.is_absolute() else PROJECT_ROOT / p)


def load_config(config_dir: Path | str | None = None) -> Config:
    """Load configuration from TOML files and environment variables."""
    config_dir = Path(config_dir) if config_dir else CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "yieldloop.db")
    config.ledger.path = str(PROJECT_ROOT / "data" / "ledger.json")
    config.dashboard.state_path = str(PROJECT_ROOT / "data" / "agent-state.json")

    # Load settings.toml
    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.log_level = general.get("log_level", config.log_level)

        _apply(settings.get("scheduler", {}), config.scheduler)
        _apply(settings.get("chain", {}), config.chain)
        _apply(settings.get("collector", {}), config.collector)
        _apply(settings.get("api", {}), config.api)

        venues = settings.get("venues", {})
        apy = venues.get("apy", {})
        config.venues.apy_feed_url = apy.get("feed_url", config.venues.apy_feed_url)
        config.venues.apy_chain = apy.get("chain", config.venues.apy_chain)
        config.venues.lending_placeholder_apy = apy.get(
            "lending_placeholder_apy", config.venues.lending_placeholder_apy)
        config.venues.liquidity_placeholder_apy = apy.get(
            "liquidity_placeholder_apy", config.venues.liquidity_placeholder_apy)
        config.venues.lending = [VenueConfig(**v) for v in venues.get("lending", [])]
        config.venues.liquidity = [VenueConfig(**v) for v in venues.get("liquidity", [])]

        ledger = settings.get("ledger", {})
        if "path" in ledger:
            config.ledger.path = _resolve(ledger["path"])
        config.ledger.history_window = ledger.get("history_window", config.ledger.history_window)

        dash = settings.get("dashboard", {})
        if "state_path" in dash:
            config.dashboard.state_path = _resolve(dash["state_path"])
        config.dashboard.history_cap = dash.get("history_cap", config.dashboard.history_cap)
        config.dashboard.freshness_hours = dash.get("freshness_hours", config.dashboard.freshness_hours)
        config.dashboard.public_url = dash.get("public_url", config.dashboard.public_url)

        tg = settings.get("telegram", {})
        config.telegram.enabled = tg.get("enabled", config.telegram.enabled)
        config.telegram.allowed_user_ids = tg.get("allowed_user_ids", config.telegram.allowed_user_ids)

    # Load risk_limits.toml
    risk_path = config_dir / "risk_limits.toml"
    if risk_path.exists():
        with open(risk_path, "rb") as f:
            risk = tomllib.load(f)

        _apply(risk.get("policy", {}), config.policy)
        _apply(risk.get("safety", {}), config.safety)

    # Environment variables (endpoints + secrets)
    config.chain.rpc_url = os.getenv("YIELDLOOP_RPC_URL", config.chain.rpc_url)
    config.chain.wallet_address = os.getenv("YIELDLOOP_WALLET_ADDRESS", config.chain.wallet_address)
    config.dashboard.remote_url = os.getenv("DASHBOARD_URL", config.dashboard.remote_url)
    config.dashboard.remote_secret = os.getenv("DASHBOARD_SECRET", "")
    config.api.secret = os.getenv("API_SECRET", "")
    config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    config.telegram.chat_id = os.getenv("TELEGRAM_CHAT_ID", "")

    # Validate critical values
    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    errors = []
    policy = config.policy

    if config.mode not in ("paper", "live"):
        errors.append(f"mode must be 'paper' or 'live', got '{config.mode}'")
    if not config.is_paper() and not config.chain.wallet_address:
        errors.append("live mode requires YIELDLOOP_WALLET_ADDRESS")
    if not (0 < policy.deposit_fraction <= 1):
        errors.append(f"deposit_fraction must be 0-1, got {policy.deposit_fraction}")
    if not (0 < policy.max_liquidity_allocation <= 1):
        errors.append(f"max_liquidity_allocation must be 0-1, got {policy.max_liquidity_allocation}")
    if policy.apy_delta_threshold_pct < 0:
        errors.append(f"apy_delta_threshold_pct must be >= 0, got {policy.apy_delta_threshold_pct}")
    if policy.assumed_price_move_pct <= -100:
        errors.append(f"assumed_price_move_pct must be > -100, got {policy.assumed_price_move_pct}")
    if not (0 < policy.deploy_token_growth < policy.deploy_vault_growth):
        errors.append(
            f"growth tiers must satisfy 0 < token ({policy.deploy_token_growth}) "
            f"< vault ({policy.deploy_vault_growth})")
    if config.safety.max_cycle_spend_usd <= 0:
        errors.append(f"max_cycle_spend_usd must be > 0, got {config.safety.max_cycle_spend_usd}")
    if config.scheduler.interval_minutes <= 0:
        errors.append(f"scheduler.interval_minutes must be > 0, got {config.scheduler.interval_minutes}")
    if config.collector.fetch_timeout_seconds <= 0:
        errors.append(f"collector.fetch_timeout_seconds must be > 0, got {config.collector.fetch_timeout_seconds}")
    if config.ledger.history_window < 1:
        errors.append(f"ledger.history_window must be >= 1, got {config.ledger.history_window}")
    if config.dashboard.history_cap < 1:
        errors.append(f"dashboard.history_cap must be >= 1, got {config.dashboard.history_cap}")
    if config.api.enabled and not (1 <= config.api.port <= 65535):
        errors.append(f"api.port must be 1-65535, got {config.api.port}")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
